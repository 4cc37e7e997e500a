from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .calculator import DistanceEstimator, PositionSolver
from .config_manager import EngineConfig
from .device_store import DeviceStateStore
from .filters import PositionSmoother
from .models import Estimate, EstimateMethod, Observation, Reading, RejectReason
from .publisher import UpdatePublisher
from .reaper import ReapResult, StaleDataReaper
from .station_store import StationRegistry
from .validator import ReadingValidator


logger = logging.getLogger(__name__)


@dataclass
class EngineStats:
    accepted: int = 0
    duplicates: int = 0
    rejected: Dict[RejectReason, int] = field(
        default_factory=lambda: {reason: 0 for reason in RejectReason}
    )
    estimates: Dict[EstimateMethod, int] = field(
        default_factory=lambda: {method: 0 for method in EstimateMethod}
    )
    empty_solves: int = 0
    evicted_devices: int = 0
    purged_readings: int = 0

    def copy(self) -> "EngineStats":
        return EngineStats(
            accepted=self.accepted,
            duplicates=self.duplicates,
            rejected=dict(self.rejected),
            estimates=dict(self.estimates),
            empty_solves=self.empty_solves,
            evicted_devices=self.evicted_devices,
            purged_readings=self.purged_readings,
        )

    def summary(self) -> str:
        rejected = ", ".join(f"{r.value}={n}" for r, n in self.rejected.items())
        estimates = ", ".join(f"{m.value}={n}" for m, n in self.estimates.items())
        return (
            f"accepted={self.accepted} duplicates={self.duplicates} "
            f"rejected[{rejected}] estimates[{estimates}] "
            f"empty_solves={self.empty_solves} evicted={self.evicted_devices} "
            f"purged={self.purged_readings}"
        )


class LocationEngine:
    """
    Streaming position pipeline.

    ``ingest`` only validates and stores; the device is then queued for the
    solve worker. A device queued several times before the worker gets to it
    is solved once, against its latest readings.
    """

    def __init__(
        self,
        config: EngineConfig,
        stations: StationRegistry,
        publisher: Optional[UpdatePublisher] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.stations = stations
        self.clock = clock
        self.wall_clock = wall_clock

        self.validator = ReadingValidator(config, stations)
        self.estimator = DistanceEstimator(config, stations)
        self.store = DeviceStateStore(config.max_reading_age_secs)
        self.solver = PositionSolver(config, stations)
        self.smoother = PositionSmoother(config.smoothing_factor)
        self.publisher = publisher or UpdatePublisher(config.publisher_buffer_size)
        self.reaper = StaleDataReaper(
            self.store,
            interval=config.reaper_interval_secs,
            idle_timeout=config.device_idle_timeout,
            clock=clock,
            on_reap=self._on_reap,
        )

        self._stats = EngineStats()
        self._stats_lock = threading.Lock()
        # insertion ordered set of devices waiting for a solve
        self._pending: Dict[str, None] = {}
        self._pending_cond = threading.Condition()
        self._running = False
        self._worker: Optional[threading.Thread] = None

    # ---------- Ingestion ----------
    def ingest(self, observation: Observation) -> bool:
        """Validate and store one observation; returns False if it was rejected."""
        reason = self.validator.check(observation)
        reading: Optional[Reading] = None
        if reason is None:
            reading = self.estimator.annotate(Reading.from_observation(observation))
            if reading is None:
                reason = RejectReason.IMPLAUSIBLE_DISTANCE

        if reading is None:
            with self._stats_lock:
                self._stats.rejected[reason] += 1
            logger.debug(
                "Dropped reading from %s for %s (rssi %d): %s",
                observation.station_id,
                observation.device_id,
                observation.rssi,
                reason.value,
            )
            return False

        changed = self.store.upsert_reading(reading)
        with self._stats_lock:
            self._stats.accepted += 1
            if not changed:
                self._stats.duplicates += 1
        if changed:
            with self._pending_cond:
                self._pending[reading.device_id] = None
                self._pending_cond.notify()
        return True

    # ---------- Solving ----------
    def solve_device(self, device_id: str, now: Optional[float] = None) -> Optional[Estimate]:
        """Solve, smooth and publish one device. Returns None if it has no valid readings."""
        now = self.clock() if now is None else now
        readings = self.store.snapshot_valid_readings(device_id, now)
        result = self.solver.solve(readings)
        if result is None:
            with self._stats_lock:
                self._stats.empty_solves += 1
            logger.debug("No valid readings for %s, nothing to solve", device_id)
            return None

        # a concurrent solve of the same device may store its position first
        while True:
            state = self.store.get(device_id)
            if state is None:
                # evicted while we were solving, it comes back with its next reading
                return None
            previous = state.smoothed_position
            smoothed = self.smoother.smooth(previous, result.position)
            if self.store.update_smoothed_position(device_id, smoothed, expected=previous):
                break

        estimate = Estimate(
            device_id=device_id,
            position=smoothed,
            contributing_stations=result.contributing_stations,
            method=result.method,
            timestamp=self.wall_clock(),
            raw_position=result.position,
        )
        with self._stats_lock:
            self._stats.estimates[result.method] += 1
        logger.debug(
            "Device %s at (%.2f, %.2f) via %s from %d stations (iterations %d, converged %s)",
            device_id,
            smoothed.x,
            smoothed.y,
            result.method.value,
            result.contributing_stations,
            result.iterations,
            result.converged,
        )
        self.publisher.publish(estimate)
        return estimate

    def process_pending(self, now: Optional[float] = None) -> List[Estimate]:
        """Solve every queued device once."""
        with self._pending_cond:
            device_ids = list(self._pending)
            self._pending.clear()

        estimates: List[Estimate] = []
        for device_id in device_ids:
            try:
                estimate = self.solve_device(device_id, now)
            except Exception as e:
                logger.exception("Solving %s failed: %s", device_id, e)
                continue
            if estimate is not None:
                estimates.append(estimate)
        return estimates

    @property
    def pending_count(self) -> int:
        with self._pending_cond:
            return len(self._pending)

    def _run_worker(self) -> None:
        while True:
            with self._pending_cond:
                while self._running and not self._pending:
                    self._pending_cond.wait()
                if not self._running:
                    return
            self.process_pending()

    # ---------- Maintenance ----------
    def _on_reap(self, result: ReapResult) -> None:
        with self._pending_cond:
            for device_id in result.evicted_devices:
                self._pending.pop(device_id, None)
        with self._stats_lock:
            self._stats.evicted_devices += len(result.evicted_devices)
            self._stats.purged_readings += result.purged_readings

    @property
    def stats(self) -> EngineStats:
        with self._stats_lock:
            return self._stats.copy()

    def log_stats(self) -> None:
        logger.info(
            "Devices: %d tracked, %d pending | %s", len(self.store), self.pending_count, self.stats.summary()
        )

    def devices_snapshot(self) -> List[Dict[str, Any]]:
        return [state.to_dict() for state in self.store.snapshot()]

    # ---------- Lifecycle ----------
    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._worker = threading.Thread(target=self._run_worker, name="solve-worker", daemon=True)
        self._worker.start()
        self.reaper.start()
        logger.info("Location engine started with %d stations", len(self.stations))

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        with self._pending_cond:
            self._running = False
            self._pending_cond.notify_all()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None
        self.reaper.stop(timeout)
        self.publisher.close()
        logger.info("Location engine stopped")

    @property
    def running(self) -> bool:
        return self._running
