from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .device_store import DeviceStateStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReapResult:
    purged_readings: int = 0
    evicted_devices: List[str] = field(default_factory=list)
    skipped: bool = False


class StaleDataReaper:
    """
    Periodically removes expired readings and idle devices from the store.

    Expired readings are already ignored at solve time; the sweep only
    bounds memory. Cycles never overlap: a cycle that finds another one in
    progress is skipped.
    """

    def __init__(
        self,
        store: DeviceStateStore,
        interval: float,
        idle_timeout: float,
        clock: Callable[[], float] = time.monotonic,
        on_reap: Optional[Callable[[ReapResult], None]] = None,
    ):
        self.store = store
        self.interval = interval
        self.idle_timeout = idle_timeout
        self.clock = clock
        self.on_reap = on_reap
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self, now: Optional[float] = None) -> ReapResult:
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Reaper cycle already running, skipping")
            return ReapResult(skipped=True)
        try:
            now = self.clock() if now is None else now
            purged = self.store.purge_expired_readings(now)
            evicted = self.store.evict_idle(now, self.idle_timeout)
        finally:
            self._cycle_lock.release()

        result = ReapResult(purged_readings=purged, evicted_devices=evicted)
        if purged or evicted:
            logger.info("Reaper purged %d readings, evicted %d idle devices", purged, len(evicted))
            if self.on_reap is not None:
                self.on_reap(result)
        return result

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.run_once()
            except Exception as e:
                logger.exception("Reaper cycle failed: %s", e)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="stale-data-reaper", daemon=True)
        self._thread.start()
        logger.info(
            "Reaper started (interval %.1fs, idle timeout %.1fs)", self.interval, self.idle_timeout
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Reaper stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
