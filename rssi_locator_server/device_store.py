"""Concurrent per-device state.

Devices are spread over a fixed number of shards, each guarded by its own
lock. Updates for one device are serialised; devices living in different
shards never contend. Every update swaps in a new immutable ``DeviceState``.
"""

from __future__ import annotations

import threading
import zlib
from typing import Any, Dict, List, Optional, Tuple

from .models import DeviceState, Position, Reading


DEFAULT_SHARD_COUNT = 32

_ANY = object()


class _Shard:
    __slots__ = ("lock", "devices")

    def __init__(self):
        self.lock = threading.Lock()
        self.devices: Dict[str, DeviceState] = {}


class DeviceStateStore:
    def __init__(self, max_reading_age_secs: float, shard_count: int = DEFAULT_SHARD_COUNT):
        if shard_count < 1:
            raise ValueError("shard_count must be >= 1")
        self.max_reading_age_secs = max_reading_age_secs
        self._shards: List[_Shard] = [_Shard() for _ in range(shard_count)]

    def _shard(self, device_id: str) -> _Shard:
        # crc32 keeps the shard assignment stable across processes
        return self._shards[zlib.crc32(device_id.encode("utf-8")) % len(self._shards)]

    # ---- Writes ----
    def upsert_reading(self, reading: Reading) -> bool:
        """
        Store ``reading`` as the latest one for its (device, station) pair.

        Returns False when nothing changed: the same reading was already
        applied, or a newer reading from that station is already stored.
        """
        if reading.distance is None:
            raise ValueError("readings must be distance-annotated before they are stored")
        shard = self._shard(reading.device_id)
        with shard.lock:
            state = shard.devices.get(reading.device_id)
            if state is None:
                state = DeviceState(device_id=reading.device_id)
            else:
                current = state.readings_by_station.get(reading.station_id)
                if current is not None:
                    if current.same_observation(reading):
                        return False
                    if current.received_at > reading.received_at:
                        return False
            shard.devices[reading.device_id] = state.with_reading(reading)
            return True

    def update_smoothed_position(self, device_id: str, position: Position, expected: Any = _ANY) -> bool:
        """
        Store the smoothed position for ``device_id``.

        With ``expected`` the write only happens if the stored position is
        still that object (compare-and-swap). Returns False if the device was
        evicted or the position changed in the meantime.
        """
        shard = self._shard(device_id)
        with shard.lock:
            state = shard.devices.get(device_id)
            if state is None:
                return False
            if expected is not _ANY and state.smoothed_position is not expected:
                return False
            shard.devices[device_id] = state.with_position(position)
            return True

    # ---- Reads ----
    def get(self, device_id: str) -> Optional[DeviceState]:
        shard = self._shard(device_id)
        with shard.lock:
            return shard.devices.get(device_id)

    def snapshot_valid_readings(self, device_id: str, now: float) -> Tuple[Reading, ...]:
        """Readings no older than ``max_reading_age_secs`` at ``now``, ordered by station."""
        state = self.get(device_id)
        if state is None:
            return ()
        return tuple(
            reading
            for _, reading in sorted(state.readings_by_station.items())
            if now - reading.received_at <= self.max_reading_age_secs
        )

    def snapshot(self) -> List[DeviceState]:
        states: List[DeviceState] = []
        for shard in self._shards:
            with shard.lock:
                states.extend(shard.devices.values())
        return sorted(states, key=lambda s: s.device_id)

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.devices)
        return total

    def __contains__(self, device_id: object) -> bool:
        return isinstance(device_id, str) and self.get(device_id) is not None

    # ---- Maintenance ----
    def purge_expired_readings(self, now: float) -> int:
        """Drop readings past the age limit; returns how many were removed."""
        cutoff = now - self.max_reading_age_secs
        removed = 0
        for shard in self._shards:
            with shard.lock:
                for device_id, state in list(shard.devices.items()):
                    pruned = state.without_readings_before(cutoff)
                    dropped = len(state.readings_by_station) - len(pruned.readings_by_station)
                    if dropped:
                        shard.devices[device_id] = pruned
                        removed += dropped
        return removed

    def evict_idle(self, now: float, idle_timeout: float) -> List[str]:
        """Remove devices whose last update is older than ``idle_timeout``."""
        evicted: List[str] = []
        for shard in self._shards:
            with shard.lock:
                for device_id, state in list(shard.devices.items()):
                    if now - state.last_update_at > idle_timeout:
                        del shard.devices[device_id]
                        evicted.append(device_id)
        return evicted
