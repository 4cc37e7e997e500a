from __future__ import annotations

from typing import Optional

from .config_manager import EngineConfig
from .models import Observation, Reading, RejectReason
from .station_store import StationRegistry


class ReadingValidator:
    """Plausibility gate between the ingestion boundary and the device store."""

    def __init__(self, config: EngineConfig, stations: StationRegistry):
        self.min_rssi = config.min_rssi
        self.stations = stations

    def check(self, observation: Observation) -> Optional[RejectReason]:
        """Return why the observation is rejected, or None if it is acceptable."""
        if observation.station_id not in self.stations:
            return RejectReason.UNKNOWN_STATION
        if observation.rssi < self.min_rssi:
            return RejectReason.WEAK_SIGNAL
        return None

    def validate(self, observation: Observation) -> Optional[Reading]:
        if self.check(observation) is not None:
            return None
        return Reading.from_observation(observation)
