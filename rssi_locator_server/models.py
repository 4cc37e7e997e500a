from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class Position:
    x: float
    y: float


@dataclass(frozen=True)
class Station:
    id: str
    x: float
    y: float
    label: str = ""
    rssi_at_1m: float = -45.0
    path_loss_exponent: float = 3.0

    @property
    def position(self) -> Position:
        return Position(x=self.x, y=self.y)


@dataclass(frozen=True)
class Observation:
    """
    Raw detection as delivered by a sensing station.

    ``station_id`` comes from the topic the message arrived on,
    ``sensor_timestamp`` and ``channel`` are informational only.
    """

    device_id: str
    station_id: str
    rssi: int
    received_at: float
    channel: Optional[int] = None
    sensor_timestamp: Optional[int] = None

    @classmethod
    def parse(cls, payload: str, station_id: str, received_at: float) -> Optional["Observation"]:
        """Parse a sniffer JSON payload; returns None if it is unusable."""
        try:
            data = json.loads(payload)
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None

        device_id = data.get("mac_hash")
        rssi = data.get("rssi")
        if not isinstance(device_id, str) or not device_id:
            return None
        # bool is an int subclass
        if not isinstance(rssi, int) or isinstance(rssi, bool):
            return None

        channel = data.get("channel")
        sensor_ts = data.get("timestamp")
        return cls(
            device_id=device_id,
            station_id=station_id,
            rssi=rssi,
            received_at=received_at,
            channel=channel if isinstance(channel, int) else None,
            sensor_timestamp=sensor_ts if isinstance(sensor_ts, int) else None,
        )


@dataclass(frozen=True)
class Reading:
    device_id: str
    station_id: str
    rssi: int
    received_at: float
    # filled in by the distance estimator before the reading is stored
    distance: Optional[float] = None

    @classmethod
    def from_observation(cls, observation: Observation) -> "Reading":
        return cls(
            device_id=observation.device_id,
            station_id=observation.station_id,
            rssi=observation.rssi,
            received_at=observation.received_at,
        )

    def same_observation(self, other: "Reading") -> bool:
        return (
            self.device_id == other.device_id
            and self.station_id == other.station_id
            and self.rssi == other.rssi
            and self.received_at == other.received_at
        )


@dataclass(frozen=True)
class DeviceState:
    """
    Per-device state. Instances are never mutated; the store swaps in a new
    object so readers always see readings and timestamps from one update.
    """

    device_id: str
    readings_by_station: Mapping[str, Reading] = field(
        default_factory=lambda: MappingProxyType({})
    )
    smoothed_position: Optional[Position] = None
    last_update_at: float = 0.0

    def with_reading(self, reading: Reading) -> "DeviceState":
        readings = dict(self.readings_by_station)
        readings[reading.station_id] = reading
        return DeviceState(
            device_id=self.device_id,
            readings_by_station=MappingProxyType(readings),
            smoothed_position=self.smoothed_position,
            last_update_at=max(self.last_update_at, reading.received_at),
        )

    def without_readings_before(self, cutoff: float) -> "DeviceState":
        kept = {k: r for k, r in self.readings_by_station.items() if r.received_at >= cutoff}
        return DeviceState(
            device_id=self.device_id,
            readings_by_station=MappingProxyType(kept),
            smoothed_position=self.smoothed_position,
            last_update_at=self.last_update_at,
        )

    def with_position(self, position: Position) -> "DeviceState":
        return DeviceState(
            device_id=self.device_id,
            readings_by_station=self.readings_by_station,
            smoothed_position=position,
            last_update_at=self.last_update_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "readings": {
                sid: {"rssi": r.rssi, "received_at": r.received_at}
                for sid, r in sorted(self.readings_by_station.items())
            },
            "last_seen": self.last_update_at,
            "position": asdict(self.smoothed_position) if self.smoothed_position else None,
        }


class EstimateMethod(Enum):
    SOLVED = "solved"
    CENTROID = "centroid"


class RejectReason(Enum):
    UNKNOWN_STATION = "unknown_station"
    WEAK_SIGNAL = "weak_signal"
    IMPLAUSIBLE_DISTANCE = "implausible_distance"


@dataclass(frozen=True)
class Estimate:
    """
    Position estimate produced by one solve cycle.

    ``position`` is the smoothed position that gets published,
    ``raw_position`` is what the solver returned before smoothing.
    """

    device_id: str
    position: Position
    contributing_stations: int
    method: EstimateMethod
    timestamp: float
    raw_position: Optional[Position] = None

    def to_dict(self) -> Dict[str, Any]:
        # wire format of the position-update event
        return {
            "device_id": self.device_id,
            "x": self.position.x,
            "y": self.position.y,
            "contributing_stations": self.contributing_stations,
            "method": self.method.value,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())
