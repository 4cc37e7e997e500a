"""RSSI Locator Server package.

This package provides:
- ConfigManager / EngineConfig: YAML-based configuration
- StationRegistry: immutable sensing-station table
- LocationEngine: validation, trilateration, smoothing and stale-data reaping
- UpdatePublisher: bounded fan-out of position updates
- MQTTDataProcessor: MQTT ingestion and position-update forwarding
"""

from .config_manager import ConfigManager, EngineConfig
from .engine import LocationEngine
from .exceptions import ConfigError, LocatorError, StationRegistryError
from .models import Estimate, EstimateMethod, Observation, Position, Reading, Station
from .mqtt_processor import MQTTDataProcessor
from .publisher import UpdatePublisher
from .station_store import StationRegistry

__all__ = [
    "ConfigManager",
    "EngineConfig",
    "LocationEngine",
    "ConfigError",
    "LocatorError",
    "StationRegistryError",
    "Estimate",
    "EstimateMethod",
    "Observation",
    "Position",
    "Reading",
    "Station",
    "MQTTDataProcessor",
    "UpdatePublisher",
    "StationRegistry",
]
