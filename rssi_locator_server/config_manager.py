from __future__ import annotations

import copy
import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Callable, Optional

import yaml

from .exceptions import ConfigError


logger = logging.getLogger(__name__)


def _env_or_default(env_key: str, default: Any, cast: Callable[[str], Any] = str) -> Any:
    v = os.environ.get(env_key)
    if v is not None:
        try:
            return cast(v)
        except ValueError:
            # keep the raw string, validation reports it
            return v
    return default


DEFAULT_CONFIG_PATH = _env_or_default(
    "LOCATOR_CONFIG",
    os.path.join(".", "config", "config.yaml"),
)


@dataclass(frozen=True)
class EngineConfig:
    """Process-wide engine parameters, validated once at startup."""

    smoothing_factor: float = 0.7
    max_iterations: int = 200
    convergence_threshold: float = 0.001
    learning_rate: float = 0.8
    min_stations: int = 3
    max_reading_age_secs: float = 10.0
    min_rssi: float = -95.0
    max_distance: float = 50.0
    idle_timeout_secs: Optional[float] = None
    reaper_interval_secs: float = 5.0
    publisher_buffer_size: int = 256
    stats_interval_secs: float = 10.0

    def __post_init__(self):
        self.validate()

    @property
    def device_idle_timeout(self) -> float:
        """Idle horizon after which a device entry is evicted."""
        if self.idle_timeout_secs is None:
            return 3 * self.max_reading_age_secs
        return self.idle_timeout_secs

    def validate(self) -> None:
        def positive(name: str) -> None:
            value = getattr(self, name)
            if not _is_number(value) or not value > 0:
                raise ConfigError(f"{name} must be a positive number, got {value!r}")

        def positive_int(name: str, minimum: int = 1) -> None:
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
                raise ConfigError(f"{name} must be an integer >= {minimum}, got {value!r}")

        sf = self.smoothing_factor
        if not _is_number(sf) or not 0.0 <= sf <= 1.0:
            raise ConfigError(f"smoothing_factor must be within [0, 1], got {sf!r}")
        positive_int("max_iterations")
        positive("convergence_threshold")
        positive("learning_rate")
        positive_int("min_stations", minimum=2)
        positive("max_reading_age_secs")
        if not _is_number(self.min_rssi):
            raise ConfigError(f"min_rssi must be a number, got {self.min_rssi!r}")
        positive("max_distance")
        if self.idle_timeout_secs is not None:
            positive("idle_timeout_secs")
        positive("reaper_interval_secs")
        positive_int("publisher_buffer_size")
        positive("stats_interval_secs")

    @classmethod
    def from_dict(cls, values: dict) -> "EngineConfig":
        known = set(cls.__dataclass_fields__)
        unknown = set(values) - known
        if unknown:
            raise ConfigError(f"unknown engine options: {', '.join(sorted(unknown))}")
        return cls(**values)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


class ConfigManager:
    """Loads the YAML configuration once at startup."""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or DEFAULT_CONFIG_PATH
        self.default_config = {
            "mqtt": {
                "ip": _env_or_default("LOCATOR_MQTT_IP", "localhost"),
                "port": _env_or_default("LOCATOR_MQTT_PORT", 1883, int),
                "client_id": "rssi-locator-server",
                "keepalive": 60,
                "qos": 0,
                "downlink_topic": _env_or_default("LOCATOR_MQTT_DOWNLINK_TOPIC", "sniffer/+/device"),
                "uplink_topic": _env_or_default(
                    "LOCATOR_MQTT_UPLINK_TOPIC", "locator/device/{deviceId}/position"
                ),
            },
            "engine": {
                "smoothing_factor": _env_or_default("LOCATOR_SMOOTHING_FACTOR", 0.7, float),
                "max_iterations": 200,
                "convergence_threshold": 0.001,
                "learning_rate": 0.8,
                "min_stations": _env_or_default("LOCATOR_MIN_STATIONS", 3, int),
                "max_reading_age_secs": _env_or_default("LOCATOR_MAX_READING_AGE", 10.0, float),
                "min_rssi": _env_or_default("LOCATOR_MIN_RSSI", -95.0, float),
                "max_distance": 50.0,
                "idle_timeout_secs": None,
                "reaper_interval_secs": 5.0,
                "publisher_buffer_size": 256,
                "stats_interval_secs": 10.0,
            },
            "stations": [
                {"id": "station-1", "x": 0.0, "y": 0.0, "label": "Corner A", "rssi_at_1m": -45.0, "path_loss_exponent": 3.0},
                {"id": "station-2", "x": 5.0, "y": 0.0, "label": "Corner B", "rssi_at_1m": -45.0, "path_loss_exponent": 3.0},
                {"id": "station-3", "x": 0.0, "y": 5.0, "label": "Corner C", "rssi_at_1m": -45.0, "path_loss_exponent": 3.0},
            ],
            "paths": {
                "station_db": _env_or_default("LOCATOR_PATH_STATION_DB", None),
            },
            "logging": {
                "level": _env_or_default("LOCATOR_LOG_LEVEL", "INFO"),
            },
        }
        self.load_config()

    def load_config(self) -> None:
        """Load the config file; a missing file is created from the defaults."""
        if not os.path.exists(self.config_file):
            logger.info("Config file %s not found, writing defaults", self.config_file)
            self.config = copy.deepcopy(self.default_config)
            self.save_config()
            return
        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"cannot read config file {self.config_file}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"config file {self.config_file} must contain a mapping")
        self.config = loaded
        self._merge_default_config()

    def _merge_default_config(self) -> None:
        # the sample station list only seeds a newly written file
        defaults = {k: v for k, v in self.default_config.items() if k != "stations"}

        def merge_dict(default, current):
            for key, value in default.items():
                if key not in current:
                    current[key] = copy.deepcopy(value)
                elif isinstance(value, dict) and isinstance(current[key], dict):
                    merge_dict(value, current[key])

        merge_dict(defaults, self.config)

    def save_config(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.config_file) or ".", exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                yaml.safe_dump(
                    self.config,
                    f,
                    default_flow_style=False,
                    allow_unicode=True,
                    indent=2,
                    sort_keys=False,
                )
        except OSError as e:
            # running from a read-only location is fine, defaults stay in memory
            logger.warning("Could not write config file %s: %s", self.config_file, e)

    # ---------- Accessors ----------
    def get_mqtt_config(self):
        return self.config["mqtt"]

    def get_engine_config(self) -> EngineConfig:
        section = self.config.get("engine")
        if not isinstance(section, dict):
            raise ConfigError("'engine' section must be a mapping")
        return EngineConfig.from_dict(section)

    def get_station_entries(self) -> list:
        entries = self.config.get("stations") or []
        if not isinstance(entries, list):
            raise ConfigError("'stations' must be a list")
        return entries

    def get_paths(self):
        return self.config.get("paths", {})

    def get_station_db_path(self) -> Optional[str]:
        return self.get_paths().get("station_db")

    def get_logging_config(self):
        return self.config.get("logging", {})
