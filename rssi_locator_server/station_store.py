from __future__ import annotations

import logging
import os
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, cast

import numpy as np
import pandas as pd

from .config_manager import ConfigManager
from .exceptions import StationRegistryError
from .models import Station


logger = logging.getLogger(__name__)

DEFAULT_RSSI_AT_1M = -45.0
DEFAULT_PATH_LOSS_EXPONENT = 3.0

_COLUMNS = ["id", "x", "y", "label", "rssi_at_1m", "path_loss_exponent"]


def _normalize_df(df: pd.DataFrame) -> pd.DataFrame:
    """Validate a raw station table and fill optional columns."""
    for col in ("id", "x", "y"):
        if col not in df.columns:
            raise StationRegistryError(f"station table is missing the '{col}' column")
    if df.empty:
        raise StationRegistryError("station table is empty")

    df = df.copy()
    if "label" not in df.columns:
        df["label"] = ""
    df["label"] = df["label"].fillna("").astype(str)
    for col, default in (
        ("rssi_at_1m", DEFAULT_RSSI_AT_1M),
        ("path_loss_exponent", DEFAULT_PATH_LOSS_EXPONENT),
    ):
        if col not in df.columns:
            df[col] = default
        df[col] = df[col].fillna(default)

    if df["id"].isna().any():
        raise StationRegistryError("station id must not be empty")
    df["id"] = df["id"].astype(str).str.strip()
    if (df["id"] == "").any():
        raise StationRegistryError("station id must not be empty")
    dupes = df.loc[df["id"].duplicated(), "id"].tolist()
    if dupes:
        raise StationRegistryError(f"duplicate station ids: {', '.join(sorted(set(dupes)))}")

    for col in ("x", "y", "rssi_at_1m", "path_loss_exponent"):
        numeric = pd.to_numeric(df[col], errors="coerce")
        bad = df.loc[~np.isfinite(numeric.astype("float64")), "id"]
        if not bad.empty:
            raise StationRegistryError(
                f"column '{col}' must be a finite number (stations: {', '.join(bad.tolist())})"
            )
        df[col] = numeric.astype("float64")

    bad_ple = df.loc[df["path_loss_exponent"] <= 0, "id"]
    if not bad_ple.empty:
        raise StationRegistryError(
            f"path_loss_exponent must be > 0 (stations: {', '.join(bad_ple.tolist())})"
        )
    unusual = df.loc[(df["path_loss_exponent"] < 2.0) | (df["path_loss_exponent"] > 4.0), "id"]
    for station_id in unusual:
        logger.warning("Station %s has an unusual path_loss_exponent outside 2.0-4.0", station_id)

    return df[_COLUMNS].sort_values("id").reset_index(drop=True)


class StationRegistry:
    """Immutable table of sensing stations, built once at startup."""

    def __init__(self, stations: Mapping[str, Station]):
        self._stations: Mapping[str, Station] = MappingProxyType(dict(stations))

    # ---- Load ----
    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "StationRegistry":
        df = _normalize_df(df)
        stations: Dict[str, Station] = {}
        for _, row in df.iterrows():
            row_s = cast(pd.Series, row)
            station = Station(
                id=str(row_s.at["id"]),
                x=float(row_s.at["x"]),
                y=float(row_s.at["y"]),
                label=str(row_s.at["label"]),
                rssi_at_1m=float(row_s.at["rssi_at_1m"]),
                path_loss_exponent=float(row_s.at["path_loss_exponent"]),
            )
            stations[station.id] = station
        return cls(stations)

    @classmethod
    def from_entries(cls, entries: List[dict]) -> "StationRegistry":
        if not entries:
            raise StationRegistryError("no stations configured")
        for entry in entries:
            if not isinstance(entry, dict):
                raise StationRegistryError(f"station entry must be a mapping, got {entry!r}")
        return cls.from_dataframe(pd.DataFrame.from_records(entries))

    @classmethod
    def from_csv(cls, csv_path: str) -> "StationRegistry":
        if not os.path.exists(csv_path):
            raise StationRegistryError(f"station file {csv_path} does not exist")
        try:
            df = pd.read_csv(csv_path, dtype={"id": str})
        except (OSError, ValueError) as e:
            raise StationRegistryError(f"cannot read station file {csv_path}: {e}") from e
        return cls.from_dataframe(df)

    @classmethod
    def load(cls, config_manager: ConfigManager) -> "StationRegistry":
        """Stations come from the ``stations`` list, or from ``paths.station_db`` when the list is empty."""
        entries = config_manager.get_station_entries()
        csv_path = config_manager.get_station_db_path()
        if entries:
            if csv_path:
                logger.warning("Ignoring paths.station_db %s, stations are listed in the config", csv_path)
            registry = cls.from_entries(entries)
            source = config_manager.config_file
        elif csv_path:
            registry = cls.from_csv(csv_path)
            source = csv_path
        else:
            raise StationRegistryError(
                f"no stations in {config_manager.config_file}: set 'stations' or 'paths.station_db'"
            )
        logger.info("Loaded %d stations from %s", len(registry), source)
        return registry

    # ---- Accessors ----
    def has(self, station_id: str) -> bool:
        return station_id in self._stations

    def get(self, station_id: str) -> Optional[Station]:
        return self._stations.get(station_id)

    def all(self) -> Mapping[str, Station]:
        return self._stations

    def __contains__(self, station_id: object) -> bool:
        return station_id in self._stations

    def __len__(self) -> int:
        return len(self._stations)

    def __iter__(self) -> Iterator[Station]:
        return iter(self._stations.values())
