from __future__ import annotations

import math
from typing import Callable

import numpy as np
import pytest

from rssi_locator_server.config_manager import EngineConfig
from rssi_locator_server.engine import LocationEngine
from rssi_locator_server.models import Observation
from rssi_locator_server.station_store import StationRegistry


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def rssi_at_1m_for(distance: float, rssi: int, path_loss_exponent: float = 3.0) -> float:
    """Calibration constant that makes ``rssi`` map to exactly ``distance`` meters."""
    return rssi + 10 * path_loss_exponent * math.log10(distance)


def _weighted_objective(points: np.ndarray, positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
    ranges = np.linalg.norm(points[:, None, :] - positions[None, :, :], axis=2)
    return ((ranges - distances) ** 2 / distances).sum(axis=1)


def grid_optimum(positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
    """Brute-force weighted least-squares minimiser: a shrinking grid search, independent of the solver."""
    center = np.array([2.5, 2.5])
    half = 4.0
    for _ in range(12):
        xs = np.linspace(center[0] - half, center[0] + half, 81)
        ys = np.linspace(center[1] - half, center[1] + half, 81)
        gx, gy = np.meshgrid(xs, ys)
        grid = np.column_stack([gx.ravel(), gy.ravel()])
        center = grid[np.argmin(_weighted_objective(grid, positions, distances))]
        half /= 8.0
    return center


@pytest.fixture
def least_squares_optimum() -> Callable[..., np.ndarray]:
    return grid_optimum


@pytest.fixture
def stations() -> StationRegistry:
    return StationRegistry.from_entries(
        [
            {"id": "A", "x": 0.0, "y": 0.0, "label": "origin"},
            {"id": "B", "x": 5.0, "y": 0.0, "label": "east"},
            {"id": "C", "x": 0.0, "y": 5.0, "label": "north"},
        ]
    )


@pytest.fixture
def calibrated_stations() -> StationRegistry:
    # an rssi of -60 dBm means 2 m, 3 m and 4 m respectively
    return StationRegistry.from_entries(
        [
            {"id": "A", "x": 0.0, "y": 0.0, "rssi_at_1m": rssi_at_1m_for(2.0, -60)},
            {"id": "B", "x": 5.0, "y": 0.0, "rssi_at_1m": rssi_at_1m_for(3.0, -60)},
            {"id": "C", "x": 0.0, "y": 5.0, "rssi_at_1m": rssi_at_1m_for(4.0, -60)},
        ]
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_engine(stations: StationRegistry, clock: FakeClock) -> Callable[..., LocationEngine]:
    def factory(registry: StationRegistry | None = None, **overrides) -> LocationEngine:
        config = EngineConfig(**overrides)
        return LocationEngine(config, registry or stations, clock=clock, wall_clock=lambda: 1_700_000_000.0)

    return factory


@pytest.fixture
def observe(clock: FakeClock) -> Callable[..., Observation]:
    def factory(station_id: str, rssi: int, device_id: str = "dev-1") -> Observation:
        return Observation(device_id=device_id, station_id=station_id, rssi=rssi, received_at=clock())

    return factory
