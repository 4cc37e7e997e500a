from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .config_manager import EngineConfig
from .models import EstimateMethod, Position, Reading, Station
from .station_store import StationRegistry


logger = logging.getLogger(__name__)

# lower bound on distances used as weights, meters
EPSILON = 1e-6


def rssi_to_distance(rssi: float, rssi_at_1m: float, path_loss_exponent: float) -> float:
    """
    Log-distance path-loss model, result in meters.

    distance = 10 ** ((rssi_at_1m - rssi) / (10 * n))
    """
    exponent = (rssi_at_1m - rssi) / (10.0 * path_loss_exponent)
    return math.pow(10, exponent)


class DistanceEstimator:
    """Annotates readings with the distance implied by the reporting station's calibration."""

    def __init__(self, config: EngineConfig, stations: StationRegistry):
        self.max_distance = config.max_distance
        self.stations = stations

    def distance(self, reading: Reading) -> Optional[float]:
        station = self.stations.get(reading.station_id)
        if station is None:
            return None
        return rssi_to_distance(reading.rssi, station.rssi_at_1m, station.path_loss_exponent)

    def annotate(self, reading: Reading) -> Optional[Reading]:
        """Return the reading with ``distance`` set, or None if it is implausible."""
        d = self.distance(reading)
        if d is None or not math.isfinite(d) or d > self.max_distance:
            return None
        return dataclasses.replace(reading, distance=d)


def _weights(distances: np.ndarray) -> np.ndarray:
    return 1.0 / np.maximum(distances, EPSILON)


def weighted_centroid(positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
    """
    Inverse-distance weighted mean of station positions.

    positions: (n, 2) array, distances: (n,) array. Closer stations dominate.
    """
    w = _weights(distances)
    # normalise first so a single station maps to its exact coordinates
    w = w / w.sum()
    return (positions * w[:, None]).sum(axis=0)


@dataclass(frozen=True)
class SolveResult:
    position: Position
    method: EstimateMethod
    contributing_stations: int
    iterations: int = 0
    converged: bool = False


class PositionSolver:
    """Weighted least-squares trilateration by gradient descent, with a centroid fallback."""

    def __init__(self, config: EngineConfig, stations: StationRegistry):
        self.min_stations = config.min_stations
        self.max_iterations = config.max_iterations
        self.convergence_threshold = config.convergence_threshold
        self.learning_rate = config.learning_rate
        self.stations = stations

    def _geometry(self, readings: Sequence[Reading]) -> tuple[np.ndarray, np.ndarray]:
        # fixed station order keeps the floating point sums reproducible
        ordered = sorted(readings, key=lambda r: r.station_id)
        positions = []
        distances = []
        for reading in ordered:
            station: Optional[Station] = self.stations.get(reading.station_id)
            if station is None or reading.distance is None:
                continue
            positions.append((station.x, station.y))
            distances.append(reading.distance)
        return (
            np.asarray(positions, dtype=float).reshape(-1, 2),
            np.asarray(distances, dtype=float),
        )

    def gradient(
        self, point: np.ndarray, positions: np.ndarray, distances: np.ndarray, weights: np.ndarray
    ) -> np.ndarray:
        """Gradient of sum(w_i * (|p - s_i| - d_i)^2) up to a factor of 2."""
        offsets = point - positions
        ranges = np.hypot(offsets[:, 0], offsets[:, 1])
        # direction is undefined on top of a station
        usable = ranges > EPSILON
        if not usable.any():
            return np.zeros(2)
        w = weights[usable]
        residuals = ranges[usable] - distances[usable]
        directions = offsets[usable] / ranges[usable][:, None]
        return ((w * residuals)[:, None] * directions).sum(axis=0)

    def hessian(
        self, point: np.ndarray, positions: np.ndarray, distances: np.ndarray, weights: np.ndarray
    ) -> np.ndarray:
        """Jacobian of ``gradient``: sum(w_i * ((d_i / r_i) u_i u_i^T + (1 - d_i / r_i) I))."""
        offsets = point - positions
        ranges = np.hypot(offsets[:, 0], offsets[:, 1])
        usable = ranges > EPSILON
        h = np.zeros((2, 2))
        for w, offset, r, d in zip(weights[usable], offsets[usable], ranges[usable], distances[usable]):
            u = offset / r
            h += w * ((d / r) * np.outer(u, u) + (1.0 - d / r) * np.eye(2))
        return h

    def _within_threshold(
        self, step_norm: float, point: np.ndarray, positions: np.ndarray, distances: np.ndarray, weights: np.ndarray
    ) -> bool:
        """
        True when ``point`` lies within ``convergence_threshold`` of the optimum.

        Near the minimum one step is learning_rate * H (p - p*), so
        |p - p*| <= |step| / (learning_rate * lambda_min(H)).
        """
        if step_norm >= self.convergence_threshold:
            return False
        lambda_min = float(np.linalg.eigvalsh(self.hessian(point, positions, distances, weights))[0])
        if lambda_min <= 0.0:
            # not locally convex here, keep descending
            return False
        scale = min(1.0, self.learning_rate * lambda_min)
        return step_norm < self.convergence_threshold * scale

    def gradient_descent(
        self, positions: np.ndarray, distances: np.ndarray
    ) -> tuple[np.ndarray, int, bool]:
        """Start at the weighted centroid and descend until within ``convergence_threshold`` of the optimum."""
        point = weighted_centroid(positions, distances)
        # weights summing to one keep the step size independent of how close the stations are
        weights = _weights(distances)
        weights = weights / weights.sum()
        for iteration in range(1, self.max_iterations + 1):
            step = -self.learning_rate * self.gradient(point, positions, distances, weights)
            step_norm = float(np.hypot(step[0], step[1]))
            converged = self._within_threshold(step_norm, point, positions, distances, weights)
            point = point + step
            if converged:
                return point, iteration, True
        return point, self.max_iterations, False

    def solve(self, readings: Sequence[Reading]) -> Optional[SolveResult]:
        """
        Estimate a position from distance-annotated readings.

        Returns None when there is nothing to solve with. Fewer than
        ``min_stations`` readings fall back to the weighted centroid;
        hitting ``max_iterations`` still returns the last iterate.
        """
        positions, distances = self._geometry(readings)
        count = len(distances)
        if count == 0:
            return None

        if count < self.min_stations:
            c = weighted_centroid(positions, distances)
            return SolveResult(
                position=Position(x=float(c[0]), y=float(c[1])),
                method=EstimateMethod.CENTROID,
                contributing_stations=count,
            )

        point, iterations, converged = self.gradient_descent(positions, distances)
        if not converged:
            logger.debug("Gradient descent stopped after %d iterations without converging", iterations)
        return SolveResult(
            position=Position(x=float(point[0]), y=float(point[1])),
            method=EstimateMethod.SOLVED,
            contributing_stations=count,
            iterations=iterations,
            converged=converged,
        )
