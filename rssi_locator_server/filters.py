from __future__ import annotations

from typing import Optional

from .models import Position


class PositionSmoother:
    """
    Exponential moving average over successive solved positions.

    new = smoothing_factor * previous + (1 - smoothing_factor) * raw

    The first sample for a device is passed through unchanged.
    """

    def __init__(self, smoothing_factor: float):
        if not 0.0 <= smoothing_factor <= 1.0:
            raise ValueError(f"smoothing_factor must be within [0, 1], got {smoothing_factor}")
        self.smoothing_factor = smoothing_factor

    def smooth(self, previous: Optional[Position], raw: Position) -> Position:
        if previous is None:
            return raw
        # boundary factors are exact, not just numerically close
        if self.smoothing_factor == 0.0:
            return raw
        if self.smoothing_factor == 1.0:
            return previous

        a = self.smoothing_factor
        return Position(
            x=a * previous.x + (1 - a) * raw.x,
            y=a * previous.y + (1 - a) * raw.y,
        )
