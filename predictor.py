"""
SugarSentry — short-horizon glucose trend predictor.

Deliberately simple: a straight line through the oldest and newest of the last
three readings, assuming the nominal 5-minute CGM cadence. It is not a
physiological model and ignores the actual sample timestamps.
"""

from __future__ import annotations

from typing import Optional, Sequence

from models import Reading

STEP_MINUTES = 5
MIN_READINGS = 3


def predict(history: Sequence[Reading], horizon_minutes: float = 20) -> Optional[float]:
    """Project the glucose value `horizon_minutes` past the newest reading.

    `history` must be ordered oldest to newest. Returns None when fewer than
    three readings are available; callers should skip rather than guess.
    """
    if len(history) < MIN_READINGS:
        return None

    oldest, _, newest = history[-MIN_READINGS:]
    # three samples span two steps
    trend = (newest.value - oldest.value) / 2
    return newest.value + trend * (horizon_minutes / STEP_MINUTES)
