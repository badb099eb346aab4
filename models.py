"""
SugarSentry — record types shared by the poller, store and monitor.

All timestamps are timezone-aware UTC datetimes. Glucose values are mg/dL.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from pydexcom.const import DEXCOM_TREND_DIRECTIONS, TREND_ARROWS, TREND_DESCRIPTIONS

# Older Share servers send the numeric code instead of the tag
TREND_TAGS = {code: tag for tag, code in DEXCOM_TREND_DIRECTIONS.items()}


def normalize_trend(raw) -> str:
    """Map a Dexcom trend (tag string or legacy integer code) to its tag."""
    if isinstance(raw, int) and not isinstance(raw, bool):
        return TREND_TAGS.get(raw, "None")
    if raw is None:
        return "None"
    return str(raw)


@dataclass(frozen=True)
class Reading:
    value: float
    trend: str
    timestamp: datetime

    @property
    def trend_description(self) -> str:
        return TREND_DESCRIPTIONS[DEXCOM_TREND_DIRECTIONS.get(self.trend, 0)]

    @property
    def trend_arrow(self) -> str:
        return TREND_ARROWS[DEXCOM_TREND_DIRECTIONS.get(self.trend, 0)]


@dataclass(frozen=True)
class DoseEvent:
    units: float
    insulin_type: str   # formulation name, categorised via INSULIN_TYPES
    timestamp: datetime


@dataclass(frozen=True)
class CarbEvent:
    grams: float
    description: str
    timestamp: datetime


@dataclass(frozen=True)
class AlertEvent:
    kind: str
    message: str
    timestamp: datetime
