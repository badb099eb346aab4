"""
SugarSentry — day-to-day glucose summary.

Average glucose, time in range, and the mean reading for each 5-minute slot
of the day (288 slots), over any stored time range.
"""

from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Optional

SLOT_MINUTES = 5
SLOTS_PER_DAY = 24 * 60 // SLOT_MINUTES


@dataclass
class DayToDayResult:
    count: int
    average: Optional[float]
    in_range: Optional[float]   # fraction of readings within [low, high]
    slot_averages: list[Optional[float]] = field(default_factory=list)


def slot_index(dt: datetime) -> int:
    """Index of the 5-minute slot of the day `dt` falls in."""
    return dt.hour * (60 // SLOT_MINUTES) + dt.minute // SLOT_MINUTES


def day_to_day(store, start: datetime, end: datetime, low: float, high: float,
               tz: tzinfo = timezone.utc) -> DayToDayResult:
    """Summarise readings between `start` and `end`. Slots use local time in `tz`.

    Store errors propagate.
    """
    readings = store.read_readings(start, end)
    if not readings:
        return DayToDayResult(count=0, average=None, in_range=None,
                              slot_averages=[None] * SLOTS_PER_DAY)

    slots: list[list[float]] = [[] for _ in range(SLOTS_PER_DAY)]
    in_range = 0
    for r in readings:
        slots[slot_index(r.timestamp.astimezone(tz))].append(r.value)
        if low <= r.value <= high:
            in_range += 1

    return DayToDayResult(
        count=len(readings),
        average=statistics.mean(r.value for r in readings),
        in_range=in_range / len(readings),
        slot_averages=[statistics.mean(s) if s else None for s in slots],
    )
