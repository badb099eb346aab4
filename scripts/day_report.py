#!/usr/bin/env python3
"""
SugarSentry — day-to-day glucose report.

Prints average glucose, time in range, and the hourly profile built from the
5-minute slot averages over the last N days.

Usage:
    python3 scripts/day_report.py               # last 14 days
    python3 scripts/day_report.py --days 30 --tz America/New_York
"""

from __future__ import annotations

import argparse
import statistics
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Allow imports from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from analyzer import day_to_day
from config import format_glucose, load_settings
from db import SQLiteStore
from errors import StoreError


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="SugarSentry day-to-day report")
    parser.add_argument("--days", type=int, default=14, help="Days to look back (default: 14)")
    parser.add_argument("--tz", default="UTC", help="Time zone for the daily profile")
    parser.add_argument("--env", type=Path, help="Path to the .env file")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.env, require_dexcom=False)
        store = SQLiteStore(settings.db_path)
        end = datetime.now(timezone.utc)
        result = day_to_day(store, end - timedelta(days=args.days), end,
                            settings.low_threshold, settings.high_threshold,
                            tz=ZoneInfo(args.tz))
    except (ValueError, ZoneInfoNotFoundError, StoreError) as exc:
        print(f"Error: {exc}")
        return 1

    unit = settings.unit
    if result.count == 0:
        print(f"No readings in the last {args.days} days.")
        return 0

    low = format_glucose(settings.low_threshold, unit)
    high = format_glucose(settings.high_threshold, unit)
    print(f"Readings:    {result.count}")
    print(f"Average:     {format_glucose(result.average, unit)} {unit}")
    print(f"In range:    {result.in_range:.0%} ({low}-{high} {unit})")
    print(f"\nHourly profile ({args.tz}):")

    # 12 five-minute slots per hour
    for hour in range(24):
        slots = [v for v in result.slot_averages[hour * 12:(hour + 1) * 12] if v is not None]
        if not slots:
            print(f"  {hour:02d}:00  --")
            continue
        print(f"  {hour:02d}:00  {format_glucose(statistics.mean(slots), unit)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
