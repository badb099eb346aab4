#!/usr/bin/env python3
"""
SugarSentry — log insulin doses and carbs into the database.

Usage:
    python3 scripts/log_entry.py dose --units 14 --type basal
    python3 scripts/log_entry.py dose --units 3.5 --type Humalog --at 2026-10-19T07:30:00-04:00
    python3 scripts/log_entry.py carbs --grams 45 --desc "oatmeal with banana"
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Allow imports from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config import load_settings
from db import SQLiteStore, to_iso
from errors import StoreError
from models import CarbEvent, DoseEvent


def parse_when(raw: Optional[str]) -> datetime:
    if not raw:
        return datetime.now(timezone.utc)
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.astimezone()  # naive input is local time
    return dt.astimezone(timezone.utc)


def out(data):
    print(json.dumps(data, indent=2))


def cmd_dose(store: SQLiteStore, settings, args) -> None:
    """Log an insulin dose."""
    dose = DoseEvent(units=args.units, insulin_type=args.type, timestamp=parse_when(args.at))
    store.write_dose(dose, notes=args.notes)
    out({
        "status": "ok",
        "timestamp_utc": to_iso(dose.timestamp),
        "units": dose.units,
        "type": dose.insulin_type,
        "long_acting": settings.is_long_acting(dose.insulin_type),
    })


def cmd_carbs(store: SQLiteStore, settings, args) -> None:
    """Log a carbohydrate intake."""
    carb = CarbEvent(grams=args.grams, description=args.desc, timestamp=parse_when(args.at))
    store.write_carb(carb)
    out({
        "status": "ok",
        "timestamp_utc": to_iso(carb.timestamp),
        "carbs_g": carb.grams,
        "description": carb.description,
    })


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Log insulin doses and carbs")
    parser.add_argument("--env", type=Path, help="Path to the .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    p_dose = sub.add_parser("dose", help="Log an insulin dose")
    p_dose.add_argument("--units", type=float, required=True)
    p_dose.add_argument("--type", required=True, help="Insulin name, e.g. basal or Tresiba")
    p_dose.add_argument("--notes")
    p_dose.add_argument("--at", help="ISO8601 time (default: now)")

    p_carbs = sub.add_parser("carbs", help="Log carbohydrates")
    p_carbs.add_argument("--grams", type=float, required=True)
    p_carbs.add_argument("--desc", default="meal")
    p_carbs.add_argument("--at", help="ISO8601 time (default: now)")

    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.env, require_dexcom=False)
        store = SQLiteStore(settings.db_path)
        handler = cmd_dose if args.command == "dose" else cmd_carbs
        handler(store, settings, args)
    except (ValueError, StoreError) as exc:
        out({"status": "error", "error": str(exc)})
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
