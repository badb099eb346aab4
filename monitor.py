"""
SugarSentry — rule-based glucose alert monitor.

Three independent checks run on their own fixed periods against the SQLite
store and push ntfy alerts when a threshold is crossed:

- PRED_LOW:      glucose projected 20 min ahead falls below LOW_THRESHOLD
- HIGH:          latest reading above HIGH_THRESHOLD
- MISSING_LONG:  no long-acting insulin logged within the lookback

Each kind has a cooldown; an alert_log row of that kind inside the cooldown
suppresses it. If alert_log cannot be read the rule stays quiet.

Usage:
    python3 monitor.py            # run the scheduler forever
    python3 monitor.py --once     # evaluate every rule once
    python3 monitor.py --dry-run  # print alerts without sending or logging
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from config import Settings, format_glucose
from errors import DeliveryError, StoreError
from notifier import Alert
from predictor import predict

logger = logging.getLogger("sugarsentry.monitor")

PRED_LOW_LOOKBACK = timedelta(minutes=30)
PRED_HORIZON_MINUTES = 20
HIGH_LOOKBACK = timedelta(minutes=10)


class AlertKind(str, Enum):
    PRED_LOW = "pred_low_glucose"
    HIGH = "high_glucose"
    MISSING_LONG = "missing_long_insulin"


@dataclass(frozen=True)
class AlertPolicy:
    title: str
    cooldown: timedelta   # no repeat of this kind within this window
    period: timedelta     # how often the rule is evaluated
    priority: str = "high"
    tags: tuple[str, ...] = ()


ALERT_POLICIES = {
    AlertKind.PRED_LOW: AlertPolicy(
        title="Incoming Low Glucose",
        cooldown=timedelta(minutes=5),
        period=timedelta(seconds=30),
        priority="high",
        tags=("warning", "chart_with_downwards_trend"),
    ),
    AlertKind.HIGH: AlertPolicy(
        title="High Glucose",
        cooldown=timedelta(minutes=45),
        period=timedelta(seconds=30),
        priority="high",
        tags=("chart_with_upwards_trend",),
    ),
    AlertKind.MISSING_LONG: AlertPolicy(
        title="Missing Long Insulin",
        cooldown=timedelta(hours=1),
        period=timedelta(minutes=5),
        priority="high",
        tags=("syringe",),
    ),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AlertMonitor:
    def __init__(self, store, notifier, settings: Settings,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.notifier = notifier
        self.settings = settings
        self.clock = clock
        self.rules = {
            AlertKind.PRED_LOW: self.rule_predicted_low,
            AlertKind.HIGH: self.rule_high_glucose,
            AlertKind.MISSING_LONG: self.rule_missing_long_insulin,
        }

    def fmt(self, value: float) -> str:
        return f"{format_glucose(value, self.settings.unit)} {self.settings.unit}"

    # ── Dedup ───────────────────────────────────────────────────────

    def no_events_in_past(self, kind: AlertKind, window: timedelta) -> bool:
        """True only if the store confirms no `kind` alert within `window`."""
        now = self.clock()
        try:
            events = self.store.read_alert_events(now - window, now)
        except StoreError as exc:
            logger.error("Unable to read alert events, suppressing %s: %s", kind.value, exc)
            return False
        return not any(e.kind == kind.value for e in events)

    def _fire(self, kind: AlertKind, message: str) -> Optional[Alert]:
        policy = ALERT_POLICIES[kind]
        alert = Alert(
            kind=kind.value,
            title=policy.title,
            message=message,
            priority=policy.priority,
            tags=policy.tags,
        )
        try:
            self.notifier.publish(alert)
        except DeliveryError as exc:
            logger.error("Alert %s not delivered: %s", kind.value, exc)
            return None
        except StoreError as exc:
            # Sent but unrecorded, so it may repeat before the cooldown
            logger.error("Alert %s delivered but not recorded: %s", kind.value, exc)
        return alert

    # ── Rules ───────────────────────────────────────────────────────

    def rule_predicted_low(self) -> Optional[Alert]:
        """Alert when glucose is projected to drop below LOW_THRESHOLD in 20 min."""
        now = self.clock()
        try:
            readings = self.store.read_readings(now - PRED_LOW_LOOKBACK, now)
        except StoreError as exc:
            logger.error("Error reading glucose readings: %s", exc)
            return None

        predicted = predict(readings, PRED_HORIZON_MINUTES)
        if predicted is None:
            logger.info("Not enough glucose readings to predict (%d)", len(readings))
            return None
        logger.debug("Predicted glucose %.1f mg/dL in %d min", predicted, PRED_HORIZON_MINUTES)

        if predicted >= self.settings.low_threshold:
            return None
        policy = ALERT_POLICIES[AlertKind.PRED_LOW]
        if not self.no_events_in_past(AlertKind.PRED_LOW, policy.cooldown):
            return None

        current = readings[-1]
        msg = (
            f"Glucose is predicted to be {self.fmt(predicted)} in {PRED_HORIZON_MINUTES} minutes. "
            f"Currently {self.fmt(current.value)}{current.trend_arrow}."
        )
        return self._fire(AlertKind.PRED_LOW, msg)

    def rule_missing_long_insulin(self) -> Optional[Alert]:
        """Alert when no long-acting dose was logged within the lookback."""
        now = self.clock()
        hours = self.settings.missing_long_hours
        try:
            doses = self.store.read_doses(now - timedelta(hours=hours), now)
        except StoreError as exc:
            logger.error("Error reading insulin doses: %s", exc)
            return None

        if any(self.settings.is_long_acting(d.insulin_type) for d in doses):
            return None
        policy = ALERT_POLICIES[AlertKind.MISSING_LONG]
        if not self.no_events_in_past(AlertKind.MISSING_LONG, policy.cooldown):
            return None

        word = "hour" if hours == 1 else "hours"
        msg = f"No long-acting insulin logged in the past {hours:g} {word}."
        return self._fire(AlertKind.MISSING_LONG, msg)

    def rule_high_glucose(self) -> Optional[Alert]:
        """Alert when the latest reading is above HIGH_THRESHOLD."""
        now = self.clock()
        try:
            readings = self.store.read_readings(now - HIGH_LOOKBACK, now)
        except StoreError as exc:
            logger.error("Error reading glucose readings: %s", exc)
            return None
        if not readings:
            logger.error("No glucose readings in the past %d minutes",
                         HIGH_LOOKBACK.total_seconds() // 60)
            return None

        current = max(readings, key=lambda r: r.timestamp)
        if current.value <= self.settings.high_threshold:
            return None
        policy = ALERT_POLICIES[AlertKind.HIGH]
        if not self.no_events_in_past(AlertKind.HIGH, policy.cooldown):
            return None

        msg = (
            f"Glucose is {self.fmt(current.value)}{current.trend_arrow}, "
            f"above the {self.fmt(self.settings.high_threshold)} threshold."
        )
        return self._fire(AlertKind.HIGH, msg)

    # ── Scheduling ──────────────────────────────────────────────────

    def run_rule(self, kind: AlertKind) -> Optional[Alert]:
        try:
            return self.rules[kind]()
        except Exception:
            logger.exception("Rule %s failed", kind.value)
            return None

    def run_once(self) -> list[Alert]:
        """Evaluate every rule once and return the alerts that fired."""
        fired = []
        for kind in self.rules:
            alert = self.run_rule(kind)
            if alert is not None:
                fired.append(alert)
        return fired

    def run(self, stop: threading.Event) -> None:
        """Run each rule on its own period until `stop` is set."""
        logger.info(
            "Monitor started (low=%s, high=%s, missing long=%gh)",
            self.settings.low_threshold, self.settings.high_threshold,
            self.settings.missing_long_hours,
        )
        next_run = {kind: time.monotonic() for kind in self.rules}
        while not stop.is_set():
            for kind in self.rules:
                if stop.is_set():
                    break
                if time.monotonic() >= next_run[kind]:
                    self.run_rule(kind)
                    next_run[kind] = time.monotonic() + ALERT_POLICIES[kind].period.total_seconds()
            stop.wait(max(0.0, min(next_run.values()) - time.monotonic()))
        logger.info("Monitor stopped")


def build_monitor(settings: Settings, dry_run: bool = False) -> AlertMonitor:
    from db import SQLiteStore
    from notifier import DryRunNotifier, NtfyNotifier

    store = SQLiteStore(settings.db_path)
    if dry_run:
        notifier = DryRunNotifier()
    else:
        notifier = NtfyNotifier(settings.ntfy_topic, store, server=settings.ntfy_server)
    return AlertMonitor(store, notifier, settings)


def main(argv: Optional[list[str]] = None) -> int:
    from config import load_settings, setup_logging

    parser = argparse.ArgumentParser(description="SugarSentry BG Monitor")
    parser.add_argument("--dry-run", action="store_true",
                        help="Print alerts without sending or logging")
    parser.add_argument("--once", action="store_true", help="Evaluate every rule once and exit")
    parser.add_argument("--env", type=Path, help="Path to the .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Also log to stderr")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.env)
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1
    setup_logging(settings.log_dir, "monitor.log", verbose=args.verbose)

    try:
        monitor = build_monitor(settings, dry_run=args.dry_run)
    except (ValueError, StoreError) as exc:
        logger.error("Startup failed: %s", exc)
        print(f"Error: {exc}")
        return 1

    if args.once:
        fired = monitor.run_once()
        mode = "DRY-RUN" if args.dry_run else "LIVE"
        print(f"\n[{mode}] Checked {len(monitor.rules)} rules. {len(fired)} alert(s) triggered.")
        return 0

    stop = threading.Event()
    try:
        monitor.run(stop)
    except KeyboardInterrupt:
        stop.set()
    return 0


if __name__ == "__main__":
    sys.exit(main())
