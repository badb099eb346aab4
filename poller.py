"""
SugarSentry — Dexcom Share poller.

Fetches the latest glucose readings and hands every batch to each registered
sink (the SQLite store by default). Runs as a long-lived loop that sleeps
until just after the next expected CGM sample.

Usage:
    python3 poller.py            # poll forever
    python3 poller.py --once     # single fetch, then exit
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

from errors import SugarSentryError
from models import Reading

logger = logging.getLogger("sugarsentry.poller")

SAMPLE_PERIOD = timedelta(minutes=5)
SKEW_BUFFER = timedelta(seconds=10)
DEFAULT_DELAY = timedelta(minutes=5)
RETRY_DELAY = timedelta(seconds=10)


class ReadingSink(Protocol):
    def write(self, readings: list[Reading]): ...


class ReadingSource(Protocol):
    def fetch_latest(self) -> list[Reading]: ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def next_delay(readings: Sequence[Reading], now: datetime) -> timedelta:
    """Time to wait before the next poll.

    Aims just past the sample that should follow the newest reading. When that
    sample is already overdue, retry soon if it is only slightly late, but fall
    back to the flat default once the sensor has been quiet for a full period.
    """
    if not readings:
        return DEFAULT_DELAY

    newest = max(r.timestamp for r in readings)
    delay = newest + SAMPLE_PERIOD + SKEW_BUFFER - now
    if delay > timedelta(0):
        return delay
    if now - newest < 2 * SAMPLE_PERIOD:
        return RETRY_DELAY
    return DEFAULT_DELAY


class Poller:
    def __init__(self, source: ReadingSource, sinks: Sequence[ReadingSink],
                 clock: Callable[[], datetime] = utc_now):
        self.source = source
        self.sinks = list(sinks)
        self.clock = clock

    def deliver(self, readings: list[Reading]) -> int:
        """Write a batch to every sink. Returns how many sinks succeeded."""
        ok = 0
        for sink in self.sinks:
            try:
                sink.write(readings)
                ok += 1
            except Exception:
                logger.exception("Unable to write readings to %s", type(sink).__name__)
        return ok

    def poll_once(self) -> list[Reading]:
        """Fetch one batch and fan it out. Fetch errors propagate."""
        readings = self.source.fetch_latest()
        if readings:
            newest = max(readings, key=lambda r: r.timestamp)
            logger.info(
                "Fetched %d readings, newest %.0f mg/dL %s at %s",
                len(readings), newest.value, newest.trend, newest.timestamp.isoformat(),
            )
        else:
            logger.warning("No glucose readings returned from Dexcom")
        self.deliver(readings)
        return readings

    def run(self, stop: threading.Event) -> None:
        """Poll until `stop` is set."""
        logger.info("Poller started with %d sink(s)", len(self.sinks))
        while not stop.is_set():
            try:
                readings = self.poll_once()
            except SugarSentryError as exc:
                logger.error("Unable to get glucose readings: %s", exc)
                stop.wait(RETRY_DELAY.total_seconds())
                continue
            except Exception:
                logger.exception("Unexpected error while polling")
                stop.wait(RETRY_DELAY.total_seconds())
                continue

            delay = next_delay(readings, self.clock())
            logger.debug("Next poll in %.0fs", delay.total_seconds())
            stop.wait(delay.total_seconds())
        logger.info("Poller stopped")


def build_poller(settings) -> Poller:
    """Wire a Dexcom client to the SQLite store using loaded settings."""
    from db import SQLiteStore
    from dexcom_client import DexcomClient, DexcomSession

    session = DexcomSession(settings.dexcom_username, settings.dexcom_password, settings.region)
    return Poller(DexcomClient(session), [SQLiteStore(settings.db_path)])


def main(argv: Optional[list[str]] = None) -> int:
    from config import load_settings, setup_logging

    parser = argparse.ArgumentParser(description="SugarSentry Dexcom poller")
    parser.add_argument("--once", action="store_true", help="Fetch a single batch and exit")
    parser.add_argument("--env", type=Path, help="Path to the .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Also log to stderr")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.env)
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1
    setup_logging(settings.log_dir, "poller.log", verbose=args.verbose)

    try:
        poller = build_poller(settings)
    except SugarSentryError as exc:
        logger.error("Startup failed: %s", exc)
        print(f"Error: {exc}")
        return 1

    if args.once:
        try:
            readings = poller.poll_once()
        except SugarSentryError as exc:
            logger.error("Polling failed: %s", exc)
            print(f"Error: {exc}")
            return 1
        print(f"Fetched {len(readings)} reading(s).")
        return 0

    stop = threading.Event()
    try:
        poller.run(stop)
    except KeyboardInterrupt:
        stop.set()
    return 0


if __name__ == "__main__":
    sys.exit(main())
