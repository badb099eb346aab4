#!/usr/bin/env python3
"""
SugarSentry — daemon entry point.

Runs the Dexcom poller and the alert monitor side by side in two threads
until SIGINT/SIGTERM.

Usage:
    python3 sugarsentry.py
    python3 sugarsentry.py --dry-run      # print alerts instead of sending them
    python3 sugarsentry.py --env ./.env -v
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from config import load_settings, setup_logging
from errors import StoreError
from monitor import build_monitor
from poller import build_poller

logger = logging.getLogger("sugarsentry")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="SugarSentry CGM poller and alert monitor")
    parser.add_argument("--dry-run", action="store_true",
                        help="Print alerts without sending or logging them")
    parser.add_argument("--env", type=Path, help="Path to the .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Also log to stderr")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.env)
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1
    setup_logging(settings.log_dir, verbose=args.verbose)

    try:
        poller = build_poller(settings)
        monitor = build_monitor(settings, dry_run=args.dry_run)
    except (ValueError, StoreError) as exc:
        logger.error("Startup failed: %s", exc)
        print(f"Error: {exc}")
        return 1

    stop = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    threads = [
        threading.Thread(target=poller.run, args=(stop,), name="poller", daemon=True),
        threading.Thread(target=monitor.run, args=(stop,), name="monitor", daemon=True),
    ]
    for t in threads:
        t.start()
    logger.info("Everything started successfully")

    while not stop.is_set():
        stop.wait(1.0)
    for t in threads:
        t.join(timeout=15)
    return 0


if __name__ == "__main__":
    sys.exit(main())
