"""
SugarSentry — deployment settings and logging setup.

Settings come from ~/SugarSentry/.env (or the path given with --env) and the
process environment. Thresholds are always mg/dL; GLUCOSE_UNIT only changes
how values are printed in alert messages.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydexcom import Region

# -- Paths --
PROJECT_DIR = Path.home() / "SugarSentry"
LOG_DIR = PROJECT_DIR / "logs"
ENV_PATH = PROJECT_DIR / ".env"
DB_PATH = PROJECT_DIR / "data" / "SugarSentry.db"

# -- Units --
MG_DL = "mg/dL"
MMOL_L = "mmol/L"
MMOL_FACTOR = 18

DEFAULT_LOW_THRESHOLD = 100
DEFAULT_HIGH_THRESHOLD = 180
DEFAULT_MISSING_LONG_HOURS = 1.0
DEFAULT_INSULIN_TYPES = "basal:long"
DEFAULT_NTFY_SERVER = "https://ntfy.sh"


def format_glucose(value_mg_dl: float, unit: str) -> str:
    """Render a mg/dL value in the deployment's display unit."""
    if unit == MMOL_L:
        return f"{value_mg_dl / MMOL_FACTOR:.2f}"
    return f"{value_mg_dl:.0f}"


def parse_insulin_types(raw: str) -> dict[str, str]:
    """Parse 'Tresiba:long,Humalog:rapid' into {'Tresiba': 'long', ...}."""
    types = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, period = item.partition(":")
        if not sep or not name.strip() or not period.strip():
            raise ValueError(f"bad INSULIN_TYPES entry: {item!r} (expected name:period)")
        types[name.strip()] = period.strip().lower()
    return types


def _region_from_env() -> Region:
    raw = os.getenv("DEXCOM_REGION")
    if raw:
        try:
            return Region(raw.strip().lower())
        except ValueError:
            raise ValueError(f"unknown DEXCOM_REGION: {raw}") from None
    # Older .env files only carry the boolean flag
    outside_us = os.getenv("DEXCOM_OUTSIDE_US", "false").lower() == "true"
    return Region.OUS if outside_us else Region.US


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class Settings:
    dexcom_username: str = ""
    dexcom_password: str = ""
    region: Region = Region.US
    ntfy_topic: str = ""
    ntfy_server: str = DEFAULT_NTFY_SERVER
    unit: str = MG_DL
    low_threshold: float = 0
    high_threshold: float = 0
    missing_long_hours: float = DEFAULT_MISSING_LONG_HOURS
    insulin_types: dict[str, str] = field(default_factory=dict)
    db_path: Path = DB_PATH
    log_dir: Path = LOG_DIR

    def verify(self, require_dexcom: bool = True) -> None:
        """Fill in defaults and reject settings the daemon cannot run with."""
        if require_dexcom and not (self.dexcom_username and self.dexcom_password):
            raise ValueError("DEXCOM_USERNAME and DEXCOM_PASSWORD must be set in .env")
        if self.unit not in (MG_DL, MMOL_L):
            raise ValueError(f"incorrect unit provided: {self.unit}")
        if not self.low_threshold:
            self.low_threshold = DEFAULT_LOW_THRESHOLD
        if not self.high_threshold:
            self.high_threshold = DEFAULT_HIGH_THRESHOLD
        if self.low_threshold >= self.high_threshold:
            raise ValueError(
                f"LOW_THRESHOLD ({self.low_threshold}) must be below "
                f"HIGH_THRESHOLD ({self.high_threshold})"
            )
        if self.missing_long_hours <= 0:
            raise ValueError("MISSING_LONG_THRESHOLD_HOURS must be positive")

    def is_long_acting(self, insulin_type: str) -> bool:
        return self.insulin_types.get(insulin_type) == "long"


def load_settings(env_path: Optional[Path] = None, require_dexcom: bool = True) -> Settings:
    """Load settings from the .env file and environment, then verify them."""
    load_dotenv(dotenv_path=str(env_path or ENV_PATH))

    db_override = os.getenv("SUGARSENTRY_DB")
    settings = Settings(
        dexcom_username=os.getenv("DEXCOM_USERNAME", ""),
        dexcom_password=os.getenv("DEXCOM_PASSWORD", ""),
        region=_region_from_env(),
        ntfy_topic=os.getenv("NTFY_TOPIC", ""),
        ntfy_server=os.getenv("NTFY_SERVER", DEFAULT_NTFY_SERVER).rstrip("/"),
        unit=os.getenv("GLUCOSE_UNIT", MG_DL),
        low_threshold=_float_env("LOW_THRESHOLD", 0),
        high_threshold=_float_env("HIGH_THRESHOLD", 0),
        missing_long_hours=_float_env("MISSING_LONG_THRESHOLD_HOURS", DEFAULT_MISSING_LONG_HOURS),
        insulin_types=parse_insulin_types(os.getenv("INSULIN_TYPES", DEFAULT_INSULIN_TYPES)),
        db_path=Path(db_override) if db_override else DB_PATH,
    )
    settings.verify(require_dexcom)
    return settings


def setup_logging(log_dir: Path = LOG_DIR, filename: str = "sugarsentry.log",
                  verbose: bool = False) -> logging.Logger:
    """Attach a rotating file handler (and optionally stderr) to the sugarsentry logger."""
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("sugarsentry")
    logger.setLevel(logging.DEBUG)

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    # Rotating file handler: 5 MB max, keep 3 backups
    file_handler = RotatingFileHandler(
        str(log_dir / filename),
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if verbose:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setLevel(logging.INFO)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    return logger
