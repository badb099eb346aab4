"""
SugarSentry — Dexcom Share API client.

DexcomSession owns the account id and session id for one set of credentials.
DexcomClient fetches the latest glucose readings with it, renewing the
session and retrying exactly once when a fetch fails.

Neither class is thread-safe; each poller owns its own client.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import requests
from pydexcom import Region
from pydexcom.const import (
    DEFAULT_UUID,
    DEXCOM_APPLICATION_IDS,
    DEXCOM_AUTHENTICATE_ENDPOINT,
    DEXCOM_BASE_URLS,
    DEXCOM_GLUCOSE_READINGS_ENDPOINT,
    DEXCOM_LOGIN_ID_ENDPOINT,
    MAX_MAX_COUNT,
    MAX_MINUTES,
)

from errors import AuthError, FetchError, ParseError
from models import Reading, normalize_trend

logger = logging.getLogger("sugarsentry.dexcom")

REQUEST_TIMEOUT = 5.0

# "Date(1700000000000)", "/Date(1700000000000)/", "Date(1700000000000-0500)"
_DEXCOM_TIME_RE = re.compile(r"^/?Date\((-?\d+)([+-]\d{4})?\)/?$")


def parse_dexcom_time(text: str) -> datetime:
    """Parse a Dexcom embedded epoch-milliseconds string into a UTC datetime.

    The optional offset only describes the device's local zone; the epoch
    value is already absolute.
    """
    if not isinstance(text, str):
        raise ParseError(f"timestamp is not a string: {text!r}")
    match = _DEXCOM_TIME_RE.match(text.strip())
    if not match:
        raise ParseError(f"unrecognized Dexcom timestamp: {text!r}")
    try:
        return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise ParseError(f"timestamp out of range: {text!r}") from exc


def parse_readings(payload) -> list[Reading]:
    """Convert the JSON array from ReadPublisherLatestGlucoseValues to Readings."""
    readings = []
    for entry in payload:
        if not isinstance(entry, dict) or "Value" not in entry or "WT" not in entry:
            raise ParseError(f"malformed glucose entry: {entry!r}")
        try:
            value = float(entry["Value"])
        except (TypeError, ValueError) as exc:
            raise ParseError(f"non-numeric glucose value: {entry['Value']!r}") from exc
        readings.append(Reading(
            value=value,
            trend=normalize_trend(entry.get("Trend")),
            timestamp=parse_dexcom_time(entry["WT"]),
        ))
    return readings


@dataclass(frozen=True)
class Session:
    account_id: str
    session_id: str


class DexcomSession:
    """Lazily created, explicitly renewable Dexcom Share session."""

    def __init__(self, username: str, password: str, region: Region = Region.US,
                 http: Optional[requests.Session] = None, timeout: float = REQUEST_TIMEOUT):
        self.username = username
        self.password = password
        self.base_url = DEXCOM_BASE_URLS[region]
        self.application_id = DEXCOM_APPLICATION_IDS[region]
        self.http = http or requests.Session()
        self.timeout = timeout

        self.account_id: Optional[str] = None
        self.session: Optional[Session] = None

    def ensure(self) -> Session:
        """Return the cached session, logging in first if there is none."""
        if self.session is not None:
            return self.session
        return self._create()

    def renew(self) -> Session:
        """Discard the current session id and log in again."""
        logger.info("Renewing Dexcom session")
        self.session = None
        return self._create()

    def _create(self) -> Session:
        if self.account_id is None:
            self.account_id = self._post_for_id(DEXCOM_AUTHENTICATE_ENDPOINT, {
                "accountName": self.username,
                "password": self.password,
                "applicationId": self.application_id,
            })
            logger.info("Got Dexcom account id")

        session_id = self._post_for_id(DEXCOM_LOGIN_ID_ENDPOINT, {
            "accountId": self.account_id,
            "password": self.password,
            "applicationId": self.application_id,
        })
        self.session = Session(account_id=self.account_id, session_id=session_id)
        logger.info("Got Dexcom session id")
        return self.session

    def _post_for_id(self, endpoint: str, body: dict) -> str:
        """POST credentials and return the quoted id string Dexcom answers with."""
        try:
            resp = self.http.post(
                f"{self.base_url}{endpoint}",
                json=body,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise AuthError(f"{endpoint} request failed: {exc}") from exc

        if not resp.ok:
            raise AuthError(f"{endpoint} returned HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            value = resp.json()
        except ValueError as exc:
            raise AuthError(f"{endpoint} returned a non-JSON body") from exc

        if not isinstance(value, str) or not value or value == DEFAULT_UUID:
            raise AuthError(f"{endpoint} returned an invalid id: {value!r}")
        return value


class DexcomClient:
    """Fetches glucose readings, recovering once from an expired session."""

    def __init__(self, session: DexcomSession):
        self.session = session

    def fetch_latest(self) -> list[Reading]:
        """Fetch the latest readings, newest first as Dexcom returns them.

        On AuthError or FetchError the session is renewed once and the fetch
        retried once. ParseError is never retried.
        """
        try:
            return self._fetch()
        except (AuthError, FetchError) as exc:
            logger.warning("Glucose fetch failed, renewing session and retrying: %s", exc)

        self.session.renew()
        return self._fetch()

    def _fetch(self) -> list[Reading]:
        session = self.session.ensure()
        try:
            resp = self.session.http.get(
                f"{self.session.base_url}{DEXCOM_GLUCOSE_READINGS_ENDPOINT}",
                params={
                    "sessionId": session.session_id,
                    "minutes": MAX_MINUTES,
                    "maxCount": MAX_MAX_COUNT,
                },
                headers={"Accept": "application/json"},
                timeout=self.session.timeout,
            )
        except requests.RequestException as exc:
            raise FetchError(f"glucose request failed: {exc}") from exc

        if not resp.ok:
            raise FetchError(f"glucose request returned HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise FetchError("glucose request returned a non-JSON body") from exc

        if not isinstance(payload, list):
            raise FetchError(f"expected a JSON array of readings, got {type(payload).__name__}")

        readings = parse_readings(payload)
        logger.debug("Fetched %d readings", len(readings))
        return readings
