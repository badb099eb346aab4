from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from config import Settings
from db import SQLiteStore
from models import Reading

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str = None):
        self.status_code = status_code
        self.text = text if text is not None else json.dumps(payload)

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        return json.loads(self.text)


class FakeHTTP:
    """Stands in for requests.Session. Responses are queued per URL suffix;
    the last queued response repeats once the queue is drained."""

    def __init__(self):
        self.routes: dict[str, list] = {}
        self.calls: list[tuple[str, str, dict]] = []

    def queue(self, suffix: str, *responses) -> None:
        self.routes.setdefault(suffix, []).extend(responses)

    def count(self, suffix: str) -> int:
        return sum(1 for _, url, _ in self.calls if url.endswith(suffix))

    def _dispatch(self, method: str, url: str, **kwargs):
        self.calls.append((method, url, kwargs))
        for suffix, responses in self.routes.items():
            if url.endswith(suffix):
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(response, Exception):
                    raise response
                return response
        raise AssertionError(f"unexpected {method} {url}")

    def post(self, url, **kwargs):
        return self._dispatch("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._dispatch("GET", url, **kwargs)


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_readings(values, end: datetime = NOW, step_minutes: int = 5, trend: str = "Flat"):
    """Readings oldest first, the last one stamped at `end`."""
    n = len(values)
    return [
        Reading(value=v, trend=trend, timestamp=end - timedelta(minutes=step_minutes * (n - 1 - i)))
        for i, v in enumerate(values)
    ]


@pytest.fixture
def store(tmp_path: Path) -> SQLiteStore:
    return SQLiteStore(tmp_path / "sugarsentry.db")


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        dexcom_username="someone@example.com",
        dexcom_password="hunter2",
        ntfy_topic="test-topic",
        unit="mg/dL",
        low_threshold=100,
        high_threshold=180,
        missing_long_hours=1,
        insulin_types={"basal": "long", "Tresiba": "long", "Humalog": "rapid"},
        db_path=tmp_path / "sugarsentry.db",
        log_dir=tmp_path / "logs",
    )
