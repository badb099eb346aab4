from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import NOW, FakeHTTP, FakeResponse, make_readings
from errors import StoreError
from models import AlertEvent, DoseEvent
from monitor import ALERT_POLICIES, AlertKind, AlertMonitor
from notifier import NtfyNotifier


class BrokenEventStore:
    """Wraps a store but fails every alert_log read."""

    def __init__(self, store):
        self.store = store

    def __getattr__(self, name):
        return getattr(self.store, name)

    def read_alert_events(self, start, end):
        raise StoreError("database is locked")


@pytest.fixture
def ntfy() -> FakeHTTP:
    http = FakeHTTP()
    http.queue("/test-topic", FakeResponse(200, {"id": "abc"}))
    return http


@pytest.fixture
def monitor(store, ntfy, settings, clock) -> AlertMonitor:
    notifier = NtfyNotifier("test-topic", store, http=ntfy, clock=clock)
    return AlertMonitor(store, notifier, settings, clock=clock)


def events_of(store, kind: AlertKind):
    return [e for e in store.read_alert_events(NOW - timedelta(days=1), NOW + timedelta(days=1))
            if e.kind == kind.value]


def log_basal(store, at):
    store.write_dose(DoseEvent(units=14, insulin_type="basal", timestamp=at))


# ── High glucose ───────────────────────────────────────────────────

def test_high_glucose_fires_once_with_values(monitor, store, ntfy):
    store.write(make_readings([170, 190], end=NOW - timedelta(minutes=1)))

    alert = monitor.rule_high_glucose()

    assert alert is not None
    assert "190" in alert.message and "180" in alert.message
    assert ntfy.count("/test-topic") == 1
    assert len(events_of(store, AlertKind.HIGH)) == 1


def test_high_glucose_respects_cooldown(monitor, store, clock, ntfy):
    store.write(make_readings([190, 195], end=NOW))
    assert monitor.rule_high_glucose() is not None

    clock.advance(minutes=30)
    store.write(make_readings([200], end=clock.now))
    assert monitor.rule_high_glucose() is None

    clock.advance(minutes=16)
    store.write(make_readings([205], end=clock.now))
    assert monitor.rule_high_glucose() is not None
    assert ntfy.count("/test-topic") == 2


def test_high_glucose_uses_most_recent_reading(monitor, store):
    store.write(make_readings([250, 175], end=NOW))
    assert monitor.rule_high_glucose() is None


def test_high_glucose_without_recent_readings_skips(monitor, store, ntfy, caplog):
    store.write(make_readings([250], end=NOW - timedelta(minutes=30)))

    assert monitor.rule_high_glucose() is None
    assert ntfy.calls == []
    assert "No glucose readings" in caplog.text


def test_high_glucose_message_in_mmol(store, ntfy, settings, clock):
    settings = replace(settings, unit="mmol/L")
    notifier = NtfyNotifier("test-topic", store, http=ntfy, clock=clock)
    monitor = AlertMonitor(store, notifier, settings, clock=clock)
    store.write(make_readings([198], end=NOW))

    alert = monitor.rule_high_glucose()

    assert "11.00 mmol/L" in alert.message
    assert "10.00 mmol/L" in alert.message


# ── Predicted low ──────────────────────────────────────────────────

def test_predicted_low_fires(monitor, store):
    store.write(make_readings([130, 115, 100], end=NOW))

    alert = monitor.rule_predicted_low()

    assert alert is not None
    assert alert.title == "Incoming Low Glucose"
    assert "40 mg/dL" in alert.message
    assert len(events_of(store, AlertKind.PRED_LOW)) == 1


def test_predicted_low_needs_three_readings(monitor, store, ntfy):
    store.write(make_readings([80, 60], end=NOW))
    assert monitor.rule_predicted_low() is None
    assert ntfy.calls == []


def test_predicted_low_ignores_safe_projection(monitor, store):
    store.write(make_readings([100, 102, 104], end=NOW))
    assert monitor.rule_predicted_low() is None


def test_predicted_low_cooldown_is_five_minutes(monitor, store, clock):
    store.write(make_readings([130, 115, 100], end=NOW))
    assert monitor.rule_predicted_low() is not None

    clock.advance(minutes=4)
    assert monitor.rule_predicted_low() is None

    clock.advance(minutes=2)
    store.write(make_readings([90], end=clock.now))
    assert monitor.rule_predicted_low() is not None


# ── Missing long-acting insulin ────────────────────────────────────

def test_missing_long_fires_then_stays_quiet(monitor, store, ntfy):
    first = monitor.rule_missing_long_insulin()
    second = monitor.rule_missing_long_insulin()

    assert first is not None
    assert first.message == "No long-acting insulin logged in the past 1 hour."
    assert second is None
    assert ntfy.count("/test-topic") == 1
    assert len(events_of(store, AlertKind.MISSING_LONG)) == 1


def test_missing_long_message_pluralizes_hours(store, ntfy, settings, clock):
    settings = replace(settings, missing_long_hours=26)
    notifier = NtfyNotifier("test-topic", store, http=ntfy, clock=clock)
    monitor = AlertMonitor(store, notifier, settings, clock=clock)

    alert = monitor.rule_missing_long_insulin()

    assert alert.message == "No long-acting insulin logged in the past 26 hours."


def test_missing_long_quiet_after_basal(monitor, store, ntfy):
    log_basal(store, NOW - timedelta(minutes=20))
    assert monitor.rule_missing_long_insulin() is None
    assert ntfy.calls == []


def test_missing_long_ignores_rapid_acting(monitor, store):
    store.write_dose(DoseEvent(units=4, insulin_type="Humalog", timestamp=NOW - timedelta(minutes=10)))
    assert monitor.rule_missing_long_insulin() is not None


def test_missing_long_refires_after_cooldown(monitor, store, clock):
    assert monitor.rule_missing_long_insulin() is not None
    clock.advance(minutes=59)
    assert monitor.rule_missing_long_insulin() is None
    clock.advance(minutes=2)
    assert monitor.rule_missing_long_insulin() is not None


# ── Dedup and failure semantics ────────────────────────────────────

@pytest.mark.parametrize("kind", list(AlertKind))
def test_event_suppresses_same_kind_for_its_window(monitor, store, clock, kind):
    window = ALERT_POLICIES[kind].cooldown
    store.write_alert_event(AlertEvent(kind=kind.value, message="earlier", timestamp=NOW))

    clock.now = NOW + window - timedelta(seconds=1)
    assert monitor.no_events_in_past(kind, window) is False

    clock.now = NOW + window + timedelta(seconds=1)
    assert monitor.no_events_in_past(kind, window) is True


def test_other_kinds_do_not_suppress(monitor, store):
    store.write_alert_event(AlertEvent(kind=AlertKind.HIGH.value, message="high", timestamp=NOW))
    assert monitor.no_events_in_past(AlertKind.MISSING_LONG, timedelta(hours=1)) is True


def test_event_store_read_failure_suppresses_alert(store, ntfy, settings, clock):
    broken = BrokenEventStore(store)
    notifier = NtfyNotifier("test-topic", store, http=ntfy, clock=clock)
    monitor = AlertMonitor(broken, notifier, settings, clock=clock)
    # high now, and projected far below the low threshold
    store.write(make_readings([400, 300, 190], end=NOW))

    assert monitor.rule_high_glucose() is None
    assert monitor.rule_predicted_low() is None
    assert monitor.rule_missing_long_insulin() is None
    assert ntfy.calls == []


def test_failed_delivery_is_not_recorded_and_retries_next_tick(store, settings, clock):
    http = FakeHTTP()
    http.queue("/test-topic", FakeResponse(503, {"error": "unavailable"}), FakeResponse(200, {"id": "x"}))
    notifier = NtfyNotifier("test-topic", store, http=http, clock=clock)
    monitor = AlertMonitor(store, notifier, settings, clock=clock)

    assert monitor.rule_missing_long_insulin() is None
    assert events_of(store, AlertKind.MISSING_LONG) == []

    assert monitor.rule_missing_long_insulin() is not None
    assert len(events_of(store, AlertKind.MISSING_LONG)) == 1


def test_rules_never_write_events_themselves(store, settings, clock):
    class SilentNotifier:
        def __init__(self):
            self.alerts = []

        def publish(self, alert):
            self.alerts.append(alert)

    notifier = SilentNotifier()
    monitor = AlertMonitor(store, notifier, settings, clock=clock)
    store.write(make_readings([130, 115, 190], end=NOW))

    monitor.run_once()

    assert {a.kind for a in notifier.alerts} == {"high_glucose", "missing_long_insulin"}
    assert store.read_alert_events(NOW - timedelta(days=1), NOW) == []


def test_run_once_survives_a_crashing_rule(monitor, store):
    def explode():
        raise RuntimeError("bug")

    monitor.rules[AlertKind.PRED_LOW] = explode
    fired = monitor.run_once()

    assert [a.kind for a in fired] == [AlertKind.MISSING_LONG.value]


# ── Scheduler ──────────────────────────────────────────────────────

def test_run_evaluates_each_rule_on_its_own_period(monitor, monkeypatch):
    periods = {
        AlertKind.PRED_LOW: timedelta(seconds=0.1),
        AlertKind.HIGH: timedelta(seconds=0.1),
        AlertKind.MISSING_LONG: timedelta(seconds=30),
    }
    for kind, period in periods.items():
        monkeypatch.setitem(ALERT_POLICIES, kind, replace(ALERT_POLICIES[kind], period=period))

    calls = {kind: 0 for kind in AlertKind}

    def counting(kind, crash=False):
        def rule():
            calls[kind] += 1
            if crash:
                raise RuntimeError("bug")
        return rule

    monitor.rules = {
        AlertKind.PRED_LOW: counting(AlertKind.PRED_LOW),
        AlertKind.HIGH: counting(AlertKind.HIGH, crash=True),
        AlertKind.MISSING_LONG: counting(AlertKind.MISSING_LONG),
    }

    stop = threading.Event()
    worker = threading.Thread(target=monitor.run, args=(stop,), daemon=True)
    worker.start()
    time.sleep(0.55)
    stop.set()
    worker.join(timeout=2)

    assert not worker.is_alive()
    assert calls[AlertKind.MISSING_LONG] == 1
    # the crashing high rule keeps being rescheduled
    assert calls[AlertKind.HIGH] >= 3
    assert calls[AlertKind.PRED_LOW] >= 3


def test_run_returns_promptly_when_stopped(monitor):
    stop = threading.Event()
    stop.set()
    monitor.run(stop)
