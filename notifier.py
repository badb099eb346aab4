"""
SugarSentry — push notifications via ntfy.

An alert only counts as raised once ntfy has accepted it: the matching
AlertEvent is written to the store after a successful POST, never before,
and never when delivery fails.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol

import requests

from errors import DeliveryError
from models import AlertEvent

logger = logging.getLogger("sugarsentry.notifier")

NOTIFY_TIMEOUT = 10.0


@dataclass(frozen=True)
class Alert:
    kind: str
    title: str
    message: str
    priority: str = "high"
    tags: tuple[str, ...] = ()


class AlertEventWriter(Protocol):
    def write_alert_event(self, event: AlertEvent) -> None: ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NtfyNotifier:
    def __init__(self, topic: str, store: AlertEventWriter, server: str = "https://ntfy.sh",
                 http: requests.Session = None, timeout: float = NOTIFY_TIMEOUT,
                 clock: Callable[[], datetime] = utc_now):
        if not topic:
            raise ValueError("NTFY_TOPIC must be set in .env to send alerts")
        self.url = f"{server.rstrip('/')}/{topic}"
        self.store = store
        self.http = http or requests.Session()
        self.timeout = timeout
        self.clock = clock

    def publish(self, alert: Alert) -> None:
        """Send the alert, then record it.

        Raises DeliveryError if ntfy did not accept it (nothing is recorded),
        or StoreError if it was delivered but could not be recorded.
        """
        headers = {}
        if alert.title:
            headers["Title"] = alert.title
        if alert.priority:
            headers["Priority"] = alert.priority
        if alert.tags:
            headers["Tags"] = ",".join(alert.tags)

        try:
            resp = self.http.post(
                self.url,
                data=alert.message.encode("utf-8"),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise DeliveryError(f"unable to send {alert.kind} alert: {exc}") from exc
        if not resp.ok:
            raise DeliveryError(f"ntfy rejected {alert.kind} alert: HTTP {resp.status_code}")

        logger.info("Published alert %s: %s", alert.title, alert.message)
        self.store.write_alert_event(AlertEvent(
            kind=alert.kind,
            message=alert.message,
            timestamp=self.clock(),
        ))


class DryRunNotifier:
    """Prints alerts instead of sending them. Records nothing."""

    def __init__(self):
        self.published: list[Alert] = []

    def publish(self, alert: Alert) -> None:
        self.published.append(alert)
        print(f"  [DRY-RUN] {alert.kind}: {alert.title}: {alert.message}")
