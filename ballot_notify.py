"""
Ballot - Notifiers
==================
Where campaign_opened / campaign_closed / decision_reached go.

Payloads carry anonymous ids only. A notifier may raise; the engine logs the
failure and carries on, so a dead webhook never blocks a ballot.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

import requests
import structlog

from ballot_models import NotificationEvent

log = structlog.get_logger()


class LogNotifier:
    """Default: every event becomes one structured log line."""

    def notify(self, event: NotificationEvent, payload: Dict[str, Any]):
        log.info("ballot_notification", notification=event.value, payload=payload)


class WebhookNotifier:
    """POST each event as JSON to a single URL."""

    def __init__(self, url: str, timeout: float = 10.0, session: requests.Session = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify(self, event: NotificationEvent, payload: Dict[str, Any]):
        body = {
            "event": event.value,
            "payload": payload,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
        resp = self.session.post(self.url, json=body, timeout=self.timeout)
        resp.raise_for_status()
        log.info("webhook_delivered", notification=event.value, status=resp.status_code)


class RecordingNotifier:
    """Keeps every event in memory. Handy for tests and dry runs."""

    def __init__(self):
        self.events: List[tuple] = []

    def notify(self, event: NotificationEvent, payload: Dict[str, Any]):
        self.events.append((event, payload))

    def of(self, event: NotificationEvent) -> List[Dict[str, Any]]:
        return [p for e, p in self.events if e == event]
