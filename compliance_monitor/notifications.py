from __future__ import annotations

import logging
import threading
import uuid
from typing import Any, Protocol

from compliance_monitor.models import TemplateVersion, utcnow_iso

logger = logging.getLogger(__name__)

TEMPLATE_PUBLISHED_EVENT = "template.version.published"


def build_publish_event(*, version: TemplateVersion, jurisdiction_id: str) -> dict[str, Any]:
    return {
        "event_id": f"evt_{uuid.uuid4().hex[:12]}",
        "event_type": TEMPLATE_PUBLISHED_EVENT,
        "aggregate_type": "template",
        "aggregate_id": version.template_id,
        "payload": {
            "template_id": version.template_id,
            "version_number": version.version_number,
            "reason": version.reason,
            "jurisdiction_id": jurisdiction_id,
            "review_id": version.review_id,
        },
        "created_at": utcnow_iso(),
    }


class NotificationSink(Protocol):
    def emit(self, event: dict[str, Any]) -> None: ...


class InMemoryNotificationSink:
    def __init__(self) -> None:
        self._events: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def emit(self, event: dict[str, Any]) -> None:
        with self._lock:
            self._events.append(dict(event))

    def list_events(self, *, template_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = [dict(x) for x in self._events]
        if template_id:
            rows = [x for x in rows if x.get("aggregate_id") == template_id]
        return rows


class LoggingNotificationSink:
    """Default sink for the CLI: subscribers read the log stream."""

    def emit(self, event: dict[str, Any]) -> None:
        payload = event.get("payload") or {}
        logger.info(
            "template published template_id=%s version=%s jurisdiction=%s reason=%s",
            payload.get("template_id"),
            payload.get("version_number"),
            payload.get("jurisdiction_id"),
            payload.get("reason"),
        )
