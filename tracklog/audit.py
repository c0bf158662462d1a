from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Optional

import requests
from starlette.background import BackgroundTasks

from tracklog.db import TracklogDB

log = logging.getLogger("tracklog.audit")

ACTION_ENTRY_CREATED = "time_entry.created"
ACTION_ENTRY_UPDATED = "time_entry.updated"
ACTION_ENTRY_DELETED = "time_entry.deleted"

ENTITY_TIME_ENTRY = "time_entry"


@dataclass(frozen=True)
class AuditEvent:
    actor_user_id: int
    action: str
    entity_type: str
    entity_id: str
    old_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None


class AuditSink:
    name: str

    def notify(self, event: AuditEvent) -> None:  # pragma: no cover
        raise NotImplementedError


def deliver(sink: AuditSink, event: AuditEvent) -> None:
    """Best-effort delivery: failures are logged, never raised."""
    try:
        sink.notify(event)
    except Exception:
        log.exception("Audit delivery failed (%s): %s %s", sink.name, event.action, event.entity_id)


class DatabaseAuditSink(AuditSink):
    name = "database"

    def __init__(self, db: TracklogDB, *, webhook_url: str = "", timeout: float = 4) -> None:
        self._db = db
        self._webhook_url = (webhook_url or "").strip()
        self._timeout = timeout

    def notify(self, event: AuditEvent) -> None:
        self._db.add_audit_log(
            user_id=event.actor_user_id,
            action=event.action,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            old_values=event.old_values,
            new_values=event.new_values,
            ip_address=event.ip_address,
        )
        if self._webhook_url:
            self._post_webhook(event)

    def _post_webhook(self, event: AuditEvent) -> None:
        try:
            requests.post(
                self._webhook_url,
                json={
                    "event": event.action,
                    "timestamp": int(time.time()),
                    "payload": asdict(event),
                },
                timeout=self._timeout,
            )
        except requests.RequestException:
            log.exception("Failed to call webhook: %s", event.action)


class BackgroundAuditSink(AuditSink):
    """Defers delivery to the response's background tasks so requests never wait on it."""

    name = "background"

    def __init__(self, inner: AuditSink, tasks: BackgroundTasks) -> None:
        self._inner = inner
        self._tasks = tasks

    def notify(self, event: AuditEvent) -> None:
        self._tasks.add_task(deliver, self._inner, event)
