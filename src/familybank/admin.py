"""Administrative helpers for FamilyBank."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Optional

from .models import AuditEvent, utcnow


class AuditLog:
    """Collect audit events for parent actions such as approvals and payouts."""

    def __init__(self) -> None:
        self._entries: list[AuditEvent] = []
        self._lock = threading.Lock()

    def record(
        self,
        family_id: str,
        actor: str,
        action: str,
        target: str,
        *,
        details: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            family_id=family_id,
            actor=actor,
            action=action,
            target=target,
            timestamp=timestamp or utcnow(),
            details=dict(details or {}),
        )
        with self._lock:
            self._entries.append(event)
        return event

    def entries(
        self,
        family_id: str,
        *,
        action: str | None = None,
        target: str | None = None,
    ) -> tuple[AuditEvent, ...]:
        with self._lock:
            records = [entry for entry in self._entries if entry.family_id == family_id]
        if action is not None:
            records = [entry for entry in records if entry.action == action]
        if target is not None:
            records = [entry for entry in records if entry.target == target]
        return tuple(records)

    def latest(self, family_id: str) -> AuditEvent | None:
        records = self.entries(family_id)
        return records[-1] if records else None


__all__ = ["AuditLog"]
