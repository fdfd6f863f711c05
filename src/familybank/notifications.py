"""Domain events handed to the notification collaborator after commit."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .models import utcnow
from .ops import StructuredLogger


class EventKind(str, Enum):
    ASSIGNMENT_UPDATED = "assignment.updated"
    COMPLETION_APPROVED = "completion.approved"
    COMPLETION_REJECTED = "completion.rejected"
    REDEMPTION_FULFILLED = "redemption.fulfilled"
    REDEMPTION_REJECTED = "redemption.rejected"
    STAR_PURCHASE_APPROVED = "starPurchase.approved"
    STAR_PURCHASE_REJECTED = "starPurchase.rejected"
    WALLET_CHANGED = "wallet.changed"


@dataclass(slots=True)
class DomainEvent:
    """One authoritative state change, emitted once per commit."""

    kind: EventKind
    family_id: str
    child_id: Optional[str]
    state: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "familyId": self.family_id,
            "childId": self.child_id,
            "state": dict(self.state),
            "createdAt": self.created_at.isoformat(),
        }


Subscriber = Callable[[DomainEvent], None]


class NotificationCenter:
    """Fan committed domain events out to subscribers.

    Delivery is fire-and-forget: a failing subscriber is logged and the
    remaining subscribers still receive the event.
    """

    def __init__(self, *, logger: StructuredLogger | None = None, keep: int = 500) -> None:
        self._subscribers: List[Subscriber] = []
        self._sent: List[DomainEvent] = []
        self._keep = keep
        self._logger = logger or StructuredLogger()
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            try:
                self._subscribers.remove(subscriber)
            except ValueError:
                pass

    def publish(self, events: Iterable[DomainEvent]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for event in events:
            with self._lock:
                self._sent.append(event)
                del self._sent[: -self._keep]
            for subscriber in subscribers:
                try:
                    subscriber(event)
                except Exception as exc:  # noqa: BLE001 - delivery must not undo a commit
                    self._logger.error(
                        "notification_failed",
                        kind=event.kind.value,
                        family_id=event.family_id,
                        error=repr(exc),
                    )

    def history(self, *, kind: EventKind | None = None) -> Sequence[DomainEvent]:
        with self._lock:
            sent = tuple(self._sent)
        if kind is None:
            return sent
        return tuple(event for event in sent if event.kind is kind)


__all__ = ["DomainEvent", "EventKind", "NotificationCenter", "Subscriber"]
