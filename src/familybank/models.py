"""Domain enums and value objects used by the FamilyBank package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every stored datetime uses."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionReason(str, Enum):
    """Closed set of reasons a wallet may change."""

    COMPLETION_REWARD = "completion-reward"
    RIVALRY_BONUS = "rivalry-bonus"
    STREAK_BONUS = "streak-bonus"
    STREAK_PENALTY = "streak-penalty"
    GIFT = "gift"
    PAYOUT = "payout"
    STAR_PURCHASE = "star-purchase"
    STAR_PURCHASE_REFUND = "star-purchase-refund"
    REDEMPTION = "redemption"
    REDEMPTION_REFUND = "redemption-refund"

    @property
    def allows_credit(self) -> bool:
        return self not in _DEBIT_ONLY

    @property
    def allows_debit(self) -> bool:
        return self not in _CREDIT_ONLY


_CREDIT_ONLY = frozenset(
    {
        TransactionReason.COMPLETION_REWARD,
        TransactionReason.RIVALRY_BONUS,
        TransactionReason.STREAK_BONUS,
        TransactionReason.GIFT,
        TransactionReason.STAR_PURCHASE_REFUND,
        TransactionReason.REDEMPTION_REFUND,
    }
)
_DEBIT_ONLY = frozenset(
    {
        TransactionReason.STREAK_PENALTY,
        TransactionReason.PAYOUT,
        TransactionReason.REDEMPTION,
    }
)


class MemberRole(str, Enum):
    PARENT = "parent"
    CHILD = "child"


class TaskRecurrence(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    ONCE = "once"


class ProofType(str, Enum):
    NONE = "none"
    NOTE = "note"
    PHOTO = "photo"


class CompletionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"


class StarPurchaseStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AwardType(str, Enum):
    """Which currency a configured bonus or penalty applies to."""

    MONEY = "money"
    STARS = "stars"
    BOTH = "both"

    @property
    def includes_money(self) -> bool:
        return self in (AwardType.MONEY, AwardType.BOTH)

    @property
    def includes_stars(self) -> bool:
        return self in (AwardType.STARS, AwardType.BOTH)


@dataclass(slots=True, frozen=True)
class Balance:
    """Current money and star totals of a wallet."""

    balance_pence: int
    stars: int

    def as_dict(self) -> Dict[str, int]:
        return {"balancePence": self.balance_pence, "stars": self.stars}


@dataclass(slots=True, frozen=True)
class ApprovalResult:
    """Outcome of approving a completion."""

    completion_id: str
    status: CompletionStatus
    money_awarded: int
    stars_awarded: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "completionId": self.completion_id,
            "status": self.status.value,
            "moneyAwarded": self.money_awarded,
            "starsAwarded": self.stars_awarded,
        }


@dataclass(slots=True, frozen=True)
class LedgerCheck:
    """Materialised wallet totals compared with the sums of the transaction log."""

    child_id: str
    balance_pence: int
    stars: int
    logged_pence: int
    logged_stars: int

    @property
    def consistent(self) -> bool:
        return self.balance_pence == self.logged_pence and self.stars == self.logged_stars

    def as_dict(self) -> Dict[str, Any]:
        return {
            "childId": self.child_id,
            "balancePence": self.balance_pence,
            "stars": self.stars,
            "loggedPence": self.logged_pence,
            "loggedStars": self.logged_stars,
            "consistent": self.consistent,
        }


@dataclass(slots=True, frozen=True)
class TaskStreak:
    task_id: str
    current: int
    best: int
    last_activity_day: Optional[date]
    is_disrupted: bool


@dataclass(slots=True)
class StreakStats:
    """Streak summary for one child across all of their tasks."""

    current_streak: int
    best_streak: int
    total_active_days: int
    streak_bonus_percent: int
    per_task: List[TaskStreak] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "currentStreak": self.current_streak,
            "bestStreak": self.best_streak,
            "totalActiveDays": self.total_active_days,
            "streakBonusPercent": self.streak_bonus_percent,
            "perTask": [
                {
                    "taskId": entry.task_id,
                    "current": entry.current,
                    "best": entry.best,
                    "lastActivityDay": entry.last_activity_day.isoformat() if entry.last_activity_day else None,
                    "isDisrupted": entry.is_disrupted,
                }
                for entry in self.per_task
            ],
        }


@dataclass(slots=True)
class SweepReport:
    """What a daily sweep did for one family."""

    family_id: str
    day: date
    already_ran: bool = False
    holiday: bool = False
    penalties: Dict[str, tuple[int, int]] = field(default_factory=dict)
    bonuses: Dict[str, tuple[int, int]] = field(default_factory=dict)
    protected: List[str] = field(default_factory=list)
    ran_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class AuditEvent:
    """Represents an auditable parent action."""

    family_id: str
    actor: str
    action: str
    target: str
    timestamp: datetime = field(default_factory=utcnow)
    details: Dict[str, Any] = field(default_factory=dict)


__all__ = [
    "ApprovalResult",
    "AuditEvent",
    "AwardType",
    "Balance",
    "LedgerCheck",
    "CompletionStatus",
    "MemberRole",
    "ProofType",
    "RedemptionStatus",
    "StarPurchaseStatus",
    "StreakStats",
    "SweepReport",
    "TaskRecurrence",
    "TaskStreak",
    "TransactionReason",
    "utcnow",
]
