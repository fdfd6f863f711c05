"""FamilyBank package: the money and star economy behind a household chore chart."""

from .admin import AuditLog
from .bidding import BiddingEngine
from .completions import CompletionWorkflow, period_key_for
from .exceptions import (
    AuthorizationError,
    ConflictError,
    FamilyBankError,
    InsufficientFundsError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .ledger import WalletLedger
from .models import (
    ApprovalResult,
    AwardType,
    Balance,
    CompletionStatus,
    LedgerCheck,
    MemberRole,
    ProofType,
    RedemptionStatus,
    StarPurchaseStatus,
    StreakStats,
    SweepReport,
    TaskRecurrence,
    TaskStreak,
    TransactionReason,
)
from .notifications import DomainEvent, EventKind, NotificationCenter
from .ops import StructuredLogger
from .redemptions import RedemptionWorkflow
from .service import FamilyBank
from .streaks import StreakCalculator

__all__ = [
    "ApprovalResult",
    "AuditLog",
    "AuthorizationError",
    "AwardType",
    "Balance",
    "BiddingEngine",
    "CompletionStatus",
    "CompletionWorkflow",
    "ConflictError",
    "DomainEvent",
    "EventKind",
    "FamilyBank",
    "FamilyBankError",
    "InsufficientFundsError",
    "LedgerCheck",
    "MemberRole",
    "NotFoundError",
    "NotificationCenter",
    "ProofType",
    "RedemptionStatus",
    "RedemptionWorkflow",
    "StarPurchaseStatus",
    "StorageError",
    "StreakCalculator",
    "StreakStats",
    "StructuredLogger",
    "SweepReport",
    "TaskRecurrence",
    "TaskStreak",
    "TransactionReason",
    "ValidationError",
    "WalletLedger",
    "period_key_for",
]
