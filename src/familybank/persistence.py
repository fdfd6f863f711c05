"""Persistence, SQLModel definitions and the transaction boundary for FamilyBank."""
from __future__ import annotations

import time
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar
from uuid import uuid4

from sqlalchemy import JSON, Column, UniqueConstraint, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

from .config import (
    DATABASE_URL,
    DB_TIMEOUT_SECONDS,
    DEFAULT_BONUS_INTERVAL_DAYS,
    RETRY_ATTEMPTS,
    RETRY_BACKOFF_MS,
    STAR_CONVERSION_RATE_PENCE,
)
from .exceptions import AuthorizationError, FamilyBankError, NotFoundError, StaleWriteError, StorageError
from .models import AwardType, CompletionStatus, ProofType, RedemptionStatus, StarPurchaseStatus, TaskRecurrence, utcnow
from .notifications import DomainEvent, EventKind, NotificationCenter
from .ops import StructuredLogger


def new_id() -> str:
    return str(uuid4())


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class Family(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    created_at: datetime = Field(default_factory=utcnow)


class FamilySettings(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", unique=True, index=True)
    holiday_enabled: bool = False
    holiday_start: Optional[date] = None
    holiday_end: Optional[date] = None
    streak_protection_days: int = 0
    bonus_enabled: bool = False
    bonus_interval_days: int = DEFAULT_BONUS_INTERVAL_DAYS
    bonus_money_pence: int = 0
    bonus_stars: int = 0
    bonus_type: str = AwardType.BOTH.value
    penalty_enabled: bool = False
    penalty_type: str = AwardType.BOTH.value
    first_miss_pence: int = 0
    first_miss_stars: int = 0
    second_miss_pence: int = 0
    second_miss_stars: int = 0
    third_miss_pence: int = 0
    third_miss_stars: int = 0
    min_balance_pence: int = 0
    min_balance_stars: int = 0
    buy_stars_enabled: bool = True
    star_conversion_rate_pence: int = STAR_CONVERSION_RATE_PENCE
    updated_at: datetime = Field(default_factory=utcnow)

    def holiday_covers(self, day: date) -> bool:
        return _window_covers(self.holiday_enabled, self.holiday_start, self.holiday_end, day)


class Parent(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    name: str
    created_at: datetime = Field(default_factory=utcnow)


class Child(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    nickname: str
    active: bool = True
    holiday_enabled: bool = False
    holiday_start: Optional[date] = None
    holiday_end: Optional[date] = None
    created_at: datetime = Field(default_factory=utcnow)

    def holiday_covers(self, day: date) -> bool:
        return _window_covers(self.holiday_enabled, self.holiday_start, self.holiday_end, day)


class Task(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    title: str
    base_reward_pence: int = 0
    proof: str = ProofType.NONE.value
    recurrence: str = TaskRecurrence.DAILY.value
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class Assignment(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    task_id: str = Field(foreign_key="task.id", index=True)
    child_id: Optional[str] = Field(default=None, foreign_key="child.id")
    bidding_enabled: bool = False
    bid_version: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class Bid(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    assignment_id: str = Field(foreign_key="assignment.id", index=True)
    child_id: str = Field(foreign_key="child.id")
    amount_pence: int
    created_at: datetime = Field(default_factory=utcnow)


class Completion(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    assignment_id: str = Field(foreign_key="assignment.id", index=True)
    child_id: str = Field(foreign_key="child.id", index=True)
    status: str = Field(default=CompletionStatus.PENDING.value, index=True)
    period_key: str
    # Set while pending so the unique index allows one pending completion per occurrence.
    pending_key: Optional[str] = Field(default=None, unique=True)
    note: Optional[str] = None
    champion_bid_pence: Optional[int] = None
    submitted_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    money_awarded: int = 0
    stars_awarded: int = 0


class Wallet(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("family_id", "child_id", name="uq_wallet_family_child"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    child_id: str = Field(foreign_key="child.id")
    balance_pence: int = 0
    stars: int = 0
    version: int = 0
    updated_at: datetime = Field(default_factory=utcnow)


class WalletTransaction(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    wallet_id: str = Field(foreign_key="wallet.id", index=True)
    child_id: str = Field(foreign_key="child.id", index=True)
    money_delta: int = 0
    star_delta: int = 0
    reason: str
    reference_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    idempotency_key: Optional[str] = Field(default=None, unique=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)


class Streak(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("family_id", "child_id", "task_id", name="uq_streak_child_task"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    child_id: str = Field(foreign_key="child.id")
    task_id: str = Field(foreign_key="task.id")
    current: int = 0
    best: int = 0
    last_activity_day: Optional[date] = None
    started_on: Optional[date] = None
    is_disrupted: bool = False
    version: int = 0


class ChildStreak(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("family_id", "child_id", name="uq_childstreak_child"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    child_id: str = Field(foreign_key="child.id")
    current: int = 0
    best: int = 0
    last_activity_day: Optional[date] = None
    started_on: Optional[date] = None
    is_disrupted: bool = False
    consecutive_missed: int = 0
    last_swept_day: Optional[date] = None
    version: int = 0


class FamilyStreak(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", unique=True, index=True)
    current: int = 0
    best: int = 0
    last_activity_day: Optional[date] = None
    started_on: Optional[date] = None
    is_disrupted: bool = False
    version: int = 0


class ActivityDay(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("family_id", "child_id", "task_id", "day", name="uq_activity_child_task_day"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    child_id: str = Field(foreign_key="child.id")
    task_id: str = Field(foreign_key="task.id")
    day: date = Field(index=True)
    completion_id: Optional[str] = None


class SweepRun(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("family_id", "day", name="uq_sweep_family_day"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    day: date
    ran_at: datetime = Field(default_factory=utcnow)


class Reward(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    title: str
    star_cost: int
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class Redemption(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    child_id: str = Field(foreign_key="child.id", index=True)
    reward_id: str = Field(foreign_key="reward.id")
    star_cost: int
    status: str = Field(default=RedemptionStatus.PENDING.value, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None


class StarPurchase(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    family_id: str = Field(foreign_key="family.id", index=True)
    child_id: str = Field(foreign_key="child.id", index=True)
    stars_requested: int
    conversion_rate_pence: int
    cost_pence: int
    status: str = Field(default=StarPurchaseStatus.PENDING.value, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None


def _window_covers(enabled: bool, start: Optional[date], end: Optional[date], day: date) -> bool:
    if not enabled:
        return False
    if start and day < start:
        return False
    if end and day > end:
        return False
    return True


# ---------------------------------------------------------------------------
# Scoped lookups
# ---------------------------------------------------------------------------
ScopedModel = TypeVar("ScopedModel", bound=SQLModel)


def get_scoped(
    session: Session,
    model: Type[ScopedModel],
    family_id: str,
    record_id: str,
    *,
    label: str | None = None,
) -> ScopedModel:
    """Load ``record_id`` only if it belongs to ``family_id``."""

    record = session.exec(
        select(model).where(model.id == record_id, model.family_id == family_id)
    ).first()
    if record is None:
        raise NotFoundError(f"{label or model.__name__} '{record_id}' was not found.")
    return record


def require_parent(session: Session, family_id: str, parent_id: str) -> Parent:
    parent = session.exec(
        select(Parent).where(Parent.id == parent_id, Parent.family_id == family_id)
    ).first()
    if parent is None:
        raise AuthorizationError("Only a parent of this family may do that.")
    return parent


def settings_for(session: Session, family_id: str) -> FamilySettings:
    settings = session.exec(select(FamilySettings).where(FamilySettings.family_id == family_id)).first()
    if settings is None:
        raise NotFoundError(f"Family '{family_id}' was not found.")
    return settings


def claim_version(session: Session, row: SQLModel, *, field: str = "version") -> None:
    """Bump the ``field`` counter of ``row`` if nobody else has since it was read.

    The UPDATE takes the row's write lock for the rest of the transaction, so
    the caller's later changes to ``row`` cannot interleave with another writer.
    """

    model = type(row)
    column = getattr(model, field)
    result = session.exec(
        update(model)
        .where(model.id == row.id, column == getattr(row, field))
        .values({field: column + 1})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleWriteError(f"{model.__name__} '{row.id}' was modified concurrently.")
    session.refresh(row)


def transition_status(
    session: Session,
    row: SQLModel,
    *,
    expected: str,
    values: Dict[str, Any],
) -> bool:
    """Compare-and-set ``row.status`` from ``expected``; returns False when it was not."""

    model = type(row)
    result = session.exec(
        update(model)
        .where(model.id == row.id, model.family_id == row.family_id, model.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    session.refresh(row)
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------
class UnitOfWork:
    """A session plus everything that must wait until it commits."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.events: List[DomainEvent] = []
        self._after_commit: List[Callable[[], None]] = []

    def emit(self, kind: EventKind, family_id: str, child_id: Optional[str], state: Dict[str, Any]) -> None:
        self.events.append(DomainEvent(kind=kind, family_id=family_id, child_id=child_id, state=state))

    def after_commit(self, callback: Callable[[], None]) -> None:
        self._after_commit.append(callback)

    def callbacks(self) -> List[Callable[[], None]]:
        return list(self._after_commit)


Result = TypeVar("Result")


class Database:
    """Owns the engine and runs operations inside retried, atomic transactions."""

    def __init__(
        self,
        url: str = DATABASE_URL,
        *,
        timeout_seconds: int = DB_TIMEOUT_SECONDS,
        attempts: int = RETRY_ATTEMPTS,
        backoff_ms: int = RETRY_BACKOFF_MS,
        logger: StructuredLogger | None = None,
        notifications: NotificationCenter | None = None,
        echo: bool = False,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        kwargs: Dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": timeout_seconds}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_timeout"] = timeout_seconds
            kwargs["pool_pre_ping"] = True
        self.url = url
        self.engine = create_engine(url, **kwargs)
        self.attempts = attempts
        self.backoff_ms = backoff_ms
        self.logger = logger or StructuredLogger()
        self.notifications = notifications or NotificationCenter(logger=self.logger)

    def create_db_and_tables(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    def session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def read(self, operation: Callable[[Session], Result]) -> Result:
        """Run a read-only ``operation``; storage faults are retried then surfaced."""

        for attempt in range(1, self.attempts + 1):
            try:
                with self.session() as session:
                    return operation(session)
            except (OperationalError, PoolTimeoutError) as exc:
                self._retry_or_raise(attempt, exc)
        raise AssertionError("unreachable")  # pragma: no cover

    def run(self, operation: Callable[[UnitOfWork], Result]) -> Result:
        """Run ``operation`` in one transaction and publish its events after commit.

        Domain errors abort the transaction and propagate unchanged. Lost
        compare-and-set races, unique-key collisions and storage faults roll
        back and rerun the whole operation, so a retry re-validates against the
        state the winner committed.
        """

        for attempt in range(1, self.attempts + 1):
            with self.session() as session:
                uow = UnitOfWork(session)
                try:
                    result = operation(uow)
                    session.commit()
                except FamilyBankError:
                    session.rollback()
                    raise
                except (StaleWriteError, IntegrityError, OperationalError, PoolTimeoutError) as exc:
                    session.rollback()
                    self._retry_or_raise(attempt, exc)
                    continue
            self._after_commit(uow)
            return result
        raise AssertionError("unreachable")  # pragma: no cover

    def _retry_or_raise(self, attempt: int, exc: Exception) -> None:
        self.logger.warning("storage_retry", attempt=attempt, error=type(exc).__name__, detail=str(exc)[:200])
        if attempt >= self.attempts:
            raise StorageError("The request could not be saved, please try again.") from exc
        # Give the competing transaction time to commit before trying again.
        time.sleep(self.backoff_ms * (2 ** (attempt - 1)) / 1000)

    def _after_commit(self, uow: UnitOfWork) -> None:
        for callback in uow.callbacks():
            try:
                callback()
            except Exception as exc:  # noqa: BLE001 - the transaction is already committed
                self.logger.error("after_commit_failed", error=repr(exc))
        self.notifications.publish(uow.events)


__all__ = [
    "ActivityDay",
    "Assignment",
    "Bid",
    "Child",
    "ChildStreak",
    "Completion",
    "Database",
    "Family",
    "FamilySettings",
    "FamilyStreak",
    "Parent",
    "Redemption",
    "Reward",
    "StarPurchase",
    "Streak",
    "SweepRun",
    "Task",
    "UnitOfWork",
    "Wallet",
    "WalletTransaction",
    "claim_version",
    "get_scoped",
    "new_id",
    "require_parent",
    "settings_for",
    "transition_status",
]
