"""High level service wiring the FamilyBank components together."""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from sqlmodel import Session, select

from .admin import AuditLog
from .bidding import BiddingEngine
from .completions import CompletionWorkflow
from .config import DATABASE_URL, DB_TIMEOUT_SECONDS, LOG_PATH, RETRY_ATTEMPTS, STAR_CONVERSION_RATE_PENCE
from .exceptions import NotFoundError, ValidationError
from .ledger import WalletLedger
from .models import AwardType, ProofType, SweepReport, TaskRecurrence, utcnow
from .money import require_amount
from .notifications import NotificationCenter
from .ops import StructuredLogger
from .persistence import (
    Assignment,
    Child,
    Database,
    Family,
    FamilySettings,
    Parent,
    Reward,
    Task,
    UnitOfWork,
    get_scoped,
    require_parent,
    settings_for,
)
from .redemptions import RedemptionWorkflow
from .streaks import StreakCalculator

_AMOUNT_SETTINGS = frozenset(
    {
        "bonus_money_pence",
        "bonus_stars",
        "first_miss_pence",
        "first_miss_stars",
        "second_miss_pence",
        "second_miss_stars",
        "third_miss_pence",
        "third_miss_stars",
    }
)
_FLAG_SETTINGS = frozenset({"holiday_enabled", "bonus_enabled", "penalty_enabled", "buy_stars_enabled"})
_DATE_SETTINGS = frozenset({"holiday_start", "holiday_end"})
_OTHER_SETTINGS = frozenset(
    {
        "streak_protection_days",
        "bonus_interval_days",
        "bonus_type",
        "penalty_type",
        "min_balance_pence",
        "min_balance_stars",
        "star_conversion_rate_pence",
    }
)
SETTING_NAMES = _AMOUNT_SETTINGS | _FLAG_SETTINGS | _DATE_SETTINGS | _OTHER_SETTINGS


def _clean_name(value: str, label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{label} cannot be empty.")
    return cleaned


def _check_window(enabled: bool, start: Optional[date], end: Optional[date]) -> None:
    if start is not None and end is not None and end < start:
        raise ValidationError("Holiday end date cannot be before its start date.")
    if enabled and start is None and end is None:
        raise ValidationError("A holiday needs a start or end date.")


class FamilyBank:
    """Own the database and hand the shared collaborators to every component.

    Create one at process start and call :meth:`close` when the process stops.
    """

    __slots__ = (
        "_db",
        "_logger",
        "_audit_log",
        "_notifications",
        "wallet",
        "bidding",
        "streaks",
        "completions",
        "redemptions",
    )

    def __init__(
        self,
        database_url: str = DATABASE_URL,
        *,
        timeout_seconds: int = DB_TIMEOUT_SECONDS,
        retry_attempts: int = RETRY_ATTEMPTS,
        log_path: Path | str | None = LOG_PATH,
        notifications: NotificationCenter | None = None,
        create_tables: bool = True,
    ) -> None:
        self._logger = StructuredLogger(path=log_path)
        self._audit_log = AuditLog()
        self._notifications = notifications or NotificationCenter(logger=self._logger)
        self._db = Database(
            database_url,
            timeout_seconds=timeout_seconds,
            attempts=retry_attempts,
            logger=self._logger,
            notifications=self._notifications,
        )
        if create_tables:
            self._db.create_db_and_tables()
        self.wallet = WalletLedger(self._db, logger=self._logger, audit_log=self._audit_log)
        self.bidding = BiddingEngine(self._db, logger=self._logger)
        self.streaks = StreakCalculator(self._db, self.wallet, logger=self._logger)
        self.completions = CompletionWorkflow(
            self._db, self.wallet, self.streaks, logger=self._logger, audit_log=self._audit_log
        )
        self.redemptions = RedemptionWorkflow(self._db, self.wallet, logger=self._logger, audit_log=self._audit_log)
        self._logger.log("service_started", database=self._db.engine.url.render_as_string(hide_password=True))

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------
    @property
    def database(self) -> Database:
        return self._db

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def notifications(self) -> NotificationCenter:
        return self._notifications

    def close(self) -> None:
        self._db.dispose()
        self._logger.log("service_stopped")

    def __enter__(self) -> "FamilyBank":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Family administration
    # ------------------------------------------------------------------
    def create_family(self, name: str) -> Family:
        cleaned = _clean_name(name, "Family name")

        def operation(uow: UnitOfWork) -> Family:
            family = Family(name=cleaned)
            uow.session.add(family)
            uow.session.flush()
            uow.session.add(FamilySettings(family_id=family.id, star_conversion_rate_pence=STAR_CONVERSION_RATE_PENCE))
            uow.session.flush()
            uow.after_commit(lambda: self._logger.log("family_created", family_id=family.id, name=cleaned))
            return family

        return self._db.run(operation)

    def add_parent(self, family_id: str, name: str) -> Parent:
        cleaned = _clean_name(name, "Parent name")

        def operation(uow: UnitOfWork) -> Parent:
            self._family(uow.session, family_id)
            parent = Parent(family_id=family_id, name=cleaned)
            uow.session.add(parent)
            uow.session.flush()
            return parent

        return self._db.run(operation)

    def add_child(self, family_id: str, nickname: str) -> Child:
        cleaned = _clean_name(nickname, "Nickname")

        def operation(uow: UnitOfWork) -> Child:
            self._family(uow.session, family_id)
            child = Child(family_id=family_id, nickname=cleaned)
            uow.session.add(child)
            uow.session.flush()
            uow.after_commit(lambda: self._logger.log("child_added", family_id=family_id, child_id=child.id))
            return child

        return self._db.run(operation)

    def set_child_active(self, family_id: str, parent_id: str, child_id: str, active: bool) -> Child:
        def operation(uow: UnitOfWork) -> Child:
            require_parent(uow.session, family_id, parent_id)
            child = get_scoped(uow.session, Child, family_id, child_id, label="Child")
            child.active = active
            uow.session.add(child)
            uow.after_commit(
                lambda: self._audit_log.record(
                    family_id, parent_id, "child.activate" if active else "child.deactivate", child_id
                )
            )
            return child

        return self._db.run(operation)

    def set_child_holiday(
        self,
        family_id: str,
        parent_id: str,
        child_id: str,
        start: Optional[date],
        end: Optional[date],
        *,
        enabled: bool = True,
    ) -> Child:
        _check_window(enabled, start, end)

        def operation(uow: UnitOfWork) -> Child:
            require_parent(uow.session, family_id, parent_id)
            child = get_scoped(uow.session, Child, family_id, child_id, label="Child")
            child.holiday_enabled = enabled
            child.holiday_start = start
            child.holiday_end = end
            uow.session.add(child)
            uow.after_commit(
                lambda: self._audit_log.record(
                    family_id,
                    parent_id,
                    "child.holiday",
                    child_id,
                    details={"enabled": enabled, "start": start, "end": end},
                )
            )
            return child

        return self._db.run(operation)

    def create_task(
        self,
        family_id: str,
        parent_id: str,
        title: str,
        base_reward_pence: int,
        *,
        proof: ProofType | str = ProofType.NONE,
        recurrence: TaskRecurrence | str = TaskRecurrence.DAILY,
    ) -> Task:
        cleaned = _clean_name(title, "Task title")
        require_amount(base_reward_pence, name="base_reward_pence", allow_zero=True)
        try:
            proof_value = ProofType(proof).value
            recurrence_value = TaskRecurrence(recurrence).value
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        def operation(uow: UnitOfWork) -> Task:
            self._family(uow.session, family_id)
            require_parent(uow.session, family_id, parent_id)
            task = Task(
                family_id=family_id,
                title=cleaned,
                base_reward_pence=base_reward_pence,
                proof=proof_value,
                recurrence=recurrence_value,
            )
            uow.session.add(task)
            uow.session.flush()
            uow.after_commit(lambda: self._audit_log.record(family_id, parent_id, "task.create", task.id))
            return task

        return self._db.run(operation)

    def set_task_active(self, family_id: str, parent_id: str, task_id: str, active: bool) -> Task:
        def operation(uow: UnitOfWork) -> Task:
            require_parent(uow.session, family_id, parent_id)
            task = get_scoped(uow.session, Task, family_id, task_id, label="Task")
            task.active = active
            uow.session.add(task)
            uow.after_commit(
                lambda: self._audit_log.record(
                    family_id, parent_id, "task.activate" if active else "task.deactivate", task_id
                )
            )
            return task

        return self._db.run(operation)

    def create_assignment(
        self,
        family_id: str,
        parent_id: str,
        task_id: str,
        child_id: Optional[str] = None,
        *,
        bidding_enabled: bool = False,
    ) -> Assignment:
        """Offer a task to one child, or to every child when ``child_id`` is None."""

        def operation(uow: UnitOfWork) -> Assignment:
            require_parent(uow.session, family_id, parent_id)
            get_scoped(uow.session, Task, family_id, task_id, label="Task")
            if child_id is not None:
                get_scoped(uow.session, Child, family_id, child_id, label="Child")
            assignment = Assignment(
                family_id=family_id,
                task_id=task_id,
                child_id=child_id,
                bidding_enabled=bidding_enabled,
            )
            uow.session.add(assignment)
            uow.session.flush()
            uow.after_commit(
                lambda: self._audit_log.record(
                    family_id,
                    parent_id,
                    "assignment.create",
                    assignment.id,
                    details={"taskId": task_id, "childId": child_id, "biddingEnabled": bidding_enabled},
                )
            )
            return assignment

        return self._db.run(operation)

    def create_reward(self, family_id: str, parent_id: str, title: str, star_cost: int) -> Reward:
        cleaned = _clean_name(title, "Reward title")
        require_amount(star_cost, name="star_cost")

        def operation(uow: UnitOfWork) -> Reward:
            self._family(uow.session, family_id)
            require_parent(uow.session, family_id, parent_id)
            reward = Reward(family_id=family_id, title=cleaned, star_cost=star_cost)
            uow.session.add(reward)
            uow.session.flush()
            uow.after_commit(lambda: self._audit_log.record(family_id, parent_id, "reward.create", reward.id))
            return reward

        return self._db.run(operation)

    def set_reward_active(self, family_id: str, parent_id: str, reward_id: str, active: bool) -> Reward:
        def operation(uow: UnitOfWork) -> Reward:
            require_parent(uow.session, family_id, parent_id)
            reward = get_scoped(uow.session, Reward, family_id, reward_id, label="Reward")
            reward.active = active
            uow.session.add(reward)
            uow.after_commit(
                lambda: self._audit_log.record(
                    family_id, parent_id, "reward.activate" if active else "reward.deactivate", reward_id
                )
            )
            return reward

        return self._db.run(operation)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def get_settings(self, family_id: str) -> FamilySettings:
        return self._db.read(lambda session: settings_for(session, family_id))

    def update_settings(self, family_id: str, parent_id: str, **changes: Any) -> FamilySettings:
        """Change streak, bonus, penalty, holiday and star purchase settings."""

        unknown = sorted(set(changes) - SETTING_NAMES)
        if unknown:
            raise ValidationError(f"Unknown setting(s): {', '.join(unknown)}.")
        cleaned = self._validate_settings(changes)

        def operation(uow: UnitOfWork) -> FamilySettings:
            require_parent(uow.session, family_id, parent_id)
            settings = settings_for(uow.session, family_id)
            for key, value in cleaned.items():
                setattr(settings, key, value)
            _check_window(settings.holiday_enabled, settings.holiday_start, settings.holiday_end)
            settings.updated_at = utcnow()
            uow.session.add(settings)
            uow.after_commit(
                lambda: self._audit_log.record(family_id, parent_id, "settings.update", family_id, details=cleaned)
            )
            uow.after_commit(lambda: self._logger.log("settings_updated", family_id=family_id, fields=sorted(cleaned)))
            return settings

        return self._db.run(operation)

    @staticmethod
    def _validate_settings(changes: Mapping[str, Any]) -> Dict[str, Any]:
        cleaned: Dict[str, Any] = {}
        for key, value in changes.items():
            if key in _AMOUNT_SETTINGS:
                cleaned[key] = require_amount(value, name=key, allow_zero=True)
            elif key in _FLAG_SETTINGS:
                if not isinstance(value, bool):
                    raise ValidationError(f"{key} must be true or false.")
                cleaned[key] = value
            elif key in _DATE_SETTINGS:
                if value is not None and not isinstance(value, date):
                    raise ValidationError(f"{key} must be a date.")
                cleaned[key] = value
            elif key in ("bonus_type", "penalty_type"):
                try:
                    cleaned[key] = AwardType(value).value
                except ValueError as exc:
                    raise ValidationError(f"{key} must be one of money, stars or both.") from exc
            elif key == "streak_protection_days":
                cleaned[key] = require_amount(value, name=key, allow_zero=True)
            elif key in ("bonus_interval_days", "star_conversion_rate_pence"):
                cleaned[key] = require_amount(value, name=key)
            elif key in ("min_balance_pence", "min_balance_stars"):
                if isinstance(value, bool) or not isinstance(value, int) or value > 0:
                    raise ValidationError(f"{key} must be a whole number no greater than zero.")
                cleaned[key] = value
        return cleaned

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------
    def sweep_all(self, today: date) -> List[SweepReport]:
        """Run the daily sweep for every family; returns one report per family."""

        family_ids = self._db.read(lambda session: list(session.exec(select(Family.id)).all()))
        return [self.streaks.run_daily_sweep(family_id, today) for family_id in family_ids]

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_child(self, family_id: str, child_id: str) -> Child:
        return self._db.read(lambda session: get_scoped(session, Child, family_id, child_id, label="Child"))

    def list_children(self, family_id: str, *, include_inactive: bool = False) -> List[Child]:
        def query(session: Session) -> List[Child]:
            statement = select(Child).where(Child.family_id == family_id)
            if not include_inactive:
                statement = statement.where(Child.active == True)  # noqa: E712
            return list(session.exec(statement.order_by(Child.created_at)).all())

        return self._db.read(query)

    def is_parent(self, family_id: str, parent_id: str) -> bool:
        return (
            self._db.read(
                lambda session: session.exec(
                    select(Parent.id).where(Parent.id == parent_id, Parent.family_id == family_id)
                ).first()
            )
            is not None
        )

    @staticmethod
    def _family(session: Session, family_id: str) -> Family:
        family = session.get(Family, family_id)
        if family is None:
            raise NotFoundError(f"Family '{family_id}' was not found.")
        return family


__all__ = ["FamilyBank", "SETTING_NAMES"]
