"""Completion submission and the parent approval workflow."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlmodel import Session, desc, select

from .admin import AuditLog
from .bidding import champion_of
from .config import ONE_TIME_PERIOD_KEY, TRANSACTION_PAGE_SIZE
from .exceptions import AuthorizationError, ConflictError, ValidationError
from .ledger import WalletLedger
from .models import ApprovalResult, CompletionStatus, ProofType, TaskRecurrence, TransactionReason, utcnow
from .money import base_stars
from .notifications import EventKind
from .ops import StructuredLogger
from .persistence import (
    Assignment,
    Child,
    Completion,
    Database,
    Task,
    UnitOfWork,
    get_scoped,
    require_parent,
    transition_status,
)
from .streaks import StreakCalculator


def period_key_for(recurrence: Union[str, TaskRecurrence], moment: Union[date, datetime]) -> str:
    """Identify the occurrence of a recurring task that ``moment`` falls in."""

    day = moment.date() if isinstance(moment, datetime) else moment
    recurrence = TaskRecurrence(recurrence)
    if recurrence is TaskRecurrence.DAILY:
        return day.isoformat()
    if recurrence is TaskRecurrence.WEEKLY:
        days_since_sunday = (day.weekday() + 1) % 7
        sunday = day - timedelta(days=days_since_sunday)
        return f"{sunday.isoformat()}-WEEK"
    return ONE_TIME_PERIOD_KEY


def completion_state(completion: Completion) -> Dict[str, Any]:
    return {
        "completionId": completion.id,
        "assignmentId": completion.assignment_id,
        "status": completion.status,
        "periodKey": completion.period_key,
        "moneyAwarded": completion.money_awarded,
        "starsAwarded": completion.stars_awarded,
        "processedBy": completion.processed_by,
        "rejectionReason": completion.rejection_reason,
    }


class CompletionWorkflow:
    """pending -> approved | rejected, with the reward credited on approval."""

    def __init__(
        self,
        database: Database,
        ledger: WalletLedger,
        streaks: StreakCalculator,
        *,
        logger: StructuredLogger | None = None,
        audit_log: AuditLog | None = None,
    ) -> None:
        self._db = database
        self._ledger = ledger
        self._streaks = streaks
        self._logger = logger or database.logger
        self._audit = audit_log or AuditLog()

    def submit(
        self,
        family_id: str,
        assignment_id: str,
        child_id: str,
        note: Optional[str] = None,
        *,
        at: Optional[datetime] = None,
    ) -> Completion:
        """Record that ``child_id`` finished the assignment's current occurrence.

        For bidding assignments only the current champion may submit, and the
        winning bid is captured on the completion so later underbids cannot
        change what it pays.
        """

        moment = at or utcnow()

        def operation(uow: UnitOfWork) -> Completion:
            session = uow.session
            assignment = get_scoped(session, Assignment, family_id, assignment_id, label="Assignment")
            child = get_scoped(session, Child, family_id, child_id, label="Child")
            task = get_scoped(session, Task, family_id, assignment.task_id, label="Task")
            if not task.active:
                raise ValidationError(f"Task '{task.title}' is not active.")
            if not child.active:
                raise ValidationError(f"{child.nickname} is not an active member of this family.")
            if assignment.child_id is not None and assignment.child_id != child_id:
                raise AuthorizationError("This assignment belongs to another child.")

            champion_bid: Optional[int] = None
            if assignment.bidding_enabled:
                champion = champion_of(session, family_id, assignment_id)
                if champion is None or champion.child_id != child_id:
                    raise AuthorizationError("Only the current champion can complete this task: not the champion.")
                champion_bid = champion.amount_pence

            cleaned_note = note.strip() if note else None
            if ProofType(task.proof) is not ProofType.NONE and not cleaned_note:
                raise ValidationError(f"Task '{task.title}' needs a {task.proof} as proof.")

            period_key = period_key_for(task.recurrence, moment)
            pending_key = f"{assignment_id}:{period_key}"
            clash = session.exec(select(Completion.id).where(Completion.pending_key == pending_key)).first()
            if clash is not None:
                raise ConflictError("This task is already waiting for approval.")

            completion = Completion(
                family_id=family_id,
                assignment_id=assignment_id,
                child_id=child_id,
                period_key=period_key,
                pending_key=pending_key,
                note=cleaned_note,
                champion_bid_pence=champion_bid,
                submitted_at=moment,
            )
            session.add(completion)
            session.flush()
            self._streaks.record_activity(uow, family_id, child_id, task.id, moment.date())
            uow.after_commit(
                lambda: self._logger.log(
                    "completion_submitted",
                    family_id=family_id,
                    child_id=child_id,
                    completion_id=completion.id,
                    period_key=period_key,
                )
            )
            return completion

        return self._db.run(operation)

    def approve(self, family_id: str, completion_id: str, processor_id: str) -> ApprovalResult:
        def operation(uow: UnitOfWork) -> ApprovalResult:
            session = uow.session
            require_parent(session, family_id, processor_id)
            completion = get_scoped(session, Completion, family_id, completion_id, label="Completion")
            assignment = get_scoped(session, Assignment, family_id, completion.assignment_id, label="Assignment")
            task = get_scoped(session, Task, family_id, assignment.task_id, label="Task")

            stars = base_stars(task.base_reward_pence)
            if completion.champion_bid_pence is not None:
                money = completion.champion_bid_pence
                rivalry_stars = stars
            else:
                money = task.base_reward_pence
                rivalry_stars = 0

            moved = transition_status(
                session,
                completion,
                expected=CompletionStatus.PENDING.value,
                values={
                    "status": CompletionStatus.APPROVED.value,
                    "pending_key": None,
                    "processed_at": utcnow(),
                    "processed_by": processor_id,
                    "money_awarded": money,
                    "stars_awarded": stars + rivalry_stars,
                },
            )
            if not moved:
                raise ConflictError(f"Completion is already {completion.status}.")

            self._ledger.apply_credit(
                uow,
                family_id,
                completion.child_id,
                money,
                stars,
                TransactionReason.COMPLETION_REWARD,
                completion.id,
                metadata={"taskId": task.id, "periodKey": completion.period_key},
                idempotency_key=f"completion-reward:{completion.id}",
            )
            if rivalry_stars:
                self._ledger.apply_credit(
                    uow,
                    family_id,
                    completion.child_id,
                    0,
                    rivalry_stars,
                    TransactionReason.RIVALRY_BONUS,
                    completion.id,
                    metadata={"championBidPence": completion.champion_bid_pence},
                    idempotency_key=f"rivalry-bonus:{completion.id}",
                )

            state = completion_state(completion)
            uow.emit(EventKind.COMPLETION_APPROVED, family_id, completion.child_id, state)
            uow.after_commit(lambda: self._logger.log("completion_approved", family_id=family_id, **state))
            uow.after_commit(
                lambda: self._audit.record(family_id, processor_id, "completion.approve", completion.id)
            )
            return ApprovalResult(
                completion_id=completion.id,
                status=CompletionStatus.APPROVED,
                money_awarded=money,
                stars_awarded=stars + rivalry_stars,
            )

        return self._db.run(operation)

    def reject(
        self,
        family_id: str,
        completion_id: str,
        processor_id: str,
        reason: Optional[str] = None,
    ) -> Completion:
        def operation(uow: UnitOfWork) -> Completion:
            session = uow.session
            require_parent(session, family_id, processor_id)
            completion = get_scoped(session, Completion, family_id, completion_id, label="Completion")
            moved = transition_status(
                session,
                completion,
                expected=CompletionStatus.PENDING.value,
                values={
                    "status": CompletionStatus.REJECTED.value,
                    "pending_key": None,
                    "processed_at": utcnow(),
                    "processed_by": processor_id,
                    "rejection_reason": reason,
                },
            )
            if not moved:
                raise ConflictError(f"Completion is already {completion.status}.")
            state = completion_state(completion)
            uow.emit(EventKind.COMPLETION_REJECTED, family_id, completion.child_id, state)
            uow.after_commit(lambda: self._logger.log("completion_rejected", family_id=family_id, **state))
            uow.after_commit(
                lambda: self._audit.record(
                    family_id, processor_id, "completion.reject", completion.id, details={"reason": reason}
                )
            )
            return completion

        return self._db.run(operation)

    def list_completions(
        self,
        family_id: str,
        status: Optional[CompletionStatus] = None,
        child_id: Optional[str] = None,
        limit: int = TRANSACTION_PAGE_SIZE,
    ) -> List[Completion]:
        def query(session: Session) -> List[Completion]:
            statement = select(Completion).where(Completion.family_id == family_id)
            if status is not None:
                statement = statement.where(Completion.status == CompletionStatus(status).value)
            if child_id is not None:
                statement = statement.where(Completion.child_id == child_id)
            statement = statement.order_by(desc(Completion.submitted_at)).limit(limit)
            return list(session.exec(statement).all())

        return self._db.read(query)


__all__ = ["CompletionWorkflow", "completion_state", "period_key_for"]
