"""Sibling underbidding ("showdown") on bidding-enabled assignments."""

from __future__ import annotations

from typing import List, Optional

from sqlmodel import Session, select

from .exceptions import AuthorizationError, ValidationError
from .money import format_pence, require_amount
from .notifications import EventKind
from .ops import StructuredLogger
from .persistence import Assignment, Bid, Child, Database, Task, UnitOfWork, claim_version, get_scoped


def champion_of(session: Session, family_id: str, assignment_id: str) -> Optional[Bid]:
    """Lowest bid on an assignment; the earliest one wins a tie."""

    return session.exec(
        select(Bid)
        .where(Bid.family_id == family_id, Bid.assignment_id == assignment_id)
        .order_by(Bid.amount_pence, Bid.created_at, Bid.id)
    ).first()


class BiddingEngine:
    """Lets children undercut each other for the exclusive right to a task."""

    def __init__(self, database: Database, *, logger: StructuredLogger | None = None) -> None:
        self._db = database
        self._logger = logger or database.logger

    def compete(self, family_id: str, assignment_id: str, child_id: str, amount_pence: int) -> Bid:
        """Place a bid and return it as the new champion.

        A first bid may not exceed the task's base reward; every later bid must
        come from someone other than the champion and be strictly lower.
        """

        def operation(uow: UnitOfWork) -> Bid:
            session = uow.session
            assignment = get_scoped(session, Assignment, family_id, assignment_id, label="Assignment")
            get_scoped(session, Child, family_id, child_id, label="Child")
            task = get_scoped(session, Task, family_id, assignment.task_id, label="Task")
            if not assignment.bidding_enabled:
                raise ValidationError("Bidding is not enabled for this assignment.")
            if not task.active:
                raise ValidationError(f"Task '{task.title}' is not active.")
            if assignment.child_id is not None and assignment.child_id != child_id:
                raise AuthorizationError("This assignment belongs to another child.")
            require_amount(amount_pence, name="Bid")

            champion = champion_of(session, family_id, assignment_id)
            if champion is None:
                if amount_pence > task.base_reward_pence:
                    raise ValidationError(
                        f"Bid exceeds base reward of {format_pence(task.base_reward_pence)}."
                    )
            elif champion.child_id == child_id:
                raise ValidationError("You are already the champion.")
            elif amount_pence >= champion.amount_pence:
                raise ValidationError(
                    f"Bid must be lower than current champion ({format_pence(champion.amount_pence)})."
                )

            claim_version(session, assignment, field="bid_version")
            bid = Bid(
                family_id=family_id,
                assignment_id=assignment_id,
                child_id=child_id,
                amount_pence=amount_pence,
            )
            session.add(bid)
            session.flush()

            state = {
                "assignmentId": assignment_id,
                "championChildId": child_id,
                "championBidPence": amount_pence,
                "bidVersion": assignment.bid_version,
                "previousChampionChildId": champion.child_id if champion else None,
            }
            uow.emit(EventKind.ASSIGNMENT_UPDATED, family_id, child_id, state)
            uow.after_commit(lambda: self._logger.log("bid_placed", family_id=family_id, bid_id=bid.id, **state))
            return bid

        return self._db.run(operation)

    def get_champion(self, family_id: str, assignment_id: str) -> Optional[Bid]:
        def query(session: Session) -> Optional[Bid]:
            get_scoped(session, Assignment, family_id, assignment_id, label="Assignment")
            return champion_of(session, family_id, assignment_id)

        return self._db.read(query)

    def list_bids(self, family_id: str, assignment_id: str) -> List[Bid]:
        def query(session: Session) -> List[Bid]:
            get_scoped(session, Assignment, family_id, assignment_id, label="Assignment")
            return list(
                session.exec(
                    select(Bid)
                    .where(Bid.family_id == family_id, Bid.assignment_id == assignment_id)
                    .order_by(Bid.amount_pence, Bid.created_at, Bid.id)
                ).all()
            )

        return self._db.read(query)


__all__ = ["BiddingEngine", "champion_of"]
