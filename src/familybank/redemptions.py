"""Reward redemptions and star purchases."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlmodel import Session, desc, select

from .admin import AuditLog
from .exceptions import AuthorizationError, ConflictError, NotFoundError
from .ledger import WalletLedger
from .models import RedemptionStatus, StarPurchaseStatus, TransactionReason, utcnow
from .money import require_amount
from .notifications import EventKind
from .ops import StructuredLogger
from .persistence import (
    Child,
    Database,
    Redemption,
    Reward,
    StarPurchase,
    UnitOfWork,
    get_scoped,
    require_parent,
    settings_for,
    transition_status,
)


def redemption_state(redemption: Redemption) -> Dict[str, Any]:
    return {
        "redemptionId": redemption.id,
        "rewardId": redemption.reward_id,
        "starCost": redemption.star_cost,
        "status": redemption.status,
        "processedBy": redemption.processed_by,
    }


def star_purchase_state(purchase: StarPurchase) -> Dict[str, Any]:
    return {
        "starPurchaseId": purchase.id,
        "starsRequested": purchase.stars_requested,
        "conversionRatePence": purchase.conversion_rate_pence,
        "costPence": purchase.cost_pence,
        "status": purchase.status,
        "processedBy": purchase.processed_by,
    }


class RedemptionWorkflow:
    """Spending stars on rewards and buying stars with money.

    The price is taken from the wallet when the child asks; a parent then
    settles the request, and a rejection gives the price back.
    """

    def __init__(
        self,
        database: Database,
        ledger: WalletLedger,
        *,
        logger: StructuredLogger | None = None,
        audit_log: AuditLog | None = None,
    ) -> None:
        self._db = database
        self._ledger = ledger
        self._logger = logger or database.logger
        self._audit = audit_log or AuditLog()

    # ------------------------------------------------------------------
    # Redemptions
    # ------------------------------------------------------------------
    def request_redemption(self, family_id: str, child_id: str, reward_id: str) -> Redemption:
        def operation(uow: UnitOfWork) -> Redemption:
            session = uow.session
            get_scoped(session, Child, family_id, child_id, label="Child")
            reward = get_scoped(session, Reward, family_id, reward_id, label="Reward")
            if not reward.active:
                raise NotFoundError(f"Reward '{reward_id}' was not found.")
            redemption = Redemption(
                family_id=family_id,
                child_id=child_id,
                reward_id=reward.id,
                star_cost=reward.star_cost,
            )
            self._ledger.apply_debit(
                uow,
                family_id,
                child_id,
                0,
                reward.star_cost,
                TransactionReason.REDEMPTION,
                redemption.id,
                metadata={"rewardId": reward.id, "title": reward.title},
            )
            session.add(redemption)
            session.flush()
            uow.after_commit(
                lambda: self._logger.log(
                    "redemption_requested", family_id=family_id, child_id=child_id, **redemption_state(redemption)
                )
            )
            return redemption

        return self._db.run(operation)

    def fulfill_redemption(self, family_id: str, redemption_id: str, processor_id: str) -> Redemption:
        return self._settle_redemption(family_id, redemption_id, processor_id, RedemptionStatus.FULFILLED)

    def reject_redemption(self, family_id: str, redemption_id: str, processor_id: str) -> Redemption:
        return self._settle_redemption(family_id, redemption_id, processor_id, RedemptionStatus.REJECTED)

    def _settle_redemption(
        self,
        family_id: str,
        redemption_id: str,
        processor_id: str,
        outcome: RedemptionStatus,
    ) -> Redemption:
        def operation(uow: UnitOfWork) -> Redemption:
            session = uow.session
            require_parent(session, family_id, processor_id)
            redemption = get_scoped(session, Redemption, family_id, redemption_id, label="Redemption")
            moved = transition_status(
                session,
                redemption,
                expected=RedemptionStatus.PENDING.value,
                values={"status": outcome.value, "processed_at": utcnow(), "processed_by": processor_id},
            )
            if not moved:
                raise ConflictError(f"Redemption is already {redemption.status}.")
            if outcome is RedemptionStatus.REJECTED:
                self._ledger.apply_credit(
                    uow,
                    family_id,
                    redemption.child_id,
                    0,
                    redemption.star_cost,
                    TransactionReason.REDEMPTION_REFUND,
                    redemption.id,
                    idempotency_key=f"redemption-refund:{redemption.id}",
                )
                kind = EventKind.REDEMPTION_REJECTED
            else:
                kind = EventKind.REDEMPTION_FULFILLED
            state = redemption_state(redemption)
            uow.emit(kind, family_id, redemption.child_id, state)
            uow.after_commit(lambda: self._logger.log(f"redemption_{outcome.value}", family_id=family_id, **state))
            uow.after_commit(
                lambda: self._audit.record(family_id, processor_id, f"redemption.{outcome.value}", redemption.id)
            )
            return redemption

        return self._db.run(operation)

    def list_redemptions(
        self,
        family_id: str,
        status: Optional[RedemptionStatus] = None,
        child_id: Optional[str] = None,
    ) -> List[Redemption]:
        def query(session: Session) -> List[Redemption]:
            statement = select(Redemption).where(Redemption.family_id == family_id)
            if status is not None:
                statement = statement.where(Redemption.status == RedemptionStatus(status).value)
            if child_id is not None:
                statement = statement.where(Redemption.child_id == child_id)
            return list(session.exec(statement.order_by(desc(Redemption.created_at))).all())

        return self._db.read(query)

    def list_rewards(self, family_id: str, *, include_inactive: bool = False) -> List[Reward]:
        def query(session: Session) -> List[Reward]:
            statement = select(Reward).where(Reward.family_id == family_id)
            if not include_inactive:
                statement = statement.where(Reward.active == True)  # noqa: E712
            return list(session.exec(statement.order_by(Reward.star_cost, Reward.title)).all())

        return self._db.read(query)

    # ------------------------------------------------------------------
    # Star purchases
    # ------------------------------------------------------------------
    def request_star_purchase(self, family_id: str, child_id: str, stars_requested: int) -> StarPurchase:
        """Take ``stars_requested`` times the family rate from the balance; stars follow on approval."""

        require_amount(stars_requested, name="stars_requested")

        def operation(uow: UnitOfWork) -> StarPurchase:
            session = uow.session
            get_scoped(session, Child, family_id, child_id, label="Child")
            settings = settings_for(session, family_id)
            if not settings.buy_stars_enabled:
                raise AuthorizationError("Buying stars is turned off for this family.")
            rate = settings.star_conversion_rate_pence
            purchase = StarPurchase(
                family_id=family_id,
                child_id=child_id,
                stars_requested=stars_requested,
                conversion_rate_pence=rate,
                cost_pence=stars_requested * rate,
            )
            self._ledger.apply_debit(
                uow,
                family_id,
                child_id,
                purchase.cost_pence,
                0,
                TransactionReason.STAR_PURCHASE,
                purchase.id,
                metadata={"starsRequested": stars_requested, "conversionRatePence": rate},
            )
            session.add(purchase)
            session.flush()
            uow.after_commit(
                lambda: self._logger.log(
                    "star_purchase_requested", family_id=family_id, child_id=child_id, **star_purchase_state(purchase)
                )
            )
            return purchase

        return self._db.run(operation)

    def approve_star_purchase(self, family_id: str, purchase_id: str, processor_id: str) -> StarPurchase:
        return self._settle_purchase(family_id, purchase_id, processor_id, StarPurchaseStatus.APPROVED)

    def reject_star_purchase(self, family_id: str, purchase_id: str, processor_id: str) -> StarPurchase:
        return self._settle_purchase(family_id, purchase_id, processor_id, StarPurchaseStatus.REJECTED)

    def _settle_purchase(
        self,
        family_id: str,
        purchase_id: str,
        processor_id: str,
        outcome: StarPurchaseStatus,
    ) -> StarPurchase:
        def operation(uow: UnitOfWork) -> StarPurchase:
            session = uow.session
            require_parent(session, family_id, processor_id)
            purchase = get_scoped(session, StarPurchase, family_id, purchase_id, label="Star purchase")
            moved = transition_status(
                session,
                purchase,
                expected=StarPurchaseStatus.PENDING.value,
                values={"status": outcome.value, "processed_at": utcnow(), "processed_by": processor_id},
            )
            if not moved:
                raise ConflictError(f"Star purchase is already {purchase.status}.")
            if outcome is StarPurchaseStatus.APPROVED:
                # Money left the wallet at request time.
                self._ledger.apply_credit(
                    uow,
                    family_id,
                    purchase.child_id,
                    0,
                    purchase.stars_requested,
                    TransactionReason.STAR_PURCHASE,
                    purchase.id,
                    idempotency_key=f"star-purchase:{purchase.id}",
                )
                kind = EventKind.STAR_PURCHASE_APPROVED
            else:
                self._ledger.apply_credit(
                    uow,
                    family_id,
                    purchase.child_id,
                    purchase.cost_pence,
                    0,
                    TransactionReason.STAR_PURCHASE_REFUND,
                    purchase.id,
                    idempotency_key=f"star-purchase-refund:{purchase.id}",
                )
                kind = EventKind.STAR_PURCHASE_REJECTED
            state = star_purchase_state(purchase)
            uow.emit(kind, family_id, purchase.child_id, state)
            uow.after_commit(lambda: self._logger.log(f"star_purchase_{outcome.value}", family_id=family_id, **state))
            uow.after_commit(
                lambda: self._audit.record(family_id, processor_id, f"star_purchase.{outcome.value}", purchase.id)
            )
            return purchase

        return self._db.run(operation)

    def list_star_purchases(
        self,
        family_id: str,
        status: Optional[StarPurchaseStatus] = None,
        child_id: Optional[str] = None,
    ) -> List[StarPurchase]:
        def query(session: Session) -> List[StarPurchase]:
            statement = select(StarPurchase).where(StarPurchase.family_id == family_id)
            if status is not None:
                statement = statement.where(StarPurchase.status == StarPurchaseStatus(status).value)
            if child_id is not None:
                statement = statement.where(StarPurchase.child_id == child_id)
            return list(session.exec(statement.order_by(desc(StarPurchase.created_at))).all())

        return self._db.read(query)


__all__ = ["RedemptionWorkflow", "redemption_state", "star_purchase_state"]
