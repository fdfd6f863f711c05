"""Wallet ledger: append-only money and star movements with materialised balances."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import func
from sqlmodel import Session, desc, select

from .admin import AuditLog
from .config import TRANSACTION_PAGE_SIZE
from .exceptions import ConflictError, InsufficientFundsError, ValidationError
from .models import Balance, LedgerCheck, TransactionReason, utcnow
from .money import format_pence, require_amount
from .notifications import EventKind
from .ops import StructuredLogger
from .persistence import (
    Child,
    Database,
    UnitOfWork,
    Wallet,
    WalletTransaction,
    claim_version,
    get_scoped,
    require_parent,
    settings_for,
)


class WalletLedger:
    """Credits and debits wallets inside a unit of work.

    The ``apply_*`` methods join the caller's unit of work so a ledger entry
    commits together with whatever state change caused it. ``credit`` and
    ``debit`` run their own.
    """

    def __init__(
        self,
        database: Database,
        *,
        logger: StructuredLogger | None = None,
        audit_log: AuditLog | None = None,
    ) -> None:
        self._db = database
        self._logger = logger or database.logger
        self._audit = audit_log or AuditLog()

    # ------------------------------------------------------------------
    # Stand-alone operations
    # ------------------------------------------------------------------
    def credit(
        self,
        family_id: str,
        child_id: str,
        money: int,
        stars: int,
        reason: TransactionReason,
        reference_id: Optional[str] = None,
        *,
        metadata: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> WalletTransaction:
        return self._db.run(
            lambda uow: self.apply_credit(
                uow,
                family_id,
                child_id,
                money,
                stars,
                reason,
                reference_id,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        )

    def debit(
        self,
        family_id: str,
        child_id: str,
        money: int,
        stars: int,
        reason: TransactionReason,
        reference_id: Optional[str] = None,
        *,
        allow_below_floor: bool = False,
        metadata: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> WalletTransaction:
        return self._db.run(
            lambda uow: self.apply_debit(
                uow,
                family_id,
                child_id,
                money,
                stars,
                reason,
                reference_id,
                allow_below_floor=allow_below_floor,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        )

    def gift(
        self,
        family_id: str,
        parent_id: str,
        child_id: str,
        money: int = 0,
        stars: int = 0,
        note: str | None = None,
    ) -> WalletTransaction:
        """Credit a child on a parent's behalf."""

        def operation(uow: UnitOfWork) -> WalletTransaction:
            require_parent(uow.session, family_id, parent_id)
            entry = self.apply_credit(
                uow,
                family_id,
                child_id,
                money,
                stars,
                TransactionReason.GIFT,
                parent_id,
                metadata={"note": note} if note else None,
            )
            uow.after_commit(
                lambda: self._audit.record(
                    family_id,
                    parent_id,
                    "wallet.gift",
                    child_id,
                    details={"money": money, "stars": stars, "note": note},
                )
            )
            return entry

        return self._db.run(operation)

    def payout(
        self,
        family_id: str,
        parent_id: str,
        child_id: str,
        money: int,
        note: str | None = None,
    ) -> WalletTransaction:
        """Record real money handed to the child, taking it out of their balance."""

        def operation(uow: UnitOfWork) -> WalletTransaction:
            require_parent(uow.session, family_id, parent_id)
            entry = self.apply_debit(
                uow,
                family_id,
                child_id,
                money,
                0,
                TransactionReason.PAYOUT,
                parent_id,
                metadata={"note": note} if note else None,
            )
            uow.after_commit(
                lambda: self._audit.record(
                    family_id,
                    parent_id,
                    "wallet.payout",
                    child_id,
                    details={"money": money, "note": note},
                )
            )
            return entry

        return self._db.run(operation)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_balance(self, family_id: str, child_id: str) -> Balance:
        def query(session: Session) -> Balance:
            get_scoped(session, Child, family_id, child_id, label="Child")
            wallet = self._find_wallet(session, family_id, child_id)
            if wallet is None:
                return Balance(balance_pence=0, stars=0)
            return Balance(balance_pence=wallet.balance_pence, stars=wallet.stars)

        return self._db.read(query)

    def list_transactions(
        self,
        family_id: str,
        child_id: str,
        limit: int = TRANSACTION_PAGE_SIZE,
        before: datetime | None = None,
    ) -> List[WalletTransaction]:
        """Newest first; ``before`` is an exclusive ``created_at`` cursor."""

        if limit <= 0:
            raise ValidationError("limit must be greater than zero.")

        def query(session: Session) -> List[WalletTransaction]:
            get_scoped(session, Child, family_id, child_id, label="Child")
            statement = select(WalletTransaction).where(
                WalletTransaction.family_id == family_id,
                WalletTransaction.child_id == child_id,
            )
            if before is not None:
                statement = statement.where(WalletTransaction.created_at < before)
            statement = statement.order_by(desc(WalletTransaction.created_at), desc(WalletTransaction.id))
            return list(session.exec(statement.limit(limit)).all())

        return self._db.read(query)

    def verify(self, family_id: str, child_id: str) -> LedgerCheck:
        def query(session: Session) -> LedgerCheck:
            get_scoped(session, Child, family_id, child_id, label="Child")
            wallet = self._find_wallet(session, family_id, child_id)
            logged_pence, logged_stars = session.exec(
                select(
                    func.coalesce(func.sum(WalletTransaction.money_delta), 0),
                    func.coalesce(func.sum(WalletTransaction.star_delta), 0),
                ).where(
                    WalletTransaction.family_id == family_id,
                    WalletTransaction.child_id == child_id,
                )
            ).one()
            return LedgerCheck(
                child_id=child_id,
                balance_pence=wallet.balance_pence if wallet else 0,
                stars=wallet.stars if wallet else 0,
                logged_pence=int(logged_pence),
                logged_stars=int(logged_stars),
            )

        return self._db.read(query)

    # ------------------------------------------------------------------
    # Unit-of-work participants
    # ------------------------------------------------------------------
    def apply_credit(
        self,
        uow: UnitOfWork,
        family_id: str,
        child_id: str,
        money: int,
        stars: int,
        reason: TransactionReason,
        reference_id: Optional[str] = None,
        *,
        metadata: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> WalletTransaction:
        reason = TransactionReason(reason)
        if not reason.allows_credit:
            raise ValidationError(f"'{reason.value}' cannot be used for a credit.")
        self._check_amounts(money, stars)
        return self._apply(
            uow,
            family_id,
            child_id,
            money,
            stars,
            reason,
            reference_id,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

    def apply_debit(
        self,
        uow: UnitOfWork,
        family_id: str,
        child_id: str,
        money: int,
        stars: int,
        reason: TransactionReason,
        reference_id: Optional[str] = None,
        *,
        allow_below_floor: bool = False,
        metadata: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> WalletTransaction:
        reason = TransactionReason(reason)
        if not reason.allows_debit:
            raise ValidationError(f"'{reason.value}' cannot be used for a debit.")
        self._check_amounts(money, stars)
        return self._apply(
            uow,
            family_id,
            child_id,
            -money,
            -stars,
            reason,
            reference_id,
            allow_below_floor=allow_below_floor,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

    def floor_for(self, session: Session, family_id: str, *, allow_below_floor: bool) -> tuple[int, int]:
        """Lowest money and star balances a debit may leave behind."""

        if not allow_below_floor:
            return 0, 0
        settings = settings_for(session, family_id)
        return settings.min_balance_pence, settings.min_balance_stars

    def wallet_for(self, session: Session, family_id: str, child_id: str) -> Wallet:
        wallet = self._find_wallet(session, family_id, child_id)
        if wallet is None:
            wallet = Wallet(family_id=family_id, child_id=child_id)
            session.add(wallet)
            session.flush()
        return wallet

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _check_amounts(money: int, stars: int) -> None:
        require_amount(money, name="money", allow_zero=True)
        require_amount(stars, name="stars", allow_zero=True)
        if money == 0 and stars == 0:
            raise ValidationError("A wallet entry must move money or stars.")

    @staticmethod
    def _find_wallet(session: Session, family_id: str, child_id: str) -> Wallet | None:
        return session.exec(
            select(Wallet).where(Wallet.family_id == family_id, Wallet.child_id == child_id)
        ).first()

    def _apply(
        self,
        uow: UnitOfWork,
        family_id: str,
        child_id: str,
        money_delta: int,
        star_delta: int,
        reason: TransactionReason,
        reference_id: Optional[str],
        *,
        allow_below_floor: bool = False,
        metadata: Mapping[str, Any] | None,
        idempotency_key: str | None,
    ) -> WalletTransaction:
        session = uow.session
        get_scoped(session, Child, family_id, child_id, label="Child")

        if idempotency_key is not None:
            existing = session.exec(
                select(WalletTransaction).where(WalletTransaction.idempotency_key == idempotency_key)
            ).first()
            if existing is not None:
                if existing.family_id != family_id or existing.child_id != child_id:
                    raise ConflictError("That idempotency key belongs to another wallet entry.")
                return existing

        wallet = self.wallet_for(session, family_id, child_id)
        claim_version(session, wallet)

        new_balance = wallet.balance_pence + money_delta
        new_stars = wallet.stars + star_delta
        if money_delta < 0 or star_delta < 0:
            floor_pence, floor_stars = self.floor_for(session, family_id, allow_below_floor=allow_below_floor)
            if money_delta < 0 and new_balance < floor_pence:
                raise InsufficientFundsError(
                    f"Not enough money: {format_pence(wallet.balance_pence)} available, "
                    f"{format_pence(-money_delta)} needed."
                )
            if star_delta < 0 and new_stars < floor_stars:
                raise InsufficientFundsError(
                    f"Not enough stars: {wallet.stars} available, {-star_delta} needed."
                )

        wallet.balance_pence = new_balance
        wallet.stars = new_stars
        wallet.updated_at = utcnow()
        session.add(wallet)

        entry = WalletTransaction(
            family_id=family_id,
            wallet_id=wallet.id,
            child_id=child_id,
            money_delta=money_delta,
            star_delta=star_delta,
            reason=reason.value,
            reference_id=reference_id,
            details=dict(metadata or {}),
            idempotency_key=idempotency_key,
        )
        session.add(entry)
        session.flush()

        state: Dict[str, Any] = {
            "walletId": wallet.id,
            "transactionId": entry.id,
            "reason": reason.value,
            "moneyDelta": money_delta,
            "starDelta": star_delta,
            "balancePence": new_balance,
            "stars": new_stars,
        }
        uow.emit(EventKind.WALLET_CHANGED, family_id, child_id, state)
        event = "wallet_credit" if money_delta >= 0 and star_delta >= 0 else "wallet_debit"
        uow.after_commit(lambda: self._logger.log(event, family_id=family_id, child_id=child_id, **state))
        return entry


__all__ = ["WalletLedger"]
