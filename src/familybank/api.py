"""FastAPI boundary for the FamilyBank engine.

Authentication happens upstream; the gateway passes the caller's identity in
the ``X-Family-Id``, ``X-Actor-Id`` and ``X-Actor-Role`` headers. Run with::

    uvicorn familybank.api:create_app --factory
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel

from .exceptions import AuthorizationError, FamilyBankError
from .models import CompletionStatus, MemberRole, RedemptionStatus, StarPurchaseStatus, utcnow
from .service import FamilyBank

STATUS_BY_KIND: Dict[str, int] = {
    "validation": 400,
    "authorization": 403,
    "not_found": 404,
    "conflict": 409,
    "insufficient_funds": 422,
    "storage": 503,
}


@dataclass(slots=True, frozen=True)
class Caller:
    family_id: str
    actor_id: str
    role: MemberRole

    @property
    def is_parent(self) -> bool:
        return self.role is MemberRole.PARENT

    def require_parent(self) -> None:
        if not self.is_parent:
            raise AuthorizationError("Only a parent can do that.")

    def child_scope(self, child_id: str) -> str:
        """Children may only see and act on their own wallet."""

        if not self.is_parent and child_id != self.actor_id:
            raise AuthorizationError("Children can only act for themselves.")
        return child_id

    def acting_child(self) -> str:
        if self.is_parent:
            raise AuthorizationError("Only a child can do that.")
        return self.actor_id


def current_caller(
    x_family_id: Optional[str] = Header(default=None),
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> Caller:
    if not x_family_id or not x_actor_id or not x_actor_role:
        raise AuthorizationError("Missing caller identity.")
    try:
        role = MemberRole(x_actor_role.lower())
    except ValueError as exc:
        raise AuthorizationError(f"Unknown role '{x_actor_role}'.") from exc
    return Caller(family_id=x_family_id, actor_id=x_actor_id, role=role)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class GiftIn(SQLModel):
    money: int = 0
    stars: int = 0
    note: Optional[str] = None


class PayoutIn(SQLModel):
    money: int
    note: Optional[str] = None


class BidIn(SQLModel):
    amount_pence: int


class CompletionIn(SQLModel):
    note: Optional[str] = None


class RejectIn(SQLModel):
    reason: Optional[str] = None


class StarPurchaseIn(SQLModel):
    stars: int


class SweepIn(SQLModel):
    day: Optional[date] = None


def _dump(row: SQLModel) -> Dict[str, Any]:
    return row.model_dump(mode="json")


def _dump_all(rows: List[SQLModel]) -> List[Dict[str, Any]]:
    return [_dump(row) for row in rows]


def create_app(bank: FamilyBank | None = None) -> FastAPI:
    """Build the HTTP application around ``bank`` (a fresh one from the environment if omitted)."""

    owns_bank = bank is None
    bank = bank or FamilyBank()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        if owns_bank:
            bank.close()

    app = FastAPI(title="Family Bank", lifespan=lifespan)
    app.state.bank = bank

    @app.exception_handler(FamilyBankError)
    async def _family_bank_error(request: Request, exc: FamilyBankError) -> JSONResponse:
        status_code = STATUS_BY_KIND.get(exc.kind, 500)
        bank.logger.log(
            "request_failed",
            level="warning" if status_code < 500 else "error",
            path=request.url.path,
            kind=exc.kind,
            message=exc.message,
        )
        return JSONResponse(status_code=status_code, content={"error": exc.as_dict()})

    # -- wallet ------------------------------------------------------------
    @app.get("/children/{child_id}/balance")
    def get_balance(child_id: str, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        caller.child_scope(child_id)
        return bank.wallet.get_balance(caller.family_id, child_id).as_dict()

    @app.get("/children/{child_id}/transactions")
    def list_transactions(
        child_id: str,
        limit: int = Query(default=50, ge=1, le=500),
        before: Optional[datetime] = None,
        caller: Caller = Depends(current_caller),
    ) -> List[Dict[str, Any]]:
        caller.child_scope(child_id)
        return _dump_all(bank.wallet.list_transactions(caller.family_id, child_id, limit=limit, before=before))

    @app.post("/children/{child_id}/gifts", status_code=201)
    def gift(child_id: str, body: GiftIn, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        caller.require_parent()
        entry = bank.wallet.gift(caller.family_id, caller.actor_id, child_id, body.money, body.stars, body.note)
        return _dump(entry)

    @app.post("/children/{child_id}/payouts", status_code=201)
    def payout(child_id: str, body: PayoutIn, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        caller.require_parent()
        return _dump(bank.wallet.payout(caller.family_id, caller.actor_id, child_id, body.money, body.note))

    @app.get("/children/{child_id}/streaks")
    def get_streaks(child_id: str, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        caller.child_scope(child_id)
        return bank.streaks.get_stats(caller.family_id, child_id).as_dict()

    # -- bidding -----------------------------------------------------------
    @app.post("/assignments/{assignment_id}/bids", status_code=201)
    def compete(assignment_id: str, body: BidIn, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        child_id = caller.acting_child()
        return _dump(bank.bidding.compete(caller.family_id, assignment_id, child_id, body.amount_pence))

    @app.get("/assignments/{assignment_id}/bids")
    def list_bids(assignment_id: str, caller: Caller = Depends(current_caller)) -> List[Dict[str, Any]]:
        return _dump_all(bank.bidding.list_bids(caller.family_id, assignment_id))

    @app.get("/assignments/{assignment_id}/champion")
    def get_champion(assignment_id: str, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        champion = bank.bidding.get_champion(caller.family_id, assignment_id)
        return {"champion": _dump(champion) if champion else None}

    # -- completions -------------------------------------------------------
    @app.post("/assignments/{assignment_id}/completions", status_code=201)
    def submit(assignment_id: str, body: CompletionIn, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        child_id = caller.acting_child()
        return _dump(bank.completions.submit(caller.family_id, assignment_id, child_id, body.note))

    @app.get("/completions")
    def list_completions(
        status: Optional[CompletionStatus] = None,
        child_id: Optional[str] = None,
        limit: int = Query(default=50, ge=1, le=500),
        caller: Caller = Depends(current_caller),
    ) -> List[Dict[str, Any]]:
        if not caller.is_parent:
            child_id = caller.child_scope(child_id or caller.actor_id)
        return _dump_all(bank.completions.list_completions(caller.family_id, status, child_id, limit))

    @app.post("/completions/{completion_id}/approve")
    def approve(completion_id: str, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        caller.require_parent()
        return bank.completions.approve(caller.family_id, completion_id, caller.actor_id).as_dict()

    @app.post("/completions/{completion_id}/reject")
    def reject(completion_id: str, body: RejectIn, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        caller.require_parent()
        return _dump(bank.completions.reject(caller.family_id, completion_id, caller.actor_id, body.reason))

    # -- streak sweep ------------------------------------------------------
    @app.post("/sweeps")
    def run_sweep(body: SweepIn, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        caller.require_parent()
        report = bank.streaks.run_daily_sweep(caller.family_id, body.day or utcnow().date())
        return {
            "familyId": report.family_id,
            "day": report.day.isoformat(),
            "alreadyRan": report.already_ran,
            "holiday": report.holiday,
            "penalties": {child: list(amounts) for child, amounts in report.penalties.items()},
            "bonuses": {child: list(amounts) for child, amounts in report.bonuses.items()},
            "protected": report.protected,
        }

    # -- redemptions -------------------------------------------------------
    @app.get("/rewards")
    def list_rewards(caller: Caller = Depends(current_caller)) -> List[Dict[str, Any]]:
        return _dump_all(bank.redemptions.list_rewards(caller.family_id))

    @app.post("/rewards/{reward_id}/redemptions", status_code=201)
    def request_redemption(reward_id: str, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        child_id = caller.acting_child()
        return _dump(bank.redemptions.request_redemption(caller.family_id, child_id, reward_id))

    @app.get("/redemptions")
    def list_redemptions(
        status: Optional[RedemptionStatus] = None,
        caller: Caller = Depends(current_caller),
    ) -> List[Dict[str, Any]]:
        child_id = None if caller.is_parent else caller.actor_id
        return _dump_all(bank.redemptions.list_redemptions(caller.family_id, status, child_id))

    @app.post("/redemptions/{redemption_id}/fulfill")
    def fulfill_redemption(redemption_id: str, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        caller.require_parent()
        return _dump(bank.redemptions.fulfill_redemption(caller.family_id, redemption_id, caller.actor_id))

    @app.post("/redemptions/{redemption_id}/reject")
    def reject_redemption(redemption_id: str, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        caller.require_parent()
        return _dump(bank.redemptions.reject_redemption(caller.family_id, redemption_id, caller.actor_id))

    # -- star purchases ----------------------------------------------------
    @app.post("/star-purchases", status_code=201)
    def request_star_purchase(body: StarPurchaseIn, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        child_id = caller.acting_child()
        return _dump(bank.redemptions.request_star_purchase(caller.family_id, child_id, body.stars))

    @app.get("/star-purchases")
    def list_star_purchases(
        status: Optional[StarPurchaseStatus] = None,
        caller: Caller = Depends(current_caller),
    ) -> List[Dict[str, Any]]:
        child_id = None if caller.is_parent else caller.actor_id
        return _dump_all(bank.redemptions.list_star_purchases(caller.family_id, status, child_id))

    @app.post("/star-purchases/{purchase_id}/approve")
    def approve_star_purchase(purchase_id: str, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        caller.require_parent()
        return _dump(bank.redemptions.approve_star_purchase(caller.family_id, purchase_id, caller.actor_id))

    @app.post("/star-purchases/{purchase_id}/reject")
    def reject_star_purchase(purchase_id: str, caller: Caller = Depends(current_caller)) -> Dict[str, Any]:
        caller.require_parent()
        return _dump(bank.redemptions.reject_star_purchase(caller.family_id, purchase_id, caller.actor_id))

    return app


__all__ = ["Caller", "STATUS_BY_KIND", "create_app", "current_caller"]
