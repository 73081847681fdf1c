"""FastAPI adapter exposing the ChoreBlimey core over JSON.

Caller identity arrives in request headers set by the upstream auth gateway
and is trusted as-is. Run with ``uvicorn --factory choreblimey.webapp:create_app``.
"""

from __future__ import annotations

from typing import Dict, Optional, Type

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..exceptions import (
    AlreadyProcessedError,
    AuthenticationError,
    ChallengeLockedError,
    ChoreBlimeyError,
    ForbiddenError,
    InsufficientFundsError,
    LedgerWriteError,
    NoChampionYetError,
    NotFoundError,
)
from ..models import Caller
from ..service import ChoreBlimey

FAMILY_HEADER = "X-Family-Id"
ROLE_HEADER = "X-Role"
USER_HEADER = "X-User-Id"
CHILD_HEADER = "X-Child-Id"

STATUS_BY_ERROR: Dict[Type[ChoreBlimeyError], int] = {
    AuthenticationError: 401,
    NotFoundError: 404,
    ForbiddenError: 403,
    ChallengeLockedError: 403,
    NoChampionYetError: 403,
    AlreadyProcessedError: 409,
    InsufficientFundsError: 400,
    LedgerWriteError: 500,
}


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class CompletionCreate(BaseModel):
    assignmentId: int
    childId: Optional[int] = None
    proofUrl: Optional[str] = None
    note: Optional[str] = None


class RejectBody(BaseModel):
    reason: Optional[str] = None


class BidCompete(BaseModel):
    assignmentId: int
    amountPence: int = Field(gt=0)
    childId: Optional[int] = None
    targetChildId: Optional[int] = None


class WalletAdjust(BaseModel):
    amountPence: int = Field(gt=0)
    note: Optional[str] = None


class BuyStars(BaseModel):
    starsRequested: int = Field(gt=0)
    childId: Optional[int] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _optional_int(request: Request, header: str) -> Optional[int]:
    raw = (request.headers.get(header) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise AuthenticationError(f"{header} must be an integer.") from exc


def caller_from_request(request: Request) -> Caller:
    family_id = _optional_int(request, FAMILY_HEADER)
    role = (request.headers.get(ROLE_HEADER) or "").strip()
    if family_id is None or not role:
        raise AuthenticationError("Missing caller identity.")
    return Caller(
        family_id=family_id,
        role=role,
        user_id=_optional_int(request, USER_HEADER),
        child_id=_optional_int(request, CHILD_HEADER),
    )


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse({"error": {"code": code, "message": message}}, status_code=status_code)


def status_for(exc: ChoreBlimeyError) -> int:
    for klass in type(exc).__mro__:
        if klass in STATUS_BY_ERROR:
            return STATUS_BY_ERROR[klass]
    return 500


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
def create_app(service: Optional[ChoreBlimey] = None) -> FastAPI:
    service = service or ChoreBlimey.from_settings()
    api = service.api
    app = FastAPI(title="ChoreBlimey")
    app.state.service = service

    @app.exception_handler(ChoreBlimeyError)
    async def _domain_error(request: Request, exc: ChoreBlimeyError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            service.logger.log("request_failed", path=request.url.path, code=exc.code, error=str(exc))
        response = error_response(status_code, exc.code, str(exc))
        if isinstance(exc, ChallengeLockedError) and exc.champion_child_id is not None:
            response = JSONResponse(
                {"error": {"code": exc.code, "message": str(exc), "championChildId": exc.champion_child_id}},
                status_code=status_code,
            )
        return response

    @app.exception_handler(ValueError)
    async def _invalid_input(request: Request, exc: ValueError) -> JSONResponse:
        return error_response(422, "VALIDATION_INVALID_INPUT", str(exc))

    # Completions ---------------------------------------------------------
    @app.post("/completions")
    def create_completion(body: CompletionCreate, request: Request) -> dict:
        completion = service.submit_completion(
            caller_from_request(request),
            body.assignmentId,
            child_id=body.childId,
            proof_url=body.proofUrl,
            note=body.note,
        )
        return {"completion": api.completion(completion)}

    @app.get("/completions")
    def list_completions(request: Request, status: Optional[str] = None, childId: Optional[int] = None) -> dict:
        completions = service.list_completions(caller_from_request(request), status=status, child_id=childId)
        return {"completions": [api.completion(item) for item in completions]}

    @app.post("/completions/{completion_id}/approve")
    def approve_completion(completion_id: int, request: Request) -> dict:
        result = service.approve_completion(caller_from_request(request), completion_id)
        return {"ok": True, **api.approval(result)}

    @app.post("/completions/{completion_id}/reject")
    def reject_completion(completion_id: int, request: Request, body: Optional[RejectBody] = None) -> dict:
        reason = body.reason if body is not None else None
        completion = service.reject_completion(caller_from_request(request), completion_id, reason)
        return {"ok": True, "completion": api.completion(completion)}

    # Bidding -------------------------------------------------------------
    @app.get("/bids")
    def list_bids(assignmentId: int, request: Request) -> dict:
        caller = caller_from_request(request)
        bids = service.list_bids(caller, assignmentId)
        champion = bids[0] if bids else None
        return {
            "bids": [api.bid(bid) for bid in bids],
            "championChildId": champion.child_id if champion is not None else None,
        }

    @app.post("/bids/compete")
    def compete(body: BidCompete, request: Request) -> dict:
        bid = service.place_bid(
            caller_from_request(request),
            body.assignmentId,
            body.amountPence,
            child_id=body.childId,
            target_child_id=body.targetChildId,
        )
        return {"ok": True, "bid": api.bid(bid)}

    @app.get("/rivalry/feed")
    def rivalry_feed(request: Request) -> dict:
        events = service.rivalry_feed(caller_from_request(request))
        return {"feed": [api.rivalry_event(event) for event in events]}

    # Streaks -------------------------------------------------------------
    @app.get("/streaks/{child_id}")
    def streak_stats(child_id: int, request: Request) -> dict:
        stats, chore_streaks = service.streak_stats(caller_from_request(request), child_id)
        return {"stats": api.streak_stats(stats, chore_streaks)}

    # Star purchases (registered before /wallet/{child_id}) ---------------
    @app.post("/wallet/buy-stars")
    def buy_stars(body: BuyStars, request: Request) -> dict:
        caller = caller_from_request(request)
        purchase = service.request_star_purchase(caller, body.starsRequested, child_id=body.childId)
        wallet, _ = service.wallet(caller, purchase.child_id)
        return {"starPurchase": api.star_purchase(purchase), "wallet": api.wallet(wallet) if wallet else None}

    @app.get("/wallet/buy-stars")
    def list_star_purchases(request: Request, status: Optional[str] = None, childId: Optional[int] = None) -> dict:
        purchases = service.list_star_purchases(caller_from_request(request), status=status, child_id=childId)
        return {"purchases": [api.star_purchase(item) for item in purchases]}

    @app.post("/wallet/buy-stars/{purchase_id}/approve")
    def approve_star_purchase(purchase_id: int, request: Request) -> dict:
        purchase = service.approve_star_purchase(caller_from_request(request), purchase_id)
        return {"ok": True, "starPurchase": api.star_purchase(purchase)}

    @app.post("/wallet/buy-stars/{purchase_id}/reject")
    def reject_star_purchase(purchase_id: int, request: Request, body: Optional[RejectBody] = None) -> dict:
        reason = body.reason if body is not None else None
        purchase = service.reject_star_purchase(caller_from_request(request), purchase_id, reason)
        return {"ok": True, "starPurchase": api.star_purchase(purchase)}

    # Wallet --------------------------------------------------------------
    @app.get("/wallet/{child_id}")
    def get_wallet(child_id: int, request: Request) -> dict:
        wallet, transactions = service.wallet(caller_from_request(request), child_id)
        if wallet is None:
            return {"wallet": {"childId": child_id, "balancePence": 0, "stars": 0, "transactions": []}}
        payload = api.wallet(wallet)
        payload["transactions"] = [api.transaction(entry) for entry in transactions]
        return {"wallet": payload}

    @app.post("/wallet/{child_id}/credit")
    def credit_wallet(child_id: int, body: WalletAdjust, request: Request) -> dict:
        wallet = service.credit_wallet(caller_from_request(request), child_id, body.amountPence, note=body.note)
        return {"wallet": api.wallet(wallet)}

    @app.post("/wallet/{child_id}/debit")
    def debit_wallet(child_id: int, body: WalletAdjust, request: Request) -> dict:
        wallet = service.debit_wallet(caller_from_request(request), child_id, body.amountPence, note=body.note)
        return {"wallet": api.wallet(wallet)}

    return app


__all__ = ["STATUS_BY_ERROR", "caller_from_request", "create_app", "status_for"]
