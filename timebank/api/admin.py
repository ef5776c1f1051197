# timebank/api/admin.py
"""
Admin endpoints: dispute resolution, account opening, credit grants and
platform-wide ledger totals.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from timebank.api.session import http_error
from timebank.database import get_db
from timebank.errors import LifecycleError
from timebank.schemas.credits import (
    CreditAccountResponse,
    CreditGrantRequest,
    OpenAccountRequest,
    PlatformSummaryResponse,
)
from timebank.schemas.session import DisputeResolveRequest, SessionResponse
from timebank.services import ledger_service, session_lifecycle
from timebank.utils.security import Actor, require_admin

router = APIRouter(prefix="/admin", tags=["Admin"])


def _account_response(account) -> CreditAccountResponse:
    return CreditAccountResponse(
        user_id=account.user_id,
        available=account.available,
        held=account.held,
        total=account.total,
    )


# ─────────────────────────────────────────
# PATCH /admin/sessions/{id}/resolve
# ─────────────────────────────────────────
@router.patch("/sessions/{session_id}/resolve", response_model=SessionResponse)
def resolve_dispute(
    session_id: int,
    payload: DisputeResolveRequest,
    admin: Actor = Depends(require_admin),
    db: Session = Depends(get_db)
):
    try:
        return session_lifecycle.admin_resolve(
            db, session_id, payload.resolution, admin_id=admin.user_id
        )
    except LifecycleError as exc:
        raise http_error(exc)


# ─────────────────────────────────────────
# POST /admin/credits/accounts
# ─────────────────────────────────────────
@router.post("/credits/accounts", response_model=CreditAccountResponse, status_code=201)
def open_account(
    payload: OpenAccountRequest,
    admin: Actor = Depends(require_admin),
    db: Session = Depends(get_db)
):
    try:
        account = ledger_service.open_account(db, payload.user_id, payload.initial_amount)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _account_response(account)


# ─────────────────────────────────────────
# POST /admin/credits/grant
# ─────────────────────────────────────────
@router.post("/credits/grant", response_model=CreditAccountResponse)
def grant_credits(
    payload: CreditGrantRequest,
    admin: Actor = Depends(require_admin),
    db: Session = Depends(get_db)
):
    try:
        account = ledger_service.grant(
            db,
            payload.target_user_id,
            payload.amount,
            f"{payload.reason} (admin {admin.user_id})",
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _account_response(account)


# ─────────────────────────────────────────
# GET /admin/credits/summary
# ─────────────────────────────────────────
@router.get("/credits/summary", response_model=PlatformSummaryResponse)
def get_platform_summary(
    admin: Actor = Depends(require_admin),
    db: Session = Depends(get_db)
):
    return ledger_service.get_platform_summary(db)
