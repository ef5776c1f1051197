# timebank/api/session.py
"""
Session Lifecycle API Router

Endpoints:
- POST   /sessions/                      - Book a session (caller is the student)
- GET    /sessions/my                    - List the caller's sessions
- GET    /sessions/upcoming              - Approved sessions still ahead, soonest first
- GET    /sessions/{id}                  - Session detail
- GET    /sessions/{id}/progress         - Live elapsed / overtime view
- GET    /sessions/{id}/ledger           - Escrow state and audit trail
- PATCH  /sessions/{id}/approve          - Teacher approves, credits move to escrow
- PATCH  /sessions/{id}/reject           - Teacher rejects a pending request
- PATCH  /sessions/{id}/check-in         - Participant checks in
- PATCH  /sessions/{id}/confirm          - Participant confirms completion
- PATCH  /sessions/{id}/cancel           - Cancel before the session starts
- PATCH  /sessions/{id}/dispute          - Freeze escrow pending admin review
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from timebank.database import get_db
from timebank.errors import LifecycleError
from timebank.models.session import SessionStatus
from timebank.schemas.credits import SessionLedgerResponse
from timebank.schemas.session import (
    SessionCreate,
    SessionProgressResponse,
    SessionReason,
    SessionResponse,
)
from timebank.services import ledger_service, session_lifecycle
from timebank.services.session_lifecycle import SessionTerms
from timebank.utils.security import Actor, get_current_actor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["Sessions"])


def http_error(exc: LifecycleError) -> HTTPException:
    """Translate an engine error into the HTTP response callers see."""
    if exc.status_code >= 500:
        logger.error("Lifecycle failure: %s", exc.message)
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


# ======================
# BOOKING
# ======================
@router.post("/", response_model=SessionResponse, status_code=201)
def book_session(
    payload: SessionCreate,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    terms = SessionTerms(
        teacher_id=payload.teacher_id,
        student_id=actor.user_id,
        skill_reference=payload.skill_reference,
        duration_hours=payload.duration_hours,
        credit_amount=payload.credit_amount,
        hourly_rate=payload.hourly_rate,
        mode=payload.mode,
        scheduled_at=payload.scheduled_at,
        title=payload.title,
        notes=payload.notes,
        location=payload.location,
        meeting_link=payload.meeting_link,
    )
    try:
        return session_lifecycle.book_session(db, terms)
    except LifecycleError as exc:
        raise http_error(exc)


# ======================
# QUERIES
# ======================
@router.get("/my", response_model=List[SessionResponse])
def get_my_sessions(
    role: Optional[str] = Query(None, pattern="^(teacher|student)$"),
    status: Optional[SessionStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    return session_lifecycle.list_sessions(
        db, actor.user_id, role=role, status=status, limit=limit, offset=offset
    )


@router.get("/upcoming", response_model=List[SessionResponse])
def get_upcoming_sessions(
    limit: int = Query(5, ge=1, le=20),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    return session_lifecycle.list_upcoming_sessions(db, actor.user_id, limit=limit)


@router.get("/{session_id}", response_model=SessionResponse)
def get_session(
    session_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return session_lifecycle.get_session(db, session_id, actor.user_id)
    except LifecycleError as exc:
        raise http_error(exc)


@router.get("/{session_id}/progress", response_model=SessionProgressResponse)
def get_session_progress(
    session_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return session_lifecycle.get_session_progress(db, session_id, actor.user_id)
    except LifecycleError as exc:
        raise http_error(exc)


@router.get("/{session_id}/ledger", response_model=SessionLedgerResponse)
def get_session_ledger(
    session_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        if not actor.is_admin:
            session_lifecycle.get_session(db, session_id, actor.user_id)
        return ledger_service.get_session_ledger(db, session_id)
    except LifecycleError as exc:
        raise http_error(exc)


# ======================
# TRANSITIONS
# ======================
@router.patch("/{session_id}/approve", response_model=SessionResponse)
def approve_session(
    session_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return session_lifecycle.approve(db, session_id, actor.user_id)
    except LifecycleError as exc:
        raise http_error(exc)


@router.patch("/{session_id}/reject", response_model=SessionResponse)
def reject_session(
    session_id: int,
    payload: Optional[SessionReason] = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return session_lifecycle.reject(
            db, session_id, actor.user_id, payload.reason if payload else None
        )
    except LifecycleError as exc:
        raise http_error(exc)


@router.patch("/{session_id}/check-in", response_model=SessionResponse)
def check_in(
    session_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return session_lifecycle.check_in(db, session_id, actor.user_id)
    except LifecycleError as exc:
        raise http_error(exc)


@router.patch("/{session_id}/confirm", response_model=SessionResponse)
def confirm_completion(
    session_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return session_lifecycle.confirm_completion(db, session_id, actor.user_id)
    except LifecycleError as exc:
        raise http_error(exc)


@router.patch("/{session_id}/cancel", response_model=SessionResponse)
def cancel_session(
    session_id: int,
    payload: Optional[SessionReason] = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return session_lifecycle.cancel(
            db, session_id, actor.user_id, payload.reason if payload else None
        )
    except LifecycleError as exc:
        raise http_error(exc)


@router.patch("/{session_id}/dispute", response_model=SessionResponse)
def dispute_session(
    session_id: int,
    payload: Optional[SessionReason] = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return session_lifecycle.dispute(
            db, session_id, actor.user_id, payload.reason if payload else None
        )
    except LifecycleError as exc:
        raise http_error(exc)
