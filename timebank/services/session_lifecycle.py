# timebank/services/session_lifecycle.py
"""
Session Lifecycle - State Machine Service

Owns the Session entity and applies guarded transitions:

    pending     -> approved | rejected | cancelled
    approved    -> in_progress | cancelled | disputed
    in_progress -> completed | disputed
    disputed    -> completed | cancelled | rejected   (admin only)

Every operation runs as one database transaction. The Session row carries
an optimistic ``version``; a stale write raises StaleDataError, which is
rolled back and retried from a fresh read up to CONCURRENCY_RETRY_LIMIT
times. Check-in and completion go through the two-party barrier so the
transition and its ledger call happen exactly once.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from timebank import models
from timebank.config import settings
from timebank.errors import (
    ConcurrentModification,
    EscrowInconsistency,
    ForbiddenAction,
    InvalidSessionTerms,
    InvalidTransition,
    LifecycleError,
    NotParticipant,
    OutOfCheckInWindow,
    SessionNotFound,
)
from timebank.models.checkpoint import CheckpointKind
from timebank.models.ledger import EscrowState
from timebank.models.session import (
    ACTIVE_STATUSES,
    MAX_CREDIT_AMOUNT,
    MAX_DURATION_HOURS,
    DisputeResolution,
    SessionMode,
    SessionStatus,
)
from timebank.services import checkpoint_service, ledger_service, notification_service, timing_policy
from timebank.services.checkpoint_service import Arrival, Slot
from timebank.services.timing_policy import to_naive_utc, utcnow

logger = logging.getLogger(__name__)
integrity_logger = logging.getLogger("timebank.integrity")

T = TypeVar("T")


# =====================================
# BOOKING TERMS
# =====================================

@dataclass
class SessionTerms:
    teacher_id: int
    student_id: int
    skill_reference: str
    duration_hours: Any
    credit_amount: Any = None
    hourly_rate: Any = 1
    mode: SessionMode = SessionMode.ONLINE
    scheduled_at: Optional[datetime] = None
    title: Optional[str] = None
    notes: Optional[str] = None
    location: Optional[str] = None
    meeting_link: Optional[str] = None


# =====================================
# INTERNAL HELPERS
# =====================================

def run_with_retry(db: Session, operation: Callable[[], T], *, attempts: Optional[int] = None) -> T:
    """
    Run ``operation`` (which must commit) and retry it on version conflicts.

    Guard failures roll back and propagate immediately. EscrowInconsistency
    is never retried.
    """
    limit = max(1, attempts or settings.CONCURRENCY_RETRY_LIMIT)
    for attempt in range(1, limit + 1):
        try:
            return operation()
        except (StaleDataError, ConcurrentModification) as exc:
            db.rollback()
            if attempt >= limit:
                raise ConcurrentModification(
                    f"Session was modified concurrently; gave up after {limit} attempts"
                ) from exc
            logger.warning("Concurrent modification (attempt %s/%s): %s", attempt, limit, exc)
        except LifecycleError:
            db.rollback()
            raise
        except SQLAlchemyError:
            db.rollback()
            raise
    raise ConcurrentModification("Retry loop exhausted")  # pragma: no cover


def _load(db: Session, session_id: int) -> models.Session:
    session = db.get(models.Session, session_id, populate_existing=True)
    if session is None:
        raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
    return session


def _require_participant(session: models.Session, actor_id: int) -> None:
    if not session.is_participant(actor_id):
        raise NotParticipant(
            f"User {actor_id} is not part of session {session.id}", session_id=session.id
        )


def _require_status(session: models.Session, allowed, action: str) -> None:
    if session.status not in allowed:
        raise InvalidTransition(
            f"Cannot {action} a session that is {session.status.value}",
            session_id=session.id,
            current_status=session.status.value,
            action=action,
        )


def _move(session: models.Session, target: SessionStatus, action: str) -> None:
    """Apply a status change through the central transition table."""
    if not session.status.can_transition_to(target):
        raise InvalidTransition(
            f"Illegal transition {session.status.value} -> {target.value}",
            session_id=session.id,
            current_status=session.status.value,
            action=action,
        )
    logger.info(
        "Session %s: %s -> %s (%s)", session.id, session.status.value, target.value, action
    )
    session.status = target


def _slot_for(session: models.Session, actor_id: int) -> Slot:
    return Slot.A if actor_id == session.teacher_id else Slot.B


def _integrity_fault(session: models.Session, message: str) -> EscrowInconsistency:
    integrity_logger.critical("Session %s integrity fault: %s", session.id, message)
    return EscrowInconsistency(message, session_id=session.id)


def _held_escrow(db: Session, session: models.Session):
    """Return the open escrow entry, checking it agrees with ``credit_held``."""
    entry = ledger_service.get_escrow_for_session(db, session.id)
    entry_held = entry is not None and entry.state == EscrowState.HELD
    if session.credit_held != entry_held:
        raise _integrity_fault(
            session,
            f"credit_held={session.credit_held} but escrow is "
            f"{entry.state.value if entry else 'absent'}",
        )
    return entry if entry_held else None


def _release_escrow(db: Session, session: models.Session) -> None:
    entry = _held_escrow(db, session)
    if entry is None:
        return
    if not ledger_service.release(db, entry.id):
        raise _integrity_fault(session, "escrow release applied twice")
    session.credit_held = False


def _refund_escrow(db: Session, session: models.Session) -> None:
    entry = _held_escrow(db, session)
    if entry is None:
        return
    if not ledger_service.refund(db, entry.id):
        raise _integrity_fault(session, "escrow refund applied twice")
    session.credit_held = False


def _commit(db: Session, session: models.Session) -> models.Session:
    db.commit()
    db.refresh(session)
    return session


def _publish(db: Session, session: models.Session, event_type: Optional[str], actor_id: Optional[int]) -> None:
    if event_type:
        notification_service.publish_session_event(db, session, event_type, actor_id=actor_id)


# =====================================
# BOOKING
# =====================================

def book_session(db: Session, terms: SessionTerms, *, now: Optional[datetime] = None) -> models.Session:
    """
    Create a pending session. No credits move until the teacher approves.

    Raises:
        InvalidSessionTerms: On non-positive or oversized duration/amount, self-booking,
            a past scheduled time, or a duplicate active booking
    """
    now = now or utcnow()

    try:
        duration = ledger_service.to_amount(terms.duration_hours)
        if terms.credit_amount is not None:
            amount = ledger_service.to_amount(terms.credit_amount)
        else:
            amount = ledger_service.to_amount(
                Decimal(str(terms.duration_hours)) * Decimal(str(terms.hourly_rate))
            )
    except (ArithmeticError, ValueError, TypeError):
        raise InvalidSessionTerms("Duration and credit amount must be numeric")

    try:
        mode = SessionMode(terms.mode)
    except ValueError:
        raise InvalidSessionTerms(f"Unknown session mode: {terms.mode}")

    if duration <= 0:
        raise InvalidSessionTerms("duration_hours must be greater than 0")
    if amount <= 0:
        raise InvalidSessionTerms("credit_amount must be greater than 0")
    if duration > MAX_DURATION_HOURS:
        raise InvalidSessionTerms(f"duration_hours cannot exceed {MAX_DURATION_HOURS}")
    if amount > MAX_CREDIT_AMOUNT:
        raise InvalidSessionTerms(f"credit_amount cannot exceed {MAX_CREDIT_AMOUNT}")
    if terms.teacher_id == terms.student_id:
        raise InvalidSessionTerms("You cannot book a session with yourself")
    if not terms.skill_reference or not str(terms.skill_reference).strip():
        raise InvalidSessionTerms("skill_reference is required")

    scheduled_at = to_naive_utc(terms.scheduled_at)
    if scheduled_at is not None and scheduled_at < now:
        raise InvalidSessionTerms("scheduled_at must be in the future")

    duplicate = db.query(models.Session.id).filter(
        models.Session.teacher_id == terms.teacher_id,
        models.Session.student_id == terms.student_id,
        models.Session.skill_reference == str(terms.skill_reference),
        models.Session.status.in_(ACTIVE_STATUSES),
    ).first()
    if duplicate:
        raise InvalidSessionTerms(
            "You already have an active session for this skill with this teacher",
            session_id=duplicate[0],
        )

    try:
        session = models.Session(
            teacher_id=terms.teacher_id,
            student_id=terms.student_id,
            skill_reference=str(terms.skill_reference),
            title=terms.title,
            notes=terms.notes,
            duration_hours=duration,
            credit_amount=amount,
            mode=mode,
            scheduled_at=scheduled_at,
            location=terms.location,
            meeting_link=terms.meeting_link,
            status=SessionStatus.PENDING,
            credit_held=False,
        )
        db.add(session)
        db.flush()
        checkpoint_service.open_barrier(db, session.id, CheckpointKind.CHECKIN)
        checkpoint_service.open_barrier(db, session.id, CheckpointKind.COMPLETION)
        _commit(db, session)
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info(
        "Booked session %s teacher=%s student=%s amount=%s",
        session.id, session.teacher_id, session.student_id, session.credit_amount,
    )
    _publish(db, session, "session_requested", terms.student_id)
    return session


# =====================================
# APPROVAL / REJECTION
# =====================================

def approve(db: Session, session_id: int, actor_id: int) -> models.Session:
    """
    Teacher approves a pending session; the student's credits move into escrow.

    Raises:
        InvalidTransition: If the session is not pending
        InsufficientCredits: If the student's available balance is too low
    """
    def _apply() -> models.Session:
        session = _load(db, session_id)
        _require_participant(session, actor_id)
        if actor_id != session.teacher_id:
            raise ForbiddenAction("Only the teacher can approve this session", session_id=session.id)
        _require_status(session, (SessionStatus.PENDING,), "approve")

        ledger_service.hold(
            db,
            session_id=session.id,
            payer_id=session.student_id,
            payee_id=session.teacher_id,
            amount=session.credit_amount,
        )
        session.credit_held = True
        _move(session, SessionStatus.APPROVED, "approve")
        return _commit(db, session)

    session = run_with_retry(db, _apply)
    _publish(db, session, "session_approved", actor_id)
    return session


def reject(db: Session, session_id: int, actor_id: int, reason: Optional[str] = None) -> models.Session:
    """Teacher rejects a pending session. No escrow ever existed."""
    def _apply() -> models.Session:
        session = _load(db, session_id)
        _require_participant(session, actor_id)
        if actor_id != session.teacher_id:
            raise ForbiddenAction("Only the teacher can reject this session", session_id=session.id)
        _require_status(session, (SessionStatus.PENDING,), "reject")

        if _held_escrow(db, session) is not None:
            raise _integrity_fault(session, "pending session already has held escrow")
        session.rejection_reason = reason
        _move(session, SessionStatus.REJECTED, "reject")
        return _commit(db, session)

    session = run_with_retry(db, _apply)
    _publish(db, session, "session_rejected", actor_id)
    return session


# =====================================
# CHECK-IN (barrier -> in_progress)
# =====================================

def check_in(db: Session, session_id: int, actor_id: int, *, now: Optional[datetime] = None) -> models.Session:
    """
    Record the actor's check-in. When both parties have checked in the
    session moves to in_progress and ``started_at`` is stamped once.

    Re-invocation by an actor who already checked in is a no-op.

    Raises:
        InvalidTransition: If the session is not approved
        OutOfCheckInWindow: If now is outside scheduled_at +/- the window
    """
    now = now or utcnow()
    outcome: Dict[str, Optional[str]] = {"event": None}

    def _apply() -> models.Session:
        outcome["event"] = None
        session = _load(db, session_id)
        _require_participant(session, actor_id)
        is_teacher = actor_id == session.teacher_id
        already = session.teacher_checked_in if is_teacher else session.student_checked_in

        if already and session.status in (SessionStatus.APPROVED, SessionStatus.IN_PROGRESS):
            return session
        _require_status(session, (SessionStatus.APPROVED,), "check in to")

        window = timing_policy.evaluate_check_in(
            session.scheduled_at, now, settings.CHECKIN_WINDOW_SECONDS
        )
        if not window.allowed:
            if window.window_closed:
                message = "The check-in window for this session has closed"
            else:
                message = f"Check-in opens in {window.seconds_until_open} seconds"
            raise OutOfCheckInWindow(
                message,
                session_id=session.id,
                seconds_until_open=window.seconds_until_open,
                window_closed=window.window_closed,
            )

        if is_teacher:
            session.teacher_checked_in = True
            session.teacher_checked_in_at = now
        else:
            session.student_checked_in = True
            session.student_checked_in_at = now

        arrival = checkpoint_service.arrive(
            db, session.id, CheckpointKind.CHECKIN, _slot_for(session, actor_id)
        )
        if arrival == Arrival.FIRE:
            _move(session, SessionStatus.IN_PROGRESS, "check in")
            if session.started_at is None:
                session.started_at = now
            outcome["event"] = "session_started"
        elif arrival == Arrival.ALREADY_FIRED:
            raise _integrity_fault(session, "check-in barrier fired but session never started")
        else:
            outcome["event"] = "partner_checked_in"
        return _commit(db, session)

    session = run_with_retry(db, _apply)
    _publish(db, session, outcome["event"], actor_id)
    return session


# =====================================
# COMPLETION (barrier -> release escrow)
# =====================================

def confirm_completion(db: Session, session_id: int, actor_id: int, *, now: Optional[datetime] = None) -> models.Session:
    """
    Record the actor's completion confirmation. When both parties have
    confirmed, escrow is released to the teacher and the session completes.

    A single confirmer can never trigger the release. Re-invocation by an
    actor who already confirmed is a no-op.

    Raises:
        InvalidTransition: If the session is not in progress (including disputed)
    """
    now = now or utcnow()
    outcome: Dict[str, Optional[str]] = {"event": None}

    def _apply() -> models.Session:
        outcome["event"] = None
        session = _load(db, session_id)
        _require_participant(session, actor_id)
        is_teacher = actor_id == session.teacher_id
        already = session.teacher_confirmed if is_teacher else session.student_confirmed

        if already and session.status in (SessionStatus.IN_PROGRESS, SessionStatus.COMPLETED):
            return session
        _require_status(session, (SessionStatus.IN_PROGRESS,), "confirm completion of")

        if is_teacher:
            session.teacher_confirmed = True
        else:
            session.student_confirmed = True

        arrival = checkpoint_service.arrive(
            db, session.id, CheckpointKind.COMPLETION, _slot_for(session, actor_id)
        )
        if arrival == Arrival.FIRE:
            _release_escrow(db, session)
            _move(session, SessionStatus.COMPLETED, "confirm completion")
            if session.completed_at is None:
                session.completed_at = now
            outcome["event"] = "session_completed"
        elif arrival == Arrival.ALREADY_FIRED:
            raise _integrity_fault(session, "completion barrier fired but session never completed")
        else:
            outcome["event"] = "partner_confirmed"
        return _commit(db, session)

    session = run_with_retry(db, _apply)
    _publish(db, session, outcome["event"], actor_id)
    return session


# =====================================
# CANCELLATION / DISPUTE
# =====================================

def cancel(db: Session, session_id: int, actor_id: int, reason: Optional[str] = None) -> models.Session:
    """
    Either participant cancels a pending or approved session. Held escrow
    is refunded to the student.
    """
    def _apply() -> models.Session:
        session = _load(db, session_id)
        _require_participant(session, actor_id)
        _require_status(session, (SessionStatus.PENDING, SessionStatus.APPROVED), "cancel")

        _refund_escrow(db, session)
        session.cancelled_by = actor_id
        session.cancellation_reason = reason
        _move(session, SessionStatus.CANCELLED, "cancel")
        return _commit(db, session)

    session = run_with_retry(db, _apply)
    _publish(db, session, "session_cancelled", actor_id)
    return session


def dispute(
    db: Session,
    session_id: int,
    actor_id: int,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> models.Session:
    """
    Open a dispute on an approved or in-progress session. Held escrow stays
    held and frozen until an administrator resolves the dispute.
    """
    now = now or utcnow()

    def _apply() -> models.Session:
        session = _load(db, session_id)
        _require_participant(session, actor_id)
        _require_status(session, (SessionStatus.APPROVED, SessionStatus.IN_PROGRESS), "dispute")

        session.disputed_by = actor_id
        session.dispute_reason = reason
        session.dispute_opened_at = now
        _move(session, SessionStatus.DISPUTED, "dispute")
        return _commit(db, session)

    session = run_with_retry(db, _apply)
    _publish(db, session, "session_disputed", actor_id)
    return session


def admin_resolve(
    db: Session,
    session_id: int,
    resolution: DisputeResolution,
    *,
    admin_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> models.Session:
    """
    Force a terminal outcome for a disputed session, bypassing both barriers.

    - complete: release escrow to the teacher, status completed
    - cancel:   refund escrow to the student, status cancelled
    - reject:   refund any held escrow, status rejected
    """
    now = now or utcnow()
    resolution = DisputeResolution(resolution)

    def _apply() -> models.Session:
        session = _load(db, session_id)
        _require_status(session, (SessionStatus.DISPUTED,), "resolve")

        if resolution == DisputeResolution.COMPLETE:
            _release_escrow(db, session)
            _move(session, SessionStatus.COMPLETED, "admin resolve")
            if session.completed_at is None:
                session.completed_at = now
        elif resolution == DisputeResolution.CANCEL:
            _refund_escrow(db, session)
            _move(session, SessionStatus.CANCELLED, "admin resolve")
        else:
            _refund_escrow(db, session)
            _move(session, SessionStatus.REJECTED, "admin resolve")

        session.dispute_resolution = resolution
        session.dispute_resolved_at = now
        return _commit(db, session)

    session = run_with_retry(db, _apply)
    logger.info("Dispute on session %s resolved as %s by admin %s", session.id, resolution.value, admin_id)
    _publish(db, session, "dispute_resolved", admin_id)
    if resolution == DisputeResolution.COMPLETE:
        _publish(db, session, "session_completed", admin_id)
    return session


# =====================================
# QUERIES
# =====================================

def get_session(db: Session, session_id: int, actor_id: int) -> models.Session:
    session = db.get(models.Session, session_id)
    if session is None:
        raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
    _require_participant(session, actor_id)
    return session


def list_sessions(
    db: Session,
    actor_id: int,
    *,
    role: Optional[str] = None,
    status: Optional[SessionStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[models.Session]:
    """Sessions for a user as teacher, student, or either."""
    query = db.query(models.Session)
    if role == "teacher":
        query = query.filter(models.Session.teacher_id == actor_id)
    elif role == "student":
        query = query.filter(models.Session.student_id == actor_id)
    else:
        query = query.filter(
            (models.Session.teacher_id == actor_id) | (models.Session.student_id == actor_id)
        )
    if status is not None:
        query = query.filter(models.Session.status == SessionStatus(status))
    return query.order_by(models.Session.id.desc()).limit(limit).offset(offset).all()


def list_upcoming_sessions(
    db: Session,
    actor_id: int,
    *,
    limit: int = 5,
    now: Optional[datetime] = None,
) -> List[models.Session]:
    """Approved sessions still ahead of ``now``, soonest first."""
    now = now or utcnow()
    return db.query(models.Session).filter(
        (models.Session.teacher_id == actor_id) | (models.Session.student_id == actor_id),
        models.Session.status == SessionStatus.APPROVED,
        models.Session.scheduled_at > now,
    ).order_by(
        models.Session.scheduled_at.asc(),
        models.Session.id.asc(),
    ).limit(limit).all()


def get_session_progress(
    db: Session,
    session_id: int,
    actor_id: int,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Live progress/overtime view. Informational only; never mutates state."""
    now = now or utcnow()
    session = get_session(db, session_id, actor_id)
    opens, closes = timing_policy.check_in_window(
        session.scheduled_at, settings.CHECKIN_WINDOW_SECONDS
    )
    planned = timing_policy.planned_seconds(session.duration_hours)

    if session.started_at is None:
        elapsed_seconds = 0.0
        progress = 0.0
        overtime = False
    else:
        until = session.completed_at or now
        elapsed_seconds = timing_policy.elapsed(session.started_at, until).total_seconds()
        progress = timing_policy.progress_percent(session.started_at, until, session.duration_hours)
        overtime = timing_policy.is_overtime(session.started_at, until, session.duration_hours)

    return {
        "session_id": session.id,
        "status": session.status.value,
        "started_at": session.started_at,
        "elapsed_seconds": elapsed_seconds,
        "planned_seconds": planned,
        "progress_percent": progress,
        "is_overtime": overtime,
        "check_in_opens_at": opens,
        "check_in_closes_at": closes,
        "can_check_in_now": (
            session.status == SessionStatus.APPROVED
            and timing_policy.is_within_check_in_window(
                session.scheduled_at, now, settings.CHECKIN_WINDOW_SECONDS
            )
        ),
    }
