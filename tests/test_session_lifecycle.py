from datetime import timedelta
from decimal import Decimal

import pytest

from timebank import models
from timebank.errors import (
    ForbiddenAction,
    InsufficientCredits,
    InvalidSessionTerms,
    InvalidTransition,
    NotParticipant,
    OutOfCheckInWindow,
    SessionNotFound,
)
from timebank.models.ledger import EscrowState, TransactionType
from timebank.models.session import DisputeResolution, SessionStatus
from timebank.services import ledger_service, notification_service, session_lifecycle

from conftest import (
    BOOKED_AT,
    OUTSIDER_ID,
    SCHEDULED_AT,
    STUDENT_ID,
    TEACHER_ID,
    make_terms,
    minutes_from_start,
)


def _balances(db):
    return (
        ledger_service.get_balance(db, TEACHER_ID),
        ledger_service.get_balance(db, STUDENT_ID),
    )


def _total_credits(db):
    teacher, student = _balances(db)
    return teacher["total"] + student["total"]


def _book(db, **overrides):
    return session_lifecycle.book_session(db, make_terms(**overrides), now=BOOKED_AT)


def _approved(db):
    session = _book(db)
    return session_lifecycle.approve(db, session.id, TEACHER_ID)


def _started(db):
    session = _approved(db)
    session_lifecycle.check_in(db, session.id, TEACHER_ID, now=minutes_from_start(-10))
    return session_lifecycle.check_in(db, session.id, STUDENT_ID, now=minutes_from_start(-5))


# ======================
# SCENARIOS
# ======================

def test_happy_path_releases_escrow_to_teacher(funded):
    db = funded
    session = _book(db)
    assert session.status == SessionStatus.PENDING
    assert session.credit_held is False

    session = session_lifecycle.approve(db, session.id, TEACHER_ID)
    assert session.status == SessionStatus.APPROVED
    assert session.credit_held is True
    teacher, student = _balances(db)
    assert student["available"] == Decimal("8.00")
    assert student["held"] == Decimal("2.00")

    session = session_lifecycle.check_in(db, session.id, TEACHER_ID, now=minutes_from_start(-10))
    assert session.status == SessionStatus.APPROVED
    assert session.teacher_checked_in is True
    assert session.started_at is None

    session = session_lifecycle.check_in(db, session.id, STUDENT_ID, now=minutes_from_start(-5))
    assert session.status == SessionStatus.IN_PROGRESS
    assert session.started_at == minutes_from_start(-5)

    session = session_lifecycle.confirm_completion(db, session.id, TEACHER_ID, now=minutes_from_start(120))
    assert session.status == SessionStatus.IN_PROGRESS
    assert session.credit_held is True

    session = session_lifecycle.confirm_completion(db, session.id, STUDENT_ID, now=minutes_from_start(121))
    assert session.status == SessionStatus.COMPLETED
    assert session.credit_held is False
    assert session.completed_at == minutes_from_start(121)

    teacher, student = _balances(db)
    assert teacher["available"] == Decimal("2.00")
    assert student["available"] == Decimal("8.00")
    assert student["held"] == Decimal("0.00")
    assert ledger_service.get_escrow_for_session(db, session.id).state == EscrowState.RELEASED


def test_reject_never_touches_the_ledger(funded):
    db = funded
    session = _book(db)
    session = session_lifecycle.reject(db, session.id, TEACHER_ID, "Not available that week")

    assert session.status == SessionStatus.REJECTED
    assert session.rejection_reason == "Not available that week"
    assert ledger_service.get_escrow_for_session(db, session.id) is None
    assert db.query(models.CreditTransaction).filter(
        models.CreditTransaction.session_id == session.id
    ).count() == 0
    _, student = _balances(db)
    assert student["available"] == Decimal("10.00")


def test_cancel_after_approval_refunds_student(funded):
    db = funded
    session = _approved(db)
    session = session_lifecycle.cancel(db, session.id, STUDENT_ID, "Schedule conflict")

    assert session.status == SessionStatus.CANCELLED
    assert session.credit_held is False
    assert session.cancelled_by == STUDENT_ID
    _, student = _balances(db)
    assert student["available"] == Decimal("10.00")
    assert student["held"] == Decimal("0.00")
    assert ledger_service.get_escrow_for_session(db, session.id).state == EscrowState.REFUNDED


def test_cancel_while_pending_has_nothing_to_refund(funded):
    db = funded
    session = _book(db)
    session = session_lifecycle.cancel(db, session.id, TEACHER_ID)
    assert session.status == SessionStatus.CANCELLED
    assert ledger_service.get_escrow_for_session(db, session.id) is None


# ======================
# BOOKING GUARDS
# ======================

@pytest.mark.parametrize(
    "overrides",
    [
        {"duration_hours": 0},
        {"credit_amount": -1},
        {"duration_hours": 10000},
        {"credit_amount": "10000000000"},
        {"credit_amount": None, "duration_hours": 9000, "hourly_rate": 2000000},
        {"student_id": TEACHER_ID},
        {"skill_reference": "  "},
        {"scheduled_at": BOOKED_AT - timedelta(minutes=1)},
    ],
)
def test_invalid_terms_are_rejected(db, overrides):
    with pytest.raises(InvalidSessionTerms):
        _book(db, **overrides)
    assert db.query(models.Session).count() == 0


def test_credit_amount_defaults_to_duration_times_rate(db):
    session = _book(db, credit_amount=None, duration_hours="1.5", hourly_rate=2)
    assert session.credit_amount == Decimal("3.00")


def test_duplicate_active_booking_is_rejected(funded):
    db = funded
    _book(db)
    with pytest.raises(InvalidSessionTerms):
        _book(db)


def test_rebooking_allowed_after_terminal_state(funded):
    db = funded
    first = _book(db)
    session_lifecycle.reject(db, first.id, TEACHER_ID)
    second = _book(db)
    assert second.id != first.id


# ======================
# ROLE / PARTICIPANT GUARDS
# ======================

def test_only_teacher_can_approve_or_reject(funded):
    db = funded
    session = _book(db)
    with pytest.raises(ForbiddenAction):
        session_lifecycle.approve(db, session.id, STUDENT_ID)
    with pytest.raises(ForbiddenAction):
        session_lifecycle.reject(db, session.id, STUDENT_ID)
    assert session_lifecycle.get_session(db, session.id, STUDENT_ID).status == SessionStatus.PENDING


def test_outsider_cannot_act_or_view(funded):
    db = funded
    session = _approved(db)
    with pytest.raises(NotParticipant):
        session_lifecycle.check_in(db, session.id, OUTSIDER_ID, now=minutes_from_start(0))
    with pytest.raises(NotParticipant):
        session_lifecycle.get_session(db, session.id, OUTSIDER_ID)


def test_unknown_session_raises_not_found(db):
    with pytest.raises(SessionNotFound):
        session_lifecycle.approve(db, 999, TEACHER_ID)


# ======================
# ATOMICITY
# ======================

def test_failed_approval_leaves_no_partial_effects(funded):
    db = funded
    session = _book(db, credit_amount=50)

    with pytest.raises(InsufficientCredits):
        session_lifecycle.approve(db, session.id, TEACHER_ID)

    session = session_lifecycle.get_session(db, session.id, TEACHER_ID)
    assert session.status == SessionStatus.PENDING
    assert session.credit_held is False
    assert ledger_service.get_escrow_for_session(db, session.id) is None
    _, student = _balances(db)
    assert student["available"] == Decimal("10.00")
    assert student["held"] == Decimal("0.00")


def test_approve_twice_is_an_invalid_transition(funded):
    db = funded
    session = _approved(db)
    with pytest.raises(InvalidTransition):
        session_lifecycle.approve(db, session.id, TEACHER_ID)
    _, student = _balances(db)
    assert student["held"] == Decimal("2.00")


# ======================
# CHECK-IN WINDOW
# ======================

def test_check_in_two_hours_early_is_refused(funded):
    db = funded
    session = _approved(db)

    with pytest.raises(OutOfCheckInWindow) as exc_info:
        session_lifecycle.check_in(db, session.id, TEACHER_ID, now=SCHEDULED_AT - timedelta(hours=2))

    assert exc_info.value.seconds_until_open == 6300
    assert exc_info.value.window_closed is False
    session = session_lifecycle.get_session(db, session.id, TEACHER_ID)
    assert session.teacher_checked_in is False


def test_check_in_after_window_closes_is_refused(funded):
    db = funded
    session = _approved(db)
    with pytest.raises(OutOfCheckInWindow) as exc_info:
        session_lifecycle.check_in(db, session.id, STUDENT_ID, now=minutes_from_start(20))
    assert exc_info.value.window_closed is True


def test_check_in_requires_approval(funded):
    db = funded
    session = _book(db)
    with pytest.raises(InvalidTransition):
        session_lifecycle.check_in(db, session.id, TEACHER_ID, now=minutes_from_start(0))


def test_unscheduled_session_can_check_in_any_time(funded):
    db = funded
    session = _book(db, scheduled_at=None)
    session_lifecycle.approve(db, session.id, TEACHER_ID)
    session_lifecycle.check_in(db, session.id, TEACHER_ID, now=BOOKED_AT)
    session = session_lifecycle.check_in(db, session.id, STUDENT_ID, now=BOOKED_AT)
    assert session.status == SessionStatus.IN_PROGRESS


# ======================
# IDEMPOTENCE
# ======================

def test_repeated_check_in_is_a_no_op(funded):
    db = funded
    session = _approved(db)
    first = session_lifecycle.check_in(db, session.id, TEACHER_ID, now=minutes_from_start(-10))
    version = first.version
    again = session_lifecycle.check_in(db, session.id, TEACHER_ID, now=minutes_from_start(-9))

    assert again.status == SessionStatus.APPROVED
    assert again.teacher_checked_in_at == minutes_from_start(-10)
    assert again.version == version


def test_started_at_is_written_once(funded):
    db = funded
    session = _started(db)
    started_at = session.started_at
    session = session_lifecycle.check_in(db, session.id, TEACHER_ID, now=minutes_from_start(10))
    assert session.started_at == started_at


def test_single_party_confirming_twice_never_releases(funded):
    db = funded
    session = _started(db)
    session_lifecycle.confirm_completion(db, session.id, TEACHER_ID)
    session = session_lifecycle.confirm_completion(db, session.id, TEACHER_ID)

    assert session.status == SessionStatus.IN_PROGRESS
    assert session.credit_held is True
    teacher, _ = _balances(db)
    assert teacher["available"] == Decimal("0.00")


def test_confirm_after_completion_is_a_no_op(funded):
    db = funded
    session = _started(db)
    session_lifecycle.confirm_completion(db, session.id, TEACHER_ID)
    session_lifecycle.confirm_completion(db, session.id, STUDENT_ID)
    session = session_lifecycle.confirm_completion(db, session.id, STUDENT_ID)

    assert session.status == SessionStatus.COMPLETED
    releases = db.query(models.CreditTransaction).filter(
        models.CreditTransaction.session_id == session.id,
        models.CreditTransaction.type == TransactionType.RELEASE,
    ).count()
    assert releases == 1


# ======================
# CANCELLATION / DISPUTE
# ======================

def test_cannot_cancel_once_in_progress(funded):
    db = funded
    session = _started(db)
    with pytest.raises(InvalidTransition):
        session_lifecycle.cancel(db, session.id, STUDENT_ID)


def test_dispute_freezes_escrow(funded):
    db = funded
    session = _started(db)
    session_lifecycle.confirm_completion(db, session.id, TEACHER_ID)
    session = session_lifecycle.dispute(db, session.id, STUDENT_ID, "Teacher left early")

    assert session.status == SessionStatus.DISPUTED
    assert session.disputed_by == STUDENT_ID
    assert session.credit_held is True

    with pytest.raises(InvalidTransition):
        session_lifecycle.confirm_completion(db, session.id, STUDENT_ID)
    with pytest.raises(InvalidTransition):
        session_lifecycle.cancel(db, session.id, STUDENT_ID)

    teacher, student = _balances(db)
    assert teacher["available"] == Decimal("0.00")
    assert student["held"] == Decimal("2.00")


def test_dispute_requires_approved_or_in_progress(funded):
    db = funded
    session = _book(db)
    with pytest.raises(InvalidTransition):
        session_lifecycle.dispute(db, session.id, STUDENT_ID)


@pytest.mark.parametrize(
    "resolution, status, teacher_available, student_available",
    [
        (DisputeResolution.COMPLETE, SessionStatus.COMPLETED, Decimal("2.00"), Decimal("8.00")),
        (DisputeResolution.CANCEL, SessionStatus.CANCELLED, Decimal("0.00"), Decimal("10.00")),
        (DisputeResolution.REJECT, SessionStatus.REJECTED, Decimal("0.00"), Decimal("10.00")),
    ],
)
def test_admin_resolution_settles_escrow(funded, resolution, status, teacher_available, student_available):
    db = funded
    session = _approved(db)
    session_lifecycle.dispute(db, session.id, TEACHER_ID, "Student never showed")

    session = session_lifecycle.admin_resolve(db, session.id, resolution, admin_id=1)

    assert session.status == status
    assert session.credit_held is False
    assert session.dispute_resolution == resolution
    assert session.dispute_resolved_at is not None
    teacher, student = _balances(db)
    assert teacher["available"] == teacher_available
    assert student["available"] == student_available
    assert student["held"] == Decimal("0.00")


def test_admin_resolve_only_applies_to_disputes(funded):
    db = funded
    session = _approved(db)
    with pytest.raises(InvalidTransition):
        session_lifecycle.admin_resolve(db, session.id, DisputeResolution.COMPLETE)


def test_terminal_states_accept_no_further_actions(funded):
    db = funded
    session = _book(db)
    session_lifecycle.reject(db, session.id, TEACHER_ID)
    for action in (session_lifecycle.approve, session_lifecycle.cancel, session_lifecycle.dispute):
        with pytest.raises(InvalidTransition):
            action(db, session.id, TEACHER_ID)


# ======================
# INVARIANTS
# ======================

def test_credits_are_conserved_across_the_lifecycle(funded):
    db = funded
    assert _total_credits(db) == Decimal("10.00")

    session = _approved(db)
    assert _total_credits(db) == Decimal("10.00")

    session_lifecycle.check_in(db, session.id, TEACHER_ID, now=minutes_from_start(-1))
    session_lifecycle.check_in(db, session.id, STUDENT_ID, now=minutes_from_start(0))
    session_lifecycle.confirm_completion(db, session.id, STUDENT_ID)
    assert _total_credits(db) == Decimal("10.00")

    session_lifecycle.confirm_completion(db, session.id, TEACHER_ID)
    assert _total_credits(db) == Decimal("10.00")


def test_credit_held_mirrors_escrow_state(funded):
    db = funded
    session = _book(db)
    assert ledger_service.get_escrow_for_session(db, session.id) is None

    session = session_lifecycle.approve(db, session.id, TEACHER_ID)
    assert session.credit_held is True
    assert ledger_service.get_escrow_for_session(db, session.id).state == EscrowState.HELD

    session = session_lifecycle.cancel(db, session.id, TEACHER_ID)
    assert session.credit_held is False
    assert ledger_service.get_escrow_for_session(db, session.id).state == EscrowState.REFUNDED


def _book_priced(db, skill, amount):
    return session_lifecycle.book_session(
        db, make_terms(skill_reference=skill, credit_amount=amount), now=BOOKED_AT
    )


def test_fractional_holds_can_spend_the_exact_balance(db):
    ledger_service.open_account(db, TEACHER_ID, 0)
    ledger_service.open_account(db, STUDENT_ID, "0.70")
    first = _book_priced(db, "knitting", "0.40")
    second = _book_priced(db, "origami", "0.30")

    session_lifecycle.approve(db, first.id, TEACHER_ID)
    assert ledger_service.get_balance(db, STUDENT_ID)["available"] == Decimal("0.30")

    approved = session_lifecycle.approve(db, second.id, TEACHER_ID)
    assert approved.credit_held is True
    _, student = _balances(db)
    assert student["available"] == Decimal("0.00")
    assert student["held"] == Decimal("0.70")


def test_fractional_refunds_return_every_cent(db, caplog):
    ledger_service.open_account(db, TEACHER_ID, 0)
    ledger_service.open_account(db, STUDENT_ID, "1.00")
    small = _book_priced(db, "knitting", "0.30")
    large = _book_priced(db, "origami", "0.60")
    session_lifecycle.approve(db, small.id, TEACHER_ID)
    session_lifecycle.approve(db, large.id, TEACHER_ID)

    session_lifecycle.cancel(db, large.id, STUDENT_ID)
    cancelled = session_lifecycle.cancel(db, small.id, STUDENT_ID)

    assert cancelled.status == SessionStatus.CANCELLED
    assert cancelled.credit_held is False
    _, student = _balances(db)
    assert student["available"] == Decimal("1.00")
    assert student["held"] == Decimal("0.00")
    assert not [r for r in caplog.records if r.name == "timebank.integrity"]


# ======================
# QUERIES / EVENTS
# ======================

def test_progress_reports_overtime_without_changing_status(funded):
    db = funded
    session = _started(db)
    start = session.started_at

    halfway = session_lifecycle.get_session_progress(
        db, session.id, STUDENT_ID, now=start + timedelta(hours=1)
    )
    assert halfway["elapsed_seconds"] == 3600
    assert halfway["planned_seconds"] == 7200
    assert halfway["progress_percent"] == 0.5
    assert halfway["is_overtime"] is False

    late = session_lifecycle.get_session_progress(
        db, session.id, STUDENT_ID, now=start + timedelta(hours=3)
    )
    assert late["is_overtime"] is True
    assert late["progress_percent"] == 1.0
    assert session_lifecycle.get_session(db, session.id, STUDENT_ID).status == SessionStatus.IN_PROGRESS


def test_list_sessions_filters_by_role_and_status(funded):
    db = funded
    pending = _book(db)
    other = _book(db, skill_reference="guitar")
    session_lifecycle.approve(db, other.id, TEACHER_ID)

    as_teacher = session_lifecycle.list_sessions(db, TEACHER_ID, role="teacher")
    assert {s.id for s in as_teacher} == {pending.id, other.id}
    assert session_lifecycle.list_sessions(db, TEACHER_ID, role="student") == []

    approved = session_lifecycle.list_sessions(db, STUDENT_ID, status=SessionStatus.APPROVED)
    assert [s.id for s in approved] == [other.id]


def test_upcoming_sessions_are_approved_future_and_soonest_first(funded):
    db = funded
    later = _book(db, skill_reference="guitar", scheduled_at=SCHEDULED_AT + timedelta(days=2))
    sooner = _book(db, skill_reference="chess", scheduled_at=SCHEDULED_AT + timedelta(days=1))
    unapproved = _book(db, skill_reference="piano")
    started = _started(db)
    for session in (later, sooner):
        session_lifecycle.approve(db, session.id, TEACHER_ID)

    upcoming = session_lifecycle.list_upcoming_sessions(db, STUDENT_ID, now=BOOKED_AT)
    assert [s.id for s in upcoming] == [sooner.id, later.id]
    assert unapproved.id not in {s.id for s in upcoming}
    assert started.id not in {s.id for s in upcoming}

    assert [s.id for s in session_lifecycle.list_upcoming_sessions(
        db, TEACHER_ID, limit=1, now=BOOKED_AT
    )] == [sooner.id]

    after_first = SCHEDULED_AT + timedelta(days=1, hours=1)
    remaining = session_lifecycle.list_upcoming_sessions(db, TEACHER_ID, now=after_first)
    assert [s.id for s in remaining] == [later.id]
    assert session_lifecycle.list_upcoming_sessions(db, OUTSIDER_ID, now=BOOKED_AT) == []


def test_lifecycle_events_reach_subscribers_and_inbox(funded):
    db = funded
    seen = []
    notification_service.subscribe("session_completed", seen.append)

    session = _started(db)
    session_lifecycle.confirm_completion(db, session.id, TEACHER_ID)
    session_lifecycle.confirm_completion(db, session.id, STUDENT_ID)

    assert len(seen) == 1
    assert seen[0].session_id == session.id
    assert seen[0].status == "completed"

    teacher_events = [
        n.event_type for n in notification_service.list_user_notifications(db, user_id=TEACHER_ID)
    ]
    student_events = [
        n.event_type for n in notification_service.list_user_notifications(db, user_id=STUDENT_ID)
    ]
    assert "session_requested" in teacher_events
    assert "session_approved" in student_events
    assert "partner_confirmed" in student_events
    assert teacher_events.count("session_completed") == 1
    assert student_events.count("session_completed") == 1
