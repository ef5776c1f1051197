from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, DefaultDict, Iterable, List, Optional

from sqlalchemy.orm import Session

from timebank.config import settings
from timebank.models.notification import Notification
from timebank.services.timing_policy import utcnow

logger = logging.getLogger(__name__)


MESSAGE_BY_EVENT = {
    "session_requested": "You have a new session request.",
    "session_approved": "Your session request was approved. Credits are now held in escrow.",
    "session_rejected": "Your session request was rejected.",
    "partner_checked_in": "Your partner has checked in. Check in to start the session.",
    "session_started": "Both parties checked in. The session has started.",
    "partner_confirmed": "Your partner confirmed completion. Confirm to release credits.",
    "session_completed": "The session is complete and credits were released to the teacher.",
    "session_cancelled": "The session was cancelled.",
    "session_disputed": "A dispute was opened for this session. Escrow is frozen pending review.",
    "dispute_resolved": "An administrator resolved the dispute for this session.",
}

# Events that go to the other participant only; everything else goes to both.
COUNTERPARTY_EVENTS = {
    "session_requested",
    "session_approved",
    "session_rejected",
    "partner_checked_in",
    "partner_confirmed",
    "session_cancelled",
    "session_disputed",
}


@dataclass(frozen=True)
class SessionEvent:
    event_type: str
    session_id: int
    teacher_id: int
    student_id: int
    status: str
    credit_amount: Decimal
    actor_id: Optional[int]
    occurred_at: datetime


Subscriber = Callable[[SessionEvent], None]

_subscribers: DefaultDict[str, List[Subscriber]] = defaultdict(list)


def subscribe(event_type: str, callback: Subscriber) -> None:
    """Register an in-process consumer, e.g. review or badge systems on completion."""
    _subscribers[event_type].append(callback)


def clear_subscribers() -> None:
    _subscribers.clear()


def list_user_notifications(
    db: Session,
    *,
    user_id: int,
    unread_only: bool = False,
    limit: int = 50,
) -> List[Notification]:
    query = db.query(Notification).filter(Notification.recipient_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def mark_notification_read(
    db: Session,
    *,
    user_id: int,
    notification_id: int,
) -> Optional[Notification]:
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.recipient_id == user_id,
    ).first()
    if not notification:
        return None
    notification.is_read = True
    db.commit()
    return notification


def mark_all_notifications_read(db: Session, *, user_id: int) -> int:
    updated = db.query(Notification).filter(
        Notification.recipient_id == user_id,
        Notification.is_read.is_(False),
    ).update({"is_read": True}, synchronize_session=False)
    db.commit()
    return int(updated)


def get_unread_count(db: Session, *, user_id: int) -> int:
    return db.query(Notification).filter(
        Notification.recipient_id == user_id,
        Notification.is_read.is_(False),
    ).count()


def create_notification(
    db: Session,
    *,
    recipient_id: int,
    actor_id: Optional[int],
    session_id: Optional[int],
    event_type: str,
    message: str,
) -> Notification:
    notification = Notification(
        recipient_id=recipient_id,
        actor_id=actor_id,
        session_id=session_id,
        event_type=event_type,
        message=message,
    )
    db.add(notification)
    db.flush()
    return notification


def _recipients(event: SessionEvent) -> Iterable[int]:
    if event.event_type in COUNTERPARTY_EVENTS and event.actor_id is not None:
        if event.actor_id == event.teacher_id:
            return (event.student_id,)
        if event.actor_id == event.student_id:
            return (event.teacher_id,)
    return (event.teacher_id, event.student_id)


def _notify_subscribers(event: SessionEvent) -> None:
    for callback in list(_subscribers.get(event.event_type, [])):
        try:
            callback(event)
        except Exception as exc:
            logger.warning(
                "Subscriber %r failed for %s (session_id=%s): %s",
                callback, event.event_type, event.session_id, exc,
            )


def publish_session_event(
    db: Session,
    session,
    event_type: str,
    *,
    actor_id: Optional[int] = None,
) -> bool:
    """
    Best-effort fan-out for a committed status change.
    This function never raises and must not affect the lifecycle transition.
    """
    event = SessionEvent(
        event_type=event_type,
        session_id=session.id,
        teacher_id=session.teacher_id,
        student_id=session.student_id,
        status=session.status.value,
        credit_amount=session.credit_amount,
        actor_id=actor_id,
        occurred_at=utcnow(),
    )

    delivered = False
    if settings.NOTIFICATIONS_ENABLED:
        try:
            message = MESSAGE_BY_EVENT.get(event_type, "Your session was updated.")
            for recipient_id in _recipients(event):
                create_notification(
                    db,
                    recipient_id=recipient_id,
                    actor_id=actor_id,
                    session_id=session.id,
                    event_type=event_type,
                    message=message,
                )
            db.commit()
            delivered = True
        except Exception as exc:
            db.rollback()
            logger.warning(
                "Notification dispatch failed (session_id=%s, event=%s): %s",
                event.session_id, event_type, exc,
            )

    _notify_subscribers(event)
    return delivered
