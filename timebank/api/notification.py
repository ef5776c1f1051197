from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from timebank.database import get_db
from timebank.schemas.notification import NotificationResponse
from timebank.services import notification_service
from timebank.utils.security import Actor, get_current_actor

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("/my", response_model=List[NotificationResponse])
def get_my_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    return notification_service.list_user_notifications(
        db, user_id=actor.user_id, unread_only=unread_only, limit=limit
    )


@router.get("/unread-count")
def get_unread_count(
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    return {"unread": notification_service.get_unread_count(db, user_id=actor.user_id)}


@router.patch("/read-all")
def mark_all_notifications_read(
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    count = notification_service.mark_all_notifications_read(db, user_id=actor.user_id)
    return {"message": "All notifications marked as read", "updated": count}


@router.patch("/{notification_id}/read")
def mark_notification_read(
    notification_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    notification = notification_service.mark_notification_read(
        db, user_id=actor.user_id, notification_id=notification_id
    )
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")

    return {"message": "Notification marked as read", "id": notification.id}
