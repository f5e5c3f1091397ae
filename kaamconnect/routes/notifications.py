# Notification inbox: list the caller's notifications and mark them read.
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, schemas
from ..errors import NotFound
from .auth import get_current_user

router = APIRouter()


@router.get("/notifications", response_model=List[schemas.NotificationRead])
def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> List[models.Notification]:
    q = db.query(models.Notification).filter(models.Notification.user_id == user.id)
    if unread_only:
        q = q.filter(models.Notification.read.is_(False))
    return q.order_by(models.Notification.created_at.desc(), models.Notification.id.desc()).limit(limit).all()


@router.post("/notifications/{notification_id}/read", response_model=schemas.NotificationRead)
def mark_read(
    notification_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> models.Notification:
    obj = db.get(models.Notification, notification_id)
    # Someone else's notification is reported as missing rather than forbidden
    if obj is None or obj.user_id != user.id:
        raise NotFound("Notification not found")
    if not obj.read:
        obj.read = True
        db.commit()
        db.refresh(obj)
    return obj
