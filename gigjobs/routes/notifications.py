import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_principal
from ..db import atomic, get_db
from ..schemas.marketplace import NotificationOut, NotificationPage, Principal
from ..services import notifications as notification_service

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationPage)
def list_notifications(
    is_read: Optional[bool] = None,
    type: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=notification_service.MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
    user: Principal = Depends(get_current_principal),
):
    rows, pagination = notification_service.list_notifications(db, user, is_read=is_read, type=type, page=page, limit=limit)
    return {
        "data": [notification_service.serialize_notification(n) for n in rows],
        "pagination": pagination,
    }


@router.get("/unread-count")
def unread_count(db: Session = Depends(get_db), user: Principal = Depends(get_current_principal)):
    return {"count": notification_service.unread_count(db, user)}


@router.put("/read-all")
def mark_all_read(db: Session = Depends(get_db), user: Principal = Depends(get_current_principal)):
    with atomic(db):
        count = notification_service.mark_all_read(db, user)
    return {"status": "ok", "updated": count}


@router.put("/{notification_id}/read", response_model=NotificationOut)
def mark_read(
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: Principal = Depends(get_current_principal),
):
    with atomic(db):
        notification = notification_service.mark_read(db, notification_id, user)
    return notification_service.serialize_notification(notification)
