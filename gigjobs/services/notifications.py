"""
Notification dispatcher.
Persists one in-app notification per recipient per lifecycle event, inside
the caller's transaction. Push/SMS delivery reads these rows downstream.
"""
import math
from datetime import datetime
from typing import Optional, Dict, Any, Tuple, List

import structlog
from sqlalchemy.orm import Session

from ..errors import NotFound, ValidationError
from ..models.models import Notification, utc_now
from ..schemas.marketplace import NotificationType, Principal

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100


def notify(
    db: Session,
    recipient: Principal,
    sender: Optional[Principal],
    type: NotificationType,
    title: str,
    message: str,
    refs: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    event_key: Optional[str] = None,
) -> Notification:
    """
    Record a notification for a single recipient.

    Does not commit: the row lands or rolls back together with the state
    change that triggered it. Calling again with the same ``event_key``
    returns the row already written for that event.

    Args:
        db: Session of the triggering operation
        recipient: Addressee (user_id, user_type)
        sender: Acting party, if any
        type: Lifecycle event kind
        title: Short heading
        message: Body text
        refs: project_id / invitation_id / job_record_id
        metadata: Free-form extra data for clients
        event_key: Identity of the lifecycle event

    Returns:
        The persisted Notification
    """
    if sender is not None and sender == recipient:
        raise ValidationError("A party is never notified of its own action")

    refs = refs or {}
    event_key = event_key or f"{type.value}:{refs.get('job_record_id') or refs.get('invitation_id')}:{recipient.user_id}"

    existing = db.query(Notification).filter(Notification.event_key == event_key).first()
    if existing:
        return existing

    notification = Notification(
        user_id=recipient.user_id,
        user_type=recipient.user_type.value,
        sender_id=sender.user_id if sender else None,
        sender_type=sender.user_type.value if sender else None,
        type=type.value,
        title=title,
        message=message,
        project_id=refs.get("project_id"),
        invitation_id=refs.get("invitation_id"),
        job_record_id=refs.get("job_record_id"),
        metadata_json=metadata or {},
        event_key=event_key,
        is_read=False,
    )
    db.add(notification)
    db.flush()
    logger.info(
        "notification_created",
        notification_id=str(notification.id),
        type=type.value,
        user_id=str(recipient.user_id),
        user_type=recipient.user_type.value,
    )
    return notification


def _owned_by(query, user: Principal):
    return query.filter(
        Notification.user_id == user.user_id,
        Notification.user_type == user.user_type.value,
    )


def list_notifications(
    db: Session,
    user: Principal,
    is_read: Optional[bool] = None,
    type: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Notification], Dict[str, int]]:
    """Newest first, paginated. Returns (rows, pagination)."""
    page = max(page or 1, 1)
    limit = min(max(limit or 20, 1), MAX_PAGE_SIZE)

    query = _owned_by(db.query(Notification), user)
    if is_read is not None:
        query = query.filter(Notification.is_read == is_read)
    if type:
        query = query.filter(Notification.type == type)

    total = query.count()
    rows = (
        query.order_by(Notification.created_at.desc(), Notification.id)
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit) if total else 0,
    }
    return rows, pagination


def unread_count(db: Session, user: Principal) -> int:
    return _owned_by(db.query(Notification), user).filter(Notification.is_read.is_(False)).count()


def mark_read(db: Session, notification_id, user: Principal, now: Optional[datetime] = None) -> Notification:
    """Idempotent: a second call leaves read_at at its first value."""
    notification = _owned_by(db.query(Notification), user).filter(Notification.id == notification_id).first()
    if not notification:
        raise NotFound("Notification not found")
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = now or utc_now()
        db.flush()
    return notification


def mark_all_read(db: Session, user: Principal, now: Optional[datetime] = None) -> int:
    count = (
        _owned_by(db.query(Notification), user)
        .filter(Notification.is_read.is_(False))
        .update({"is_read": True, "read_at": now or utc_now()}, synchronize_session=False)
    )
    return count


def serialize_notification(notification: Notification) -> Dict[str, Any]:
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "user_type": notification.user_type,
        "sender_id": notification.sender_id,
        "sender_type": notification.sender_type,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "project_id": notification.project_id,
        "invitation_id": notification.invitation_id,
        "job_record_id": notification.job_record_id,
        "is_read": notification.is_read,
        "read_at": notification.read_at,
        "metadata": notification.metadata_json or {},
        "created_at": notification.created_at,
    }
