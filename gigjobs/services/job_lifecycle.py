"""
Job record state machine.

    accepted -> arrived -> working -> completed -> confirmed -> paid
    any non-terminal state -> cancelled

A JobRecord is opened only by invitation acceptance and advanced only by
``transition``. Every state flip is an UPDATE guarded on the expected
current status, so two racing requests cannot both apply.
"""
import math
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

import structlog
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import Settings, settings as default_settings
from ..db import atomic
from ..errors import AlreadyResponded, Forbidden, InvalidTransition, NotFound, ValidationError
from ..models.models import Invitation, JobRecord, as_naive_utc, utc_now
from ..schemas.marketplace import (
    JobStatus,
    NotificationType,
    PaymentStatus,
    Principal,
    UserType,
)
from . import wage
from .confirmation import confirmation_fields, payment_fields
from .geofence import check_arrival
from .notifications import notify

logger = structlog.get_logger(__name__)

TRANSITIONS = {
    JobStatus.accepted: {JobStatus.arrived, JobStatus.cancelled},
    JobStatus.arrived: {JobStatus.working, JobStatus.cancelled},
    JobStatus.working: {JobStatus.completed, JobStatus.cancelled},
    JobStatus.completed: {JobStatus.confirmed, JobStatus.cancelled},
    JobStatus.confirmed: {JobStatus.paid, JobStatus.cancelled},
}
TERMINAL_STATES = {JobStatus.paid, JobStatus.rejected, JobStatus.cancelled}

WORKER_TARGETS = {JobStatus.arrived, JobStatus.working, JobStatus.completed}
COMPANY_TARGETS = {JobStatus.confirmed, JobStatus.paid}
# Workers may walk away only until they have handed in the work
WORKER_CANCELLABLE_FROM = {JobStatus.accepted, JobStatus.arrived, JobStatus.working}

# Timestamp each target stamps, and the one it must not precede
_STAMPS = {
    JobStatus.arrived: ("arrival_time", None),
    JobStatus.working: ("start_work_time", "arrival_time"),
    JobStatus.completed: ("complete_time", "start_work_time"),
    JobStatus.confirmed: ("confirm_time", "complete_time"),
    JobStatus.paid: ("paid_at", "confirm_time"),
}

_EVENTS = {
    JobStatus.arrived: (NotificationType.job_arrived, "工人已到岗", "{worker} 已到达项目「{project}」现场"),
    JobStatus.working: (NotificationType.job_started, "工人已开工", "{worker} 已在项目「{project}」开始工作"),
    JobStatus.completed: (NotificationType.job_completed, "工作已完成", "{worker} 已完成项目「{project}」的工作，请确认"),
    JobStatus.confirmed: (NotificationType.job_confirmed, "工作已确认", "{company} 已确认您在项目「{project}」的工作"),
    JobStatus.paid: (NotificationType.job_paid, "工资已支付", "{company} 已支付项目「{project}」的工资"),
    JobStatus.cancelled: (NotificationType.job_cancelled, "工作已取消", "项目「{project}」的工作已被{actor}取消"),
}


def _parse_target(target_state: Union[str, JobStatus]) -> JobStatus:
    try:
        return JobStatus(target_state)
    except ValueError:
        raise InvalidTransition(f"Unknown job state: {target_state!r}")


def _party_role(job: JobRecord, actor: Principal) -> UserType:
    if actor.is_worker and job.worker_id == actor.user_id:
        return UserType.worker
    if actor.is_company and job.company_id == actor.user_id:
        return UserType.company
    raise Forbidden("Not a party to this job record")


def _authorize(role: UserType, current: JobStatus, target: JobStatus) -> None:
    if target is JobStatus.cancelled:
        if role is UserType.worker and current not in WORKER_CANCELLABLE_FROM:
            raise Forbidden("Workers cannot cancel once the work is completed")
        return
    if target in WORKER_TARGETS and role is not UserType.worker:
        raise Forbidden(f"Only the worker may move a job to {target.value}")
    if target in COMPANY_TARGETS and role is not UserType.company:
        raise Forbidden(f"Only the company may move a job to {target.value}")


def _number(payload: Dict[str, Any], key: str, required: bool = True) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{key} must be a number")
    return float(value)


def _arrival_fields(job: JobRecord, payload: Dict[str, Any], now: datetime, cfg: Settings) -> Dict[str, Any]:
    location = payload.get("location", payload)
    if not isinstance(location, dict):
        raise ValidationError("Check-in requires a location")
    latitude = _number(location, "latitude")
    longitude = _number(location, "longitude")
    accuracy = _number(location, "accuracy", required=False)
    if not -90 <= latitude <= 90:
        raise ValidationError("latitude must be between -90 and 90")
    if not -180 <= longitude <= 180:
        raise ValidationError("longitude must be between -180 and 180")
    if accuracy is not None and accuracy < 0:
        raise ValidationError("accuracy must not be negative")

    check = check_arrival(job.project, latitude, longitude, accuracy, cfg)
    return {
        "arrival_latitude": latitude,
        "arrival_longitude": longitude,
        "arrival_accuracy_m": accuracy,
        "arrival_distance_m": check.distance_m,
        "_metadata": {
            "distance_m": check.distance_m,
            "outside_geofence": check.outside_geofence,
            "low_accuracy": check.low_accuracy,
        },
    }


def _start_fields(job: JobRecord, payload: Dict[str, Any], now: datetime, cfg: Settings) -> Dict[str, Any]:
    return {}


def _completion_fields(job: JobRecord, payload: Dict[str, Any], now: datetime, cfg: Settings) -> Dict[str, Any]:
    notes = payload.get("notes", payload.get("completion_notes"))
    if notes is not None and not isinstance(notes, str):
        raise ValidationError("notes must be text")
    photo_refs = payload.get("photo_refs", payload.get("work_photo_refs")) or []
    if not isinstance(photo_refs, list) or not all(isinstance(ref, str) and ref.strip() for ref in photo_refs):
        raise ValidationError("photo_refs must be a list of non-empty references")
    if len(photo_refs) > cfg.max_work_photos:
        raise ValidationError(f"At most {cfg.max_work_photos} work photos")

    # complete_time is clamped by the caller before this runs
    started = as_naive_utc(job.start_work_time)
    hours = (now - started).total_seconds() / 3600 if started else 0.0
    return {
        "completion_notes": notes,
        "work_photo_refs": [ref.strip() for ref in photo_refs],
        "actual_hours": round(hours, 2),
        "_metadata": {"photo_count": len(photo_refs)},
    }


def _cancel_fields(job: JobRecord, payload: Dict[str, Any], now: datetime, cfg: Settings) -> Dict[str, Any]:
    reason = payload.get("reason")
    if reason is not None and not isinstance(reason, str):
        raise ValidationError("reason must be text")
    return {"cancelled_at": now, "cancel_reason": reason, "_metadata": {"reason": reason}}


_FIELD_BUILDERS: Dict[JobStatus, Callable[..., Dict[str, Any]]] = {
    JobStatus.arrived: _arrival_fields,
    JobStatus.working: _start_fields,
    JobStatus.completed: _completion_fields,
    JobStatus.confirmed: lambda job, payload, now, cfg: confirmation_fields(payload),
    JobStatus.paid: lambda job, payload, now, cfg: payment_fields(),
    JobStatus.cancelled: _cancel_fields,
}


def _stamp_time(job: JobRecord, target: JobStatus, now: datetime) -> Optional[datetime]:
    """Clamp so a stamp never precedes the previous stage's stamp."""
    if target not in _STAMPS:
        return None
    _, previous_field = _STAMPS[target]
    previous = as_naive_utc(getattr(job, previous_field)) if previous_field else None
    if previous is not None and now < previous:
        return previous
    return now


def _load_job(db: Session, job_record_id, lock: bool = False) -> JobRecord:
    query = db.query(JobRecord).filter(JobRecord.id == job_record_id)
    if lock:
        query = query.with_for_update().populate_existing()
    job = query.first()
    if not job:
        raise NotFound("Job record not found")
    return job


def _counterparty(job: JobRecord, role: UserType) -> Principal:
    if role is UserType.worker:
        return Principal(job.company_id, UserType.company)
    return Principal(job.worker_id, UserType.worker)


def _notify_transition(db: Session, job: JobRecord, actor: Principal, role: UserType, target: JobStatus, metadata: Dict[str, Any]) -> None:
    kind, title, template = _EVENTS[target]
    text = template.format(
        worker=job.worker.name if job.worker else "工人",
        company=job.company.name if job.company else "企业",
        project=job.project.project_name if job.project else "",
        actor="工人" if role is UserType.worker else "企业",
    )
    metadata = dict(metadata)
    metadata.update(status=target.value, wage=wage.to_display(job.original_wage, job.wage_unit, job.payment_type))
    notify(
        db,
        recipient=_counterparty(job, role),
        sender=actor,
        type=kind,
        title=title,
        message=text,
        refs={"project_id": job.project_id, "invitation_id": job.invitation_id, "job_record_id": job.id},
        metadata=metadata,
        event_key=f"{kind.value}:{job.id}",
    )


def open_job_record(db: Session, invitation: Invitation, now: datetime) -> JobRecord:
    """
    Create the JobRecord for an invitation being accepted, in the caller's
    transaction. The unique invitation_id constraint rejects a second one.
    """
    terms = wage.normalize(invitation.original_wage, invitation.payment_type)
    job = JobRecord(
        invitation_id=invitation.id,
        project_id=invitation.project_id,
        worker_id=invitation.worker_id,
        company_id=invitation.company_id,
        status=JobStatus.accepted.value,
        payment_type=terms.payment_type.value,
        wage_amount=terms.daily_wage,
        original_wage=terms.original_wage,
        wage_unit=terms.wage_unit.value,
        payment_status=PaymentStatus.pending.value,
        created_at=now,
    )
    db.add(job)
    try:
        db.flush()
    except IntegrityError as exc:
        raise AlreadyResponded("A job record already exists for this invitation") from exc
    return job


def transition(
    db: Session,
    job_record_id: uuid.UUID,
    actor: Principal,
    target_state: Union[str, JobStatus],
    payload: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    cfg: Optional[Settings] = None,
) -> JobRecord:
    """
    Move a job record to ``target_state`` on behalf of ``actor``.

    Raises NotFound, Forbidden (not a party, or wrong role for the step),
    InvalidTransition (unknown target, not reachable, or lost a race) and
    ValidationError (bad payload). On success the counterparty gets exactly
    one notification, committed with the state change.
    """
    cfg = cfg or default_settings
    payload = payload or {}
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object")

    with atomic(db):
        job = _load_job(db, job_record_id, lock=True)
        role = _party_role(job, actor)
        target = _parse_target(target_state)
        current = JobStatus(job.status)
        if target not in TRANSITIONS.get(current, set()):
            raise InvalidTransition(f"Cannot move a job from {current.value} to {target.value}")
        _authorize(role, current, target)

        now = as_naive_utc(now) or utc_now()
        stamp = _stamp_time(job, target, now)
        at = stamp or now
        values = _FIELD_BUILDERS[target](job, payload, at, cfg)
        metadata = values.pop("_metadata", {})
        if target in _STAMPS:
            values[_STAMPS[target][0]] = stamp
        if target is JobStatus.cancelled:
            values["cancelled_by_type"] = role.value
        values["status"] = target.value
        values["updated_at"] = at

        rows = (
            db.query(JobRecord)
            .filter(JobRecord.id == job.id, JobRecord.status == current.value)
            .update(values, synchronize_session=False)
        )
        if rows == 0:
            raise InvalidTransition("Job record changed concurrently; reload and retry")
        db.refresh(job)

        _notify_transition(db, job, actor, role, target, metadata)

    logger.info(
        "job_transitioned",
        job_record_id=str(job.id),
        from_status=current.value,
        to_status=target.value,
        actor_id=str(actor.user_id),
        actor_type=actor.user_type.value,
    )
    return job


def get_job(db: Session, job_record_id, viewer: Principal) -> JobRecord:
    job = _load_job(db, job_record_id)
    _party_role(job, viewer)
    return job


def list_jobs(db: Session, viewer: Principal, status: Optional[str] = None) -> List[JobRecord]:
    if viewer.is_worker:
        query = db.query(JobRecord).filter(JobRecord.worker_id == viewer.user_id)
    else:
        query = db.query(JobRecord).filter(JobRecord.company_id == viewer.user_id)
    if status:
        statuses = [s.strip() for s in status.split(",") if s.strip()]
        query = query.filter(or_(*[JobRecord.status == s for s in statuses]))
    return query.order_by(JobRecord.created_at.desc()).all()


def serialize_job(job: JobRecord) -> Dict[str, Any]:
    location = None
    if job.arrival_latitude is not None and job.arrival_longitude is not None:
        location = {
            "latitude": job.arrival_latitude,
            "longitude": job.arrival_longitude,
            "accuracy": job.arrival_accuracy_m,
            "distance_m": job.arrival_distance_m,
        }
    return {
        "id": job.id,
        "invitation_id": job.invitation_id,
        "project_id": job.project_id,
        "worker_id": job.worker_id,
        "company_id": job.company_id,
        "status": job.status,
        "wage": wage.wage_view(wage.terms_of(job)),
        "arrival_time": job.arrival_time,
        "arrival_location": location,
        "start_work_time": job.start_work_time,
        "complete_time": job.complete_time,
        "actual_hours": job.actual_hours,
        "completion_notes": job.completion_notes,
        "work_photo_refs": job.work_photo_refs or [],
        "confirm_time": job.confirm_time,
        "confirmation_notes": job.confirmation_notes,
        "quality_rating": job.quality_rating,
        "payment_status": job.payment_status,
        "paid_at": job.paid_at,
        "cancelled_at": job.cancelled_at,
        "cancelled_by_type": job.cancelled_by_type,
        "cancel_reason": job.cancel_reason,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
    }
