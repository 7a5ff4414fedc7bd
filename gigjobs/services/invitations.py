"""
Invitation manager.

An invitation is a company's offer to one worker for one project, carrying a
snapshot of the wage terms at the time it was sent. The worker's response is
the only way a JobRecord comes into existence.
"""
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import Settings, settings as default_settings
from ..db import atomic
from ..errors import (
    AlreadyResponded,
    DuplicateInvitation,
    Expired,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from ..models.models import Invitation, JobRecord, Worker, as_naive_utc, utc_now
from ..schemas.marketplace import (
    Decision,
    InvitationStatus,
    NotificationType,
    PaymentType,
    Principal,
    UserType,
)
from . import wage
from .job_lifecycle import open_job_record
from .notifications import notify
from .projects import get_owned_project

logger = structlog.get_logger(__name__)


def _company(invitation: Invitation) -> Principal:
    return Principal(invitation.company_id, UserType.company)


def _worker(invitation: Invitation) -> Principal:
    return Principal(invitation.worker_id, UserType.worker)


def _refs(invitation: Invitation, job: Optional[JobRecord] = None) -> Dict[str, Any]:
    return {
        "project_id": invitation.project_id,
        "invitation_id": invitation.id,
        "job_record_id": job.id if job else None,
    }


def _names(invitation: Invitation) -> Dict[str, str]:
    return {
        "project": invitation.project.project_name if invitation.project else "",
        "company": invitation.company.name if invitation.company else "企业",
        "worker": invitation.worker.name if invitation.worker else "工人",
        "wage": wage.to_display(invitation.original_wage, invitation.wage_unit, invitation.payment_type),
    }


def _offer_terms(project, amount, payment_type) -> wage.WageTerms:
    if amount is None and payment_type is None:
        return wage.terms_of(project)
    if amount is None or payment_type is None:
        raise ValidationError("An explicit wage offer needs both amount and payment_type")
    return wage.normalize(amount, payment_type)


def _expiry(expires_at: Optional[datetime], now: datetime, cfg: Settings) -> datetime:
    expires_at = as_naive_utc(expires_at)
    if expires_at is None:
        return now + timedelta(hours=cfg.invitation_ttl_hours)
    if expires_at <= now:
        raise ValidationError("expires_at must be in the future")
    return expires_at


def _is_expired(invitation: Invitation, now: datetime) -> bool:
    expires_at = as_naive_utc(invitation.expires_at)
    return expires_at is not None and expires_at < now


def _has_pending(db: Session, project_id, worker_id) -> bool:
    return (
        db.query(Invitation.id)
        .filter(
            Invitation.project_id == project_id,
            Invitation.worker_id == worker_id,
            Invitation.status == InvitationStatus.pending.value,
        )
        .first()
        is not None
    )


def _flip(db: Session, invitation: Invitation, status: InvitationStatus, values: Dict[str, Any]) -> bool:
    """Guarded pending -> ``status``; False when someone else got there first."""
    values = dict(values, status=status.value)
    rows = (
        db.query(Invitation)
        .filter(Invitation.id == invitation.id, Invitation.status == InvitationStatus.pending.value)
        .update(values, synchronize_session=False)
    )
    if rows:
        db.refresh(invitation)
    return bool(rows)


def _expire(db: Session, invitation: Invitation, now: datetime) -> bool:
    if not _flip(db, invitation, InvitationStatus.expired, {"updated_at": now}):
        return False
    names = _names(invitation)
    notify(
        db,
        recipient=_company(invitation),
        sender=None,
        type=NotificationType.invitation_expired,
        title="邀请已过期",
        message=f"您发给 {names['worker']} 的项目「{names['project']}」邀请已过期",
        refs=_refs(invitation),
        metadata={"expires_at": invitation.expires_at.isoformat() if invitation.expires_at else None},
        event_key=f"{NotificationType.invitation_expired.value}:{invitation.id}",
    )
    return True


def _load(db: Session, invitation_id, lock: bool = False) -> Invitation:
    query = db.query(Invitation).filter(Invitation.id == invitation_id)
    if lock:
        query = query.with_for_update().populate_existing()
    invitation = query.first()
    if not invitation:
        raise NotFound("Invitation not found")
    return invitation


def create_invitation(
    db: Session,
    project_id: uuid.UUID,
    worker_id: uuid.UUID,
    company_id: uuid.UUID,
    amount: Optional[float] = None,
    payment_type: Optional[Union[str, PaymentType]] = None,
    message: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    cfg: Optional[Settings] = None,
) -> Invitation:
    """
    Send a pending invitation and notify the worker.

    Wage terms default to the project's current terms. Raises NotFound,
    Forbidden, DuplicateInvitation or ValidationError.
    """
    cfg = cfg or default_settings
    now = as_naive_utc(now) or utc_now()

    with atomic(db):
        project = get_owned_project(db, project_id, company_id)
        worker = db.query(Worker).filter(Worker.id == worker_id).first()
        if not worker or not worker.is_active:
            raise NotFound("Worker not found")
        terms = _offer_terms(project, amount, payment_type)
        expiry = _expiry(expires_at, now, cfg)

        if _has_pending(db, project_id, worker_id):
            raise DuplicateInvitation()

        invitation = Invitation(
            project_id=project_id,
            company_id=company_id,
            worker_id=worker_id,
            status=InvitationStatus.pending.value,
            message=message,
            payment_type=terms.payment_type.value,
            wage_amount=terms.daily_wage,
            original_wage=terms.original_wage,
            wage_unit=terms.wage_unit.value,
            expires_at=expiry,
            created_at=now,
        )
        db.add(invitation)
        try:
            db.flush()
        except IntegrityError as exc:
            # Lost the race against a concurrent invite for the same pair
            raise DuplicateInvitation() from exc

        names = _names(invitation)
        notify(
            db,
            recipient=_worker(invitation),
            sender=_company(invitation),
            type=NotificationType.invitation_received,
            title="新的工作邀请",
            message=f"{names['company']} 邀请您参与项目「{names['project']}」，工资 {names['wage']}",
            refs=_refs(invitation),
            metadata={"wage": names["wage"], "expires_at": expiry.isoformat()},
            event_key=f"{NotificationType.invitation_received.value}:{invitation.id}",
        )

    logger.info(
        "invitation_created",
        invitation_id=str(invitation.id),
        project_id=str(project_id),
        worker_id=str(worker_id),
    )
    return invitation


def create_invitations(
    db: Session,
    project_id: uuid.UUID,
    worker_ids: List[uuid.UUID],
    company_id: uuid.UUID,
    amount: Optional[float] = None,
    payment_type: Optional[Union[str, PaymentType]] = None,
    message: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    cfg: Optional[Settings] = None,
) -> Tuple[List[Invitation], List[Dict[str, Any]]]:
    """
    Invite several workers to one project, one transaction per worker.

    Ownership, wage and expiry problems fail the whole batch up front; a
    duplicate or unknown worker is reported in the failures list.
    """
    cfg = cfg or default_settings
    now = as_naive_utc(now) or utc_now()
    project = get_owned_project(db, project_id, company_id)
    _offer_terms(project, amount, payment_type)
    _expiry(expires_at, now, cfg)

    created: List[Invitation] = []
    failures: List[Dict[str, Any]] = []
    seen = set()
    for worker_id in worker_ids:
        if worker_id in seen:
            continue
        seen.add(worker_id)
        try:
            created.append(
                create_invitation(
                    db,
                    project_id,
                    worker_id,
                    company_id,
                    amount=amount,
                    payment_type=payment_type,
                    message=message,
                    expires_at=expires_at,
                    now=now,
                    cfg=cfg,
                )
            )
        except (DuplicateInvitation, NotFound) as exc:
            failures.append({"worker_id": worker_id, "error": exc.code, "detail": exc.message})

    logger.info(
        "invitation_batch_created",
        project_id=str(project_id),
        created=len(created),
        failed=len(failures),
    )
    return created, failures


def respond_to_invitation(
    db: Session,
    invitation_id: uuid.UUID,
    worker_id: uuid.UUID,
    decision: Union[str, Decision],
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[Invitation, Optional[JobRecord]]:
    """
    Accept or reject a pending invitation.

    Accepting opens the JobRecord in the same transaction. An invitation past
    its expiry is moved to ``expired`` (and the company told) before
    ``Expired`` is raised.
    """
    try:
        decision = Decision(decision)
    except ValueError:
        raise ValidationError(f"Unknown decision: {decision!r}")
    now = as_naive_utc(now) or utc_now()

    job = None
    expired = False
    with atomic(db):
        invitation = _load(db, invitation_id, lock=True)
        if invitation.worker_id != worker_id:
            raise Forbidden("Invitation is addressed to another worker")
        if invitation.status == InvitationStatus.expired.value:
            raise Expired()
        if invitation.status != InvitationStatus.pending.value:
            raise AlreadyResponded()

        if _is_expired(invitation, now):
            _expire(db, invitation, now)
            expired = True
        else:
            target = InvitationStatus.accepted if decision is Decision.accept else InvitationStatus.rejected
            values = {"responded_at": now, "response_note": note, "updated_at": now}
            if not _flip(db, invitation, target, values):
                raise AlreadyResponded()

            if decision is Decision.accept:
                job = open_job_record(db, invitation, now)

            names = _names(invitation)
            if decision is Decision.accept:
                kind, title = NotificationType.invitation_accepted, "邀请已接受"
                text = f"{names['worker']} 已接受项目「{names['project']}」的邀请"
            else:
                kind, title = NotificationType.invitation_rejected, "邀请被拒绝"
                text = f"{names['worker']} 拒绝了项目「{names['project']}」的邀请"
            notify(
                db,
                recipient=_company(invitation),
                sender=_worker(invitation),
                type=kind,
                title=title,
                message=text,
                refs=_refs(invitation, job),
                metadata={"note": note, "wage": names["wage"]},
                event_key=f"{kind.value}:{invitation.id}",
            )

    if expired:
        logger.info("invitation_expired_on_response", invitation_id=str(invitation_id))
        raise Expired()

    logger.info(
        "invitation_responded",
        invitation_id=str(invitation_id),
        decision=decision.value,
        job_record_id=str(job.id) if job else None,
    )
    return invitation, job


def cancel_invitation(
    db: Session,
    invitation_id: uuid.UUID,
    company_id: uuid.UUID,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Invitation:
    now = as_naive_utc(now) or utc_now()
    with atomic(db):
        invitation = _load(db, invitation_id, lock=True)
        if invitation.company_id != company_id:
            raise Forbidden("Invitation belongs to another company")
        values = {"cancelled_at": now, "cancel_reason": reason, "updated_at": now}
        if invitation.status != InvitationStatus.pending.value or not _flip(
            db, invitation, InvitationStatus.cancelled, values
        ):
            raise InvalidTransition("Only a pending invitation can be cancelled")

        names = _names(invitation)
        notify(
            db,
            recipient=_worker(invitation),
            sender=_company(invitation),
            type=NotificationType.invitation_cancelled,
            title="邀请已取消",
            message=f"{names['company']} 取消了项目「{names['project']}」的邀请",
            refs=_refs(invitation),
            metadata={"reason": reason},
            event_key=f"{NotificationType.invitation_cancelled.value}:{invitation.id}",
        )

    logger.info("invitation_cancelled", invitation_id=str(invitation_id))
    return invitation


def expire_stale(db: Session, now: Optional[datetime] = None) -> int:
    """
    Move every pending invitation past its expiry to ``expired``.

    Rows locked by a concurrent sweep are skipped, and the guarded update
    makes a second pass over the same row a no-op. Returns the number of
    invitations this call expired.
    """
    now = as_naive_utc(now) or utc_now()
    count = 0
    with atomic(db):
        stale = (
            db.query(Invitation)
            .filter(
                Invitation.status == InvitationStatus.pending.value,
                Invitation.expires_at.isnot(None),
                Invitation.expires_at < now,
            )
            .with_for_update(skip_locked=True)
            .all()
        )
        for invitation in stale:
            if _expire(db, invitation, now):
                count += 1

    if count:
        logger.info("invitations_expired", count=count)
    return count


def get_invitation(db: Session, invitation_id, viewer: Principal) -> Invitation:
    invitation = _load(db, invitation_id)
    if viewer.is_worker and invitation.worker_id == viewer.user_id:
        return invitation
    if viewer.is_company and invitation.company_id == viewer.user_id:
        return invitation
    raise Forbidden("Not a party to this invitation")


def list_invitations(
    db: Session,
    viewer: Principal,
    status: Optional[str] = None,
    project_id: Optional[uuid.UUID] = None,
) -> List[Invitation]:
    if viewer.is_worker:
        query = db.query(Invitation).filter(Invitation.worker_id == viewer.user_id)
    else:
        query = db.query(Invitation).filter(Invitation.company_id == viewer.user_id)
    if status:
        statuses = [s.strip() for s in status.split(",") if s.strip()]
        query = query.filter(or_(*[Invitation.status == s for s in statuses]))
    if project_id:
        query = query.filter(Invitation.project_id == project_id)
    return query.order_by(Invitation.created_at.desc()).all()


def serialize_invitation(invitation: Invitation) -> Dict[str, Any]:
    return {
        "id": invitation.id,
        "project_id": invitation.project_id,
        "company_id": invitation.company_id,
        "worker_id": invitation.worker_id,
        "status": invitation.status,
        "message": invitation.message,
        "wage": wage.wage_view(wage.terms_of(invitation)),
        "expires_at": invitation.expires_at,
        "responded_at": invitation.responded_at,
        "response_note": invitation.response_note,
        "cancelled_at": invitation.cancelled_at,
        "cancel_reason": invitation.cancel_reason,
        "created_at": invitation.created_at,
        "job_record_id": invitation.job_record.id if invitation.job_record else None,
    }
