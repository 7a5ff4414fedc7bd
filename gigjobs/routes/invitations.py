import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..auth.security import get_current_principal, require_company, require_worker
from ..db import get_db
from ..schemas.marketplace import (
    InvitationBatchCreate,
    InvitationBatchOut,
    InvitationCancel,
    InvitationCreate,
    InvitationOut,
    InvitationRespond,
    Principal,
)
from ..services import invitations as invitation_service


router = APIRouter(prefix="/invitations", tags=["invitations"])


def _offer(payload):
    if payload.wage is None:
        return {}
    return {"amount": payload.wage.amount, "payment_type": payload.wage.payment_type}


@router.post("", response_model=InvitationOut, status_code=201)
def create_invitation(
    payload: InvitationCreate,
    request: Request,
    db: Session = Depends(get_db),
    company: Principal = Depends(require_company),
):
    invitation = invitation_service.create_invitation(
        db,
        payload.project_id,
        payload.worker_id,
        company.user_id,
        message=payload.message,
        expires_at=payload.expires_at,
        cfg=request.app.state.settings,
        **_offer(payload),
    )
    return invitation_service.serialize_invitation(invitation)


@router.post("/batch", response_model=InvitationBatchOut, status_code=201)
def create_invitations(
    payload: InvitationBatchCreate,
    request: Request,
    db: Session = Depends(get_db),
    company: Principal = Depends(require_company),
):
    created, failures = invitation_service.create_invitations(
        db,
        payload.project_id,
        payload.worker_ids,
        company.user_id,
        message=payload.message,
        expires_at=payload.expires_at,
        cfg=request.app.state.settings,
        **_offer(payload),
    )
    return {
        "invitations": [invitation_service.serialize_invitation(i) for i in created],
        "errors": failures,
    }


@router.get("", response_model=list[InvitationOut])
def list_invitations(
    status: Optional[str] = None,
    project_id: Optional[uuid.UUID] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    rows = invitation_service.list_invitations(db, principal, status=status, project_id=project_id)
    return [invitation_service.serialize_invitation(i) for i in rows]


@router.get("/{invitation_id}", response_model=InvitationOut)
def get_invitation(
    invitation_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return invitation_service.serialize_invitation(invitation_service.get_invitation(db, invitation_id, principal))


@router.put("/{invitation_id}/respond", response_model=InvitationOut)
def respond(
    invitation_id: uuid.UUID,
    payload: InvitationRespond,
    db: Session = Depends(get_db),
    worker: Principal = Depends(require_worker),
):
    invitation, job = invitation_service.respond_to_invitation(
        db, invitation_id, worker.user_id, payload.decision, payload.note
    )
    out = invitation_service.serialize_invitation(invitation)
    if job is not None:
        out["job_record_id"] = job.id
    return out


@router.put("/{invitation_id}/cancel", response_model=InvitationOut)
def cancel(
    invitation_id: uuid.UUID,
    payload: InvitationCancel,
    db: Session = Depends(get_db),
    company: Principal = Depends(require_company),
):
    invitation = invitation_service.cancel_invitation(db, invitation_id, company.user_id, payload.reason)
    return invitation_service.serialize_invitation(invitation)
