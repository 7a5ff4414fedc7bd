import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..auth.security import get_current_principal, require_company
from ..db import get_db
from ..schemas.marketplace import ConfirmRequest, JobRecordOut, Principal, TransitionRequest
from ..services import confirmation
from ..services import job_lifecycle


router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=list[JobRecordOut])
def list_jobs(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return [job_lifecycle.serialize_job(j) for j in job_lifecycle.list_jobs(db, principal, status=status)]


@router.get("/{job_record_id}", response_model=JobRecordOut)
def get_job(
    job_record_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return job_lifecycle.serialize_job(job_lifecycle.get_job(db, job_record_id, principal))


@router.put("/{job_record_id}/transition", response_model=JobRecordOut)
def transition(
    job_record_id: uuid.UUID,
    payload: TransitionRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    job = job_lifecycle.transition(
        db,
        job_record_id,
        principal,
        payload.target_state,
        payload.payload,
        cfg=request.app.state.settings,
    )
    return job_lifecycle.serialize_job(job)


@router.put("/{job_record_id}/confirm", response_model=JobRecordOut)
def confirm(
    job_record_id: uuid.UUID,
    payload: ConfirmRequest,
    db: Session = Depends(get_db),
    company: Principal = Depends(require_company),
):
    job = confirmation.confirm(db, job_record_id, company.user_id, payload.notes, payload.quality_rating)
    return job_lifecycle.serialize_job(job)


@router.put("/{job_record_id}/pay", response_model=JobRecordOut)
def pay(
    job_record_id: uuid.UUID,
    db: Session = Depends(get_db),
    company: Principal = Depends(require_company),
):
    return job_lifecycle.serialize_job(confirmation.mark_paid(db, job_record_id, company.user_id))
