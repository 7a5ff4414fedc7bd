import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_principal, require_company
from ..db import atomic, get_db
from ..errors import NotFound
from ..models.models import Invitation
from ..schemas.marketplace import Principal, ProjectCreate, ProjectOut, WageTermsIn
from ..services import projects as project_service


router = APIRouter(prefix="/projects", tags=["projects"])


@router.post("", response_model=ProjectOut, status_code=201)
def create_project(
    payload: ProjectCreate,
    db: Session = Depends(get_db),
    company: Principal = Depends(require_company),
):
    with atomic(db):
        project = project_service.create_project(
            db,
            company.user_id,
            project_name=payload.project_name,
            amount=payload.wage.amount,
            payment_type=payload.wage.payment_type,
            project_address=payload.project_address,
            required_workers=payload.required_workers,
            start_date=payload.start_date,
            end_date=payload.end_date,
            site_latitude=payload.site_latitude,
            site_longitude=payload.site_longitude,
            geofence_radius_m=payload.geofence_radius_m,
        )
    return project_service.serialize_project(project)


@router.get("", response_model=list[ProjectOut])
def list_projects(db: Session = Depends(get_db), company: Principal = Depends(require_company)):
    return [project_service.serialize_project(p) for p in project_service.list_projects(db, company.user_id)]


@router.get("/{project_id}", response_model=ProjectOut)
def get_project(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    project = project_service.get_project(db, project_id)
    if principal.is_company:
        visible = project.company_id == principal.user_id
    else:
        # Workers see projects they have been invited to
        visible = (
            db.query(Invitation.id)
            .filter(Invitation.project_id == project.id, Invitation.worker_id == principal.user_id)
            .first()
            is not None
        )
    if not visible:
        raise NotFound("Project not found")
    return project_service.serialize_project(project)


@router.put("/{project_id}/wage", response_model=ProjectOut)
def update_wage(
    project_id: uuid.UUID,
    payload: WageTermsIn,
    db: Session = Depends(get_db),
    company: Principal = Depends(require_company),
):
    with atomic(db):
        project = project_service.update_wage_terms(
            db, project_id, company.user_id, payload.amount, payload.payment_type
        )
    return project_service.serialize_project(project)
