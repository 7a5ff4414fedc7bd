import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..errors import Forbidden, NotFound, ValidationError
from ..models.models import Company, Project, as_naive_utc, utc_now
from ..schemas.marketplace import PaymentType
from . import wage

logger = structlog.get_logger(__name__)


def _apply_wage(project: Project, terms: wage.WageTerms) -> None:
    # The only place project wage columns are written
    project.payment_type = terms.payment_type.value
    project.original_wage = terms.original_wage
    project.daily_wage = terms.daily_wage
    project.wage_unit = terms.wage_unit.value


def get_project(db: Session, project_id: uuid.UUID) -> Project:
    project = db.query(Project).filter(Project.id == project_id).first()
    if not project:
        raise NotFound("Project not found")
    return project


def get_owned_project(db: Session, project_id: uuid.UUID, company_id: uuid.UUID) -> Project:
    project = get_project(db, project_id)
    if project.company_id != company_id:
        raise Forbidden("Project belongs to another company")
    return project


def create_project(
    db: Session,
    company_id: uuid.UUID,
    *,
    project_name: str,
    amount: float,
    payment_type: PaymentType,
    project_address: Optional[str] = None,
    required_workers: int = 1,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    site_latitude: Optional[float] = None,
    site_longitude: Optional[float] = None,
    geofence_radius_m: Optional[int] = None,
) -> Project:
    start_date, end_date = as_naive_utc(start_date), as_naive_utc(end_date)
    company = db.query(Company).filter(Company.id == company_id).first()
    if not company:
        raise NotFound("Company not found")
    if start_date and end_date and end_date < start_date:
        raise ValidationError("end_date is before start_date")
    if (site_latitude is None) != (site_longitude is None):
        raise ValidationError("Site latitude and longitude must be given together")

    project = Project(
        company_id=company_id,
        project_name=project_name.strip(),
        project_address=project_address,
        required_workers=required_workers,
        start_date=start_date,
        end_date=end_date,
        site_latitude=site_latitude,
        site_longitude=site_longitude,
        geofence_radius_m=geofence_radius_m,
    )
    _apply_wage(project, wage.normalize(amount, payment_type))
    db.add(project)
    db.flush()
    logger.info("project_created", project_id=str(project.id), company_id=str(company_id))
    return project


def update_wage_terms(
    db: Session,
    project_id: uuid.UUID,
    company_id: uuid.UUID,
    amount: float,
    payment_type: PaymentType,
) -> Project:
    """
    Change a project's wage. Outstanding invitations keep their snapshot;
    only invitations created afterwards see the new terms.
    """
    project = get_owned_project(db, project_id, company_id)
    before = wage.terms_of(project)
    _apply_wage(project, wage.normalize(amount, payment_type))
    project.updated_at = utc_now()
    db.flush()
    logger.info(
        "project_wage_updated",
        project_id=str(project.id),
        before=wage.to_display(before.original_wage, before.wage_unit, before.payment_type),
        after=wage.to_display(project.original_wage, project.wage_unit, project.payment_type),
    )
    return project


def list_projects(db: Session, company_id: uuid.UUID) -> List[Project]:
    return (
        db.query(Project)
        .filter(Project.company_id == company_id)
        .order_by(Project.created_at.desc())
        .all()
    )


def serialize_project(project: Project) -> Dict[str, Any]:
    return {
        "id": project.id,
        "company_id": project.company_id,
        "project_name": project.project_name,
        "project_address": project.project_address,
        "wage": wage.wage_view(wage.terms_of(project)),
        "required_workers": project.required_workers,
        "start_date": project.start_date,
        "end_date": project.end_date,
        "site_latitude": project.site_latitude,
        "site_longitude": project.site_longitude,
        "geofence_radius_m": project.geofence_radius_m,
        "created_at": project.created_at,
        "updated_at": project.updated_at,
    }
