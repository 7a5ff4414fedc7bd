"""
Company sign-off on completed work, and payment recording.

The field builders are used by the job state machine; ``confirm`` and
``mark_paid`` are the company-facing entry points.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..errors import ValidationError
from ..schemas.marketplace import JobStatus, PaymentStatus, Principal, UserType

MIN_RATING = 1
MAX_RATING = 5


def validate_rating(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError("quality_rating must be an integer from 1 to 5")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or not MIN_RATING <= value <= MAX_RATING:
        raise ValidationError("quality_rating must be an integer from 1 to 5")
    return value


def confirmation_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    notes = payload.get("notes", payload.get("confirmation_notes"))
    if notes is not None and not isinstance(notes, str):
        raise ValidationError("notes must be text")
    rating = validate_rating(payload.get("quality_rating"))
    return {
        "confirmation_notes": notes,
        "quality_rating": rating,
        "_metadata": {"quality_rating": rating},
    }


def payment_fields() -> Dict[str, Any]:
    return {"payment_status": PaymentStatus.paid.value}


def confirm(
    db: Session,
    job_record_id,
    company_id,
    notes: Optional[str] = None,
    quality_rating: Any = None,
    now: Optional[datetime] = None,
):
    from .job_lifecycle import transition

    return transition(
        db,
        job_record_id,
        Principal(company_id, UserType.company),
        JobStatus.confirmed,
        {"notes": notes, "quality_rating": quality_rating},
        now=now,
    )


def mark_paid(db: Session, job_record_id, company_id, now: Optional[datetime] = None):
    from .job_lifecycle import transition

    return transition(db, job_record_id, Principal(company_id, UserType.company), JobStatus.paid, now=now)
