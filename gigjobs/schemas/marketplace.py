"""
Shared vocabulary for every layer: status/unit enums used by the ORM columns
and the services, and the request/response contracts of the HTTP API.
"""
import enum
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, StrictInt


class UserType(str, enum.Enum):
    worker = "worker"
    company = "company"


@dataclass(frozen=True)
class Principal:
    """An authenticated party, or the addressee of a notification."""
    user_id: uuid.UUID
    user_type: UserType

    @property
    def is_worker(self) -> bool:
        return self.user_type is UserType.worker

    @property
    def is_company(self) -> bool:
        return self.user_type is UserType.company


class PaymentType(str, enum.Enum):
    hourly = "hourly"
    daily = "daily"
    fixed = "fixed"


class WageUnit(str, enum.Enum):
    hour = "hour"
    day = "day"
    total = "total"


class InvitationStatus(str, enum.Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    expired = "expired"
    cancelled = "cancelled"


class Decision(str, enum.Enum):
    accept = "accept"
    reject = "reject"


class JobStatus(str, enum.Enum):
    accepted = "accepted"
    arrived = "arrived"
    working = "working"
    completed = "completed"
    confirmed = "confirmed"
    paid = "paid"
    rejected = "rejected"
    cancelled = "cancelled"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    paid = "paid"


class NotificationType(str, enum.Enum):
    invitation_received = "invitation_received"
    invitation_accepted = "invitation_accepted"
    invitation_rejected = "invitation_rejected"
    invitation_expired = "invitation_expired"
    invitation_cancelled = "invitation_cancelled"
    job_arrived = "job_arrived"
    job_started = "job_started"
    job_completed = "job_completed"
    job_confirmed = "job_confirmed"
    job_paid = "job_paid"
    job_cancelled = "job_cancelled"


# Wage

class WageTermsIn(BaseModel):
    amount: float
    payment_type: PaymentType


class WageOut(BaseModel):
    amount: float
    unit: WageUnit
    payment_type: PaymentType
    daily_wage: float
    hourly_rate: Optional[float] = None  # null for fixed-price work
    display_string: str


# Projects

class ProjectCreate(BaseModel):
    project_name: str = Field(min_length=1, max_length=200)
    project_address: Optional[str] = None
    wage: WageTermsIn
    required_workers: int = Field(default=1, ge=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    site_latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    site_longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    geofence_radius_m: Optional[int] = Field(default=None, gt=0)


class ProjectOut(BaseModel):
    id: uuid.UUID
    company_id: uuid.UUID
    project_name: str
    project_address: Optional[str] = None
    wage: WageOut
    required_workers: int
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    site_latitude: Optional[float] = None
    site_longitude: Optional[float] = None
    geofence_radius_m: Optional[int] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


# Invitations

class InvitationCreate(BaseModel):
    project_id: uuid.UUID
    worker_id: uuid.UUID
    message: Optional[str] = None
    wage: Optional[WageTermsIn] = None  # defaults to the project's current terms
    expires_at: Optional[datetime] = None


class InvitationBatchCreate(BaseModel):
    project_id: uuid.UUID
    worker_ids: List[uuid.UUID] = Field(min_length=1)
    message: Optional[str] = None
    wage: Optional[WageTermsIn] = None
    expires_at: Optional[datetime] = None


class InvitationRespond(BaseModel):
    decision: Decision
    note: Optional[str] = None


class InvitationCancel(BaseModel):
    reason: Optional[str] = None


class InvitationOut(BaseModel):
    id: uuid.UUID
    project_id: uuid.UUID
    company_id: uuid.UUID
    worker_id: uuid.UUID
    status: InvitationStatus
    message: Optional[str] = None
    wage: WageOut
    expires_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    response_note: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    job_record_id: Optional[uuid.UUID] = None


class BatchFailure(BaseModel):
    worker_id: uuid.UUID
    error: str
    detail: str


class InvitationBatchOut(BaseModel):
    invitations: List[InvitationOut]
    errors: List[BatchFailure] = []


# Job records

class ArrivalLocation(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    distance_m: Optional[float] = None


class TransitionRequest(BaseModel):
    target_state: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class ConfirmRequest(BaseModel):
    notes: Optional[str] = None
    quality_rating: Optional[StrictInt] = Field(default=None, ge=1, le=5)


class JobRecordOut(BaseModel):
    id: uuid.UUID
    invitation_id: uuid.UUID
    project_id: uuid.UUID
    worker_id: uuid.UUID
    company_id: uuid.UUID
    status: JobStatus
    wage: WageOut
    arrival_time: Optional[datetime] = None
    arrival_location: Optional[ArrivalLocation] = None
    start_work_time: Optional[datetime] = None
    complete_time: Optional[datetime] = None
    actual_hours: Optional[float] = None
    completion_notes: Optional[str] = None
    work_photo_refs: List[str] = []
    confirm_time: Optional[datetime] = None
    confirmation_notes: Optional[str] = None
    quality_rating: Optional[int] = None
    payment_status: PaymentStatus
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by_type: Optional[UserType] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


# Notifications

class NotificationOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    user_type: UserType
    sender_id: Optional[uuid.UUID] = None
    sender_type: Optional[UserType] = None
    type: NotificationType
    title: str
    message: str
    project_id: Optional[uuid.UUID] = None
    invitation_id: Optional[uuid.UUID] = None
    job_record_id: Optional[uuid.UUID] = None
    is_read: bool
    read_at: Optional[datetime] = None
    metadata: Dict[str, Any] = {}
    created_at: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class NotificationPage(BaseModel):
    data: List[NotificationOut]
    pagination: Pagination
