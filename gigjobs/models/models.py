import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Integer,
    Numeric,
    JSON,
    Text,
    Index,
    UniqueConstraint,
    CheckConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base
from ..schemas.marketplace import InvitationStatus, JobStatus, PaymentStatus


def utc_now() -> datetime:
    """Naive UTC; every timestamp column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def money():
    return Numeric(12, 2, asdecimal=False)


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    contact_person: Mapped[Optional[str]] = mapped_column(String(100))
    phone: Mapped[Optional[str]] = mapped_column(String(30), unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    projects = relationship("Project", back_populates="company")


class Worker(Base):
    __tablename__ = "workers"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(30), unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class Project(Base):
    """A company's posting. Wage columns are written only through services.projects."""
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = uuid_pk()
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    project_name: Mapped[str] = mapped_column(String(200), nullable=False)
    project_address: Mapped[Optional[str]] = mapped_column(String(500))
    payment_type: Mapped[str] = mapped_column(String(20), nullable=False)  # hourly|daily|fixed
    original_wage: Mapped[float] = mapped_column(money(), nullable=False)  # As entered, in wage_unit
    daily_wage: Mapped[float] = mapped_column(money(), nullable=False)  # Canonical 8-hour-day figure
    wage_unit: Mapped[str] = mapped_column(String(20), nullable=False)  # hour|day|total
    required_workers: Mapped[int] = mapped_column(Integer, default=1)
    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    site_latitude: Mapped[Optional[float]] = mapped_column(Numeric(10, 7, asdecimal=False))
    site_longitude: Mapped[Optional[float]] = mapped_column(Numeric(10, 7, asdecimal=False))
    geofence_radius_m: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    company = relationship("Company", back_populates="projects")


class Invitation(Base):
    """Offer from a company to a worker; wage terms are a snapshot taken at creation."""
    __tablename__ = "invitations"

    id: Mapped[uuid.UUID] = uuid_pk()
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    worker_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workers.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=InvitationStatus.pending.value)
    message: Mapped[Optional[str]] = mapped_column(Text)
    payment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    wage_amount: Mapped[float] = mapped_column(money(), nullable=False)  # Canonical daily
    original_wage: Mapped[float] = mapped_column(money(), nullable=False)
    wage_unit: Mapped[str] = mapped_column(String(20), nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    response_note: Mapped[Optional[str]] = mapped_column(Text)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    project = relationship("Project")
    company = relationship("Company")
    worker = relationship("Worker")
    job_record = relationship("JobRecord", back_populates="invitation", uselist=False)

    __table_args__ = (
        # At most one open offer per (project, worker)
        Index(
            "uq_invitations_pending_pair",
            "project_id",
            "worker_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("idx_invitations_status_expires", "status", "expires_at"),
    )


class JobRecord(Base):
    """Operational record of accepted work; advanced only by services.job_lifecycle."""
    __tablename__ = "job_records"

    id: Mapped[uuid.UUID] = uuid_pk()
    invitation_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("invitations.id", ondelete="RESTRICT"), nullable=False)
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False, index=True)
    worker_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workers.id", ondelete="RESTRICT"), nullable=False, index=True)
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JobStatus.accepted.value)
    payment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    wage_amount: Mapped[float] = mapped_column(money(), nullable=False)
    original_wage: Mapped[float] = mapped_column(money(), nullable=False)
    wage_unit: Mapped[str] = mapped_column(String(20), nullable=False)
    arrival_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    arrival_latitude: Mapped[Optional[float]] = mapped_column(Numeric(10, 7, asdecimal=False))
    arrival_longitude: Mapped[Optional[float]] = mapped_column(Numeric(10, 7, asdecimal=False))
    arrival_accuracy_m: Mapped[Optional[float]] = mapped_column(Numeric(10, 2, asdecimal=False))
    arrival_distance_m: Mapped[Optional[float]] = mapped_column(Numeric(12, 2, asdecimal=False))
    start_work_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    complete_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    actual_hours: Mapped[Optional[float]] = mapped_column(Numeric(6, 2, asdecimal=False))
    completion_notes: Mapped[Optional[str]] = mapped_column(Text)
    work_photo_refs: Mapped[Optional[list]] = mapped_column(JSON)  # Ordered blob-storage URLs
    confirm_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    confirmation_notes: Mapped[Optional[str]] = mapped_column(Text)
    quality_rating: Mapped[Optional[int]] = mapped_column(Integer)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.pending.value)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_by_type: Mapped[Optional[str]] = mapped_column(String(20))  # worker|company
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    invitation = relationship("Invitation", back_populates="job_record")
    project = relationship("Project")
    company = relationship("Company")
    worker = relationship("Worker")

    __table_args__ = (
        UniqueConstraint("invitation_id", name="uq_job_records_invitation"),
        CheckConstraint("quality_rating IS NULL OR (quality_rating BETWEEN 1 AND 5)", name="ck_job_records_rating"),
        Index("idx_job_records_worker_status", "worker_id", "status"),
        Index("idx_job_records_company_status", "company_id", "status"),
    )


class Notification(Base):
    """In-app notification; one row per recipient per lifecycle event"""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_type: Mapped[str] = mapped_column(String(20), nullable=False)  # worker|company
    sender_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    sender_type: Mapped[Optional[str]] = mapped_column(String(20))
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="SET NULL"))
    invitation_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("invitations.id", ondelete="SET NULL"))
    job_record_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("job_records.id", ondelete="SET NULL"))
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    # "metadata" is reserved on declarative classes
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON, default=dict)
    event_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index("idx_notifications_user_read", "user_id", "user_type", "is_read"),
        Index("idx_notifications_created", "created_at"),
    )


class SchemaMigration(Base):
    """Applied migrations, one row per version"""
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
