"""
Tests for the invitation manager: creation, responses, expiry and cancellation.
"""
from datetime import datetime, timedelta

import pytest

from gigjobs.errors import (
    AlreadyResponded,
    DuplicateInvitation,
    Expired,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from gigjobs.models.models import Invitation, JobRecord, Notification
from gigjobs.schemas.marketplace import (
    InvitationStatus,
    JobStatus,
    NotificationType,
    PaymentType,
)
from gigjobs.services import invitations as invitation_service
from gigjobs.services import projects as project_service

T0 = datetime(2024, 6, 1, 8, 0, 0)


def _notifications(db, principal, type=None):
    query = db.query(Notification).filter(Notification.user_id == principal.user_id)
    if type:
        query = query.filter(Notification.type == type.value)
    return query.all()


class TestCreateInvitation:
    def test_snapshots_project_wage_and_notifies_worker(self, db, company, worker, make_project):
        project = make_project(amount=50, payment_type=PaymentType.hourly)
        invitation = invitation_service.create_invitation(
            db, project.id, worker.user_id, company.user_id, message="明早八点到", now=T0
        )

        assert invitation.status == InvitationStatus.pending.value
        assert invitation.original_wage == 50
        assert invitation.wage_amount == 400
        assert invitation.wage_unit == "hour"
        assert invitation.expires_at == T0 + timedelta(hours=72)

        received = _notifications(db, worker, NotificationType.invitation_received)
        assert len(received) == 1
        assert received[0].invitation_id == invitation.id
        assert "50元/小时" in received[0].message
        assert _notifications(db, company) == []

    def test_explicit_offer_overrides_project_terms(self, db, company, worker, make_project):
        project = make_project(amount=400, payment_type=PaymentType.daily)
        invitation = invitation_service.create_invitation(
            db, project.id, worker.user_id, company.user_id, amount=5000, payment_type="fixed", now=T0
        )
        assert invitation.payment_type == "fixed"
        assert invitation.wage_unit == "total"
        assert invitation.wage_amount == 5000

    def test_snapshot_survives_project_wage_change(self, db, company, worker, make_project):
        project = make_project(amount=50, payment_type=PaymentType.hourly)
        invitation = invitation_service.create_invitation(db, project.id, worker.user_id, company.user_id, now=T0)

        project_service.update_wage_terms(db, project.id, company.user_id, 450, PaymentType.daily)
        db.commit()
        db.refresh(invitation)

        assert invitation.original_wage == 50
        assert invitation.wage_unit == "hour"

    def test_duplicate_pending_invitation(self, db, company, worker, make_project):
        project = make_project()
        invitation_service.create_invitation(db, project.id, worker.user_id, company.user_id, now=T0)
        with pytest.raises(DuplicateInvitation):
            invitation_service.create_invitation(db, project.id, worker.user_id, company.user_id, now=T0)
        assert db.query(Invitation).count() == 1

    def test_reinvite_after_rejection(self, db, company, worker, make_project):
        project = make_project()
        first = invitation_service.create_invitation(db, project.id, worker.user_id, company.user_id, now=T0)
        invitation_service.respond_to_invitation(db, first.id, worker.user_id, "reject", now=T0)
        second = invitation_service.create_invitation(db, project.id, worker.user_id, company.user_id, now=T0)
        assert second.id != first.id

    def test_other_companys_project(self, db, other_company, worker, make_project):
        project = make_project()
        with pytest.raises(Forbidden):
            invitation_service.create_invitation(db, project.id, worker.user_id, other_company.user_id, now=T0)

    def test_unknown_project_or_worker(self, db, company, worker, make_project, missing_id):
        project = make_project()
        with pytest.raises(NotFound):
            invitation_service.create_invitation(db, missing_id, worker.user_id, company.user_id, now=T0)
        with pytest.raises(NotFound):
            invitation_service.create_invitation(db, project.id, missing_id, company.user_id, now=T0)

    def test_past_expiry_rejected(self, db, company, worker, make_project):
        project = make_project()
        with pytest.raises(ValidationError):
            invitation_service.create_invitation(
                db, project.id, worker.user_id, company.user_id, expires_at=T0 - timedelta(minutes=1), now=T0
            )

    def test_half_specified_offer_rejected(self, db, company, worker, make_project):
        project = make_project()
        with pytest.raises(ValidationError):
            invitation_service.create_invitation(db, project.id, worker.user_id, company.user_id, amount=300, now=T0)


class TestBatch:
    def test_reports_failures_per_worker(self, db, company, worker, other_worker, make_project, missing_id):
        project = make_project()
        invitation_service.create_invitation(db, project.id, worker.user_id, company.user_id, now=T0)

        created, failures = invitation_service.create_invitations(
            db,
            project.id,
            [worker.user_id, other_worker.user_id, missing_id, other_worker.user_id],
            company.user_id,
            now=T0,
        )

        assert [i.worker_id for i in created] == [other_worker.user_id]
        assert {(f["worker_id"], f["error"]) for f in failures} == {
            (worker.user_id, "DuplicateInvitation"),
            (missing_id, "NotFound"),
        }

    def test_ownership_fails_whole_batch(self, db, other_company, worker, make_project):
        project = make_project()
        with pytest.raises(Forbidden):
            invitation_service.create_invitations(db, project.id, [worker.user_id], other_company.user_id, now=T0)
        assert db.query(Invitation).count() == 0


class TestRespond:
    @pytest.fixture
    def invitation(self, db, company, worker, make_project):
        project = make_project(amount=50, payment_type=PaymentType.hourly)
        return invitation_service.create_invitation(db, project.id, worker.user_id, company.user_id, now=T0)

    def test_accept_opens_job_record(self, db, company, worker, invitation):
        accepted_at = T0 + timedelta(hours=1)
        updated, job = invitation_service.respond_to_invitation(
            db, invitation.id, worker.user_id, "accept", note="没问题", now=accepted_at
        )

        assert updated.status == InvitationStatus.accepted.value
        assert updated.responded_at == accepted_at
        assert updated.response_note == "没问题"
        assert job.status == JobStatus.accepted.value
        assert job.invitation_id == invitation.id
        assert job.original_wage == 50
        assert job.wage_amount == 400
        assert job.payment_status == "pending"

        accepted = _notifications(db, company, NotificationType.invitation_accepted)
        assert len(accepted) == 1
        assert accepted[0].job_record_id == job.id
        assert accepted[0].sender_id == worker.user_id

    def test_reject_creates_no_job(self, db, company, worker, invitation):
        updated, job = invitation_service.respond_to_invitation(db, invitation.id, worker.user_id, "reject", now=T0)
        assert updated.status == InvitationStatus.rejected.value
        assert job is None
        assert db.query(JobRecord).count() == 0
        assert len(_notifications(db, company, NotificationType.invitation_rejected)) == 1

    def test_second_response_is_already_responded(self, db, worker, invitation):
        invitation_service.respond_to_invitation(db, invitation.id, worker.user_id, "accept", now=T0)
        with pytest.raises(AlreadyResponded):
            invitation_service.respond_to_invitation(db, invitation.id, worker.user_id, "reject", now=T0)
        with pytest.raises(InvalidTransition):
            invitation_service.respond_to_invitation(db, invitation.id, worker.user_id, "accept", now=T0)
        assert db.query(JobRecord).count() == 1

    def test_only_the_invited_worker(self, db, other_worker, invitation):
        with pytest.raises(Forbidden):
            invitation_service.respond_to_invitation(db, invitation.id, other_worker.user_id, "accept", now=T0)

    def test_unknown_invitation(self, db, worker, missing_id):
        with pytest.raises(NotFound):
            invitation_service.respond_to_invitation(db, missing_id, worker.user_id, "accept", now=T0)

    def test_unknown_decision(self, db, worker, invitation):
        with pytest.raises(ValidationError):
            invitation_service.respond_to_invitation(db, invitation.id, worker.user_id, "maybe", now=T0)

    def test_late_response_expires_invitation(self, db, company, worker, invitation):
        with pytest.raises(Expired):
            invitation_service.respond_to_invitation(
                db, invitation.id, worker.user_id, "accept", now=T0 + timedelta(hours=73)
            )

        db.expire_all()
        stored = db.query(Invitation).filter(Invitation.id == invitation.id).one()
        assert stored.status == InvitationStatus.expired.value
        assert db.query(JobRecord).count() == 0
        assert len(_notifications(db, company, NotificationType.invitation_expired)) == 1

    def test_concurrent_double_accept_opens_one_job(self, database, db, worker, invitation):
        """Two sessions that both saw the invitation pending: only one acceptance lands."""
        first = database.session()
        second = database.session()
        try:
            assert first.get(Invitation, invitation.id).status == "pending"
            assert second.get(Invitation, invitation.id).status == "pending"

            invitation_service.respond_to_invitation(first, invitation.id, worker.user_id, "accept", now=T0)
            with pytest.raises(AlreadyResponded):
                invitation_service.respond_to_invitation(second, invitation.id, worker.user_id, "accept", now=T0)
        finally:
            first.close()
            second.close()

        assert db.query(JobRecord).filter(JobRecord.invitation_id == invitation.id).count() == 1

    def test_job_record_is_unique_per_invitation(self, db, worker, invitation):
        from gigjobs.services.job_lifecycle import open_job_record

        invitation_service.respond_to_invitation(db, invitation.id, worker.user_id, "accept", now=T0)
        with pytest.raises(AlreadyResponded):
            open_job_record(db, invitation, T0)
        db.rollback()
        assert db.query(JobRecord).count() == 1


class TestCancel:
    def test_company_withdraws_pending_offer(self, db, company, worker, make_project):
        project = make_project()
        invitation = invitation_service.create_invitation(db, project.id, worker.user_id, company.user_id, now=T0)
        cancelled = invitation_service.cancel_invitation(db, invitation.id, company.user_id, reason="人员已满", now=T0)

        assert cancelled.status == InvitationStatus.cancelled.value
        assert cancelled.cancel_reason == "人员已满"
        assert len(_notifications(db, worker, NotificationType.invitation_cancelled)) == 1

        with pytest.raises(InvalidTransition):
            invitation_service.cancel_invitation(db, invitation.id, company.user_id, now=T0)

    def test_other_company_cannot_cancel(self, db, company, other_company, worker, make_project):
        project = make_project()
        invitation = invitation_service.create_invitation(db, project.id, worker.user_id, company.user_id, now=T0)
        with pytest.raises(Forbidden):
            invitation_service.cancel_invitation(db, invitation.id, other_company.user_id, now=T0)


class TestExpireStale:
    def test_sweep_is_idempotent(self, db, company, worker, other_worker, make_project):
        project = make_project()
        stale = invitation_service.create_invitation(db, project.id, worker.user_id, company.user_id, now=T0)
        fresh = invitation_service.create_invitation(
            db, project.id, other_worker.user_id, company.user_id, expires_at=T0 + timedelta(days=30), now=T0
        )

        later = T0 + timedelta(hours=100)
        assert invitation_service.expire_stale(db, now=later) == 1
        assert invitation_service.expire_stale(db, now=later) == 0

        db.expire_all()
        assert db.get(Invitation, stale.id).status == InvitationStatus.expired.value
        assert db.get(Invitation, fresh.id).status == InvitationStatus.pending.value
        assert len(_notifications(db, company, NotificationType.invitation_expired)) == 1

    def test_swept_invitation_cannot_be_answered(self, db, company, worker, make_project):
        project = make_project()
        invitation = invitation_service.create_invitation(db, project.id, worker.user_id, company.user_id, now=T0)
        later = T0 + timedelta(hours=100)
        assert invitation_service.expire_stale(db, now=later) == 1

        for decision in ("accept", "reject"):
            with pytest.raises(Expired):
                invitation_service.respond_to_invitation(db, invitation.id, worker.user_id, decision, now=later)

        assert db.query(JobRecord).count() == 0
        assert len(_notifications(db, company, NotificationType.invitation_expired)) == 1

    def test_sweep_ignores_answered_invitations(self, db, company, worker, make_project):
        project = make_project()
        invitation = invitation_service.create_invitation(db, project.id, worker.user_id, company.user_id, now=T0)
        invitation_service.respond_to_invitation(db, invitation.id, worker.user_id, "reject", now=T0)
        assert invitation_service.expire_stale(db, now=T0 + timedelta(days=10)) == 0


class TestVisibility:
    def test_get_and_list_for_each_party(self, db, company, other_company, worker, other_worker, make_project):
        project = make_project()
        invitation = invitation_service.create_invitation(db, project.id, worker.user_id, company.user_id, now=T0)

        assert invitation_service.get_invitation(db, invitation.id, worker).id == invitation.id
        assert invitation_service.get_invitation(db, invitation.id, company).id == invitation.id
        with pytest.raises(Forbidden):
            invitation_service.get_invitation(db, invitation.id, other_worker)
        with pytest.raises(Forbidden):
            invitation_service.get_invitation(db, invitation.id, other_company)

        assert [i.id for i in invitation_service.list_invitations(db, worker)] == [invitation.id]
        assert invitation_service.list_invitations(db, other_worker) == []
        assert invitation_service.list_invitations(db, company, status="accepted,rejected") == []
        assert len(invitation_service.list_invitations(db, company, project_id=project.id)) == 1
