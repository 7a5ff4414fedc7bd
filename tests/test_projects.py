"""
Tests for project wage terms and the arrival geofence check.
"""
from datetime import datetime

import pytest

from gigjobs.config import Settings
from gigjobs.errors import Forbidden, InvalidAmount, NotFound, ValidationError
from gigjobs.schemas.marketplace import PaymentType
from gigjobs.services import geofence
from gigjobs.services import projects as project_service


class TestProjects:
    def test_create_stores_both_wage_figures(self, make_project):
        project = make_project(amount=50, payment_type=PaymentType.hourly)
        assert project.original_wage == 50
        assert project.daily_wage == 400
        assert project.wage_unit == "hour"
        assert project.payment_type == "hourly"

    def test_update_wage_terms(self, db, company, make_project):
        project = make_project(amount=50, payment_type=PaymentType.hourly)
        updated = project_service.update_wage_terms(db, project.id, company.user_id, 5000, "fixed")
        db.commit()
        assert updated.daily_wage == 5000
        assert updated.wage_unit == "total"
        assert project_service.serialize_project(updated)["wage"]["hourly_rate"] is None

    def test_update_rejects_bad_amount(self, db, company, make_project):
        project = make_project()
        with pytest.raises(InvalidAmount):
            project_service.update_wage_terms(db, project.id, company.user_id, -10, "daily")

    def test_only_owner_updates(self, db, other_company, make_project, missing_id):
        project = make_project()
        with pytest.raises(Forbidden):
            project_service.update_wage_terms(db, project.id, other_company.user_id, 300, "daily")
        with pytest.raises(NotFound):
            project_service.update_wage_terms(db, missing_id, other_company.user_id, 300, "daily")

    def test_schedule_and_site_validation(self, make_project):
        with pytest.raises(ValidationError):
            make_project(start_date=datetime(2024, 6, 2), end_date=datetime(2024, 6, 1))
        with pytest.raises(ValidationError):
            make_project(site_latitude=31.2)

    def test_list_is_per_company(self, db, company, other_company, make_project):
        mine = make_project()
        make_project(owner=other_company)
        assert [p.id for p in project_service.list_projects(db, company.user_id)] == [mine.id]


class TestGeofence:
    def test_haversine_known_distance(self):
        # One degree of latitude is about 111.2 km
        assert geofence.haversine_distance(0, 0, 1, 0) == pytest.approx(111_195, rel=1e-3)

    def test_inside_radius(self, make_project):
        project = make_project(site_latitude=31.2304, site_longitude=121.4737, geofence_radius_m=500)
        check = geofence.check_arrival(project, 31.2320, 121.4737, accuracy_m=20)
        assert check.outside_geofence is False
        assert check.low_accuracy is False
        assert 150 < check.distance_m < 200

    def test_default_radius_and_accuracy_threshold(self, make_project):
        cfg = Settings(geo_radius_m_default=100, gps_accuracy_risk_m=50)
        project = make_project(site_latitude=31.2304, site_longitude=121.4737)
        check = geofence.check_arrival(project, 31.2320, 121.4737, accuracy_m=80, cfg=cfg)
        assert check.outside_geofence is True
        assert check.low_accuracy is True

    def test_project_without_site(self, make_project):
        check = geofence.check_arrival(make_project(), 31.0, 121.0)
        assert check.distance_m is None
        assert check.outside_geofence is None
