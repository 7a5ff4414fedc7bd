"""Pytest configuration and fixtures."""
import uuid
import pytest
from fastapi.testclient import TestClient

from gigjobs.auth.security import create_access_token
from gigjobs.config import Settings
from gigjobs.db import Database, atomic
from gigjobs.main import create_app
from gigjobs.models.migrations import run_migrations
from gigjobs.models.models import Company, Worker
from gigjobs.schemas.marketplace import PaymentType, Principal, UserType
from gigjobs.services import projects as project_service


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'gigjobs-test.db'}",
        auto_migrate=True,
        jwt_secret="test-only-secret",
        expiry_sweep_enabled=False,
        enable_metrics=False,
        rate_limit="10000/minute",
        invitation_ttl_hours=72,
    )


@pytest.fixture
def database(settings):
    database = Database(settings.database_url, settings)
    run_migrations(database.engine)
    yield database
    database.dispose()


@pytest.fixture
def db(database):
    session = database.session()
    yield session
    session.close()


@pytest.fixture
def client(settings, database):
    app = create_app(settings=settings, database=database)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def company(db):
    with atomic(db):
        row = Company(name="宏达建筑", contact_person="王经理", phone="13800000001")
        db.add(row)
    return Principal(row.id, UserType.company)


@pytest.fixture
def other_company(db):
    with atomic(db):
        row = Company(name="远景装修", phone="13800000002")
        db.add(row)
    return Principal(row.id, UserType.company)


@pytest.fixture
def worker(db):
    with atomic(db):
        row = Worker(name="张三", phone="13900000001")
        db.add(row)
    return Principal(row.id, UserType.worker)


@pytest.fixture
def other_worker(db):
    with atomic(db):
        row = Worker(name="李四", phone="13900000002")
        db.add(row)
    return Principal(row.id, UserType.worker)


@pytest.fixture
def make_project(db, company):
    def _make(amount=50, payment_type=PaymentType.hourly, owner=None, **extra):
        owner = owner or company
        with atomic(db):
            project = project_service.create_project(
                db,
                owner.user_id,
                project_name=extra.pop("project_name", "小区外墙粉刷"),
                amount=amount,
                payment_type=payment_type,
                **extra,
            )
        return project

    return _make


@pytest.fixture
def auth(settings):
    def _headers(principal: Principal) -> dict:
        token = create_access_token(principal.user_id, principal.user_type, cfg=settings)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def missing_id():
    return uuid.uuid4()
