"""
Forward-only schema migrations.

Each migration runs once, in version order, and is recorded in
``schema_migrations``. Running the whole list again is a no-op, so startup
and ``scripts/run_migrations.py`` can both call ``run_migrations`` freely.
"""
from typing import Callable, List, NamedTuple

import structlog
from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import Base
from ..errors import ValidationError
from ..services import wage
from . import models
from .models import SchemaMigration, utc_now

logger = structlog.get_logger(__name__)


class Migration(NamedTuple):
    version: int
    name: str
    apply: Callable[[Connection], None]


def _create_tables(conn: Connection) -> None:
    Base.metadata.create_all(bind=conn, checkfirst=True)


def _add_column_if_missing(conn: Connection, table: str, column: str, ddl_type: str) -> None:
    existing = {c["name"] for c in inspect(conn).get_columns(table)}
    if column not in existing:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}"))
        logger.info("migration_column_added", table=table, column=column)


def _project_site_columns(conn: Connection) -> None:
    # Databases created before on-site check-in had no site coordinates
    _add_column_if_missing(conn, "projects", "site_latitude", "NUMERIC(10, 7)")
    _add_column_if_missing(conn, "projects", "site_longitude", "NUMERIC(10, 7)")
    _add_column_if_missing(conn, "projects", "geofence_radius_m", "INTEGER")


def _backfill_canonical_wage(conn: Connection) -> None:
    """Recompute stored daily figures from the entered wage through the normalizer."""
    session = Session(bind=conn)
    fixed = 0
    for model, daily_attr in (
        (models.Project, "daily_wage"),
        (models.Invitation, "wage_amount"),
        (models.JobRecord, "wage_amount"),
    ):
        for row in session.query(model).all():
            try:
                terms = wage.normalize(row.original_wage, row.payment_type)
            except ValidationError:
                logger.warning("wage_backfill_skipped", table=model.__tablename__, row_id=str(row.id))
                continue
            current = getattr(row, daily_attr)
            if current is None or round(float(current), 2) != round(terms.daily_wage, 2) or row.wage_unit != terms.wage_unit.value:
                setattr(row, daily_attr, terms.daily_wage)
                row.wage_unit = terms.wage_unit.value
                fixed += 1
    session.flush()
    logger.info("wage_backfill_done", rows=fixed)


MIGRATIONS: List[Migration] = [
    Migration(1, "create_tables", _create_tables),
    Migration(2, "project_site_columns", _project_site_columns),
    Migration(3, "backfill_canonical_wage", _backfill_canonical_wage),
]


def applied_versions(engine: Engine) -> set:
    with engine.connect() as conn:
        if not inspect(conn).has_table(SchemaMigration.__tablename__):
            return set()
        return {row[0] for row in conn.execute(text("SELECT version FROM schema_migrations"))}


def run_migrations(engine: Engine) -> List[int]:
    """Apply pending migrations in order. Returns the versions applied by this call."""
    SchemaMigration.__table__.create(bind=engine, checkfirst=True)
    done = applied_versions(engine)
    applied = []
    for migration in sorted(MIGRATIONS, key=lambda m: m.version):
        if migration.version in done:
            continue
        try:
            with engine.begin() as conn:
                migration.apply(conn)
                conn.execute(
                    SchemaMigration.__table__.insert().values(
                        version=migration.version, name=migration.name, applied_at=utc_now()
                    )
                )
        except IntegrityError:
            # Another process recorded this version first; its work is committed
            logger.info("migration_already_applied", version=migration.version, name=migration.name)
            continue
        applied.append(migration.version)
        logger.info("migration_applied", version=migration.version, name=migration.name)
    return applied
