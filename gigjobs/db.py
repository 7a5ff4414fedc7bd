from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.exc import DisconnectionError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import Settings, settings as default_settings
from .errors import Unavailable


Base = declarative_base()


class Database:
    """Engine plus session factory. Built once per app and passed around explicitly."""

    def __init__(self, url: str, cfg: Optional[Settings] = None):
        cfg = cfg or default_settings
        kwargs = dict(future=True, pool_pre_ping=True, pool_recycle=3600)
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
        else:
            kwargs.update(
                pool_size=cfg.db_pool_size,
                max_overflow=cfg.db_max_overflow,
                pool_timeout=cfg.db_pool_timeout,
            )
        self.url = url
        self.engine = create_engine(url, **kwargs)
        # Fresh Session per request; never a scoped_session
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, future=True)

    def session(self) -> Session:
        return self.SessionLocal()

    def dispose(self) -> None:
        self.engine.dispose()


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """
    Run one state-changing operation as a single transaction.

    Commits when the block exits cleanly and rolls back on any exception,
    including cancellation. Connectivity failures surface as ``Unavailable``.
    """
    try:
        yield db
        db.commit()
    except (OperationalError, DisconnectionError, PoolTimeoutError) as exc:
        db.rollback()
        raise Unavailable() from exc
    except BaseException:
        db.rollback()
        raise
