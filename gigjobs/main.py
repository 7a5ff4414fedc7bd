import asyncio
import os
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, settings as default_settings
from .db import Database
from .errors import LifecycleError, Unavailable
from .logging import setup_logging, RequestIdMiddleware
from .models.migrations import run_migrations
from .routes.invitations import router as invitations_router
from .routes.jobs import router as jobs_router
from .routes.notifications import router as notifications_router
from .routes.projects import router as projects_router
from .services.invitations import expire_stale

logger = structlog.get_logger(__name__)

RETRY_AFTER_SECONDS = 5


def _sweep_once(database: Database) -> int:
    db = database.session()
    try:
        return expire_stale(db)
    finally:
        db.close()


async def _expiry_sweeper(database: Database, interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_in_threadpool(_sweep_once, database)
        except Unavailable:
            logger.warning("expiry_sweep_unavailable")
        except Exception:
            # Keep sweeping; the next tick retries whatever this one missed
            logger.exception("expiry_sweep_failed")


def _lifespan(cfg: Settings, database: Database):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("startup", app=cfg.app_name, environment=cfg.environment)
        if cfg.auto_migrate:
            applied = run_migrations(database.engine)
            logger.info("migrations_checked", applied=applied)
        sweeper = None
        if cfg.expiry_sweep_enabled:
            sweeper = asyncio.create_task(_expiry_sweeper(database, cfg.expiry_sweep_interval_seconds))
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                try:
                    await sweeper
                except asyncio.CancelledError:
                    pass
            database.dispose()
            logger.info("shutdown")

    return lifespan


async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    log = logger.warning if exc.retryable else logger.info
    log(
        "lifecycle_error",
        error=exc.code,
        status_code=exc.status_code,
        detail=exc.message,
        path=request.url.path,
        method=request.method,
    )
    headers = {"Retry-After": str(RETRY_AFTER_SECONDS)} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.code},
        headers=headers,
    )


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    cfg = settings or default_settings
    setup_logging(cfg.log_level)

    # Ensure local SQLite directory exists
    if cfg.database_url.startswith("sqlite:///./"):
        os.makedirs(os.path.dirname(cfg.database_url[len("sqlite:///"):]) or ".", exist_ok=True)
    database = database or Database(cfg.database_url, cfg)

    app = FastAPI(title=cfg.app_name, lifespan=_lifespan(cfg, database))
    app.state.settings = cfg
    app.state.database = database

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[cfg.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(LifecycleError, lifecycle_error_handler)

    # Routers
    app.include_router(projects_router)
    app.include_router(invitations_router)
    app.include_router(jobs_router)
    app.include_router(notifications_router)

    # Metrics
    if cfg.enable_metrics:
        Instrumentator().instrument(app).expose(app)

    @app.get("/healthz")
    def healthz():
        try:
            with database.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("healthz_datastore_unreachable")
            return JSONResponse(status_code=503, content={"status": "unavailable"})
        return {"status": "ok"}

    return app


app = create_app()
