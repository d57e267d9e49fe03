import os

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy import inspect, text

from .config import settings
from .db import Base, engine
from .logging import RequestIdMiddleware, setup_logging
from .models import models  # noqa: F401  (registers tables on Base.metadata)
from .routes.jobs import router as jobs_router
from .routes.payments import router as payments_router
from .services.errors import JobWorkflowError
from .services.payment_collector import CollectorRegistry

logger = structlog.get_logger(__name__)

# Columns added after the first release; older databases get them on startup
LATE_JOB_COLUMNS = {
    "version": "INTEGER NOT NULL DEFAULT 1",
    "started_at": "TIMESTAMP",
    "payment_link_id": "VARCHAR(255)",
    "checkout_url": "TEXT",
    "payment_reference": "VARCHAR(255)",
}


def _add_missing_job_columns() -> None:
    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())
    for model in models.JOB_MODELS.values():
        table = model.__tablename__
        if table not in existing_tables:
            continue
        present = {c["name"] for c in inspector.get_columns(table)}
        missing = [c for c in LATE_JOB_COLUMNS if c not in present]
        if not missing:
            continue
        with engine.begin() as conn:
            for column in missing:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {LATE_JOB_COLUMNS[column]}"))
        logger.info("job_columns_added", table=table, columns=missing)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)
    app.state.collectors = CollectorRegistry()

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    @app.exception_handler(JobWorkflowError)
    async def _job_workflow_error(request: Request, exc: JobWorkflowError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log("job_request_rejected", path=request.url.path, code=exc.code, status=exc.status_code, detail=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Routers
    app.include_router(jobs_router)
    app.include_router(payments_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    @app.on_event("startup")
    def _startup():
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            _add_missing_job_columns()
        logger.info("startup_complete", environment=settings.environment)

    @app.on_event("shutdown")
    async def _shutdown():
        # Stop any poll loops still running for open collection sessions
        await app.state.collectors.shutdown()

    return app


app = create_app()
