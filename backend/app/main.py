"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.middleware import setup_cors_middleware, access_log_middleware
from app.core.otel import (
    initialize_otel, setup_otel_logging, instrument_fastapi, instrument_httpx, instrument_sqlalchemy
)
from app.db.session import engine, init_db
from app.db.redis import get_redis_client
from app.services.email_service import validate_email_config

from app.api import auth, webhooks, stripe_checkout, memberships, stripe_connect

setup_logging()
logger = logging.getLogger(__name__)


def _start_background_loops():
    from app.tasks.notification_worker import notification_worker_task
    from app.tasks.cleanup import cleanup_task
    from app.tasks.renewal_reminder import renewal_reminder_task

    return [
        asyncio.create_task(notification_worker_task()),
        asyncio.create_task(cleanup_task()),
        asyncio.create_task(renewal_reminder_task()),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    if initialize_otel():
        otel_logs = setup_otel_logging()
        logger.info(
            f"OpenTelemetry exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT} "
            f"(logs {'on' if otel_logs else 'off'})"
        )

    # Production schema is owned by alembic
    if settings.ENVIRONMENT != "production":
        init_db()

    # The outbox needs Redis; refuse to serve webhooks without it
    get_redis_client().ping()

    email_ok, email_msg = validate_email_config()
    if not email_ok:
        logger.warning(f"Claim and reminder emails disabled: {email_msg}")

    instrument_sqlalchemy(engine)
    background = _start_background_loops()
    logger.info(f"Billing service started ({settings.ENVIRONMENT})")

    yield

    for task in background:
        task.cancel()


app = FastAPI(
    title="Marketplace Billing",
    description="Payment and subscription reconciliation for the creator marketplace",
    version="1.0.0",
    lifespan=lifespan
)

instrument_fastapi(app)
instrument_httpx()
setup_cors_middleware(app)
app.middleware("http")(access_log_middleware)

app.include_router(auth.router)
app.include_router(webhooks.router)
app.include_router(stripe_checkout.router)
app.include_router(memberships.router)
app.include_router(stripe_connect.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/metrics")
def metrics_endpoint():
    """Prometheus scrape endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health_check():
    return {"status": "healthy"}
