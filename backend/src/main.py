import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI

from src.core.logging import setup_logging

setup_logging()

from src.api.exception_handlers import register_exception_handlers
from src.api.middleware.request_id import RequestIdMiddleware
from src.api.routes import files, health, orders, payments, webhooks
from src.audit.service import ensure_audit_partitions
from src.core.config import settings
from src.core.database import async_session_factory
from src.core.tasks import drain_background_tasks
from src.services.scheduler import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)

try:
    settings.validate_secrets()
except ValueError as e:
    logger.critical("Secret validation failed: %s", e)
    raise SystemExit(f"FATAL: {e}") from e


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    async with async_session_factory() as db:
        try:
            await ensure_audit_partitions(db)
        except Exception:
            logger.exception("Failed to ensure audit partitions at startup")
    start_scheduler()
    yield
    stop_scheduler()
    # Let in-flight webhook deliveries record their outcome
    await drain_background_tasks()


app = FastAPI(
    title="Invoicing API",
    version="1.0.0",
    lifespan=lifespan,
)

register_exception_handlers(app)
app.add_middleware(RequestIdMiddleware)

app.include_router(health.router, prefix="/api")
app.include_router(orders.router, prefix="/api")
app.include_router(payments.router, prefix="/api")
app.include_router(webhooks.router, prefix="/api")
app.include_router(files.router, prefix="/api")
