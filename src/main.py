"""Course enrollment FastAPI application."""
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from src.core.attachments.router import router as attachments_router
from src.core.config import settings
from src.core.database.session import async_session
from src.core.exceptions import AppException
from src.core.exceptions.handlers import (
    app_exception_handler,
    http_exception_handler,
    sqlalchemy_db_error_handler,
    validation_exception_handler,
)
from src.core.logging import configure_logging, get_logger
from src.core.notifications import LogNotifier
from src.integrations.paypal.client import PayPalGateway
from src.integrations.paypal.router import router as paypal_router
from src.modules.enrollments.expiration import ExpirationSweepWorker
from src.modules.enrollments.router import router as enrollments_router
from src.modules.payments.router import router as payments_router
from src.modules.vouchers.router import router as vouchers_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    configure_logging(settings)
    app.state.notifier = LogNotifier()
    app.state.gateway = PayPalGateway.from_settings(settings)

    sweeper = ExpirationSweepWorker(async_session, notifier=app.state.notifier)
    if settings.expiration_sweep_enabled:
        await sweeper.start(settings.expiration_sweep_interval_seconds)
    logger.info("application_started", env=settings.app_env)

    yield

    # Shutdown
    await sweeper.stop()
    logger.info("application_stopped")


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Course Enrollment",
        description="Enrollment, payment verification and vouchers for an online course catalog",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_db_error_handler)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    # Routers
    app.include_router(attachments_router, prefix="/api/v1")
    app.include_router(enrollments_router, prefix="/api/v1")
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(vouchers_router, prefix="/api/v1")
    app.include_router(paypal_router, prefix="/api/v1")

    return app


app = create_app()
