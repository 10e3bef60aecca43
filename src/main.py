"""Tuition ledger FastAPI application."""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm.exc import StaleDataError

from src.core.config import settings
from src.core.database.session import async_session
from src.core.exceptions import AppException
from src.core.exceptions.handlers import (
    app_exception_handler,
    http_exception_handler,
    sqlalchemy_db_error_handler,
    stale_data_exception_handler,
    validation_exception_handler,
)
from src.modules.discounts.router import router as discounts_router
from src.modules.payment_requests.router import (
    bank_accounts_router,
    router as payment_requests_router,
)
from src.modules.payment_requests.sweeper import run_sweeper
from src.modules.payments.router import router as payments_router
from src.modules.scholarships.router import router as scholarships_router
from src.modules.tuitions.router import router as tuitions_router

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler: runs the expiration sweeper when enabled."""
    sweeper = None
    if settings.sweeper_enabled:
        sweeper = asyncio.create_task(run_sweeper(async_session))
    yield
    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        logger.info("Payment request sweeper stopped")


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Tuition Ledger",
        description="School tuition billing and payment reconciliation",
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
    app.add_exception_handler(StaleDataError, stale_data_exception_handler)
    app.add_exception_handler(DBAPIError, sqlalchemy_db_error_handler)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    # Routers
    app.include_router(tuitions_router, prefix="/api/v1")
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(scholarships_router, prefix="/api/v1")
    app.include_router(discounts_router, prefix="/api/v1")
    app.include_router(payment_requests_router, prefix="/api/v1")
    app.include_router(bank_accounts_router, prefix="/api/v1")

    return app


app = create_app()
