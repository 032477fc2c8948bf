import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException

# Load env from the working directory's .env (never under pytest)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from entitlement_engine.api import admin, budgets, entitlements, health, ratelimit, uploads
from entitlement_engine.core.config import settings, validate_config
from entitlement_engine.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from entitlement_engine.core.logging import configure_logging
from entitlement_engine.core.middleware.request_context import RequestContextMiddleware
from entitlement_engine.engine import GovernanceEngine


def create_app(engine: Optional[GovernanceEngine] = None) -> FastAPI:
    """
    Build the HTTP app around an engine.

    Without an engine one is built from settings on startup (store picked
    by DATABASE_URL, default plans seeded when SEED_DEFAULT_PLANS is set).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("entitlements")
        logger.info("Starting entitlement engine...")
        if getattr(app.state, "engine", None) is None:
            app.state.engine = GovernanceEngine.from_settings(settings)
        try:
            yield
        finally:
            logger.info("Stopping entitlement engine...")

    configure_logging(settings.ENV, settings.LOG_LEVEL)
    validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

    app = FastAPI(title="Entitlement Engine", lifespan=lifespan)
    app.state.engine = engine

    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(entitlements.router)
    app.include_router(budgets.router)
    app.include_router(ratelimit.router)
    app.include_router(health.router)
    app.include_router(health.root_router)
    app.include_router(uploads.router)
    app.include_router(admin.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("entitlement_engine.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
