from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker
from starlette.responses import JSONResponse

from billcore.api.billing import router as billing_router
from billcore.clock import Clock
from billcore.config import settings, validate_settings
from billcore.db import build_session_factory, get_engine
from billcore.errors import register_error_handlers
from billcore.logging import configure_logging
from billcore.observability import RequestContextMiddleware
from billcore.services.billing.cycle import BillingCycles
from billcore.services.billing.sink import InvoiceSink

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[arg-type]
    # ── Startup ──────────────────────────────────────────
    for w in validate_settings(settings):
        logger.warning("Config warning: %s", w)
    logger.info("Application started (pid=%s)", os.getpid())
    yield

    # ── Shutdown ─────────────────────────────────────────
    logger.info("Application shutting down")


def create_app(
    session_factory: sessionmaker | None = None,
    clock: Clock | None = None,
    sink: InvoiceSink | None = None,
) -> FastAPI:
    """Build the API around an injected session factory, clock and sink."""
    configure_logging(settings.log_level)
    if session_factory is None:
        session_factory = build_session_factory(get_engine(settings))

    app = FastAPI(title="billcore", lifespan=lifespan)
    app.state.session_factory = session_factory
    app.state.billing = BillingCycles(clock=clock, sink=sink)

    register_error_handlers(app)
    app.add_middleware(RequestContextMiddleware)

    app.include_router(billing_router)
    app.include_router(billing_router, prefix="/api/v1")

    @app.get("/health")
    def health_check() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/health/ready")
    def readiness_check(request: Request) -> JSONResponse:
        """Readiness probe: verifies the database answers."""
        db = request.app.state.session_factory()
        try:
            db.execute(text("SELECT 1"))
        except Exception as exc:
            logger.warning("Readiness check failed: %s", exc)
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "checks": {"database": f"error: {exc}"}},
            )
        finally:
            db.close()
        return JSONResponse(content={"status": "ready", "checks": {"database": "ok"}})

    return app
