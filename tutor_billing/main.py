"""FastAPI application entrypoint.

Configures CORS, error tracking, includes routers, and exposes a healthcheck
endpoint.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_notification_service, get_settings  # noqa: E402
from .routers import billing as billing_router  # noqa: E402
from .routers import webhooks as webhooks_router  # noqa: E402
from .telemetry import init_sentry  # noqa: E402
from . import schemas  # noqa: E402

# Import models so metadata is registered before create_all/migrations
from . import models  # noqa: F401,E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Let detached billing emails finish before the loop goes away
    await get_notification_service().drain()


def create_app() -> FastAPI:
    """Build the FastAPI app."""
    settings = get_settings()
    if init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT):
        logger.info("[SENTRY] Error tracking enabled")

    app = FastAPI(
        title="Tutor Marketplace Billing API",
        version="0.1.0",
        description=(
            "Billing-state reconciliation for tutor and student premium accounts: "
            "Stripe webhooks, checkout sessions and derived premium status."
        ),
        lifespan=lifespan,
    )

    origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhooks_router.router)
    app.include_router(billing_router.router)

    @app.get("/health", response_model=schemas.HealthResponse, tags=["Health"])
    def health():
        return {"status": "ok"}

    return app


app = create_app()
