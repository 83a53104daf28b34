"""ASGI entry point: ``uvicorn app.main:app``.

Owns wiring only.  Billing, verification and matching live in
app/services; the routers in app/api translate HTTP to service calls.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import (
    admin,
    billing,
    credentials,
    health,
    matching,
    metrics_endpoint,
    payments,
    verification,
)
from app.api.errors import install_exception_handlers
from app.core.config import SETTINGS
from app.core.logging import setup_logging
from app.core.pricing import PRICING
from app.db.engine import lifespan_db
from app.db.redis import lifespan_redis
from app.middleware.metrics import MetricsMiddleware
from app.middleware.request_context import RequestContextMiddleware

setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)

ROUTERS: tuple[APIRouter, ...] = (
    metrics_endpoint.router,
    health.router,
    admin.router,
    credentials.router,
    verification.router,
    billing.router,
    payments.router,
    matching.router,
)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info(
        "Pricing loaded: currency=%s base_fees=%s plans=%s",
        PRICING.currency,
        dict(PRICING.base_fees),
        sorted(PRICING.plans),
    )
    # Ledger outlives Redis: Redis closes first on shutdown.
    async with lifespan_db():
        async with lifespan_redis():
            yield


app = FastAPI(
    title="vfied-verification-service",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(SETTINGS.cors_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
)

# Last added runs outermost: RequestContext → Metrics → CORS → route.
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

install_exception_handlers(app)

for router in ROUTERS:
    app.include_router(router)

logger.info(
    "verification-service ready  env=%s port=%d ledger=%s redis=%s",
    SETTINGS.app_env,
    SETTINGS.port,
    "postgres" if SETTINGS.database_url else "in_memory",
    "on" if SETTINGS.redis_url else "off",
)
