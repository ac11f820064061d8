"""SeniorHub Alerts FastAPI application entry point.

Creates the FastAPI app, configures middleware, includes routers, and
manages the lifecycle of the emergency pipeline (alert store, profile
directory, SMS gateways, location provider, dialer, orchestrator).
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from config.settings import settings
from src.api.router import api_router, relay_router
from src.middleware.rate_limit import RateLimitMiddleware
from src.pipeline.orchestrator import EmergencyOrchestrator
from src.services.alert_store import AlertStore, InMemoryAlertBackend, RedisAlertBackend
from src.services.composer import AlertComposer
from src.services.dialer import LoggingDialer
from src.services.location import LocationProvider
from src.services.profiles import InMemoryProfileDirectory
from src.services.sms_gateway import NotificationGateway, create_channel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            settings.log_level,
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Service construction
# ---------------------------------------------------------------------------


def _build_channel(name: str, client: httpx.AsyncClient):
    """Create an SMS channel from settings."""
    common = {"timeout": settings.sms_request_timeout, "client": client}
    if name == "relay":
        return create_channel("relay", url=settings.sms_relay_url, **common)
    if name == "semaphore":
        return create_channel(
            "semaphore",
            api_key=settings.semaphore_api_key,
            sender_name=settings.semaphore_sender_name,
            url=settings.semaphore_api_url,
            default_country_code=settings.semaphore_default_country_code,
            **common,
        )
    return create_channel(name)


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of the alert pipeline.

    On startup:
      1. Initialise the alert store (Redis when configured)
      2. Initialise the profile directory
      3. Create the SMS gateways (pipeline and relay)
      4. Create the EmergencyOrchestrator
      5. Store everything on ``app.state``

    On shutdown:
      - Wait for in-flight alerts, then close HTTP clients and the store.
    """
    _configure_logging()
    logger.info("app.startup", env=settings.env, sms_channel=settings.sms_channel)

    app.state.start_time = time.time()

    # -- 1. Alert store -----------------------------------------------------
    if settings.redis_url:
        backend = RedisAlertBackend(settings.redis_url)
        logger.info("app.alert_store_initialised", backend="redis")
    else:
        backend = InMemoryAlertBackend()
        logger.info("app.alert_store_initialised", backend="memory")
    store = AlertStore(backend)
    app.state.store = store

    # -- 2. Profiles --------------------------------------------------------
    profiles = InMemoryProfileDirectory()
    app.state.profiles = profiles

    # -- 3. SMS gateways ----------------------------------------------------
    http_client = httpx.AsyncClient(timeout=settings.sms_request_timeout)
    gateway = NotificationGateway(_build_channel(settings.sms_channel, http_client))
    app.state.gateway = gateway

    # The relay endpoint always talks to the provider itself.
    relay_channel = "semaphore" if settings.semaphore_api_key else "mock"
    app.state.relay_gateway = NotificationGateway(_build_channel(relay_channel, http_client))
    logger.info(
        "app.sms_gateways_initialised",
        channel=gateway.channel_name,
        relay_channel=relay_channel,
    )

    # -- 4. Orchestrator ----------------------------------------------------
    orchestrator = EmergencyOrchestrator(
        location=LocationProvider(freshness_seconds=settings.location_freshness_seconds),
        composer=AlertComposer(
            settings.alert_timezone,
            default_subject_name=settings.default_subject_name,
        ),
        gateway=gateway,
        store=store,
        profiles=profiles,
        dialer=LoggingDialer(),
        emergency_number=settings.emergency_call_number,
        location_timeout_ms=settings.location_timeout_ms,
    )
    app.state.orchestrator = orchestrator
    logger.info("app.orchestrator_initialised")

    logger.info("app.startup_complete")

    yield

    # -- Shutdown -----------------------------------------------------------
    logger.info("app.shutdown_start")

    await orchestrator.aclose()
    await http_client.aclose()
    await store.close()

    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SeniorHub Alerts API",
    description=(
        "Emergency alert pipeline for SeniorHub: one-tap SOS that dials the "
        "emergency number, texts the senior's emergency contact with their "
        "location, and keeps an auditable alert ledger."
    ),
    version="0.1.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

# -- CORS middleware --------------------------------------------------------
# SECURITY: allow_credentials=True must NOT be combined with allow_origins=["*"]
# per the CORS specification (browsers will reject it).
if settings.is_production:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:8000", "http://127.0.0.1:8000"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "OPTIONS", "HEAD"],
        allow_headers=["Content-Type", "Accept", "Authorization"],
    )

# -- Custom middleware ------------------------------------------------------
app.add_middleware(
    RateLimitMiddleware,
    max_requests_per_minute=settings.rate_limit_per_minute,
    relay_requests_per_minute=settings.relay_rate_limit_per_minute,
    trusted_proxy_count=settings.trusted_proxy_count,
)

# -- Prometheus metrics -----------------------------------------------------
# SECURITY: In production, metrics are exposed only internally (scraped by
# Prometheus within the cluster) and excluded from public documentation.
Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/metrics", "/api/v1/health"],
).instrument(app).expose(
    app,
    endpoint="/metrics",
    include_in_schema=not settings.is_production,
)

# -- Include routers -------------------------------------------------------
app.include_router(api_router)
app.include_router(relay_router)


@app.get("/api", response_class=ORJSONResponse)
async def api_info() -> dict:
    """API information endpoint."""
    return {
        "name": "SeniorHub Alerts API",
        "version": app.version,
        "docs": "/docs",
        "health": "/api/v1/health",
        "sms_relay": "/send-emergency-sms",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=not settings.is_production,
    )
