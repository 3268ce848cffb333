"""
Subscription Sync - Main FastAPI Application.

Keeps a local mirror of Stripe subscription state and answers access
questions from it.

Run with:
    uvicorn subsync.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from subsync.api.v1.billing import router as billing_router
from subsync.config import Settings, get_settings
from subsync.constants import API_TITLE, API_VERSION
from subsync.errors import (
    BillingError,
    ConflictError,
    PersistenceError,
    TransientGatewayError,
    ValidationError,
)
from subsync.logging_config import setup_logging
from subsync.middleware import RequestContextMiddleware
from subsync.services.billing_gateway import StripeGateway
from subsync.services.cache import Cache, InMemoryCache, RedisCache
from subsync.services.event_ingestion import (
    EventIngestion,
    InMemoryFailedEventStore,
    ProviderEventHandler,
    SupabaseFailedEventStore,
)
from subsync.services.plan_catalog import InMemoryPlanStore, PlanCatalog, SupabasePlanStore
from subsync.services.reconciler import Reconciler
from subsync.services.staleness import StalenessFallback
from subsync.services.subscription_service import SubscriptionService
from subsync.services.subscription_store import (
    InMemoryAccountStore,
    InMemorySubscriptionStore,
    SupabaseAccountStore,
    SupabaseSubscriptionStore,
)

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


def build_subscription_service(
    settings: Settings,
    *,
    cache: Cache,
    supabase_client: AsyncSupabaseClient | None = None,
    gateway: StripeGateway | None = None,
) -> SubscriptionService:
    """Wire the stores, reconciler, read path and ingestion into one service."""
    if supabase_client is not None:
        store = SupabaseSubscriptionStore(supabase_client, settings.subscriptions_table)
        accounts = SupabaseAccountStore(supabase_client, settings.accounts_table)
        plans = SupabasePlanStore(supabase_client, settings.plans_table)
        failed_events = SupabaseFailedEventStore(supabase_client, settings.failed_events_table)
    else:
        store = InMemorySubscriptionStore()
        accounts = InMemoryAccountStore()
        plans = InMemoryPlanStore()
        failed_events = InMemoryFailedEventStore()

    reconciler = Reconciler(store, accounts, cache, plans, settings.reconciler)
    fallback = StalenessFallback(
        store, accounts, cache, reconciler, gateway, settings.reconciler
    )

    ingestion = None
    if gateway is not None:
        handler = ProviderEventHandler(reconciler, accounts, gateway, settings.ingestion)
        ingestion = EventIngestion(handler, failed_events, settings.ingestion)

    return SubscriptionService(
        store,
        accounts,
        cache,
        PlanCatalog(plans, cache, settings.cache),
        reconciler,
        fallback,
        gateway=gateway,
        ingestion=ingestion,
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    # Initialize Supabase async client
    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Using in-memory stores")

    if settings.cache.backend == "redis":
        cache = RedisCache.from_url(settings.cache)
        logger.info("redis_cache_configured", key_prefix=settings.cache.key_prefix)
    else:
        cache = InMemoryCache(settings.cache)

    stripe_gateway: StripeGateway | None = None
    if settings.stripe.secret_key:
        stripe_gateway = StripeGateway(settings.stripe)
        logger.info("stripe_configured")
    else:
        logger.warning("stripe_not_configured", detail="Checkout and webhooks will return 503")

    service = build_subscription_service(
        settings, cache=cache, supabase_client=supabase_client, gateway=stripe_gateway
    )
    if service.ingestion is not None:
        await service.ingestion.start()

    _app.state.supabase = supabase_client
    _app.state.stripe_gateway = stripe_gateway
    _app.state.subscription_service = service

    logger.info("services_initialized")

    yield

    if service.ingestion is not None:
        await service.ingestion.stop()
    if isinstance(cache, RedisCache):
        await cache.close()
    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description="Local mirror of billing-provider subscription state and access decisions.",
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


ERROR_STATUS: list[tuple[type[BillingError], int]] = [
    (ValidationError, 400),
    (ConflictError, 409),
    (TransientGatewayError, 503),
    (PersistenceError, 503),
]


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    logger.info(
        "billing_error_response",
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


# Include routers
app.include_router(billing_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
