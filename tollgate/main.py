"""
FastAPI application for the Tollgate billing service.

Provides:
- Lemon Squeezy webhook endpoint (signature-verified, exactly-once)
- Admin/cron endpoints for reconciliation, usage sweeps and cost metrics
- Health and Prometheus metrics endpoints
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from tollgate.billing.cost_breaker import CostCircuitBreaker, ServiceOverloadedError
from tollgate.billing.guarded_actions import GuardedActionRunner
from tollgate.billing.provider import LemonSqueezyClient
from tollgate.billing.reconciliation import ReconciliationEngine
from tollgate.billing.signing import WebhookSignatureVerifier
from tollgate.billing.state_machine import SubscriptionStateMachine
from tollgate.billing.usage_reporting import UsageReporter
from tollgate.billing.webhooks import (
    WebhookAuthenticationError,
    WebhookProcessingError,
    WebhookProcessor,
    WebhookValidationError,
)
from tollgate.config import get_settings
from tollgate.observability.logging import configure_logging, get_logger
from tollgate.observability.logging_middleware import StructuredLoggingMiddleware
from tollgate.observability.metrics import generate_metrics
from tollgate.observability.request_limits import (
    RequestSizeLimitMiddleware,
    validate_body_size,
)
from tollgate.routers import admin_router
from tollgate.storage.counters import CounterStore, RedisCounterStore, build_counter_store
from tollgate.storage.database import BillingDatabase

settings = get_settings()
configure_logging(
    log_level=settings.logging.level,
    json_output=settings.logging.json_output,
    colorized=settings.logging.colorized,
)
logger = get_logger(__name__)

limiter = Limiter(key_func=get_remote_address)


# Global service instances (initialized in lifespan)
billing_db: BillingDatabase | None = None
counter_store: CounterStore | None = None
provider_client: LemonSqueezyClient | None = None
webhook_processor: WebhookProcessor | None = None
cost_breaker: CostCircuitBreaker | None = None
usage_reporter: UsageReporter | None = None
reconciliation_engine: ReconciliationEngine | None = None
action_runner: GuardedActionRunner | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup fails if required configuration is missing or blank.
    """
    global billing_db, counter_store, provider_client, webhook_processor
    global cost_breaker, usage_reporter, reconciliation_engine, action_runner

    settings = get_settings()
    logger.info("=== Tollgate Starting ===")

    try:
        settings.validate_configuration()

        billing_db = BillingDatabase(
            db_path=settings.database.path,
            busy_timeout_seconds=settings.database.busy_timeout_seconds,
        )
        await billing_db.initialize()
        logger.info("Billing database ready", path=settings.database.path)

        counter_store = build_counter_store(
            settings.counters.url,
            socket_timeout_seconds=settings.counters.socket_timeout_seconds,
        )
        provider_client = LemonSqueezyClient.from_config(settings.lemonsqueezy)

        webhook_processor = WebhookProcessor(
            verifier=WebhookSignatureVerifier(settings.lemonsqueezy.effective_webhook_secret),
            db=billing_db,
            state_machine=SubscriptionStateMachine(
                billing_db, settings.lemonsqueezy.pro_variant_id
            ),
        )
        cost_breaker = CostCircuitBreaker(counter_store, settings.cost_limits)
        usage_reporter = UsageReporter(
            billing_db, provider_client, claim_ttl_seconds=settings.usage.claim_ttl_seconds
        )
        reconciliation_engine = ReconciliationEngine(
            billing_db, provider_client, settings.reconciliation
        )
        action_runner = GuardedActionRunner(billing_db, cost_breaker, usage_reporter)

        logger.info(
            "=== Service Ready ===",
            test_mode=settings.lemonsqueezy.test_mode,
            cost_limits=settings.cost_limits.model_dump(),
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise

    finally:
        logger.info("=== Shutting down ===")

        if provider_client:
            await provider_client.aclose()
        if counter_store:
            await counter_store.close()
        if billing_db:
            billing_db.close()

        logger.info("=== Shutdown complete ===")


def get_action_runner() -> GuardedActionRunner:
    """
    Dependency for routes that run billable actions.

    Usage:
        @router.post("/generate")
        async def generate(runner: GuardedActionRunner = Depends(get_action_runner)):
            ...
    """
    if action_runner is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Action runner not initialized")
    return action_runner


app = FastAPI(
    title="Tollgate",
    description="Billing integrity service: Lemon Squeezy webhooks, usage metering, cost limits",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Processed in reverse order of registration: the size limit runs inside the
# logging context so rejected bodies are still logged with a request id.
app.add_middleware(
    RequestSizeLimitMiddleware,
    max_body_size=settings.service.max_webhook_body_size,
)
app.add_middleware(StructuredLoggingMiddleware)

app.include_router(admin_router)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================


@app.exception_handler(WebhookAuthenticationError)
async def webhook_auth_error_handler(request: Request, exc: WebhookAuthenticationError):
    logger.warning("Webhook rejected: authentication", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error": str(exc), "code": "INVALID_SIGNATURE"},
    )


@app.exception_handler(WebhookValidationError)
async def webhook_validation_error_handler(request: Request, exc: WebhookValidationError):
    logger.warning("Webhook rejected: malformed payload", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": str(exc), "code": "INVALID_PAYLOAD"},
    )


@app.exception_handler(WebhookProcessingError)
async def webhook_processing_error_handler(request: Request, exc: WebhookProcessingError):
    logger.error("Webhook processing failed", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Webhook processing failed", "code": "PROCESSING_FAILED"},
    )


@app.exception_handler(ServiceOverloadedError)
async def service_overloaded_handler(request: Request, exc: ServiceOverloadedError):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "error": "Service temporarily overloaded",
            "code": "SERVICE_OVERLOADED",
            "layer": exc.check.layer.value if exc.check.layer else None,
            "retry_after_seconds": exc.retry_after_seconds,
        },
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


# ============================================================================
# WEBHOOKS
# ============================================================================


class WebhookResponse(BaseModel):
    received: bool = True
    duplicate: bool
    status: str


@app.post("/api/webhooks/lemonsqueezy", response_model=WebhookResponse, tags=["Webhooks"])
@limiter.limit(settings.service.webhook_rate_limit)
async def lemonsqueezy_webhook(
    request: Request,
    x_signature: str | None = Header(default=None),
):
    """
    Receive a Lemon Squeezy webhook.

    Returns 200 for processed, duplicate and ignored events; 400 for malformed
    payloads; 401 for bad signatures; 413 for oversized bodies; 500 when the
    event could not be applied (the provider redelivers).
    """
    raw_body = await request.body()
    max_size = get_settings().service.max_webhook_body_size
    try:
        validate_body_size(raw_body, max_size)
    except ValueError as e:
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content={"error": str(e), "max_size_bytes": max_size},
        )

    if webhook_processor is None:
        raise WebhookProcessingError("Webhook processor not initialized")

    result = await webhook_processor.handle(raw_body, x_signature)
    return WebhookResponse(duplicate=result.duplicate, status=result.outcome.value)


# ============================================================================
# SYSTEM
# ============================================================================


@app.get("/health", tags=["System"])
async def health(response: Response):
    """Database and counter store reachability."""
    components: dict[str, str] = {}

    if billing_db is None:
        components["database"] = "not_initialized"
    else:
        try:
            billing_db._get_connection().execute("SELECT 1").fetchone()
            components["database"] = "healthy"
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            components["database"] = "unhealthy"

    if counter_store is None:
        components["counters"] = "not_initialized"
    elif isinstance(counter_store, RedisCounterStore):
        components["counters"] = "healthy" if await counter_store.ping() else "unhealthy"
    else:
        components["counters"] = "in_memory"

    healthy = all(state in ("healthy", "in_memory") for state in components.values())
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {"status": "healthy" if healthy else "unhealthy", "components": components}


@app.get("/metrics", tags=["System"])
async def metrics():
    """Prometheus metrics endpoint."""
    payload, content_type = generate_metrics()
    return Response(content=payload, media_type=content_type)


@app.get("/", tags=["System"])
async def root():
    return {"service": "tollgate", "version": "0.1.0"}
