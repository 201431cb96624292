from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.errors import register_exception_handlers
from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import CompanyMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import SERVICE_NAME, get_fastapi_server_request_hook, setup_otel
from app.platform.security.policies import InMemoryPolicyBackend, set_policy_backend


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

DOMAIN_EVENT_PATTERN = "company.*"


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


def _on_domain_event(event: InternalEvent) -> None:
    logger.debug(
        "domain_event",
        extra={"event_name": event.name, "company_id": event.payload.get("company_id"), "actor": event.payload.get("actor")},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe(DOMAIN_EVENT_PATTERN, _on_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": SERVICE_NAME})
    yield


app = FastAPI(title="Company Service API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CompanyMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
register_exception_handlers(app)
app.include_router(api_router)

settings = get_settings()
set_policy_backend(InMemoryPolicyBackend(default_allow=settings.authz_default_allow))

if settings.otel_enabled:
    setup_otel(SERVICE_NAME, True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
