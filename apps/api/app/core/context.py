from dataclasses import dataclass, field

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id


@dataclass
class RequestContext:
    correlation_id: str
    client_host: str | None = None
    user_id: str | None = None
    roles: list[str] = field(default_factory=list)

    @property
    def request_id(self) -> str:
        return self.correlation_id


def get_request_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "context", None)


def request_correlation_id(request: Request) -> str | None:
    context = get_request_context(request)
    return get_correlation_id() or (context.correlation_id if context is not None else None) or None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.context = RequestContext(
            correlation_id=getattr(request.state, "correlation_id", None) or "",
            client_host=request.client.host if request.client else None,
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
