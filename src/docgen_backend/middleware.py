from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from .utils import new_correlation_id

CORRELATION_HEADER = "x-correlation-id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Attach a correlation id to every request and echo it on the response.

    An incoming ``x-correlation-id`` header is reused; otherwise a new id is
    generated. Handlers read it from ``request.state.correlation_id``.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or new_correlation_id()
        request.state.correlation_id = correlation_id
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


def get_correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or new_correlation_id()
