"""Request throttling for the break-glass endpoints (slowapi)."""

import logging

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from helpdesk_rbac.core.config import settings

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Client IP as resolved by the proxy-header middleware.

    X-Forwarded-For is never read here: only a trusted proxy may set the
    address, and that happens before the request reaches the app.
    """
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_client_ip,
    enabled=settings.RATE_LIMIT_ENABLED,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logging.getLogger("helpdesk_rbac.security").warning(
        "Rate limit exceeded: %s on %s", get_client_ip(request), request.url.path,
    )
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "detail": f"Too many requests: {exc.detail}",
        },
        headers={"Retry-After": "60"},
    )
