"""CORS, proxy-header, request-id and logging middleware."""

import uuid
import time
import logging

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from helpdesk_rbac.core.config import Settings

logger = logging.getLogger("helpdesk_rbac")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id (reusing the caller's) and log it with the client address."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        client = request.client.host if request.client else "-"
        started = time.perf_counter()

        response: Response = await call_next(request)

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers["X-Request-Id"] = request_id
        response.headers["X-Response-Time-Ms"] = str(elapsed_ms)
        logger.info(
            "%s %s %s %sms client=%s [%s]",
            request.method, request.url.path, response.status_code, elapsed_ms, client, request_id,
        )
        return response


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure all middleware for the application.

    ``ProxyHeadersMiddleware`` is outermost: it replaces the client address
    with the ``X-Forwarded-For`` hop only when the direct peer is listed in
    ``FORWARDED_ALLOW_IPS``, so rate limits, IP blocks and audit rows all
    see the same address.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.FORWARDED_ALLOW_IPS)
