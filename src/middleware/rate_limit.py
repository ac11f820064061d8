"""In-memory sliding-window rate limiter.

Requests are counted per ``(client IP, bucket)``.  The SMS relay path has
its own, tighter bucket because every accepted request there costs a
provider message; everything else shares the default bucket.  State is
per process, so a multi-instance deployment needs a shared limiter.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Final

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# Probes, metrics and docs are never limited.
_EXEMPT_PATHS: Final[frozenset[str]] = frozenset({
    "/api/v1/health",
    "/api/v1/health/ready",
    "/metrics",
    "/api",
    "/docs",
    "/redoc",
    "/openapi.json",
})

_RELAY_PATH: Final[str] = "/send-emergency-sms"

_WINDOW_SECONDS: Final[float] = 60.0


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP sliding-window limiter with a separate SMS relay budget.

    Parameters
    ----------
    app:
        The ASGI application.
    max_requests_per_minute:
        Budget per IP for the API as a whole.
    relay_requests_per_minute:
        Budget per IP for ``/send-emergency-sms``.  Defaults to the
        general budget.
    trusted_proxy_count:
        Number of reverse proxies in front of the app.  The client IP is
        the ``X-Forwarded-For`` entry just left of the last
        *trusted_proxy_count* entries.  0 uses the leftmost entry or the
        direct peer.
    """

    def __init__(
        self,
        app: object,
        max_requests_per_minute: int = 60,
        relay_requests_per_minute: int | None = None,
        trusted_proxy_count: int = 1,
    ) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._limits: dict[str, int] = {
            "api": max_requests_per_minute,
            "relay": relay_requests_per_minute or max_requests_per_minute,
        }
        self._trusted_proxy_count = trusted_proxy_count
        self._hits: dict[tuple[str, str], deque[float]] = {}
        self._lock = asyncio.Lock()
        self._requests_seen = 0
        self._sweep_every = 1000

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _EXEMPT_PATHS:
            return await call_next(request)

        bucket = "relay" if path == _RELAY_PATH else "api"
        limit = self._limits[bucket]
        client_ip = self._client_ip(request)
        now = time.monotonic()

        async with self._lock:
            self._requests_seen += 1
            if self._requests_seen % self._sweep_every == 0:
                self._sweep(now)

            hits = self._hits.setdefault((client_ip, bucket), deque())
            while hits and hits[0] < now - _WINDOW_SECONDS:
                hits.popleft()

            if len(hits) >= limit:
                retry_after = max(1, int(_WINDOW_SECONDS - (now - hits[0])) + 1)
                logger.warning(
                    "rate_limit.exceeded",
                    client_ip=client_ip,
                    bucket=bucket,
                    limit=limit,
                )
                return JSONResponse(
                    status_code=429,
                    content={
                        "success": False,
                        "error": "Rate limit exceeded. Please try again later.",
                        "retry_after_seconds": retry_after,
                    },
                    headers={
                        "Retry-After": str(retry_after),
                        "X-RateLimit-Limit": str(limit),
                        "X-RateLimit-Remaining": "0",
                    },
                )

            hits.append(now)
            remaining = limit - len(hits)

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response

    def _client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            ips = [ip.strip() for ip in forwarded_for.split(",") if ip.strip()]
            if ips:
                index = -(self._trusted_proxy_count + 1)
                if self._trusted_proxy_count > 0 and abs(index) <= len(ips):
                    return ips[index]
                return ips[0]

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
        return request.client.host if request.client else "unknown"

    def _sweep(self, now: float) -> None:
        """Forget clients whose last hit left the window."""
        cutoff = now - _WINDOW_SECONDS
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] < cutoff]
        for key in stale:
            del self._hits[key]
        if stale:
            logger.debug("rate_limit.swept", removed=len(stale))
