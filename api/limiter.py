"""
api/limiter.py -- Inbound rate limiting for the API.

The limiter instance itself lives on app.state.limiter (created in the
lifespan, replaced by tests), so every request shares one bucket map and no
module holds global limiter state.

Policy:
  - Every path under /api/ is gated, keyed by client id: first
    X-Forwarded-For hop, else the socket peer address, else "unknown".
  - /health is never throttled -- load balancer checks must not be.
  - OPTIONS (CORS preflight) is never charged or throttled.
  - Throttled requests get 429, a Retry-After header and a JSON body with
    retryAfterSeconds. They are not audited.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from auth.dependencies import client_info
from core.ratelimit import FixedWindowRateLimiter

_GATED_PREFIX = "/api/"


def client_key(request: Request) -> str:
    return client_info(request).ip


def rate_limited_response(retry_after: int, message: str = "Too many requests.") -> JSONResponse:
    """Build the 429 response shared by the middleware and the RateLimitError handler."""
    content = ErrorResponse(
        error=ErrorDetail(code="rate_limited", message=message, detail={"retryAfterSeconds": retry_after})
    ).model_dump()
    content["retryAfterSeconds"] = retry_after
    response = JSONResponse(status_code=429, content=content)
    response.headers["Retry-After"] = str(retry_after)
    return response


async def rate_limit_requests(request: Request, call_next):
    """HTTP middleware: charge one hit to the caller's bucket before routing."""
    limiter: FixedWindowRateLimiter | None = getattr(request.app.state, "limiter", None)
    if limiter is None or request.method == "OPTIONS" or not request.url.path.startswith(_GATED_PREFIX):
        return await call_next(request)
    decision = limiter.hit(client_key(request))
    if not decision.allowed:
        return rate_limited_response(
            decision.retry_after_seconds,
            f"{limiter.max_per_window} requests per {int(limiter.window_seconds)}s exceeded. Try again later.",
        )
    return await call_next(request)
