"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Authenticated endpoints require `Authorization: Bearer <token>`. The token
must verify AND still be backed by a live session, so logout takes effect
immediately even though the JWT itself would remain valid until expiry.

bearer_token() extracts the raw token (or None) without judging it -- logout
uses it directly because logout must succeed for any token.
get_current_user() raises AuthenticationError (-> 401) on any failure.

Layer rule: auth/dependencies.py may import from fastapi because this module
is part of the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import Request

from auth.service import AuthContext, AuthService, ClientInfo


def bearer_token(request: Request) -> str | None:
    """Return the token from an `Authorization: Bearer` header, or None."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def client_info(request: Request) -> ClientInfo:
    """Describe the caller: first X-Forwarded-For hop, else the socket peer, else "unknown"."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    ip = forwarded.split(",")[0].strip() if forwarded else ""
    if not ip and request.client is not None:
        ip = request.client.host
    return ClientInfo(ip=ip or "unknown", user_agent=request.headers.get("User-Agent", ""))


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_current_user(request: Request) -> AuthContext:
    """Require authentication. Raises AuthenticationError (HTTP 401) if not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(auth: AuthContext = Depends(get_current_user)): ...
    """
    return get_auth_service(request).authenticate(bearer_token(request))
