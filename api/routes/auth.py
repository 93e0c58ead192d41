"""
api/routes/auth.py -- Signup, login and logout endpoints.

Routes:
  POST /api/auth/signup       -- create account; 201 {message, user, token}
  POST /api/auth/login        -- password login; 200 {message, user, token}
  POST /api/auth/logout       -- revoke the presented token's session; always 200
  POST /api/auth/logout-all   -- revoke every session of the caller (requires auth)

Security:
  Unknown email and wrong password return the same 401 body.
  Cache-Control: no-store on responses that carry a token.
  All routes sit behind the inbound rate limiter (api/limiter.py).

Handlers are plain `def` so bcrypt and store calls run in the threadpool
instead of blocking the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import AuthResponse, LoginRequest, LogoutAllResponse, MessageResponse, SignupRequest, UserSummary
from auth.dependencies import bearer_token, client_info, get_auth_service, get_current_user
from auth.models import AuthResult
from auth.service import AuthContext, AuthService

# Auth policy:
# - POST /api/auth/signup:      public
# - POST /api/auth/login:       public
# - POST /api/auth/logout:      public -- succeeds with or without a valid token
# - POST /api/auth/logout-all:  requires auth (get_current_user)
router = APIRouter()


def _auth_response(result: AuthResult, message: str, status_code: int) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=AuthResponse(
            message=message,
            user=UserSummary.from_user(result.user),
            token=result.token,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/signup", response_model=AuthResponse, status_code=201)
def signup(
    request: Request,
    body: SignupRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Register with email, username and password.

    400 on missing/short fields, 409 when the email or username is already
    taken (case-insensitive).
    """
    result = service.signup(body.email, body.username, body.password, client_info(request))
    return _auth_response(result, "Account created", 201)


@router.post("/auth/login", response_model=AuthResponse)
def login(
    request: Request,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Authenticate with email and password. Email match is case-insensitive.

    401 for bad credentials, 403 for an inactive account.
    """
    result = service.login(body.email, body.password, client_info(request))
    return _auth_response(result, "Logged in", 200)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, service: AuthService = Depends(get_auth_service)) -> MessageResponse:
    """End the session behind the Bearer token, if any. Idempotent."""
    service.logout(bearer_token(request), client_info(request))
    return MessageResponse(message="Logged out")


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(
    request: Request,
    auth: AuthContext = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> LogoutAllResponse:
    """Revoke every session of the current user, including this one."""
    count = service.logout_all(auth.user.id, client_info(request))
    return LogoutAllResponse(message="Logged out everywhere", sessions_revoked=count)
