"""
api/routes/account.py -- Endpoints for the authenticated user's own account.

Routes (all require `Authorization: Bearer <token>`):
  GET /api/me           -- user record with embedded profile
  GET /api/profile      -- profile, or {} if never written
  PUT /api/profile      -- replace profile; audited as "profile_update"
  GET /api/audit-logs   -- caller's audit entries, newest first
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    AuditLogPage,
    AuditLogResponse,
    MeResponse,
    MeUser,
    ProfileEnvelope,
    ProfileResponse,
    ProfileUpdate,
)
from auth.dependencies import client_info, get_auth_service, get_current_user
from auth.models import Profile
from auth.service import MAX_AUDIT_PAGE, AuthContext, AuthService

router = APIRouter()


def _profile_dict(profile: Profile | None) -> dict:
    if profile is None:
        return {}
    data = asdict(profile)
    data.pop("user_id")
    return data


@router.get("/me", response_model=MeResponse)
def me(
    auth: AuthContext = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> MeResponse:
    """Return the current user with their profile (empty fields if none)."""
    found = service.me(auth.user.id)
    user = found.user
    profile = ProfileResponse.from_profile(found.profile) if found.profile else ProfileResponse()
    return MeResponse(
        user=MeUser(
            id=user.id,
            email=user.email,
            username=user.username,
            email_verified=user.email_verified,
            is_active=user.is_active,
            created_at=user.created_at,
            updated_at=user.updated_at,
            last_login_at=user.last_login_at,
            profile=profile,
        )
    )


@router.get("/profile", response_model=ProfileEnvelope)
def get_profile(
    auth: AuthContext = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> ProfileEnvelope:
    return ProfileEnvelope(profile=_profile_dict(service.get_profile(auth.user.id)))


@router.put("/profile", response_model=ProfileEnvelope)
def put_profile(
    request: Request,
    body: ProfileUpdate,
    auth: AuthContext = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> ProfileEnvelope:
    """Create or replace the profile. Only the fields present in the body are audited."""
    fields = body.model_dump(exclude_unset=True)
    profile = service.update_profile(auth.user.id, fields, client_info(request))
    return ProfileEnvelope(profile=_profile_dict(profile))


@router.get("/audit-logs", response_model=AuditLogPage)
def audit_logs(
    limit: int = Query(default=50, ge=1, le=MAX_AUDIT_PAGE),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> AuditLogPage:
    entries = service.audit_logs(auth.user.id, limit=limit, offset=offset)
    return AuditLogPage(logs=[AuditLogResponse.from_entry(e) for e in entries], limit=limit, offset=offset)
