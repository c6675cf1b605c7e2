from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from ring_profiles import firebase_auth
from ring_profiles.auth import AuthUser, bearer_token, verify_token
from ring_profiles.profiles.workflow import ProfileUpdateWorkflow
from ring_profiles.settings import Settings
from ring_profiles.store.base import RecordStore
from ring_profiles.usernames.service import UsernameReservationService

# NOTE: Everything stateful hangs off app.state (built once in create_app).
# No module-level caches: tests build a fresh app per case.


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_record_store(request: Request) -> RecordStore:
    return request.app.state.store


def get_reservation_service(request: Request) -> UsernameReservationService:
    return request.app.state.usernames


def get_profile_workflow(request: Request) -> ProfileUpdateWorkflow:
    return request.app.state.profiles


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings_dep),
) -> AuthUser:
    """Resolve the caller from ``Authorization: Bearer <token>``.

    Firebase ID tokens are tried first (when Firebase is configured), then the
    signed demo token.
    """
    token = bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    decoded = firebase_auth.verify_firebase_id_token(token)
    if decoded and decoded.get("uid"):
        return AuthUser(user_id=str(decoded["uid"]), provider="firebase")

    user = verify_token(token=token, secret=settings.auth_secret)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


def require_admin(
    x_admin_token: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings_dep),
) -> None:
    expected = (settings.admin_token or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="Admin endpoints are disabled (ADMIN_TOKEN is not set)")
    if x_admin_token != expected:
        raise HTTPException(status_code=403, detail="Invalid admin token")
