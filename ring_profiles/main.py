from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from fastapi import Body, Depends, FastAPI
from fastapi.responses import JSONResponse

from ring_profiles import deps, firebase_auth
from ring_profiles.auth import AuthUser
from ring_profiles.errors import CorruptReservationError, RecordStoreError
from ring_profiles.logging_config import configure_logging
from ring_profiles.models import ProfileForm, ProfileUpdateResponse, SweepResponse, UsernameAvailability
from ring_profiles.profiles.validation import is_valid_username
from ring_profiles.profiles.workflow import ProfileUpdateWorkflow
from ring_profiles.settings import Settings, get_settings
from ring_profiles.store.base import RecordStore
from ring_profiles.store.memory import InMemoryRecordStore
from ring_profiles.usernames.models import ConfirmedReservation, normalize_username
from ring_profiles.usernames.service import UsernameReservationService

logger = logging.getLogger("ring_profiles")

APP_VERSION = "1.0.0"


def build_record_store(settings: Settings) -> RecordStore:
    if settings.record_store == "memory":
        return InMemoryRecordStore()
    if settings.record_store == "firestore":
        if not firebase_auth.init_firebase_admin():
            raise RuntimeError(
                "RECORD_STORE=firestore requires a Firebase service account "
                "(FIREBASE_SERVICE_ACCOUNT_JSON or FIREBASE_SERVICE_ACCOUNT_FILE)"
            )
        from ring_profiles.store.firestore import FirestoreRecordStore

        return FirestoreRecordStore()
    raise ValueError(f"Unknown RECORD_STORE {settings.record_store!r} (expected 'memory' or 'firestore')")


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[RecordStore] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    """Build the API with its record store and services wired onto ``app.state``."""
    settings = settings or get_settings()
    store = store if store is not None else build_record_store(settings)

    usernames = UsernameReservationService(
        store,
        grace_period=settings.grace_period,
        usernames_collection=settings.usernames_collection,
        users_collection=settings.users_collection,
        clock=clock,
    )

    app = FastAPI(title="Ring Profile Service", version=APP_VERSION)
    app.state.settings = settings
    app.state.store = store
    app.state.usernames = usernames
    app.state.profiles = ProfileUpdateWorkflow(
        store,
        usernames,
        users_collection=settings.users_collection,
        release_on_failure=settings.username_release_on_failure,
    )

    @app.patch("/profile", response_model=ProfileUpdateResponse)
    def update_profile_endpoint(
        form: ProfileForm = Body(...),
        user: AuthUser = Depends(deps.get_current_user),
        workflow: ProfileUpdateWorkflow = Depends(deps.get_profile_workflow),
    ):
        """Update the caller's profile; a new username is reserved and confirmed along the way."""
        try:
            result = workflow.update_profile(user.user_id, form)
        except (RecordStoreError, CorruptReservationError):
            logger.exception("Error updating profile", extra={"user_id": user.user_id})
            out = ProfileUpdateResponse(success=False, error="Failed to update profile. Please try again.")
            return JSONResponse(out.model_dump(), status_code=502)

        out = ProfileUpdateResponse(
            success=result.success,
            message=result.message,
            field_errors=result.field_errors,
            username=result.username,
            username_confirmed=result.username_confirmed,
        )
        return JSONResponse(out.model_dump(), status_code=200 if result.success else 422)

    @app.get("/usernames/{name}", response_model=UsernameAvailability)
    def username_availability(
        name: str,
        service: UsernameReservationService = Depends(deps.get_reservation_service),
    ):
        # Read-only hint for the form; the real check happens inside reserve().
        key = normalize_username(name)
        if not is_valid_username(name):
            return UsernameAvailability(username=name, key=key, available=False, reason="invalid")

        try:
            current = service.lookup(name)
        except (RecordStoreError, CorruptReservationError):
            logger.exception("Username lookup failed", extra={"username_key": key})
            return JSONResponse({"detail": "Username lookup failed"}, status_code=502)

        if current is None or current.is_expired(service.now()):
            return UsernameAvailability(username=name, key=key, available=True)
        reason = "taken" if isinstance(current, ConfirmedReservation) else "temporarily_reserved"
        return UsernameAvailability(username=name, key=key, available=False, reason=reason)

    @app.post("/admin/usernames/sweep", response_model=SweepResponse, dependencies=[Depends(deps.require_admin)])
    def sweep_usernames(service: UsernameReservationService = Depends(deps.get_reservation_service)):
        """Garbage-collect expired, unconfirmed username holds. Meant to be hit by a cron job."""
        try:
            result = service.sweep_expired()
        except RecordStoreError:
            logger.exception("Username sweep failed")
            return JSONResponse({"detail": "Username sweep failed"}, status_code=502)
        return SweepResponse(cleaned=result.cleaned)

    @app.get("/healthz")
    def healthz():
        return JSONResponse(
            {
                "ok": True,
                "service": "ring-profile-service",
                "version": APP_VERSION,
                "record_store": app.state.store.name,
            }
        )

    @app.get("/configz")
    def configz(settings: Settings = Depends(deps.get_settings_dep)):
        # Never return secrets, only whether they are set.
        return JSONResponse(
            {
                "record_store": settings.record_store,
                "username_grace_period_seconds": settings.username_grace_period_seconds,
                "username_release_on_failure": settings.username_release_on_failure,
                "usernames_collection": settings.usernames_collection,
                "users_collection": settings.users_collection,
                "admin_token_set": bool(settings.admin_token),
                "firebase": {
                    "credential_source": firebase_auth.credential_source(),
                    "initialized": bool(firebase_auth.init_firebase_admin()),
                },
            }
        )

    return app


def _build_default_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    return create_app(settings)


app = _build_default_app()
