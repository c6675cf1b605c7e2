from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from typing import Any, Dict, Optional

logger = logging.getLogger("ring_profiles.firebase")

DEFAULT_CREDENTIAL_FILE = "firebase-service-account.json"
_REQUIRED_KEYS = {"type", "project_id", "private_key", "client_email"}


def _default_credential_path() -> str:
    return os.path.join(os.getcwd(), DEFAULT_CREDENTIAL_FILE)


def credential_source() -> str:
    """Human-friendly description of where the service account comes from (never the key)."""
    if (os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON") or "").strip():
        return "env:FIREBASE_SERVICE_ACCOUNT_JSON"
    p = (os.getenv("FIREBASE_SERVICE_ACCOUNT_FILE") or "").strip()
    if p:
        return f"env:FIREBASE_SERVICE_ACCOUNT_FILE({p})"
    if os.path.exists(_default_credential_path()):
        return f"file:{_default_credential_path()}"
    return "missing"


def _read_credential_json() -> Optional[str]:
    raw = (os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON") or "").strip()
    if raw:
        return raw

    for path in ((os.getenv("FIREBASE_SERVICE_ACCOUNT_FILE") or "").strip(), _default_credential_path()):
        if path and os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
    return None


def _describe(e: Exception) -> str:
    # firebase_admin raises firebase_admin.exceptions.FirebaseError with code/message attributes
    code = getattr(e, "code", None)
    msg = getattr(e, "message", None) or str(e)
    return f"{e.__class__.__name__} code={code} message={msg}" if code else f"{e.__class__.__name__} {msg}"


@lru_cache(maxsize=1)
def init_firebase_admin() -> bool:
    """Initialize the default firebase_admin app once. Returns True if Firebase is usable."""
    import firebase_admin
    from firebase_admin import credentials
    from firebase_admin import exceptions as firebase_exceptions

    if firebase_admin._apps:  # type: ignore[attr-defined]
        return True

    try:
        raw = _read_credential_json()
    except OSError:
        logger.warning("Could not read Firebase service account (source=%s)", credential_source(), exc_info=True)
        return False
    if not raw:
        # Not configured is a normal local/dev state.
        logger.info("Firebase Admin not configured (no service account). Using demo auth.")
        return False

    try:
        info = json.loads(raw)
    except ValueError:
        logger.warning("Firebase service account is not valid JSON (source=%s)", credential_source())
        return False
    if not isinstance(info, dict) or not _REQUIRED_KEYS.issubset(info.keys()):
        logger.warning(
            "Firebase service account JSON doesn't look like a service account key (source=%s)",
            credential_source(),
        )
        return False

    try:
        firebase_admin.initialize_app(credentials.Certificate(info))
    except (ValueError, firebase_exceptions.FirebaseError) as e:
        logger.warning("Firebase Admin initialization failed (%s, source=%s)", _describe(e), credential_source())
        return False
    logger.info("Firebase Admin initialized (project_id=%s, source=%s)", info.get("project_id"), credential_source())
    return True


def verify_firebase_id_token(id_token: str) -> Optional[Dict[str, Any]]:
    """Verify a Firebase ID token and return its decoded claims (uid, email, ...) or None."""
    if not id_token or not init_firebase_admin():
        return None

    from firebase_admin import auth
    from firebase_admin import exceptions as firebase_exceptions

    try:
        return auth.verify_id_token(id_token)
    except (ValueError, firebase_exceptions.FirebaseError) as e:
        logger.info("Firebase token verification failed (%s). Treating as anonymous.", _describe(e))
        return None
