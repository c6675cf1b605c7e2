from __future__ import annotations

import base64
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Optional

DEFAULT_TOKEN_TTL_SECONDS = 60 * 60 * 24 * 7


@dataclass(frozen=True)
class AuthUser:
    user_id: str
    # "firebase" or "demo"
    provider: str = "demo"


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64url_decode(raw: str) -> bytes:
    padding = "=" * (-len(raw) % 4)
    return base64.urlsafe_b64decode((raw + padding).encode("utf-8"))


def _sign(secret: str, msg: bytes) -> str:
    return _b64url_encode(hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).digest())


def issue_token(*, user_id: str, secret: str, ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS) -> str:
    """Issue a signed demo bearer token for ``user_id``.

    Format: b64url(payload).b64url(sig), payload is ``"<user_id>|<exp>"``.
    Used when Firebase isn't configured (local dev, tests).
    """
    if not user_id or "|" in user_id:
        raise ValueError("user_id must be non-empty and must not contain '|'")
    exp = int(time.time()) + int(ttl_seconds)
    payload = ("%s|%s" % (user_id, exp)).encode("utf-8")
    return "%s.%s" % (_b64url_encode(payload), _sign(secret, payload))


def verify_token(*, token: str, secret: str) -> Optional[AuthUser]:
    try:
        payload_b64, sig = token.split(".", 1)
        payload = _b64url_decode(payload_b64)
        user_id, exp_s = payload.decode("utf-8").split("|", 1)
        exp = int(exp_s)
    except (ValueError, UnicodeDecodeError):
        return None

    if not hmac.compare_digest(_sign(secret, payload), sig):
        return None
    if exp < int(time.time()) or not user_id.strip():
        return None
    return AuthUser(user_id=user_id, provider="demo")


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and str(authorization).lower().startswith("bearer "):
        return str(authorization).split(" ", 1)[1].strip() or None
    return None
