"""Security utilities: administrator setup tokens."""

import uuid
from datetime import datetime, timedelta, timezone

from jose import jwt

from app.core.config import get_settings

settings = get_settings()

SETUP_TOKEN_PURPOSE = "admin_setup"


# ── JWT ───────────────────────────────────────────────────────

def create_setup_token(
    admin_id: uuid.UUID | str,
    tenant_id: uuid.UUID | str,
    expires_delta: timedelta | None = None,
) -> str:
    """Signed token that lets a freshly provisioned administrator set a password.

    The token is embedded in the admin login link sent with the completion
    notification; the tenant application verifies it with ``decode_jwt``.
    """
    if not settings.jwt_secret_key:
        raise RuntimeError("JWT_SECRET_KEY is not configured")
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.setup_token_expire_minutes)
    )
    payload = {
        "sub": str(admin_id),
        "tid": str(tenant_id),
        "purpose": SETUP_TOKEN_PURPOSE,
        "exp": expire,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_jwt(token: str) -> dict:
    """Decode and verify a JWT. Raises jose.JWTError on failure."""
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
