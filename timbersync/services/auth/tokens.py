from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from timbersync.core.config import get_settings
from timbersync.core.errors import AuthenticationError


@dataclass(frozen=True)
class TokenClaims:
    principal_id: str
    role: str
    expires_at: datetime


def issue_token(*, principal_id: str, role: str, now: datetime | None = None) -> tuple[str, datetime]:
    # Sign a bearer token carrying the principal id and role for the configured window.
    settings = get_settings()
    issued_at = now or datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(days=settings.jwt_ttl_days)
    payload = {
        "sub": principal_id,
        "role": role,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, expires_at


def decode_token(raw_token: str) -> TokenClaims:
    # Signature and expiry failures collapse into a single authentication error.
    settings = get_settings()
    try:
        claims = jwt.decode(
            raw_token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("Invalid token") from exc
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise AuthenticationError("Invalid token subject")
    return TokenClaims(
        principal_id=subject,
        role=str(claims.get("role") or ""),
        expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
    )
