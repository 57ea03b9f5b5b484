from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt

from app.domain.identity import AuthContext, UserRole

ALGORITHM = "HS256"


class InvalidTokenError(Exception):
    pass


def create_access_token(
    subject: str,
    role: str,
    ttl_minutes: int,
    settings,
) -> str:
    issued_at = datetime.now(tz=timezone.utc)
    payload: Dict[str, Any] = {
        "sub": subject,
        "role": role,
        "exp": issued_at + timedelta(minutes=ttl_minutes),
        "iat": issued_at,
    }
    return jwt.encode(payload, settings.auth_secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str, secret: str) -> dict[str, Any]:
    return jwt.decode(token, secret, algorithms=[ALGORITHM])


def auth_context_from_token(token: str, secret: str) -> AuthContext:
    try:
        claims = decode_access_token(token, secret)
    except jwt.ExpiredSignatureError as exc:
        raise InvalidTokenError("token_expired") from exc
    except jwt.InvalidTokenError as exc:
        raise InvalidTokenError("token_invalid") from exc

    subject = claims.get("sub")
    if not subject:
        raise InvalidTokenError("token_missing_subject")
    try:
        role = UserRole(claims.get("role", UserRole.CLIENT.value))
    except ValueError as exc:
        raise InvalidTokenError("token_unknown_role") from exc
    return AuthContext(user_id=str(subject), role=role)
