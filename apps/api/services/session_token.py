"""Signed studio session tokens.

A token names the studio user (``sub``) and optionally carries scopes such as
``credits:admin``. Tokens are HS256 JWTs signed with ``JWT_SECRET``.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Iterable, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "studio_session"
ADMIN_SCOPE = "credits:admin"
KNOWN_SCOPES = frozenset({ADMIN_SCOPE})


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    token_id: str
    expires_at: int
    email: Optional[str] = None
    scopes: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class IssuedSession:
    token: str
    claims: SessionClaims


def _lifetime(expires_hours: Optional[int]) -> timedelta:
    hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    return timedelta(hours=max(hours, 1))


def issue_session(
    user_id: str,
    *,
    email: Optional[str] = None,
    scopes: Iterable[str] = (),
    expires_hours: Optional[int] = None,
) -> IssuedSession:
    if not str(user_id or "").strip():
        raise ValueError("user_id is required")
    granted = frozenset(scopes)
    unknown = granted - KNOWN_SCOPES
    if unknown:
        raise ValueError(f"Unknown session scopes: {sorted(unknown)}")

    issued_at = datetime.now(timezone.utc)
    claims = SessionClaims(
        user_id=user_id,
        token_id=uuid.uuid4().hex,
        expires_at=int((issued_at + _lifetime(expires_hours)).timestamp()),
        email=email or None,
        scopes=granted,
    )
    payload = {
        "sub": claims.user_id,
        "jti": claims.token_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(issued_at.timestamp()),
        "exp": claims.expires_at,
    }
    if claims.email:
        payload["email"] = claims.email
    if claims.scopes:
        payload["scope"] = " ".join(sorted(claims.scopes))
    token = jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return IssuedSession(token=token, claims=claims)


def read_session(token: str) -> SessionClaims:
    """Validate signature, expiry, token type and subject. Raises ValueError."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    user_id = str(payload.get("sub", "")).strip()
    if not user_id:
        raise ValueError("Session token missing subject.")
    scopes = frozenset(str(payload.get("scope") or "").split()) & KNOWN_SCOPES
    return SessionClaims(
        user_id=user_id,
        token_id=str(payload.get("jti") or ""),
        expires_at=int(payload.get("exp") or 0),
        email=payload.get("email") or None,
        scopes=scopes,
    )
