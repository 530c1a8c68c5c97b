"""Session authentication for studio routes: who is calling and on whose behalf."""

from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import ADMIN_SCOPE, read_session


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    scopes: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_credit_admin(self) -> bool:
        return ADMIN_SCOPE in self.scopes or self.user_id in settings.ADMIN_USER_IDS

    def email_for(self, user_id: str) -> Optional[str]:
        """The session email only describes the session's own user."""
        return self.email if user_id == self.user_id else None


def ensure_user_scope(auth: AuthContext, supplied_user_id: Optional[str], *, allow_admin: bool = False) -> str:
    """Resolve the target user. Naming someone else needs the admin scope where allowed."""
    if not supplied_user_id or supplied_user_id == auth.user_id:
        return auth.user_id
    if allow_admin and auth.is_credit_admin:
        return supplied_user_id
    raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> AuthContext:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    try:
        session = read_session(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return AuthContext(user_id=session.user_id, email=session.email, scopes=session.scopes)


async def require_credit_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not auth.is_credit_admin:
        raise HTTPException(status_code=403, detail=f"Credit administration requires the {ADMIN_SCOPE} scope.")
    return auth
