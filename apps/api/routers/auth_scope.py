"""Resolve the calling account from its Bearer session."""

from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import AccountSession, InvalidSessionToken, verify_session_token


bearer_scheme = HTTPBearer(auto_error=False)


def session_from_header(authorization: Optional[str]) -> Optional[AccountSession]:
    """Parse an ``Authorization`` header without failing; ``None`` if absent or invalid."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    try:
        return verify_session_token(token.strip())
    except InvalidSessionToken:
        return None


async def require_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AccountSession:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    try:
        return verify_session_token(credentials.credentials)
    except InvalidSessionToken as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def scoped_account_id(session: AccountSession, requested_account_id: Optional[str]) -> str:
    """Accounts only act on themselves; a foreign ``user_id`` is a 403."""
    if requested_account_id and requested_account_id.strip() != session.account_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return session.account_id
