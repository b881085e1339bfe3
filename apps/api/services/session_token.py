"""Signed sessions for account ids the identity provider has already verified.

The API never sees passwords or provider tokens. Whatever signs the user in
hands over a stable account id, and every later request carries a short-lived
HS256 session bound to that id.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "bible_sketch_session"
MAX_ACCOUNT_ID_LENGTH = 128


class InvalidSessionToken(ValueError):
    """The token is unsigned, expired, or does not describe an account session."""


@dataclass(frozen=True)
class AccountSession:
    account_id: str
    expires_at: int
    email: Optional[str] = None


@dataclass(frozen=True)
class IssuedSession:
    token: str
    session: AccountSession


def issue_session_token(
    account_id: str,
    *,
    email: Optional[str] = None,
    ttl_hours: Optional[int] = None,
) -> IssuedSession:
    account_id = (account_id or "").strip()
    if not account_id or len(account_id) > MAX_ACCOUNT_ID_LENGTH:
        raise ValueError("account_id must be a non-empty provider id")

    now = datetime.now(timezone.utc)
    expires_at = int((now + timedelta(hours=max(int(ttl_hours or settings.JWT_EXPIRATION_HOURS), 1))).timestamp())
    claims = {
        "sub": account_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email

    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return IssuedSession(token=token, session=AccountSession(account_id, expires_at, email or None))


def verify_session_token(token: str) -> AccountSession:
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise InvalidSessionToken("Invalid or expired session token.") from exc

    if claims.get("type") != SESSION_TOKEN_TYPE:
        raise InvalidSessionToken("Not an account session token.")
    account_id = str(claims.get("sub") or "").strip()
    if not account_id:
        raise InvalidSessionToken("Session token missing subject.")

    return AccountSession(
        account_id=account_id,
        expires_at=int(claims.get("exp") or 0),
        email=claims.get("email") or None,
    )
