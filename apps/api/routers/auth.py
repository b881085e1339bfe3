"""
Session bridge between the external identity provider and the API.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from config import settings
from routers.dependencies import get_ledger
from services.credits import BalanceLedger
from services.session_token import issue_session_token

router = APIRouter()


class CreateSessionRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    email: Optional[str] = Field(default=None, max_length=320)
    display_name: Optional[str] = Field(default=None, max_length=120)


class SessionResponse(BaseModel):
    user_id: str
    session_token: str
    session_expires_at: int
    credits: int
    downloads_remaining: int
    is_premium: bool


@router.post("/session", response_model=SessionResponse)
async def create_session(
    request: CreateSessionRequest,
    ledger: BalanceLedger = Depends(get_ledger),
):
    """Mint a session for an account id and open its balance on first sight."""
    if not settings.ALLOW_DEV_SESSIONS:
        raise HTTPException(
            status_code=503,
            detail="Direct session minting is disabled. Sign in through the identity provider.",
        )

    account_id = request.user_id.strip()
    if not account_id:
        raise HTTPException(status_code=422, detail="user_id must not be blank")

    balance = await ledger.open_account(
        account_id,
        email=request.email,
        display_name=request.display_name,
    )
    issued = issue_session_token(account_id, email=request.email)
    return SessionResponse(
        user_id=account_id,
        session_token=issued.token,
        session_expires_at=issued.session.expires_at,
        credits=balance.credits,
        downloads_remaining=balance.downloads_remaining,
        is_premium=balance.is_premium,
    )
