"""Account balance router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from routers.auth_scope import require_session, scoped_account_id
from routers.dependencies import get_ledger, raise_ledger_http_error
from services.credits import BalanceLedger
from services.errors import LedgerError
from services.session_token import AccountSession

router = APIRouter()


class OpenAccountRequest(BaseModel):
    user_id: Optional[str] = None
    display_name: Optional[str] = Field(default=None, max_length=120)


class AccountBalanceResponse(BaseModel):
    account_id: str
    credits: int
    downloads_remaining: int
    is_premium: bool


@router.post("", response_model=AccountBalanceResponse)
async def open_account(
    request: OpenAccountRequest,
    session: AccountSession = Depends(require_session),
    ledger: BalanceLedger = Depends(get_ledger),
):
    """Create the balance record for a new account; returning accounts are unchanged."""
    account_id = scoped_account_id(session, request.user_id)
    balance = await ledger.open_account(account_id, email=session.email, display_name=request.display_name)
    return AccountBalanceResponse(**balance.to_dict())


@router.get("/balance", response_model=AccountBalanceResponse)
async def get_balance(
    user_id: Optional[str] = Query(default=None),
    session: AccountSession = Depends(require_session),
    ledger: BalanceLedger = Depends(get_ledger),
):
    account_id = scoped_account_id(session, user_id)
    try:
        balance = await ledger.get_balance(account_id)
    except LedgerError as exc:
        raise_ledger_http_error(exc)
    return AccountBalanceResponse(**balance.to_dict())
