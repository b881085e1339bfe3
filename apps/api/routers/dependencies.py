"""Shared router dependencies for the balance ledger."""

from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException, Request

from database import async_session_maker
from services.account_store import AccountStore
from services.credits import BalanceLedger
from services.errors import (
    AccountNotFound,
    InsufficientBalance,
    LedgerError,
    NoDownloadsRemaining,
    TransactionConflict,
    UnknownCreditPack,
)


def build_ledger() -> BalanceLedger:
    return BalanceLedger(AccountStore(async_session_maker))


def get_ledger(request: Request) -> BalanceLedger:
    """Return the ledger created at startup, building one on first use."""
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is None:
        ledger = build_ledger()
        request.app.state.ledger = ledger
    return ledger


def raise_ledger_http_error(exc: LedgerError) -> NoReturn:
    """Translate ledger errors into responses the client can branch on."""
    detail = {"code": exc.code, "message": str(exc)}
    if isinstance(exc, InsufficientBalance):
        detail.update(action="purchase_required", required=exc.required, available=exc.available)
        raise HTTPException(status_code=402, detail=detail) from exc
    if isinstance(exc, NoDownloadsRemaining):
        detail.update(action="upgrade_required", remaining=0)
        raise HTTPException(status_code=402, detail=detail) from exc
    if isinstance(exc, AccountNotFound):
        raise HTTPException(status_code=404, detail=detail) from exc
    if isinstance(exc, TransactionConflict):
        raise HTTPException(status_code=409, detail=detail) from exc
    if isinstance(exc, UnknownCreditPack):
        raise HTTPException(status_code=422, detail=detail) from exc
    raise HTTPException(status_code=500, detail=detail) from exc
