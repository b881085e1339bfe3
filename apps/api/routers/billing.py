"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from config import settings
from routers.auth_scope import require_session, scoped_account_id
from routers.dependencies import get_ledger, raise_ledger_http_error
from routers.rate_limit import rate_limit
from services.credits import CREDIT_PACKS, BalanceLedger, serialize_entry
from services.errors import LedgerError
from services.session_token import AccountSession

router = APIRouter()
logger = logging.getLogger(__name__)


class FulfillPackRequest(BaseModel):
    user_id: Optional[str] = None
    pack_id: str = Field(min_length=1, max_length=40)
    provider: str = Field(default="manual", max_length=40)
    billing_reference: Optional[str] = Field(default=None, max_length=200)


class PremiumRequest(BaseModel):
    user_id: Optional[str] = None
    is_premium: bool = True


def _require_manual_fulfillment() -> None:
    if not settings.ALLOW_MANUAL_FULFILLMENT:
        raise HTTPException(
            status_code=503,
            detail="Manual fulfillment is disabled. Enable ALLOW_MANUAL_FULFILLMENT to use it.",
        )


@router.get("/packs")
async def list_credit_packs():
    return {
        "packs": [
            {"id": pack_id, **pack, "cost_per_image": round(pack["price"] / pack["credits"], 2)}
            for pack_id, pack in CREDIT_PACKS.items()
        ]
    }


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    session: AccountSession = Depends(require_session),
    ledger: BalanceLedger = Depends(get_ledger),
):
    account_id = scoped_account_id(session, user_id)
    try:
        return await ledger.get_credit_summary(account_id)
    except LedgerError as exc:
        raise_ledger_http_error(exc)


@router.get("/purchases")
async def purchase_history(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    session: AccountSession = Depends(require_session),
    ledger: BalanceLedger = Depends(get_ledger),
):
    account_id = scoped_account_id(session, user_id)
    entries = await ledger.get_purchase_history(account_id, limit=limit)
    return {"purchases": [serialize_entry(entry) for entry in entries]}


@router.post("/fulfill")
async def fulfill_credit_pack(
    request: FulfillPackRequest,
    _rate_limit: None = Depends(rate_limit("billing_fulfill", limit=30, window_seconds=3600)),
    session: AccountSession = Depends(require_session),
    ledger: BalanceLedger = Depends(get_ledger),
):
    """Grant a purchased credit pack once the payment provider has confirmed it."""
    account_id = scoped_account_id(session, request.user_id)
    _require_manual_fulfillment()

    billing_reference = request.billing_reference or f"{request.provider}:{request.pack_id}"
    try:
        balance_after = await ledger.fulfill_credit_pack(
            account_id,
            request.pack_id,
            provider=request.provider,
            billing_reference=billing_reference,
        )
    except LedgerError as exc:
        raise_ledger_http_error(exc)

    logger.info("Fulfilled %s pack for %s (%s)", request.pack_id, account_id, billing_reference)
    return {
        "ok": True,
        "pack_id": request.pack_id,
        "credits_added": CREDIT_PACKS[request.pack_id]["credits"],
        "balance_after": balance_after,
    }


@router.post("/premium")
async def set_premium(
    request: PremiumRequest,
    session: AccountSession = Depends(require_session),
    ledger: BalanceLedger = Depends(get_ledger),
):
    account_id = scoped_account_id(session, request.user_id)
    _require_manual_fulfillment()
    try:
        balance = await ledger.set_premium(account_id, request.is_premium)
    except LedgerError as exc:
        raise_ledger_http_error(exc)
    return balance.to_dict()
