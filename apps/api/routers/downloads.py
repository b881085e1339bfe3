"""Download/print quota router."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from routers.auth_scope import require_session, scoped_account_id
from routers.dependencies import get_ledger, raise_ledger_http_error
from routers.images import MAX_IMAGE_SOURCE_CHARS
from routers.rate_limit import rate_limit
from services.credits import BalanceLedger
from services.errors import LedgerError
from services.image_processing import to_lossless_format
from services.session_token import AccountSession

router = APIRouter()


class PrepareDownloadRequest(BaseModel):
    image: str = Field(min_length=8, max_length=MAX_IMAGE_SOURCE_CHARS)
    sketch_id: str = Field(min_length=1, max_length=128)
    mode: Literal["download", "print"] = "download"
    user_id: Optional[str] = None


class PrepareDownloadResponse(BaseModel):
    image: str
    filename: str
    mode: str
    remaining: int
    is_premium: bool


def _safe_filename_token(value: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_"} else "_" for ch in value)
    return cleaned or "sketch"


@router.get("/allowance")
async def download_allowance(
    user_id: Optional[str] = Query(default=None),
    session: AccountSession = Depends(require_session),
    ledger: BalanceLedger = Depends(get_ledger),
):
    """Read-only quota for rendering the downloads-left badge."""
    account_id = scoped_account_id(session, user_id)
    allowance = await ledger.check_download_allowance(account_id)
    return allowance.to_dict()


@router.post("/prepare", response_model=PrepareDownloadResponse)
async def prepare_download(
    request: PrepareDownloadRequest,
    _rate_limit: None = Depends(rate_limit("download_prepare", limit=240, window_seconds=3600)),
    session: AccountSession = Depends(require_session),
    ledger: BalanceLedger = Depends(get_ledger),
):
    """Check the quota, produce the lossless PNG and spend one download."""
    account_id = scoped_account_id(session, request.user_id)

    allowance = await ledger.check_download_allowance(account_id)
    if not allowance.allowed:
        raise HTTPException(
            status_code=402,
            detail={
                "code": "no_downloads_remaining",
                "message": "No downloads remaining. Upgrade to premium for unlimited downloads.",
                "action": "upgrade_required",
                "remaining": allowance.remaining,
            },
        )

    image = await to_lossless_format(request.image)
    label = "Print" if request.mode == "print" else "Download"
    try:
        remaining = await ledger.deduct_download(account_id, f"{label}: {request.sketch_id}")
    except LedgerError as exc:
        raise_ledger_http_error(exc)

    return PrepareDownloadResponse(
        image=image,
        filename=f"bible-sketch-{_safe_filename_token(request.sketch_id)}.png",
        mode=request.mode,
        remaining=remaining,
        is_premium=allowance.is_premium,
    )
