"""Coloring-page finalization router: charge a credit, then normalize the image."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from config import settings
from routers.auth_scope import require_session, scoped_account_id
from routers.dependencies import get_ledger, raise_ledger_http_error
from routers.rate_limit import rate_limit
from services.credits import BalanceLedger
from services.errors import LedgerError
from services.image_processing import PRINT_MARGIN_FRACTION, threshold_to_black_and_white
from services.session_token import AccountSession

router = APIRouter()

MAX_IMAGE_SOURCE_CHARS = 40 * 1024 * 1024


class FinalizeImageRequest(BaseModel):
    image: str = Field(min_length=8, max_length=MAX_IMAGE_SOURCE_CHARS)
    mode: Literal["generate", "edit"] = "generate"
    description: Optional[str] = Field(default=None, max_length=300)
    user_id: Optional[str] = None


class FinalizeImageResponse(BaseModel):
    image: str
    mode: str
    margin_fraction: float
    charged: int
    credits_remaining: int


@router.post("/finalize", response_model=FinalizeImageResponse)
async def finalize_image(
    request: FinalizeImageRequest,
    _rate_limit: None = Depends(rate_limit("image_finalize", limit=120, window_seconds=3600)),
    session: AccountSession = Depends(require_session),
    ledger: BalanceLedger = Depends(get_ledger),
):
    """Spend the generate/edit credit and return the print-ready page.

    First generations get the standard print margin; edits are thresholded in
    place so repeated edits do not keep shrinking the drawing.
    """
    account_id = scoped_account_id(session, request.user_id)
    is_generate = request.mode == "generate"
    cost = max(int(settings.CREDIT_COST_GENERATE if is_generate else settings.CREDIT_COST_EDIT), 0)
    description = request.description or ("Generated Sketch" if is_generate else "Edited Sketch")

    try:
        if cost > 0:
            credits_remaining = await ledger.deduct_credits(account_id, cost, description)
        else:
            credits_remaining = (await ledger.get_balance(account_id)).credits
    except LedgerError as exc:
        raise_ledger_http_error(exc)

    margin_fraction = PRINT_MARGIN_FRACTION if is_generate else 0.0
    image = await threshold_to_black_and_white(request.image, margin_fraction)
    return FinalizeImageResponse(
        image=image,
        mode=request.mode,
        margin_fraction=margin_fraction,
        charged=cost,
        credits_remaining=credits_remaining,
    )
