import base64
import io
from unittest.mock import patch

import numpy as np
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from PIL import Image

from main import app
from routers.dependencies import get_ledger
from services.image_processing import PNG_DATA_URL_PREFIX
from services.session_token import issue_session_token


FLOW_USER_ID = "flow-user"
OTHER_USER_ID = "flow-user-other"
FLOW_AUTH_HEADER = {"Authorization": f"Bearer {issue_session_token(FLOW_USER_ID).token}"}


def _gray_page(value: int, size=(120, 80)) -> str:
    buffer = io.BytesIO()
    Image.new("RGB", size, (value, value, value)).save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def _pixels(data_url: str) -> np.ndarray:
    raw = base64.b64decode(data_url[len(PNG_DATA_URL_PREFIX):])
    with Image.open(io.BytesIO(raw)) as image:
        return np.array(image)


@pytest_asyncio.fixture
async def flow_client(ledger):
    app.dependency_overrides[get_ledger] = lambda: ledger
    with (
        patch("routers.auth.settings.ALLOW_DEV_SESSIONS", True),
        patch("routers.billing.settings.ALLOW_MANUAL_FULFILLMENT", True),
    ):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            session_resp = await client.post(
                "/auth/session",
                json={"user_id": FLOW_USER_ID, "email": "flow@example.com"},
            )
            assert session_resp.status_code == 200
            yield client

    app.dependency_overrides.pop(get_ledger, None)


@pytest.mark.asyncio
async def test_session_opens_account_with_signup_balances(flow_client):
    resp = await flow_client.get("/account/balance", headers=FLOW_AUTH_HEADER)

    assert resp.status_code == 200
    assert resp.json() == {
        "account_id": FLOW_USER_ID,
        "credits": 5,
        "downloads_remaining": 5,
        "is_premium": False,
    }


@pytest.mark.asyncio
async def test_finalize_charges_credit_and_thresholds_image(flow_client):
    edit_resp = await flow_client.post(
        "/images/finalize",
        json={"image": _gray_page(128), "mode": "edit", "description": "Edited Sketch: Psalm 23"},
        headers=FLOW_AUTH_HEADER,
    )
    assert edit_resp.status_code == 200
    edit_payload = edit_resp.json()
    assert edit_payload["charged"] == 1
    assert edit_payload["credits_remaining"] == 4
    assert edit_payload["margin_fraction"] == 0.0
    assert (_pixels(edit_payload["image"]) == 0).all()

    generate_resp = await flow_client.post(
        "/images/finalize",
        json={"image": _gray_page(40), "mode": "generate"},
        headers=FLOW_AUTH_HEADER,
    )
    assert generate_resp.status_code == 200
    generate_payload = generate_resp.json()
    assert generate_payload["credits_remaining"] == 3
    assert generate_payload["margin_fraction"] == 0.15
    pixels = _pixels(generate_payload["image"])
    assert pixels[0, 0].tolist() == [255, 255, 255]
    assert pixels[40, 60].tolist() == [0, 0, 0]

    credits_resp = await flow_client.get("/billing/credits", headers=FLOW_AUTH_HEADER)
    assert credits_resp.status_code == 200
    summary = credits_resp.json()
    assert summary["credits"] == 3
    assert [entry["amount"] for entry in summary["recent_entries"]] == [-1, -1, 5]


@pytest.mark.asyncio
async def test_finalize_with_malformed_image_url_returns_source_unchanged(flow_client):
    source = "http://[::1/page.png"

    resp = await flow_client.post(
        "/images/finalize",
        json={"image": source, "mode": "edit"},
        headers=FLOW_AUTH_HEADER,
    )

    assert resp.status_code == 200
    assert resp.json()["image"] == source
    assert resp.json()["credits_remaining"] == 4

    balance_resp = await flow_client.get("/account/balance", headers=FLOW_AUTH_HEADER)
    assert balance_resp.json()["credits"] == 4


@pytest.mark.asyncio
async def test_finalize_without_credits_asks_for_purchase(flow_client):
    for _ in range(5):
        resp = await flow_client.post(
            "/images/finalize",
            json={"image": _gray_page(200), "mode": "generate"},
            headers=FLOW_AUTH_HEADER,
        )
        assert resp.status_code == 200

    resp = await flow_client.post(
        "/images/finalize",
        json={"image": _gray_page(200), "mode": "generate"},
        headers=FLOW_AUTH_HEADER,
    )
    assert resp.status_code == 402
    detail = resp.json()["detail"]
    assert detail["code"] == "insufficient_credits"
    assert detail["action"] == "purchase_required"
    assert detail["available"] == 0

    fulfill_resp = await flow_client.post(
        "/billing/fulfill",
        json={"pack_id": "spark", "billing_reference": "order-7"},
        headers=FLOW_AUTH_HEADER,
    )
    assert fulfill_resp.status_code == 200
    assert fulfill_resp.json()["balance_after"] == 20

    purchases_resp = await flow_client.get("/billing/purchases", headers=FLOW_AUTH_HEADER)
    purchases = purchases_resp.json()["purchases"]
    assert len(purchases) == 1
    assert purchases[0]["metadata"]["pack_id"] == "spark"


@pytest.mark.asyncio
async def test_download_quota_is_spent_and_then_upsells(flow_client):
    allowance_resp = await flow_client.get("/downloads/allowance", headers=FLOW_AUTH_HEADER)
    assert allowance_resp.json() == {"allowed": True, "remaining": 5, "is_premium": False}

    for expected in (4, 3, 2, 1, 0):
        resp = await flow_client.post(
            "/downloads/prepare",
            json={"image": _gray_page(90), "sketch_id": "abc/123", "mode": "print"},
            headers=FLOW_AUTH_HEADER,
        )
        assert resp.status_code == 200
        payload = resp.json()
        assert payload["remaining"] == expected
        assert payload["filename"] == "bible-sketch-abc_123.png"
        assert payload["image"].startswith(PNG_DATA_URL_PREFIX)

    blocked = await flow_client.post(
        "/downloads/prepare",
        json={"image": _gray_page(90), "sketch_id": "abc123"},
        headers=FLOW_AUTH_HEADER,
    )
    assert blocked.status_code == 402
    assert blocked.json()["detail"]["action"] == "upgrade_required"

    premium_resp = await flow_client.post(
        "/billing/premium",
        json={"is_premium": True},
        headers=FLOW_AUTH_HEADER,
    )
    assert premium_resp.status_code == 200

    unlimited = await flow_client.post(
        "/downloads/prepare",
        json={"image": _gray_page(90), "sketch_id": "abc123"},
        headers=FLOW_AUTH_HEADER,
    )
    assert unlimited.status_code == 200
    assert unlimited.json()["remaining"] == -1
    assert unlimited.json()["is_premium"] is True


@pytest.mark.asyncio
async def test_routes_reject_missing_or_foreign_sessions(flow_client):
    missing = await flow_client.get("/downloads/allowance")
    assert missing.status_code == 401

    foreign = await flow_client.get(
        f"/billing/credits?user_id={OTHER_USER_ID}",
        headers=FLOW_AUTH_HEADER,
    )
    assert foreign.status_code == 403


@pytest.mark.asyncio
async def test_unknown_account_balance_is_not_found(flow_client):
    stranger_header = {"Authorization": f"Bearer {issue_session_token('never-opened').token}"}

    resp = await flow_client.get("/account/balance", headers=stranger_header)

    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "account_not_found"


@pytest.mark.asyncio
async def test_unknown_credit_pack_is_rejected(flow_client):
    resp = await flow_client.post(
        "/billing/fulfill",
        json={"pack_id": "cathedral"},
        headers=FLOW_AUTH_HEADER,
    )
    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "unknown_credit_pack"


@pytest.mark.asyncio
async def test_packs_listing_is_public(flow_client):
    resp = await flow_client.get("/billing/packs")

    assert resp.status_code == 200
    packs = {pack["id"]: pack for pack in resp.json()["packs"]}
    assert packs["torch"]["credits"] == 80
    assert packs["beacon"]["cost_per_image"] == 0.15
