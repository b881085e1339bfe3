import time
from unittest.mock import patch

import pytest
from fastapi import HTTPException
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request

from main import app
from routers import rate_limit
from routers.auth_scope import session_from_header
from services.session_token import InvalidSessionToken, issue_session_token, verify_session_token


@pytest.mark.asyncio
async def test_liveness_and_readiness_probes():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        live = await client.get("/health/live")
        assert live.status_code == 200
        assert live.json() == {"alive": True}

        with patch("routers.health.settings.JWT_SECRET", "change_me_in_production"):
            not_ready = await client.get("/health/ready")
        assert not_ready.status_code == 503
        assert not_ready.json()["missing"] == ["JWT_SECRET"]

        with patch("config.settings.JWT_SECRET", "a-long-enough-production-secret-value"):
            ready = await client.get("/health/ready")
        assert ready.status_code == 200


@pytest.mark.asyncio
async def test_session_minting_is_disabled_by_default():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        with patch("routers.auth.settings.ALLOW_DEV_SESSIONS", False):
            resp = await client.post("/auth/session", json={"user_id": "someone"})
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_manual_fulfillment_is_disabled_by_default():
    header = {"Authorization": f"Bearer {issue_session_token('buyer').token}"}
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        with patch("routers.billing.settings.ALLOW_MANUAL_FULFILLMENT", False):
            resp = await client.post("/billing/fulfill", json={"pack_id": "spark"}, headers=header)
    assert resp.status_code == 503


def test_session_token_round_trip_and_rejection():
    issued = issue_session_token(" reader-1 ", email="reader@example.com")
    session = verify_session_token(issued.token)
    assert session == issued.session
    assert session.account_id == "reader-1"
    assert session.email == "reader@example.com"

    with pytest.raises(InvalidSessionToken):
        verify_session_token(issued.token + "tampered")
    with pytest.raises(ValueError):
        issue_session_token("   ")


def test_session_header_parsing_never_raises():
    token = issue_session_token("header-reader").token

    assert session_from_header(f"Bearer {token}").account_id == "header-reader"
    assert session_from_header(f"Basic {token}") is None
    assert session_from_header("Bearer not-a-jwt") is None
    assert session_from_header(None) is None


def _request(headers=None, client=("203.0.113.9", 5000)) -> Request:
    return Request(
        {
            "type": "http",
            "method": "POST",
            "path": "/images/finalize",
            "headers": [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()],
            "client": client,
            "app": app,
        }
    )


def test_rate_limit_keys_by_account_then_ip():
    token = issue_session_token("keyed-reader").token

    assert rate_limit._client_identifier(_request({"Authorization": f"Bearer {token}"})) == "account:keyed-reader"
    assert rate_limit._client_identifier(_request({"Authorization": "Bearer junk"})) == "ip:203.0.113.9"


@pytest.mark.asyncio
async def test_rate_limit_falls_back_to_local_counters_when_redis_is_down():
    app.state.disable_rate_limits = False
    dependency = rate_limit.rate_limit("finalize", limit=1, window_seconds=60)

    with patch("routers.rate_limit.settings.REDIS_URL", "redis://127.0.0.1:1/0"):
        await dependency(_request())
        with pytest.raises(HTTPException) as exc_info:
            await dependency(_request())

    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
async def test_local_rate_limit_counters_evict_expired_windows():
    rate_limit._local_counters["bible_sketch:rate:finalize:ip:198.51.100.1"] = (3, time.time() - 1)
    rate_limit._local_counters["bible_sketch:rate:finalize:ip:198.51.100.2"] = (1, time.time() - 1)

    assert await rate_limit._consume_local_quota("bible_sketch:rate:finalize:ip:198.51.100.1", 1, 60) is True

    assert set(rate_limit._local_counters) == {"bible_sketch:rate:finalize:ip:198.51.100.1"}
    assert rate_limit._local_counters["bible_sketch:rate:finalize:ip:198.51.100.1"][0] == 1
