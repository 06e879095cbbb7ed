import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlalchemy.future import select

from config import settings
from database import get_db
from main import app
from models.capability_ledger import CapabilityLedgerEntry
from models.subscription import Subscription
from routers.capability_scope import get_token_ledger
from services.catalog import FEATURE_CHAT_MEDIA, FEATURE_CHAT_SEND, FEATURE_MESSAGING_UNLIMITED
from services.rate_limiter import rate_limiter
from services.session_token import create_session_token
from services.token_ledger import SqlTokenLedger


PREMIUM_USER_ID = "flow-premium-user"
FREE_USER_ID = "flow-free-user"


def failing_session():
    error = OperationalError("INSERT INTO capability_token_ledger", {}, Exception("connection refused"))
    db = MagicMock()
    db.add = MagicMock()
    db.commit = AsyncMock(side_effect=error)
    db.rollback = AsyncMock()
    return db


def _session_header(user_id):
    return {"Authorization": f"Bearer {create_session_token(user_id)['token']}"}


@pytest_asyncio.fixture
async def gate_client(session_maker, add_users):
    await add_users(PREMIUM_USER_ID, FREE_USER_ID)
    async with session_maker() as session:
        session.add(Subscription(id="sub-flow", user_id=PREMIUM_USER_ID, plan_key="premium", status="active"))
        await session.commit()

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker

    app.dependency_overrides.pop(get_db, None)


async def _claim(client, user_id):
    response = await client.get("/entitlements-claim", headers=_session_header(user_id))
    assert response.status_code == 200
    return response.json()


async def _token(client, user_id, feature, method="POST", path="/messages"):
    claim = await _claim(client, user_id)
    response = await client.post(
        "/capability-token",
        headers={"Authorization": f"Bearer {claim['claim']}"},
        json={"feature": feature, "method": method, "path": path},
    )
    assert response.status_code == 200, response.text
    return response.json()["token"]


async def _post_message(client, user_id, token, content="hello"):
    headers = _session_header(user_id)
    if token is not None:
        headers[settings.CAPABILITY_TOKEN_HEADER] = token
    return await client.post("/messages", headers=headers, json={"content": content})


@pytest.mark.asyncio
async def test_premium_token_is_single_use(gate_client):
    client, _ = gate_client
    claim = await _claim(client, PREMIUM_USER_ID)
    assert claim["plan"] == "premium"
    assert claim["expires_at"] > 0

    token_response = await client.post(
        "/capability-token",
        headers={"Authorization": f"Bearer {claim['claim']}"},
        json={"feature": FEATURE_MESSAGING_UNLIMITED, "method": "POST", "path": "/messages"},
    )
    assert token_response.status_code == 200
    body = token_response.json()
    assert body["token"]
    assert body["expiresAt"] > 0
    assert token_response.headers["cache-control"] == "no-store"

    first = await _post_message(client, PREMIUM_USER_ID, body["token"])
    assert first.status_code == 200
    assert first.json()["message"]["content"] == "hello"

    replay = await _post_message(client, PREMIUM_USER_ID, body["token"])
    assert replay.status_code == 401
    assert replay.json() == {"ok": False, "error": "replay_or_expired"}

    listing = await client.get("/messages", headers=_session_header(PREMIUM_USER_ID))
    assert listing.status_code == 200
    assert len(listing.json()["messages"]) == 1


@pytest.mark.asyncio
async def test_free_plan_is_refused_premium_tokens_without_ledger_entry(gate_client):
    client, session_maker = gate_client
    claim = await _claim(client, FREE_USER_ID)
    assert claim["plan"] == "free"

    response = await client.post(
        "/capability-token",
        headers={"Authorization": f"Bearer {claim['claim']}"},
        json={"feature": FEATURE_MESSAGING_UNLIMITED, "method": "POST", "path": "/messages"},
    )
    assert response.status_code == 403
    assert response.json()["error"] == "forbidden_plan"

    async with session_maker() as db:
        count = await db.execute(select(func.count()).select_from(CapabilityLedgerEntry))
        assert count.scalar_one() == 0


@pytest.mark.asyncio
async def test_capability_token_endpoint_requires_a_valid_claim(gate_client):
    client, _ = gate_client
    body = {"feature": FEATURE_CHAT_SEND, "method": "POST", "path": "/messages"}

    missing = await client.post("/capability-token", json=body)
    assert missing.status_code == 401
    assert missing.json()["error"] == "claim_required"

    session_as_claim = await client.post("/capability-token", headers=_session_header(FREE_USER_ID), json=body)
    assert session_as_claim.status_code == 401
    assert session_as_claim.json()["error"] == "invalid_claim"


@pytest.mark.asyncio
async def test_capability_token_endpoint_validates_request_shape(gate_client):
    client, _ = gate_client
    claim = await _claim(client, FREE_USER_ID)
    headers = {"Authorization": f"Bearer {claim['claim']}"}

    missing_feature = await client.post("/capability-token", headers=headers, json={"method": "POST", "path": "/x"})
    assert missing_feature.status_code == 400
    assert missing_feature.json()["error"] == "missing_feature"

    bad_method = await client.post(
        "/capability-token", headers=headers, json={"feature": FEATURE_CHAT_SEND, "method": "TRACE", "path": "/x"}
    )
    assert bad_method.json()["error"] == "invalid_method"


@pytest.mark.asyncio
async def test_free_user_sends_with_open_feature_and_rejections_map_to_statuses(gate_client):
    client, _ = gate_client

    no_token = await _post_message(client, FREE_USER_ID, None)
    assert no_token.status_code == 401
    assert no_token.json()["error"] == "token_required"

    garbage = await _post_message(client, FREE_USER_ID, "not-a-token")
    assert garbage.status_code == 401
    assert garbage.json()["error"] == "token_invalid"

    wrong_path = await _token(client, FREE_USER_ID, FEATURE_CHAT_SEND, method="GET", path="/premium")
    mismatch = await _post_message(client, FREE_USER_ID, wrong_path)
    assert mismatch.status_code == 403
    assert mismatch.json()["error"] == "token_mismatch"

    token = await _token(client, FREE_USER_ID, FEATURE_CHAT_SEND)
    sent = await _post_message(client, FREE_USER_ID, token)
    assert sent.status_code == 200
    assert sent.json()["usage"]["unlimited"] is False
    assert sent.json()["usage"]["count"] == 1


@pytest.mark.asyncio
async def test_premium_endpoint_refuses_tokens_for_other_features(gate_client):
    client, _ = gate_client

    send_token = await _token(client, FREE_USER_ID, FEATURE_CHAT_SEND, method="GET", path="/premium")
    forbidden = await client.get(
        "/premium",
        headers={**_session_header(FREE_USER_ID), settings.CAPABILITY_TOKEN_HEADER: send_token},
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["error"] == "feature_forbidden"

    media_token = await _token(client, PREMIUM_USER_ID, FEATURE_CHAT_MEDIA, method="GET", path="/premium")
    allowed = await client.get(
        "/premium",
        headers={**_session_header(PREMIUM_USER_ID), settings.CAPABILITY_TOKEN_HEADER: media_token},
    )
    assert allowed.status_code == 200
    assert allowed.json()["feature"] == FEATURE_CHAT_MEDIA


@pytest.mark.asyncio
async def test_token_presented_by_another_user_is_not_burned(gate_client):
    client, _ = gate_client
    token = await _token(client, PREMIUM_USER_ID, FEATURE_CHAT_SEND)

    stolen = await _post_message(client, FREE_USER_ID, token)
    assert stolen.status_code == 403
    assert stolen.json()["error"] == "token_user_mismatch"

    owner = await _post_message(client, PREMIUM_USER_ID, token)
    assert owner.status_code == 200


@pytest.mark.asyncio
async def test_quota_rejection_happens_before_the_token_is_spent(gate_client, monkeypatch):
    client, session_maker = gate_client
    monkeypatch.setattr(settings, "USAGE_FREE_LIMIT", 1)

    first = await _post_message(client, FREE_USER_ID, await _token(client, FREE_USER_ID, FEATURE_CHAT_SEND))
    assert first.status_code == 200

    token = await _token(client, FREE_USER_ID, FEATURE_CHAT_SEND)
    blocked = await _post_message(client, FREE_USER_ID, token)
    assert blocked.status_code == 403
    assert blocked.json() == {"ok": False, "error": "limit_reached", "feature": "messages", "limit": 1}

    async with session_maker() as db:
        unconsumed = await db.execute(
            select(func.count())
            .select_from(CapabilityLedgerEntry)
            .where(CapabilityLedgerEntry.consumed_at.is_(None))
        )
        assert unconsumed.scalar_one() == 1

    usage = await client.get("/usage/messages", headers=_session_header(FREE_USER_ID))
    assert usage.status_code == 200
    assert usage.json()["count"] == 1
    assert usage.json()["remaining"] == 0


@pytest.mark.asyncio
async def test_concurrent_sends_at_the_last_quota_slot_spend_only_the_winning_token(gate_client, monkeypatch):
    client, session_maker = gate_client
    monkeypatch.setattr(settings, "USAGE_FREE_LIMIT", 1)
    tokens = [await _token(client, FREE_USER_ID, FEATURE_CHAT_SEND) for _ in range(2)]

    responses = await asyncio.gather(*[_post_message(client, FREE_USER_ID, token) for token in tokens])
    assert sorted(response.status_code for response in responses) == [200, 403]
    rejected = next(response for response in responses if response.status_code == 403)
    assert rejected.json()["error"] == "limit_reached"

    async with session_maker() as db:
        consumed = await db.execute(
            select(func.count())
            .select_from(CapabilityLedgerEntry)
            .where(CapabilityLedgerEntry.consumed_at.is_not(None))
        )
        assert consumed.scalar_one() == 1

    usage = await client.get("/usage/messages", headers=_session_header(FREE_USER_ID))
    assert usage.json()["count"] == 1


@pytest.mark.asyncio
async def test_dev_unlimited_grant_lifts_quota(gate_client, monkeypatch):
    client, _ = gate_client
    monkeypatch.setattr(settings, "USAGE_FREE_LIMIT", 1)
    headers = _session_header(FREE_USER_ID)

    granted = await client.post("/dev/grants/messages-unlimited", headers=headers)
    assert granted.status_code == 200
    assert granted.json()["already"] is False
    again = await client.post("/dev/grants/messages-unlimited", headers=headers)
    assert again.json() == {"ok": True, "already": True}

    summary = await client.get("/entitlements", headers=headers)
    assert FEATURE_MESSAGING_UNLIMITED in summary.json()["features"]

    for _ in range(2):
        token = await _token(client, FREE_USER_ID, FEATURE_MESSAGING_UNLIMITED)
        sent = await _post_message(client, FREE_USER_ID, token)
        assert sent.status_code == 200
        assert sent.json()["usage"]["unlimited"] is True


@pytest.mark.asyncio
async def test_dev_trial_grant_expires_after_trial_duration(gate_client):
    client, _ = gate_client
    response = await client.post("/dev/grants/messages-trial", headers=_session_header(FREE_USER_ID))
    assert response.status_code == 200
    grant = response.json()["grant"]
    assert grant["source"] == "trial"
    assert grant["expires_at"] is not None


@pytest.mark.asyncio
async def test_dev_grants_are_hidden_in_production(gate_client, monkeypatch):
    client, _ = gate_client
    monkeypatch.setattr(settings, "ENVIRONMENT", "production")
    response = await client.post("/dev/grants/messages-unlimited", headers=_session_header(FREE_USER_ID))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_ledger_outage_fails_closed_over_http(gate_client):
    client, _ = gate_client
    claim = await _claim(client, PREMIUM_USER_ID)
    app.dependency_overrides[get_token_ledger] = lambda: SqlTokenLedger(failing_session())
    try:
        response = await client.post(
            "/capability-token",
            headers={"Authorization": f"Bearer {claim['claim']}"},
            json={"feature": FEATURE_CHAT_SEND, "method": "POST", "path": "/messages"},
        )
    finally:
        app.dependency_overrides.pop(get_token_ledger, None)
    assert response.status_code == 503
    assert response.json() == {"ok": False, "error": "server_error"}


@pytest.mark.asyncio
async def test_rate_limited_endpoint_sets_headers_and_rejects(gate_client, monkeypatch):
    client, _ = gate_client
    unreachable = MagicMock()
    unreachable.pipeline.side_effect = ConnectionError("redis down")
    monkeypatch.setattr(rate_limiter, "_redis", unreachable)
    monkeypatch.setattr(settings, "RATE_LIMIT_DEFAULT_LIMIT", 1)
    app.state.disable_rate_limits = False

    first = await client.get("/entitlements-claim", headers=_session_header(FREE_USER_ID))
    assert first.status_code == 200
    assert first.headers["RateLimit-Limit"] == "1"
    assert first.headers["RateLimit-Remaining"] == "0"
    assert "RateLimit-Reset" in first.headers

    second = await client.get("/entitlements-claim", headers=_session_header(FREE_USER_ID))
    assert second.status_code == 429
    assert second.json()["error"] == "rate_limited"
    assert int(second.headers["Retry-After"]) >= 1


@pytest.mark.asyncio
async def test_readiness_reports_missing_tables(gate_client):
    client, _ = gate_client
    with patch("routers.health.missing_tables", AsyncMock(return_value=["capability_token_ledger"])):
        response = await client.get("/health/ready")
    assert response.status_code == 503
    assert response.json()["missing"] == ["capability_token_ledger"]

    live = await client.get("/health/live")
    assert live.json() == {"alive": True}
