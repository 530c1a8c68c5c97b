from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient
from redis.exceptions import RedisError

from config import settings
from database import get_db
from main import app
from routers import rate_limit
from routers.generation import get_generation_orchestrator
from services.session_token import ADMIN_SCOPE, issue_session, read_session

from fakes import ScriptedProvider, succeeded

WEBHOOK_TOKEN = "super-secret-webhook-token"


def _auth(user_id: str = "studio-user", *, scopes=()) -> dict:
    token = issue_session(user_id, email=f"{user_id}@example.com", scopes=scopes).token
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def studio_client(session_maker, make_orchestrator):
    provider = ScriptedProvider(job_handle="job-api", statuses=[succeeded("job-api")])
    orchestrator = make_orchestrator(provider)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_generation_orchestrator] = lambda: orchestrator
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, provider, orchestrator

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_generation_orchestrator, None)


@pytest.mark.asyncio
async def test_requests_without_session_are_rejected(studio_client):
    client, _, _ = studio_client

    response = await client.post("/posts", json={"caption": "hello"})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_create_post_then_generate_and_wait(studio_client, seed_studio):
    client, provider, _ = studio_client
    await seed_studio(balance=2)

    created = await client.post(
        "/posts",
        json={"post_type": "lifestyle", "caption": "Farmers market haul"},
        headers=_auth(),
    )
    assert created.status_code == 200
    post = created.json()
    assert post["status"] == "draft"
    assert post["generation_version"] == 0

    generated = await client.post(f"/posts/{post['id']}/generate", json={"wait": True}, headers=_auth())
    assert generated.status_code == 200
    body = generated.json()
    assert body["status"] == "completed"
    assert body["job_handle"] == "job-api"
    assert body["result_url"].startswith("http://test/assets/generations/studio-user/job-api-")
    assert provider.submitted[0].input["aspect_ratio"] == "4:5"

    fetched = await client.get(f"/posts/{post['id']}", headers=_auth())
    assert fetched.json()["status"] == "completed"
    assert fetched.json()["result_url"] == body["result_url"]

    summary = await client.get("/billing/credits", headers=_auth())
    assert summary.json()["balance"] == 1
    assert summary.json()["total_used"] == 1


@pytest.mark.asyncio
async def test_async_generate_then_status_endpoint_completes_lazily(studio_client, seed_studio):
    client, _, orchestrator = studio_client
    post_id = await seed_studio(balance=1)

    started = await client.post(f"/posts/{post_id}/generate", json={}, headers=_auth())
    assert started.status_code == 200
    assert started.json()["status"] == "generating"
    orchestrator.enqueue.assert_called_once_with(post_id, 1, "job-api")

    status = await client.get(f"/posts/{post_id}/generation", headers=_auth())
    assert status.status_code == 200
    assert status.json()["status"] == "completed"
    assert status.json()["job_handle"] == "job-api"


@pytest.mark.asyncio
async def test_generate_without_credits_returns_structured_402(studio_client, seed_studio):
    client, provider, _ = studio_client
    post_id = await seed_studio(balance=0)

    response = await client.post(f"/posts/{post_id}/generate", json={"wait": True}, headers=_auth())

    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["error"] == "insufficient_credits"
    assert detail["post_id"] == post_id
    assert detail["refunded"] is False
    assert provider.submitted == []


@pytest.mark.asyncio
async def test_generate_on_foreign_post_returns_404(studio_client, seed_studio):
    client, _, _ = studio_client
    post_id = await seed_studio(balance=3)

    response = await client.post(f"/posts/{post_id}/generate", json={}, headers=_auth("intruder"))
    status = await client.get(f"/posts/{post_id}/generation", headers=_auth("intruder"))

    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "record_not_found"
    assert status.status_code == 404


@pytest.mark.asyncio
async def test_second_generate_while_in_flight_returns_409(studio_client, seed_studio):
    client, _, _ = studio_client
    post_id = await seed_studio(balance=3)

    first = await client.post(f"/posts/{post_id}/generate", json={}, headers=_auth())
    second = await client.post(f"/posts/{post_id}/generate", json={}, headers=_auth())

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["detail"]["error"] == "generation_in_progress"


@pytest.mark.asyncio
async def test_webhook_requires_configured_matching_token(studio_client):
    client, _, _ = studio_client
    payload = {"id": "job-api", "status": "succeeded", "output": "https://replicate.delivery/out/a.png"}

    with patch.object(settings, "PREDICTION_WEBHOOK_TOKEN", ""):
        unconfigured = await client.post("/webhooks/predictions?token=anything", json=payload)
    with patch.object(settings, "PREDICTION_WEBHOOK_TOKEN", WEBHOOK_TOKEN):
        forbidden = await client.post("/webhooks/predictions?token=wrong-token", json=payload)
        missing_id = await client.post(f"/webhooks/predictions?token={WEBHOOK_TOKEN}", json={"status": "failed"})

    assert unconfigured.status_code == 503
    assert forbidden.status_code == 403
    assert missing_id.status_code == 400


@pytest.mark.asyncio
async def test_webhook_completes_generation_once(studio_client, seed_studio):
    client, _, _ = studio_client
    post_id = await seed_studio(balance=1)
    await client.post(f"/posts/{post_id}/generate", json={}, headers=_auth())
    payload = {"id": "job-api", "status": "succeeded", "output": ["https://replicate.delivery/out/job-api.png"]}

    with patch.object(settings, "PREDICTION_WEBHOOK_TOKEN", WEBHOOK_TOKEN):
        first = await client.post(f"/webhooks/predictions?token={WEBHOOK_TOKEN}", json=payload)
        repeat = await client.post(f"/webhooks/predictions?token={WEBHOOK_TOKEN}", json=payload)

    assert first.json() == {"ok": True, "handled": True, "post_id": post_id, "status": "completed"}
    assert repeat.json() == {"ok": True, "handled": False}


@pytest.mark.asyncio
async def test_webhook_for_unknown_job_is_rejected_for_retry(studio_client):
    client, _, _ = studio_client
    payload = {"id": "job-not-yet-stored", "status": "succeeded", "output": "https://replicate.delivery/out/x.png"}

    with patch.object(settings, "PREDICTION_WEBHOOK_TOKEN", WEBHOOK_TOKEN):
        response = await client.post(f"/webhooks/predictions?token={WEBHOOK_TOKEN}", json=payload)

    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "record_not_found"
    assert response.json()["detail"]["job_handle"] == "job-not-yet-stored"


@pytest.mark.asyncio
async def test_batch_endpoint_generates_each_post(studio_client, seed_studio, add_post):
    client, provider, orchestrator = studio_client
    first = await seed_studio(balance=2)
    second = await add_post()
    provider.job_handles = ["job-a", "job-b"]

    response = await client.post("/generations/batch", json={"post_ids": [first, second]}, headers=_auth())

    assert response.status_code == 200
    body = response.json()
    assert body["credit_cost"] == 2
    assert [entry["job_handle"] for entry in body["posts"]] == ["job-a", "job-b"]
    assert orchestrator.enqueue.call_count == 2


@pytest.mark.asyncio
async def test_batch_endpoint_without_credits_returns_402(studio_client, seed_studio, add_post):
    client, provider, _ = studio_client
    first = await seed_studio(balance=1)
    second = await add_post()

    response = await client.post("/generations/batch", json={"post_ids": [first, second]}, headers=_auth())

    assert response.status_code == 402
    assert provider.submitted == []


@pytest.mark.asyncio
async def test_new_users_receive_the_welcome_bonus_once(studio_client):
    client, _, _ = studio_client

    first = await client.get("/billing/credits", headers=_auth("newcomer"))
    second = await client.get("/billing/credits", headers=_auth("newcomer"))
    with patch.object(settings, "WELCOME_BONUS_ENABLED", False):
        without_bonus = await client.get("/billing/credits", headers=_auth("late-joiner"))

    assert first.json()["balance"] == 2
    assert second.json()["balance"] == 2
    assert [entry["kind"] for entry in second.json()["recent_entries"]] == ["bonus"]
    assert without_bonus.json()["balance"] == 0


@pytest.mark.asyncio
async def test_topup_requires_credit_admin(studio_client):
    client, _, _ = studio_client

    response = await client.post("/billing/topup", json={"credits": 10000}, headers=_auth("buyer"))
    summary = await client.get("/billing/credits", headers=_auth("buyer"))

    assert response.status_code == 403
    assert summary.json()["balance"] == 2


@pytest.mark.asyncio
async def test_topup_is_idempotent_per_billing_reference(studio_client):
    client, _, _ = studio_client
    body = {"user_id": "buyer", "credits": 10, "kind": "purchase", "billing_reference": "invoice-42"}
    admin = _auth("ops-admin", scopes=[ADMIN_SCOPE])

    first = await client.post("/billing/topup", json=body, headers=admin)
    repeat = await client.post("/billing/topup", json=body, headers=admin)
    history = await client.get("/billing/history", headers=_auth("buyer"))

    assert first.json() == {"ok": True, "credits_added": 10, "duplicate": False, "balance_after": 12}
    assert repeat.json()["duplicate"] is True
    assert repeat.json()["balance_after"] == 12
    assert sorted(entry["kind"] for entry in history.json()["entries"]) == ["bonus", "purchase"]


@pytest.mark.asyncio
async def test_configured_admins_apply_grant_programs(studio_client):
    client, _, _ = studio_client
    body = {"user_id": "member", "program": "monthly", "reference": "2026-10"}

    with patch.object(settings, "ADMIN_USER_IDS", ["ops"]):
        first = await client.post("/billing/grants", json=body, headers=_auth("ops"))
        repeat = await client.post("/billing/grants", json=body, headers=_auth("ops"))
        missing_reference = await client.post(
            "/billing/grants", json={"user_id": "member", "program": "paid_blueprint"}, headers=_auth("ops")
        )
    forbidden = await client.post("/billing/grants", json=body, headers=_auth("ops"))

    assert first.json() == {
        "program": "monthly",
        "ok": True,
        "credits_added": 200,
        "duplicate": False,
        "balance_after": 202,
    }
    assert repeat.json()["duplicate"] is True
    assert missing_reference.status_code == 400
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_billing_rejects_other_users_scope(studio_client):
    client, _, _ = studio_client

    response = await client.get("/billing/credits?user_id=someone-else", headers=_auth("buyer"))

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_rate_limit_falls_back_to_local_counters_when_redis_is_down():
    quota_app = FastAPI()

    @quota_app.get("/limited")
    async def _limited(_limit: None = Depends(rate_limit.rate_limit("limited", limit=2, window_seconds=60))):
        return {"ok": True}

    with patch.object(rate_limit, "_consume_redis_quota", AsyncMock(side_effect=RedisError("down"))):
        async with AsyncClient(transport=ASGITransport(app=quota_app), base_url="http://test") as client:
            responses = [await client.get("/limited") for _ in range(3)]

    assert [response.status_code for response in responses] == [200, 200, 429]
    assert int(responses[-1].headers["Retry-After"]) <= 60


@pytest.mark.asyncio
async def test_quotas_are_counted_per_session_user():
    quota_app = FastAPI()

    @quota_app.get("/limited")
    async def _limited(_limit: None = Depends(rate_limit.rate_limit("per-user", limit=1, window_seconds=60))):
        return {"ok": True}

    with patch.object(rate_limit, "_consume_redis_quota", AsyncMock(side_effect=RedisError("down"))):
        async with AsyncClient(transport=ASGITransport(app=quota_app), base_url="http://test") as client:
            alice_first = await client.get("/limited", headers=_auth("alice"))
            alice_second = await client.get("/limited", headers=_auth("alice"))
            bob_first = await client.get("/limited", headers=_auth("bob"))

    assert alice_first.status_code == 200
    assert alice_second.status_code == 429
    assert bob_first.status_code == 200
    assert "studio:quota:per-user:user:alice" in rate_limit._local_counters


def test_session_tokens_carry_known_scopes_only():
    issued = issue_session("ops-admin", email="ops@example.com", scopes=[ADMIN_SCOPE])
    claims = read_session(issued.token)

    assert claims.user_id == "ops-admin"
    assert claims.scopes == frozenset({ADMIN_SCOPE})
    assert claims.token_id == issued.claims.token_id
    with pytest.raises(ValueError):
        issue_session("ops-admin", scopes=["everything"])
    with pytest.raises(ValueError):
        read_session(issued.token + "tampered")
