from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from forumai.apps.api.deps import get_runtime
from forumai.apps.api.main import create_app
from forumai.core.config import get_settings
from forumai.core.errors import TransportError


@pytest.fixture
async def client(collaborators):
    app = create_app(init_db=False)
    app.dependency_overrides[get_runtime] = lambda: collaborators
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


@pytest.mark.asyncio
async def test_state_envelope_echoes_request_id(client) -> None:
    response = await client.get("/v1/admin/state", headers={"X-Request-Id": "req-123"})

    body = response.json()
    assert response.status_code == 200
    assert body["data"]["state"] == "not_connected"
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_register_then_plan(client) -> None:
    registered = await client.post(
        "/v1/admin/tenant/register",
        json={"site_url": "https://forum.example", "admin_email": "admin@forum.example"},
    )
    planned = await client.post("/v1/admin/indexing/plan", json={"item_ids": [1, 2, 2, 3]})

    assert registered.status_code == 200
    assert registered.json()["data"]["tenant_id"] == "tenant-1"
    assert planned.json()["data"]["to_submit_ids"] == [1, 2, 3]
    assert planned.json()["data"]["estimated_credits"] == 3


@pytest.mark.asyncio
async def test_enqueue_before_connecting_is_unavailable(client) -> None:
    response = await client.post("/v1/admin/indexing/jobs", json={"item_ids": [1]})

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "service_unavailable"


@pytest.mark.asyncio
async def test_over_budget_enqueue_is_payment_required(client, connected, account_service) -> None:
    account_service.status = account_service.status.model_copy(update={"credits_remaining": 2})

    response = await client.post("/v1/admin/indexing/jobs", json={"item_ids": [1, 2, 3]})

    assert response.status_code == 402
    assert response.json()["error"] == {
        "code": "insufficient_credits",
        "message": "indexing needs 3 credits, 2 available",
        "details": {"requested": 3, "available": 2},
    }


@pytest.mark.asyncio
async def test_empty_item_list_fails_request_validation(client) -> None:
    response = await client.post("/v1/admin/indexing/plan", json={"item_ids": []})

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "request_validation_error"


@pytest.mark.asyncio
async def test_bad_option_maps_to_422(client) -> None:
    response = await client.patch("/v1/admin/indexing/options", json={"chunk_size": 10})

    assert response.status_code == 422
    assert response.json()["error"]["details"] == {"field": "chunk_size"}


@pytest.mark.asyncio
async def test_failed_task_run_keeps_result_data(client, connected, generator) -> None:
    generator.error = TransportError("generation timed out")
    created = await client.post(
        "/v1/admin/tasks",
        json={"name": "Replies", "task_type": "reply_generator", "status": "active"},
    )

    response = await client.post(f"/v1/admin/tasks/{created.json()['data']['task_id']}/run")

    body = response.json()
    assert response.status_code == 502
    assert body["error"]["code"] == "task_run_failed"
    assert body["data"]["status"] == "failure"


@pytest.mark.asyncio
async def test_wakeup_endpoint_reports_summary(client, connected) -> None:
    await client.post("/v1/admin/indexing/jobs", json={"item_ids": [1]})

    response = await client.post("/v1/admin/wakeup")

    assert response.status_code == 200
    assert response.json()["data"]["indexing"]["succeeded"] == 1


@pytest.mark.asyncio
async def test_admin_token_is_enforced_when_configured(client, monkeypatch) -> None:
    monkeypatch.setenv("ADMIN_API_TOKEN", "s3cret")
    get_settings.cache_clear()

    missing = await client.get("/v1/admin/state")
    wrong = await client.get("/v1/admin/state", headers={"Authorization": "Bearer nope"})
    allowed = await client.get("/v1/admin/state", headers={"Authorization": "Bearer s3cret"})

    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "unauthorized"
    assert wrong.status_code == 401
    assert allowed.status_code == 200


@pytest.mark.asyncio
async def test_telemetry_reports_counters(client) -> None:
    await client.post("/v1/admin/wakeup")

    response = await client.get("/v1/admin/telemetry")

    assert response.status_code == 200
    assert response.json()["data"]["counters"]["wakeup_skipped_total"] == 1


@pytest.mark.asyncio
async def test_bulk_pause_then_task_stats(client, connected) -> None:
    created = await client.post(
        "/v1/admin/tasks",
        json={"name": "Topics", "task_type": "topic_generator", "status": "active"},
    )
    task_id = created.json()["data"]["task_id"]
    await client.post(f"/v1/admin/tasks/{task_id}/run")

    paused = await client.post("/v1/admin/tasks/bulk", json={"task_ids": [task_id], "action": "pause"})
    rejected = await client.post("/v1/admin/tasks/bulk", json={"task_ids": [task_id], "action": "archive"})
    stats = await client.get(f"/v1/admin/tasks/{task_id}/stats")

    assert paused.json()["data"]["count"] == 1
    assert rejected.status_code == 422
    body = stats.json()["data"]
    assert body["status"] == "paused"
    assert (body["total_runs"], body["successful_runs"], body["success_rate"]) == (1, 1, 100)
    assert body["next_run_at"] is None
