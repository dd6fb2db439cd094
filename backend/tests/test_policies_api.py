"""
API Integration Tests — Policy publish, schedule and activation endpoints.
"""

from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient

ACTOR = "ops@hubops.test"


def _sla_body(**overrides) -> dict:
    body = {
        "payload": {
            "name": "Default SLA",
            "sla_targets": {"tier2MaxHours": 48, "tier3MaxHours": 72},
            "margin_thresholds": {"minimumMargin": 10, "targetMargin": 25},
        },
        "change_reason": "quarterly review",
    }
    body.update(overrides)
    return body


@pytest.mark.asyncio
class TestPoliciesAPI:

    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_active_policies_empty(self, client: AsyncClient):
        response = await client.get("/api/v1/policies/active")
        assert response.status_code == 200
        data = response.json()
        assert data["total_active"] == 0
        assert set(data["summary"]) == {"sla_margin", "risk_threshold", "hub_capacity"}

    async def test_publish_and_replay(self, client: AsyncClient):
        body = _sla_body(request_id="settings-save-1")
        first = await client.post("/api/v1/policies/sla_margin/global/publish", json=body)
        assert first.status_code == 200
        data = first.json()
        assert data["version"] == 1
        assert data["state"] == "published"
        assert data["action_taken"] == "published"
        assert data["is_duplicate"] is False

        replay = await client.post("/api/v1/policies/sla_margin/global/publish", json=body)
        assert replay.status_code == 200
        assert replay.json()["is_duplicate"] is True
        assert replay.json()["version_id"] == data["version_id"]

    async def test_actor_header_recorded(self, client: AsyncClient):
        await client.post("/api/v1/policies/sla_margin/global/publish", json=_sla_body())
        history = await client.get("/api/v1/policies/sla_margin/global/history")
        assert history.status_code == 200
        assert history.json()[0]["actor_id"] == ACTOR

    async def test_invalid_payload_rejected(self, client: AsyncClient):
        body = _sla_body(payload={"name": "Bad", "margin_thresholds": {"minimumMargin": 40, "targetMargin": 20}})
        response = await client.post("/api/v1/policies/sla_margin/global/publish", json=body)
        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_PAYLOAD"

    async def test_unknown_kind_rejected(self, client: AsyncClient):
        response = await client.post("/api/v1/policies/pricing/global/publish", json=_sla_body())
        assert response.status_code == 422

    async def test_backdated_publish_conflicts(self, client: AsyncClient):
        await client.post("/api/v1/policies/sla_margin/global/publish", json=_sla_body())
        backdated = (datetime.utcnow() - timedelta(days=1)).isoformat()
        response = await client.post(
            "/api/v1/policies/sla_margin/global/publish",
            json=_sla_body(effective_date=backdated, change_reason="backfill"),
        )
        assert response.status_code == 409
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "OVERLAPPING_POLICY"

    async def test_schedule_in_past_rejected(self, client: AsyncClient):
        past = (datetime.utcnow() - timedelta(hours=1)).isoformat()
        response = await client.post(
            "/api/v1/policies/sla_margin/global/schedule",
            json={**_sla_body(), "effective_at": past},
        )
        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_SCHEDULE_DATE"

    async def test_publish_endpoint_rejects_past_scheduled_date(self, client: AsyncClient):
        past = (datetime.utcnow() - timedelta(days=1)).isoformat()
        response = await client.post(
            "/api/v1/policies/sla_margin/global/publish",
            json=_sla_body(state="scheduled", effective_date=past),
        )
        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_SCHEDULE_DATE"

        undated = await client.post("/api/v1/policies/sla_margin/global/publish", json=_sla_body(state="scheduled"))
        assert undated.status_code == 422
        assert undated.json()["error"] == "INVALID_SCHEDULE_DATE"

        history = await client.get("/api/v1/policies/sla_margin/global/history")
        assert history.json() == []

    async def test_schedule_then_history(self, client: AsyncClient):
        await client.post("/api/v1/policies/sla_margin/global/publish", json=_sla_body())
        future = (datetime.utcnow() + timedelta(days=7)).isoformat()
        body = _sla_body(version_label="v2")
        body["payload"]["sla_targets"]["tier3MaxHours"] = 96
        response = await client.post(
            "/api/v1/policies/sla_margin/global/schedule",
            json={**body, "effective_at": future},
        )
        assert response.status_code == 200
        assert response.json()["state"] == "scheduled"
        assert response.json()["version"] == 2

        active = (await client.get("/api/v1/policies/active", params={"kind": "sla_margin"})).json()
        assert active["total_active"] == 2
        assert [row["state"] for row in active["summary"]["sla_margin"]] == ["scheduled", "published"]

        history = (await client.get("/api/v1/policies/sla_margin/global/history", params={"limit": 1})).json()
        assert len(history) == 1
        assert history[0]["version"] == 2
        assert history[0]["version_label"] == "v2"

    async def test_activate_due_with_nothing_due(self, client: AsyncClient):
        response = await client.post("/api/v1/policies/activate-due")
        assert response.status_code == 200
        assert response.json() == []
