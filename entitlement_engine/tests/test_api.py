"""
HTTP API Tests

Verify:
1. Every route answers with the engine's result
2. Denials are 200 responses carrying granted/allowed=false and a code
3. Faults use the error payload {error: {code, message, request_id}, detail}
4. x-request-id is echoed and reaches response bodies
"""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from entitlement_engine.main import create_app


@pytest.fixture
def client(governance):
    return TestClient(create_app(governance))


@pytest.fixture
def tenant(client):
    response = client.post(
        "/v1/admin/tenants",
        json={"tenant_id": "gym-1", "category": "business", "plan_key": "starter"},
        headers={"X-Actor": "ops"},
    )
    assert response.status_code == 201
    return "gym-1"


def _assert_error(response, status, code):
    assert response.status_code == status
    body = response.json()
    assert body["error"]["code"] == code
    assert body["error"]["request_id"] == response.headers["x-request-id"]
    assert body["detail"] == body["error"]["message"]


class TestService:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"x-request-id": "req-abc"})
        assert response.headers["x-request-id"] == "req-abc"

    def test_request_id_is_generated(self, client):
        assert client.get("/healthz").headers["x-request-id"]

    def test_unknown_route_uses_error_payload(self, client):
        response = client.get("/v1/nowhere", headers={"x-request-id": "req-404"})
        _assert_error(response, 404, "not_found")
        assert response.json()["error"]["request_id"] == "req-404"


class TestEntitlementRoutes:
    def test_entitlement(self, client, tenant):
        body = client.get(f"/v1/tenants/{tenant}/entitlements/trainer").json()
        assert body["limit"] == 5
        assert body["source"] == "base"
        assert body["unlimited"] is False
        assert (body["consumed"], body["remaining"]) == (0, 5)

    def test_entitlement_reports_consumption(self, client, tenant):
        for _ in range(2):
            client.post(f"/v1/tenants/{tenant}/usage/trainer/consume", json={})
        body = client.get(f"/v1/tenants/{tenant}/entitlements/trainer").json()
        assert body["limit"] == 5
        assert body["consumed"] == 2
        assert body["remaining"] == 3
        assert body["period_id"] == "standing"

    def test_unlimited_entitlement(self, client):
        client.post("/v1/admin/tenants", json={"tenant_id": "big-1", "category": "business", "plan_key": "enterprise"})
        body = client.get("/v1/tenants/big-1/entitlements/api_calls").json()
        assert body["limit"] == -1
        assert body["unlimited"] is True
        assert body["remaining"] is None

    def test_feature(self, client, tenant):
        assert client.get(f"/v1/tenants/{tenant}/features/ai_chat").json()["enabled"] is True
        assert client.get(f"/v1/tenants/{tenant}/features/api_access").json()["enabled"] is False

    def test_consume_and_release(self, client, tenant):
        consumed = client.post(
            f"/v1/tenants/{tenant}/usage/clients/consume",
            json={"amount": 3, "idempotency_key": "k1"},
            headers={"x-request-id": "req-1"},
        ).json()
        assert consumed["granted"] is True
        assert consumed["code"] is None
        assert consumed["request_id"] == "req-1"

        replay = client.post(f"/v1/tenants/{tenant}/usage/clients/consume", json={"amount": 3, "idempotency_key": "k1"})
        assert replay.json()["replayed"] is True

        released = client.post(
            f"/v1/tenants/{tenant}/usage/clients/release", json={"amount": 1, "operation_id": "op-1"}
        ).json()
        assert released["released"] == 1

        usage = client.get(f"/v1/tenants/{tenant}/usage/clients").json()
        assert (usage["limit"], usage["consumed"], usage["remaining"]) == (50, 2, 48)

    def test_consume_denial_is_a_200(self, client, tenant):
        response = client.post(f"/v1/tenants/{tenant}/usage/trainer/consume", json={"amount": 6})
        assert response.status_code == 200
        body = response.json()
        assert body["granted"] is False
        assert body["code"] == "limit_exceeded"

    def test_consume_body_validation(self, client, tenant):
        response = client.post(f"/v1/tenants/{tenant}/usage/clients/consume", json={"amount": 0})
        assert response.status_code == 422

    def test_unknown_tenant(self, client):
        _assert_error(client.get("/v1/tenants/ghost/entitlements/trainer"), 404, "not_found")

    def test_unknown_resource(self, client, tenant):
        _assert_error(client.get(f"/v1/tenants/{tenant}/entitlements/spaceships"), 422, "unknown_resource")
        _assert_error(client.get(f"/v1/tenants/{tenant}/features/teleport"), 422, "unknown_resource")


class TestBudgetRoutes:
    def test_reserve_confirm_cancel(self, client, tenant):
        reserved = client.post(
            f"/v1/tenants/{tenant}/budgets/openai/reservations", json={"estimated_tokens": 500}
        ).json()
        assert reserved["granted"] is True
        reservation_id = reserved["reservation_id"]

        assert client.get(f"/v1/budgets/reservations/{reservation_id}").json()["status"] == "pending"

        confirmed = client.post(
            f"/v1/budgets/reservations/{reservation_id}/confirm", json={"actual_tokens": 300}
        ).json()
        assert confirmed["ok"] is True
        assert confirmed["refunded_tokens"] == 200
        assert confirmed["code"] is None

        budget = client.get(f"/v1/tenants/{tenant}/budgets/openai").json()
        assert budget["consumed_tokens"] == 300
        assert budget["remaining_tokens"] == 49_700

        cancelled = client.post(f"/v1/budgets/reservations/{reservation_id}/cancel")
        assert cancelled.status_code == 200
        assert cancelled.json()["code"] == "reservation_already_settled"

    def test_reserve_denial(self, client, tenant):
        body = client.post(
            f"/v1/tenants/{tenant}/budgets/openai/reservations", json={"estimated_tokens": 60_000}
        ).json()
        assert body["granted"] is False
        assert body["reason"] == "provider_cap"
        assert body["code"] == "budget_exceeded"

    def test_missing_reservation(self, client):
        _assert_error(client.get("/v1/budgets/reservations/nope"), 404, "not_found")
        confirm = client.post("/v1/budgets/reservations/nope/confirm", json={"actual_tokens": 1}).json()
        assert confirm["code"] == "reservation_not_found"


class TestRateRoute:
    def test_allowed(self, client, tenant):
        body = client.get(f"/v1/tenants/{tenant}/rate/api").json()
        assert body["allowed"] is True
        assert body["limit"] == 100
        assert body["code"] is None

    def test_limited_sets_retry_after(self, client, governance, tenant):
        counter = MagicMock()
        counter.incr.return_value = 10_000
        governance.rate_limiter.counter = counter

        response = client.get(f"/v1/tenants/{tenant}/rate/webhook")
        assert response.status_code == 200
        body = response.json()
        assert body["allowed"] is False
        assert body["code"] == "rate_limited"
        assert response.headers["retry-after"] == str(body["retry_after"])


class TestHealthAndUploadRoutes:
    def test_tenant_health(self, client, tenant):
        response = client.get(
            f"/v1/tenants/{tenant}/health",
            params={"active_user_ratio": 0.9, "feature_adoption": 0.9, "previous_score": 50},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["tenant_id"] == tenant
        assert body["status"] in {"excellent", "good", "fair", "poor", "critical"}
        assert set(body["components"]) == {"usage", "adoption", "support", "payment"}

    def test_tenant_health_validates_ratios(self, client, tenant):
        assert client.get(f"/v1/tenants/{tenant}/health", params={"active_user_ratio": 2}).status_code == 422

    def test_upload_check_and_delete(self, client, tenant):
        accepted = client.post(
            f"/v1/tenants/{tenant}/uploads/check", json={"size_bytes": 1_000, "file_type": "pdf"}
        ).json()
        assert accepted["granted"] is True

        refused = client.post(
            f"/v1/tenants/{tenant}/uploads/check", json={"size_bytes": 1_000, "file_type": "exe"}
        ).json()
        assert refused["code"] == "file_type_not_allowed"

        deleted = client.post(
            f"/v1/tenants/{tenant}/uploads/delete", json={"size_bytes": 1_000, "operation_id": "del-1"}
        ).json()
        assert deleted["released"] == 1_000


class TestAdminRoutes:
    def test_duplicate_tenant_conflicts(self, client, tenant):
        response = client.post(
            "/v1/admin/tenants", json={"tenant_id": tenant, "category": "business", "plan_key": "starter"}
        )
        _assert_error(response, 409, "conflict")

    def test_list_and_put_plan(self, client, tenant):
        plans = client.get("/v1/admin/plans").json()["plans"]
        starter = next(p for p in plans if p["plan_key"] == "starter")

        starter["limits"]["trainer"] = 8
        updated = client.put("/v1/admin/plans/starter", json=starter).json()
        assert updated["version"] == 2
        assert client.get(f"/v1/tenants/{tenant}/entitlements/trainer").json()["limit"] == 8

    def test_put_invalid_plan(self, client):
        response = client.put(
            "/v1/admin/plans/broken", json={"category": "business", "display_name": "Broken", "limits": {"trainer": -5}}
        )
        _assert_error(response, 400, "validation_error")

    def test_overlay_update(self, client, tenant):
        response = client.put(
            f"/v1/admin/tenants/{tenant}/overlay",
            json={"grant_slots": {"trainer": 2}, "custom_plan": {"limits": {"clients": 75}}},
            headers={"X-Actor": "sales"},
        )
        assert response.status_code == 200
        overlay = response.json()["overlay"]
        assert overlay["extra_slots"] == {"trainer": 2}
        assert overlay["custom_plan_key"] == "custom-gym-1"

        trainer = client.get(f"/v1/tenants/{tenant}/entitlements/trainer").json()
        assert (trainer["limit"], trainer["extra_slots"]) == (7, 2)
        assert client.get(f"/v1/tenants/{tenant}/entitlements/clients").json()["source"] == "custom"

        audit = client.get("/v1/admin/audit", params={"tenant_id": tenant, "action": "overlay.slots_granted"}).json()
        assert audit["total"] == 1
        assert audit["records"][0]["actor"] == "sales"

    def test_rejected_overlay_leaves_tenant_unchanged(self, client, tenant):
        response = client.put(
            f"/v1/admin/tenants/{tenant}/overlay",
            json={"grant_slots": {"trainer": 2}, "base_plan_key": "individual"},
        )
        _assert_error(response, 400, "validation_error")

        body = client.get(f"/v1/admin/tenants/{tenant}").json()
        assert body["overlay"]["extra_slots"] == {}
        assert body["tenant"]["plan_key"] == "starter"
        granted = client.get("/v1/admin/audit", params={"tenant_id": tenant, "action": "overlay.slots_granted"}).json()
        assert granted["total"] == 0

    def test_overlay_rejects_bad_slots(self, client, tenant):
        response = client.put(f"/v1/admin/tenants/{tenant}/overlay", json={"grant_slots": {"trainer": 0}})
        _assert_error(response, 400, "validation_error")

    def test_get_tenant(self, client, tenant):
        body = client.get(f"/v1/admin/tenants/{tenant}").json()
        assert body["tenant"]["plan_key"] == "starter"
        assert body["overlay"]["tenant_id"] == tenant
        _assert_error(client.get("/v1/admin/tenants/ghost"), 404, "not_found")

    def test_rollover(self, client):
        body = client.post("/v1/admin/periods/2020-01/rollover").json()
        assert body["skipped"] is False
        assert body["next_period_id"] == "2020-02"

        _assert_error(client.post("/v1/admin/periods/2020-13/rollover"), 400, "validation_error")
        _assert_error(client.post("/v1/admin/periods/standing/rollover"), 400, "validation_error")

    def test_audit_lists_creation_actor(self, client, tenant):
        body = client.get("/v1/admin/audit", params={"action": "tenant.created"}).json()
        assert body["total"] == 1
        assert body["records"][0]["actor"] == "ops"


class TestStorageOutage:
    def test_confirm_answers_503_with_retry_after(self, failing_governance, failing_store, make_tenant):
        make_tenant(failing_governance, "gym-1")
        client = TestClient(create_app(failing_governance))
        reservation = client.post(
            "/v1/tenants/gym-1/budgets/openai/reservations", json={"estimated_tokens": 100}
        ).json()

        failing_store.failing = True
        response = client.post(
            f"/v1/budgets/reservations/{reservation['reservation_id']}/confirm", json={"actual_tokens": 50}
        )

        _assert_error(response, 503, "storage_unavailable")
        assert response.headers["retry-after"] == "5"

    def test_consume_denies_without_raising(self, failing_governance, failing_store, make_tenant):
        make_tenant(failing_governance, "gym-1")
        client = TestClient(create_app(failing_governance))
        failing_store.failing = True

        body = client.post("/v1/tenants/gym-1/usage/clients/consume", json={}).json()
        assert body["granted"] is False
        assert body["code"] == "storage_unavailable"
