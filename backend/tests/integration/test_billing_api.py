"""Integration tests for billing API endpoints."""

import json

import pytest
from fastapi.testclient import TestClient

from subsync.models.events import FailedEvent


@pytest.fixture
def api(client: TestClient, engine) -> TestClient:
    client.app.state.subscription_service = engine.service
    client.app.state.stripe_gateway = engine.gateway
    return client


def _webhook_body(event_id: str = "evt_1") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "type": "customer.subscription.created",
            "data": {
                "object": {
                    "id": "sub_1",
                    "customer": "cus_1",
                    "status": "active",
                    "metadata": {"account_id": "account-1", "plan_id": "pro"},
                }
            },
        }
    ).encode()


class TestHealthEndpoints:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"

    def test_request_id_is_generated(self, client):
        response = client.get("/")

        assert response.headers["X-Request-ID"]


class TestPlanEndpoints:
    def test_lists_plans(self, api):
        response = api.get("/api/v1/billing/plans")

        assert response.status_code == 200
        assert [p["id"] for p in response.json()] == ["free", "pro"]

    def test_plan_id_must_match_url(self, api):
        response = api.put("/api/v1/billing/plans/team", json={"id": "other", "name": "Team"})

        assert response.status_code == 400

    def test_saves_plan(self, api):
        response = api.put(
            "/api/v1/billing/plans/team", json={"id": "team", "name": "Team", "price": "25.00"}
        )

        assert response.status_code == 200
        assert "team" in [p["id"] for p in api.get("/api/v1/billing/plans").json()]


class TestAccountEndpoints:
    def test_free_plan_then_repeat_is_conflict(self, api):
        first = api.post("/api/v1/billing/accounts/account-1/free", json={"plan_id": "free"})
        second = api.post("/api/v1/billing/accounts/account-1/free", json={"plan_id": "free"})

        assert first.status_code == 201
        assert first.json()["kind"] == "free"
        assert second.status_code == 409
        assert second.json()["error"] == "TrialAlreadyUsed"

    def test_access_for_free_plan(self, api):
        api.post("/api/v1/billing/accounts/account-1/free", json={"plan_id": "free"})

        response = api.get("/api/v1/billing/accounts/account-1/access")

        assert response.status_code == 200
        data = response.json()
        assert data["can_access"] is True
        assert data["reason"] == "free_plan"
        assert data["days_remaining"] == 30

    def test_access_without_subscription(self, api):
        response = api.get("/api/v1/billing/accounts/nobody/access")

        assert response.json()["reason"] == "no_subscription"

    def test_subscription_is_null_without_record(self, api):
        response = api.get("/api/v1/billing/accounts/nobody/subscription")

        assert response.status_code == 200
        assert response.json() is None

    def test_summary_and_history(self, api):
        api.post("/api/v1/billing/accounts/account-1/free", json={"plan_id": "free"})

        summary = api.get("/api/v1/billing/accounts/account-1/summary").json()
        history = api.get("/api/v1/billing/accounts/account-1/history").json()

        assert summary["plan_name"] == "Starter"
        assert len(history) == 1

    def test_unknown_plan_is_bad_request(self, api):
        response = api.post(
            "/api/v1/billing/accounts/account-1/checkout", json={"plan_id": "enterprise"}
        )

        assert response.status_code == 400
        assert "Unknown plan" in response.json()["detail"]

    def test_checkout_returns_session_url(self, api):
        response = api.post(
            "/api/v1/billing/accounts/account-1/checkout",
            json={"plan_id": "pro", "frequency": "yearly"},
        )

        assert response.status_code == 200
        assert response.json()["url"] == "https://checkout.test/cs_1"
        assert response.json()["swapped"] is False

    def test_checkout_without_stripe_is_unavailable(self, api):
        api.app.state.stripe_gateway = None

        response = api.post("/api/v1/billing/accounts/account-1/checkout", json={"plan_id": "pro"})

        assert response.status_code == 503

    def test_cancel_without_subscription(self, api):
        response = api.post("/api/v1/billing/accounts/account-1/cancel")

        assert response.status_code == 409
        assert response.json()["error"] == "NoActiveSubscription"


class TestWebhookEndpoint:
    def test_rejects_bad_signature(self, api):
        response = api.post(
            "/api/v1/billing/webhook", content=_webhook_body(), headers={"Stripe-Signature": "bad"}
        )

        assert response.status_code == 400

    def test_rejects_missing_signature(self, api):
        response = api.post("/api/v1/billing/webhook", content=_webhook_body())

        assert response.status_code == 400

    def test_rejects_event_without_id(self, api):
        body = json.dumps({"type": "invoice.paid", "data": {"object": {}}}).encode()

        response = api.post(
            "/api/v1/billing/webhook", content=body, headers={"Stripe-Signature": "ok"}
        )

        assert response.status_code == 400

    def test_accepted_event_updates_access(self, api, engine):
        engine.snapshot()

        response = api.post(
            "/api/v1/billing/webhook", content=_webhook_body(), headers={"Stripe-Signature": "ok"}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "accepted": True}
        access = api.get("/api/v1/billing/accounts/account-1/access").json()
        assert access["reason"] == "active"

    def test_unknown_event_is_acknowledged(self, api):
        body = json.dumps({"id": "evt_9", "type": "customer.created", "data": {}}).encode()

        response = api.post(
            "/api/v1/billing/webhook", content=body, headers={"Stripe-Signature": "ok"}
        )

        assert response.json() == {"received": True, "accepted": False}


class TestOperatorEndpoints:
    def test_lists_failed_events(self, api, engine):
        engine.failed_events.events["f1"] = FailedEvent(
            id="f1",
            event_id="evt_1",
            event_type="customer.subscription.updated",
            remote_id="sub_1",
            attempts=3,
            last_error="down",
            failed_at=engine.clock.now(),
        )

        response = api.get("/api/v1/billing/failed-events")

        assert response.status_code == 200
        assert [f["id"] for f in response.json()] == ["f1"]

    def test_replay_unknown_failed_event(self, api):
        response = api.post("/api/v1/billing/failed-events/missing/replay")

        assert response.status_code == 400

    def test_sync_periods(self, api):
        response = api.post("/api/v1/billing/sync-periods")

        assert response.status_code == 200
        assert response.json() == {"checked": 0, "synced": 0, "failed": 0}
