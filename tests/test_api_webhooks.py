"""
API tests for webhook subscription endpoints.
"""

from fastapi.testclient import TestClient
from sqlmodel import Session

from gim.models.webhook import WebhookSubscription

CLIENT = {"X-Client-ID": "gym_1"}
OTHER_CLIENT = {"X-Client-ID": "gym_2"}


def _register(client: TestClient, headers=CLIENT, **overrides):
    body = {"url": "https://hooks.example.com/gim", "events": ["payment.overdue", "member.created"], **overrides}
    return client.post("/api/v1/webhooks", json=body, headers=headers)


class TestCreateWebhook:
    def test_create_returns_secret_once(self, client: TestClient):
        response = _register(client, max_attempts=5)

        assert response.status_code == 201
        data = response.json()
        assert len(data["secret"]) == 64
        assert data["events"] == ["payment.overdue", "member.created"]
        assert data["max_attempts"] == 5

        listed = client.get("/api/v1/webhooks", headers=CLIENT).json()
        assert len(listed) == 1
        assert "secret" not in listed[0]

    def test_missing_client_id(self, client: TestClient):
        assert _register(client, headers={}).status_code == 401

    def test_no_valid_events(self, client: TestClient):
        response = _register(client, events=["nope"])

        assert response.status_code == 400
        assert response.json() == {"error": {"message": "No valid events specified", "type": "validation"}}

    def test_invalid_url(self, client: TestClient):
        assert _register(client, url="not-a-url").status_code == 422


class TestListAndEvents:
    def test_events_catalogue(self, client: TestClient):
        events = client.get("/api/v1/webhooks/events").json()["events"]

        assert "payment.overdue" in events
        assert len(events) == 9

    def test_list_scoped_to_client(self, client: TestClient):
        _register(client)
        _register(client, headers=OTHER_CLIENT)

        assert len(client.get("/api/v1/webhooks", headers=CLIENT).json()) == 1
        assert len(client.get("/api/v1/webhooks", headers=OTHER_CLIENT).json()) == 1


class TestStatsAndDelete:
    def test_stats_for_new_webhook(self, client: TestClient):
        webhook_id = _register(client).json()["id"]

        stats = client.get(f"/api/v1/webhooks/{webhook_id}/stats", headers=CLIENT).json()

        assert stats["total_deliveries"] == 0
        assert stats["success_rate"] == 0.0

    def test_stats_hidden_from_other_clients(self, client: TestClient):
        webhook_id = _register(client).json()["id"]
        assert client.get(f"/api/v1/webhooks/{webhook_id}/stats", headers=OTHER_CLIENT).status_code == 404

    def test_delete(self, client: TestClient, test_session: Session):
        webhook_id = _register(client).json()["id"]

        assert client.delete(f"/api/v1/webhooks/{webhook_id}", headers=OTHER_CLIENT).status_code == 404
        assert client.delete(f"/api/v1/webhooks/{webhook_id}", headers=CLIENT).status_code == 204
        assert test_session.get(WebhookSubscription, webhook_id) is None
        assert client.delete(f"/api/v1/webhooks/{webhook_id}", headers=CLIENT).status_code == 404
