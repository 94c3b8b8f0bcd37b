"""Tests for API keys, the public v1 API and outgoing webhooks."""

import json
from unittest.mock import patch

import httpx
import pytest

from models import ApiKey, ApiUsage, Webhook
from services import webhooks


def create_key(client, headers, **fields):
    body = {"name": "ci", **fields}
    return client.post("/api/developer/keys", json=body, headers=headers)


@pytest.fixture
def api_key(client, pro_headers):
    return create_key(client, pro_headers, permissions=["read", "write"]).json()


@pytest.fixture
def key_headers(api_key):
    return {"X-API-Key": api_key["key"]}


class TestApiKeys:

    def test_free_tier_cannot_create_keys(self, client, headers):
        response = create_key(client, headers)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FEATURE_NOT_AVAILABLE"

    def test_key_is_shown_once_and_stored_hashed(self, client, db, pro_headers):
        created = create_key(client, pro_headers).json()

        assert created["key"].startswith("rk_")
        assert created["key"].startswith(created["key_prefix"])
        assert created["permissions"] == ["read"]

        row = db.get(ApiKey, created["id"])
        assert row.key_hash != created["key"]

        listed = client.get("/api/developer/keys", headers=pro_headers).json()
        assert "key" not in listed[0]

    def test_revoked_key_stops_working(self, client, pro_headers, api_key, key_headers):
        client.delete(f"/api/developer/keys/{api_key['id']}", headers=pro_headers)

        response = client.get("/api/v1/repositories/1", headers=key_headers)
        assert response.status_code == 401

    def test_revoke_someone_elses_key(self, client, headers, api_key):
        assert client.delete(f"/api/developer/keys/{api_key['id']}", headers=headers).status_code == 404


class TestPublicApi:

    def test_missing_key(self, client):
        response = client.get("/api/v1/repositories/1")
        assert response.status_code == 401

    def test_malformed_key(self, client):
        assert client.get("/api/v1/repositories/1", headers={"X-API-Key": "nope"}).status_code == 401

    def test_read_repository(self, client, key_headers, seed_repository):
        repo = seed_repository("octo/radar", overall=6.5)

        response = client.get(f"/api/v1/repositories/{repo.id}", headers=key_headers)
        assert response.status_code == 200
        assert response.json()["full_name"] == "octo/radar"
        assert response.headers["X-RateLimit-Limit"] == "1000"
        assert response.headers["X-RateLimit-Remaining"] == "999"

        analysis = client.get(f"/api/v1/repositories/{repo.id}/analysis", headers=key_headers).json()
        assert analysis["overall_score"] == 6.5

    def test_usage_is_logged_with_status(self, client, db, api_key, key_headers):
        client.get("/api/v1/repositories/123456", headers=key_headers)

        usage = db.query(ApiUsage).one()
        assert usage.api_key_id == api_key["id"]
        assert usage.status_code == 404
        assert usage.endpoint == "/api/v1/repositories/123456"

    def test_write_permission_required(self, client, pro_headers):
        read_only = create_key(client, pro_headers).json()

        response = client.post("/api/v1/repositories/analyze", json={"url": "octo/radar"},
                               headers={"X-API-Key": read_only["key"]})
        assert response.status_code == 403

    def test_analyze_counts_against_owner(self, client, db, pro_user, key_headers):
        response = client.post("/api/v1/repositories/analyze", json={"url": "octo/radar"}, headers=key_headers)

        assert response.status_code == 200
        assert response.json()["cached"] is False
        db.refresh(pro_user)
        assert pro_user.analysis_count == 1

    def test_hourly_limit(self, client, pro_headers, seed_repository):
        repo = seed_repository("octo/radar")
        key = create_key(client, pro_headers, rate_limit=2).json()
        key_headers = {"X-API-Key": key["key"]}

        assert client.get(f"/api/v1/repositories/{repo.id}", headers=key_headers).status_code == 200
        assert client.get(f"/api/v1/repositories/{repo.id}", headers=key_headers).status_code == 200

        blocked = client.get(f"/api/v1/repositories/{repo.id}", headers=key_headers)
        assert blocked.status_code == 429
        assert blocked.headers["X-RateLimit-Remaining"] == "0"

    def test_usage_stats(self, client, pro_headers, key_headers, seed_repository):
        repo = seed_repository("octo/radar")
        client.get(f"/api/v1/repositories/{repo.id}", headers=key_headers)
        client.get("/api/v1/repositories/999999", headers=key_headers)

        stats = client.get("/api/developer/usage", headers=pro_headers).json()

        assert stats["total_requests"] == 2
        assert stats["requests_last_hour"] == 2
        assert stats["by_status"] == {"200": 1, "404": 1}


class TestWebhookSigning:

    def test_signature_round_trip(self):
        body = b'{"event": "webhook.test"}'
        signature = webhooks.sign_payload("whsec_x", body)

        assert signature.startswith("sha256=")
        assert webhooks.verify_signature("whsec_x", body, signature)
        assert not webhooks.verify_signature("whsec_y", body, signature)
        assert not webhooks.verify_signature("whsec_x", body, None)

    def test_deliver_records_failures(self):
        hook = Webhook(id=1, url="https://hooks.example/in", secret="whsec_x", failure_count=0)
        failing = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))

        assert webhooks.deliver(hook, "webhook.test", {}, failing) is False
        assert hook.failure_count == 1

    def test_deliver_sends_signed_body(self):
        seen = {}

        def handler(request):
            seen["event"] = request.headers[webhooks.EVENT_HEADER]
            seen["valid"] = webhooks.verify_signature("whsec_x", request.content,
                                                      request.headers[webhooks.SIGNATURE_HEADER])
            seen["body"] = json.loads(request.content)
            return httpx.Response(204)

        hook = Webhook(id=1, url="https://hooks.example/in", secret="whsec_x", failure_count=3)
        client = httpx.Client(transport=httpx.MockTransport(handler))

        assert webhooks.deliver(hook, "repository.analyzed", {"repository_id": 5}, client) is True
        assert seen == {"event": "repository.analyzed", "valid": True,
                        "body": {"event": "repository.analyzed", "timestamp": seen["body"]["timestamp"],
                                 "data": {"repository_id": 5}}}
        assert hook.failure_count == 0
        assert hook.last_triggered_at is not None


class TestWebhookApi:

    def test_create_returns_secret_once(self, client, headers):
        created = client.post("/api/developer/webhooks", json={"url": "https://hooks.example/in"},
                              headers=headers).json()

        assert created["secret"].startswith("whsec_")
        assert created["events"] == ["repository.analyzed"]
        assert "secret" not in client.get("/api/developer/webhooks", headers=headers).json()[0]

    def test_https_required(self, client, headers):
        response = client.post("/api/developer/webhooks", json={"url": "http://hooks.example/in"}, headers=headers)
        assert response.status_code == 422

    def test_unknown_event(self, client, headers):
        response = client.post("/api/developer/webhooks",
                               json={"url": "https://hooks.example/in", "events": ["repository.deleted"]},
                               headers=headers)
        assert response.status_code == 400
        assert response.json()["error"]["details"]["unsupported"] == ["repository.deleted"]

    def test_test_delivery(self, client, db, headers):
        created = client.post("/api/developer/webhooks", json={"url": "https://hooks.example/in"},
                              headers=headers).json()
        received = []
        fake = httpx.Client(transport=httpx.MockTransport(
            lambda request: received.append(request) or httpx.Response(200)
        ))

        with patch("routers.developer.httpx.Client", return_value=fake):
            response = client.post(f"/api/developer/webhooks/{created['id']}/test", headers=headers)

        assert response.json() == {"delivered": True, "failure_count": 0}
        assert received[0].headers[webhooks.EVENT_HEADER] == "webhook.test"
        assert db.get(Webhook, created["id"]).last_triggered_at is not None

    def test_delete(self, client, headers):
        created = client.post("/api/developer/webhooks", json={"url": "https://hooks.example/in"},
                              headers=headers).json()

        client.delete(f"/api/developer/webhooks/{created['id']}", headers=headers)

        assert client.get("/api/developer/webhooks", headers=headers).json() == []
