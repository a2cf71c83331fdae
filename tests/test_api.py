"""
Tests for the FastAPI surface: health, webhook verification and inbound messages.

The app runs its real lifespan (orchestrator start/stop) against a WhatsApp
adapter backed by httpx.MockTransport.
"""
import hashlib
import hmac
import json
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from channels.whatsapp_adapter import WhatsAppAdapter
from config.settings import WhatsAppConfig
from core.session import reset_session_state


def graph_ok(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/messages"):
        return httpx.Response(200, json={"messages": [{"id": "wamid.x"}]})
    return httpx.Response(200, json={"display_phone_number": "1"})


def sign(body: bytes, secret: str = "s3cret") -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def stop_payload(sender: str) -> bytes:
    return json.dumps({
        "entry": [{"changes": [{"value": {
            "messages": [{"from": sender, "id": "wamid.in", "type": "text", "text": {"body": "STOP"}}],
        }}]}],
    }).encode()


@pytest.fixture
def app_client(settings, store):
    reset_session_state()
    settings.whatsapp = WhatsAppConfig(phone_number_id="PNID", access_token="token",
                                       verify_token="verify-me", app_secret="s3cret")
    adapter = WhatsAppAdapter(settings.whatsapp, transport=httpx.MockTransport(graph_ok))
    app = create_app(settings=settings, client=adapter, store=store)
    with TestClient(app) as client:
        yield client
    reset_session_state()


def wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestHealth:
    def test_reports_session_and_counts(self, app_client):
        assert wait_until(lambda: app_client.get("/health").json()["session"]["ready"])
        body = app_client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["subscribers"] == 3
        assert body["schedule"]["timezone"] == "Asia/Kolkata"
        assert body["last_run"] is None


class TestWebhookVerification:
    def test_challenge_echoed(self, app_client):
        resp = app_client.get("/webhooks/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444",
        })
        assert resp.status_code == 200
        assert resp.text == "1158201444"

    def test_wrong_token_rejected(self, app_client):
        resp = app_client.get("/webhooks/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "guess", "hub.challenge": "1",
        })
        assert resp.status_code == 403


class TestInboundWebhook:
    def test_stop_unsubscribes_sender(self, app_client):
        body = stop_payload("15550100")
        resp = app_client.post("/webhooks/whatsapp", content=body,
                               headers={"X-Hub-Signature-256": sign(body),
                                        "Content-Type": "application/json"})
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "events": 1}
        assert wait_until(lambda: app_client.get("/health").json()["subscribers"] == 2)

    def test_bad_signature_rejected(self, app_client):
        body = stop_payload("15550100")
        resp = app_client.post("/webhooks/whatsapp", content=body,
                               headers={"X-Hub-Signature-256": sign(body, "wrong")})
        assert resp.status_code == 403
        time.sleep(0.05)
        assert app_client.get("/health").json()["subscribers"] == 3

    def test_invalid_json(self, app_client):
        body = b"not json"
        resp = app_client.post("/webhooks/whatsapp", content=body,
                               headers={"X-Hub-Signature-256": sign(body)})
        assert resp.status_code == 400

    def test_status_only_payload(self, app_client):
        body = json.dumps({"entry": [{"changes": [{"value": {"statuses": []}}]}]}).encode()
        resp = app_client.post("/webhooks/whatsapp", content=body,
                               headers={"X-Hub-Signature-256": sign(body)})
        assert resp.json()["events"] == 0


class TestHealthDegraded:
    def test_not_ready_session_reported(self, settings, store):
        reset_session_state()
        settings.whatsapp = WhatsAppConfig(phone_number_id="PNID", access_token="expired")

        def unauthorized(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"message": "token expired"}})

        adapter = WhatsAppAdapter(settings.whatsapp, transport=httpx.MockTransport(unauthorized))
        app = create_app(settings=settings, client=adapter, store=store)
        with TestClient(app) as client:
            assert wait_until(lambda: client.get("/health").json()["session"]["auth_failure"])
            body = client.get("/health").json()
            assert body["status"] == "degraded"
            assert body["session"]["ready"] is False
        reset_session_state()
