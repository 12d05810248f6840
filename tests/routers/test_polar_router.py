"""Polar 웹훅 라우터 통합 테스트"""
import base64
import hashlib
import hmac
import json
import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.middleware import setup_exception_handlers
from routers import polar_router

from doubles import InMemoryStore, checkout_data, make_service, subscription_data, user_row

SECRET = "whsec_" + base64.b64encode(b"polar-test-signing-key").decode("ascii")


def _sign(body: bytes, webhook_id: str, timestamp: str, secret: str = SECRET) -> str:
    key = base64.b64decode(secret[len("whsec_"):])
    signed = f"{webhook_id}.{timestamp}.".encode("utf-8") + body
    return "v1," + base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode("ascii")


def _headers(body: bytes, webhook_id: str = "msg_1", timestamp: str = None):
    timestamp = timestamp or str(int(time.time()))
    return {
        "webhook-id": webhook_id,
        "webhook-timestamp": timestamp,
        "webhook-signature": _sign(body, webhook_id, timestamp),
        "content-type": "application/json",
    }


def _body(event_type: str, data: dict) -> bytes:
    return json.dumps({"type": event_type, "data": data}).encode("utf-8")


@pytest.fixture
def store():
    return InMemoryStore(users=[user_row()])


@pytest.fixture
def client(monkeypatch, store):
    monkeypatch.setattr(polar_router.settings, "POLAR_WEBHOOK_SECRET", SECRET)
    monkeypatch.setattr(polar_router.settings, "POLAR_WEBHOOK_STRICT_VERIFY", True)
    monkeypatch.setattr(polar_router.settings, "POLAR_WEBHOOK_TOLERANCE_SECONDS", 300)
    monkeypatch.setattr(polar_router, "reconciliation_service", make_service(store))
    monkeypatch.setattr(polar_router, "db_helper", store)

    app = FastAPI()
    setup_exception_handlers(app)
    app.include_router(polar_router.router)
    with TestClient(app) as test_client:
        yield test_client


def _webhook_logs(store):
    return [log for log in store.system_logs if log["event_type"] == "polar_webhook"]


def test_alive(client):
    response = client.get("/api/v1/webhooks/polar")
    assert response.status_code == 200
    assert response.json()["data"] == {"ok": True}


def test_signed_checkout_creates_grant_and_records_event(client, store):
    body = _body("checkout.updated", checkout_data())

    response = client.post("/api/v1/webhooks/polar", content=body, headers=_headers(body))

    assert response.status_code == 200
    payload = response.json()
    assert payload["message"] == "polar webhook processed"
    assert payload["data"]["status"] == "processed"
    assert payload["data"]["event_category"] == "checkout"
    assert payload["data"]["processed"]["action"] == "created"
    assert len(store.grants) == 1
    assert _webhook_logs(store)[0]["event_data"]["event_id"] == "msg_1"


def test_same_webhook_id_is_answered_as_duplicate(client, store):
    body = _body("checkout.updated", checkout_data())
    client.post("/api/v1/webhooks/polar", content=body, headers=_headers(body))

    response = client.post("/api/v1/webhooks/polar", content=body, headers=_headers(body))

    assert response.status_code == 200
    assert response.json()["message"] == "event already processed"
    assert len(store.grants) == 1


def test_new_webhook_id_for_applied_checkout_is_duplicate(client, store):
    body = _body("checkout.updated", checkout_data())
    client.post("/api/v1/webhooks/polar", content=body, headers=_headers(body, "msg_1"))

    response = client.post("/api/v1/webhooks/polar", content=body, headers=_headers(body, "msg_2"))

    data = response.json()["data"]
    assert data["duplicate"] is True
    assert data["error_code"] == "ALREADY_APPLIED"
    assert len(store.grants) == 1
    assert len(store.payments) == 1


def test_invalid_signature_is_rejected(client, store):
    body = _body("checkout.updated", checkout_data())
    headers = _headers(body)
    headers["webhook-signature"] = "v1," + base64.b64encode(b"forged").decode("ascii")

    response = client.post("/api/v1/webhooks/polar", content=body, headers=headers)

    assert response.status_code == 400
    assert store.grants == []


def test_stale_timestamp_is_rejected(client):
    body = _body("checkout.updated", checkout_data())
    headers = _headers(body, timestamp=str(int(time.time()) - 3600))

    response = client.post("/api/v1/webhooks/polar", content=body, headers=headers)

    assert response.status_code == 400


def test_missing_headers_rejected_in_strict_mode(client):
    body = _body("checkout.updated", checkout_data())

    response = client.post("/api/v1/webhooks/polar", content=body, headers={"content-type": "application/json"})

    assert response.status_code == 400


def test_unsigned_request_accepted_when_not_strict_and_no_secret(client, monkeypatch, store):
    monkeypatch.setattr(polar_router.settings, "POLAR_WEBHOOK_SECRET", "")
    monkeypatch.setattr(polar_router.settings, "POLAR_WEBHOOK_STRICT_VERIFY", False)
    body = _body("checkout.updated", checkout_data())

    response = client.post("/api/v1/webhooks/polar", content=body)

    assert response.status_code == 200
    assert len(store.grants) == 1


def test_invalid_json_is_rejected(client):
    body = b"{not json"

    response = client.post("/api/v1/webhooks/polar", content=body, headers=_headers(body))

    assert response.status_code == 400


def test_unknown_event_type_is_ignored(client, store):
    body = _body("benefit.created", {"id": "ben_1"})

    response = client.post("/api/v1/webhooks/polar", content=body, headers=_headers(body))

    assert response.status_code == 200
    assert response.json()["message"] == "event ignored"
    assert _webhook_logs(store) == []


def test_retryable_failure_returns_503_without_marking_event(client, store):
    body = _body("subscription.canceled", subscription_data("sub_unknown", cancel_at_period_end=True))

    response = client.post("/api/v1/webhooks/polar", content=body, headers=_headers(body))

    assert response.status_code == 503
    assert _webhook_logs(store) == []


def test_non_retryable_failure_is_dropped_and_not_reprocessed(client, store):
    body = _body("checkout.updated", checkout_data(user_id="ghost"))

    first = client.post("/api/v1/webhooks/polar", content=body, headers=_headers(body))
    second = client.post("/api/v1/webhooks/polar", content=body, headers=_headers(body))

    assert first.status_code == 200
    assert first.json()["data"]["status"] == "dropped"
    assert first.json()["data"]["error_code"] == "UNRESOLVED_USER"
    assert _webhook_logs(store)[0]["event_data"]["status"] == "dropped"
    assert second.json()["data"]["status"] == "duplicate"


def test_activation_then_cancel_flow(client, store):
    active = _body("subscription.active", subscription_data())
    canceled = _body("subscription.canceled", subscription_data(cancel_at_period_end=True))

    client.post("/api/v1/webhooks/polar", content=active, headers=_headers(active, "msg_a"))
    response = client.post("/api/v1/webhooks/polar", content=canceled, headers=_headers(canceled, "msg_b"))

    assert response.json()["data"]["processed"]["action"] == "canceled"
    assert store.grants[0]["subscription_status_canceled"] is True
    assert store.grants[0]["credits"] == 200


@pytest.mark.asyncio
async def test_replay_reprocesses_logged_event(monkeypatch, store):
    monkeypatch.setattr(polar_router, "reconciliation_service", make_service(store))
    monkeypatch.setattr(polar_router, "db_helper", store)
    payload = {"type": "refund.created", "data": {"id": "ref_1", "order_id": "ord_1", "amount": 1000}}

    first = await polar_router.process_polar_payload(payload, event_id="msg_r")
    skipped = await polar_router.process_polar_payload(payload, event_id="msg_r")
    replayed = await polar_router.process_polar_payload(
        payload,
        event_id="msg_r",
        allow_duplicate=True,
        replay_reason="manual check",
    )

    assert first["status"] == "processed"
    assert skipped["status"] == "duplicate"
    assert replayed["status"] == "replayed"
    assert _webhook_logs(store)[-1]["event_data"]["payload"]["replay_reason"] == "manual check"


def test_signature_helper_accepts_any_matching_v1_entry(monkeypatch):
    monkeypatch.setattr(polar_router.settings, "POLAR_WEBHOOK_SECRET", SECRET)
    monkeypatch.setattr(polar_router.settings, "POLAR_WEBHOOK_STRICT_VERIFY", True)
    body = b'{"type":"order.paid"}'
    signature = _sign(body, "msg_9", "1700000000")

    assert polar_router._verify_signature(body, "msg_9", "1700000000", f"v1,bogus {signature}", now=1700000010)
    assert not polar_router._verify_signature(body, "msg_9", "1700000000", "v2,whatever", now=1700000010)
