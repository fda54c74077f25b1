from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from referralme.app.main import create_app
from referralme.app.services.gateway import compute_payment_signature

KEY_SECRET = "test-key-secret"
WEBHOOK_SECRET = "whsec_test"
MENTOR = "mentor-asha"
MENTEE = "mentee-vikram"


def as_user(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


@pytest.fixture()
def gateway_client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("RAZORPAY_KEY_ID", "")
    monkeypatch.setenv("RAZORPAY_KEY_SECRET", KEY_SECRET)
    monkeypatch.setenv("RAZORPAY_WEBHOOK_SECRET", WEBHOOK_SECRET)
    client = TestClient(create_app())
    profile = client.put(
        f"/users/{MENTOR}/profile",
        json={
            "display_name": "Asha Rao",
            "email": "asha@example.com",
            "roles": ["mentor"],
            "upi_id": "asha@okaxis",
            "payee_name": "Asha R",
            "services": [
                {
                    "id": "svc-resume",
                    "title": "Resume Review",
                    "duration_minutes": 30,
                    "price": 499,
                }
            ],
        },
        headers=as_user(MENTOR),
    )
    assert profile.status_code == 200
    return client


def booking_payload(hours_ahead: int = 48) -> dict:
    scheduled = datetime.now(timezone.utc) + timedelta(hours=hours_ahead)
    return {
        "mentor_id": MENTOR,
        "service_id": "svc-resume",
        "scheduled_at_utc": scheduled.isoformat(),
    }


def webhook_body(event_id: str, order_id: str, payment_id: str = "pay_hook_1") -> bytes:
    payload = {
        "event_id": event_id,
        "event": "payment.captured",
        "order_id": order_id,
        "payment_id": payment_id,
    }
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def sign(body: bytes) -> str:
    return hmac.new(WEBHOOK_SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()


def test_quote_reports_price_in_minor_units(gateway_client) -> None:
    response = gateway_client.post(
        "/mentorship/quote", json=booking_payload(), headers=as_user(MENTEE)
    )
    assert response.status_code == 200
    data = response.json()
    assert data["amount_minor"] == 49900
    assert data["mentee_id"] == MENTEE
    assert data["service_title"] == "Resume Review"


def test_gateway_checkout_and_verify(gateway_client) -> None:
    order = gateway_client.post(
        "/mentorship/payments/gateway/orders", json=booking_payload(), headers=as_user(MENTEE)
    )
    assert order.status_code == 200
    order_id = order.json()["order_id"]
    assert order.json()["key_id"] == "local"

    verify = gateway_client.post(
        "/mentorship/payments/gateway/verify",
        json={
            "order_id": order_id,
            "payment_id": "pay_100",
            "signature": compute_payment_signature(order_id, "pay_100", KEY_SECRET),
        },
        headers=as_user(MENTEE),
    )
    assert verify.status_code == 200
    body = verify.json()
    assert body["duplicate"] is False
    assert body["session"]["payment_verified"] is True
    assert body["session"]["status"] == "confirmed"

    session_id = body["session"]["id"]
    read = gateway_client.get(f"/mentorship/sessions/{session_id}", headers=as_user(MENTOR))
    assert read.status_code == 200

    replay = gateway_client.post(
        "/mentorship/payments/gateway/verify",
        json={
            "order_id": order_id,
            "payment_id": "pay_100",
            "signature": compute_payment_signature(order_id, "pay_100", KEY_SECRET),
        },
        headers=as_user(MENTEE),
    )
    assert replay.status_code == 200
    assert replay.json()["duplicate"] is True
    assert replay.json()["session"]["id"] == session_id


def test_forged_signature_returns_verification_failed(gateway_client) -> None:
    order_id = gateway_client.post(
        "/mentorship/payments/gateway/orders", json=booking_payload(), headers=as_user(MENTEE)
    ).json()["order_id"]
    response = gateway_client.post(
        "/mentorship/payments/gateway/verify",
        json={"order_id": order_id, "payment_id": "pay_100", "signature": "deadbeef"},
        headers=as_user(MENTEE),
    )
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "payment_verification_failed"
    assert gateway_client.app.state.store.list_sessions() == []


def test_double_booking_is_slot_unavailable(gateway_client) -> None:
    order_id = gateway_client.post(
        "/mentorship/payments/gateway/orders", json=booking_payload(), headers=as_user(MENTEE)
    ).json()["order_id"]
    gateway_client.post(
        "/mentorship/payments/gateway/verify",
        json={
            "order_id": order_id,
            "payment_id": "pay_1",
            "signature": compute_payment_signature(order_id, "pay_1", KEY_SECRET),
        },
        headers=as_user(MENTEE),
    )
    response = gateway_client.post(
        "/mentorship/quote", json=booking_payload(), headers=as_user("mentee-other")
    )
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "slot_unavailable"


def test_webhook_materializes_once(gateway_client) -> None:
    order_id = gateway_client.post(
        "/mentorship/payments/gateway/orders", json=booking_payload(), headers=as_user(MENTEE)
    ).json()["order_id"]
    body = webhook_body("evt_hook_1", order_id)

    first = gateway_client.post(
        "/webhooks/razorpay",
        content=body,
        headers={"content-type": "application/json", "x-razorpay-signature": sign(body)},
    )
    assert first.status_code == 200
    assert first.json()["status"] == "processed"
    session_id = first.json()["detail"]

    replay = gateway_client.post(
        "/webhooks/razorpay",
        content=body,
        headers={"content-type": "application/json", "x-razorpay-signature": sign(body)},
    )
    assert replay.json()["status"] == "duplicate"

    other_body = webhook_body("evt_hook_2", order_id)
    second_event = gateway_client.post(
        "/webhooks/razorpay",
        content=other_body,
        headers={"content-type": "application/json", "x-razorpay-signature": sign(other_body)},
    )
    assert second_event.json()["status"] == "duplicate"
    assert second_event.json()["detail"] == session_id
    assert len(gateway_client.app.state.store.list_sessions()) == 1


def test_webhook_without_signature_is_rejected(gateway_client) -> None:
    body = webhook_body("evt_unsigned", "order_missing")
    response = gateway_client.post(
        "/webhooks/razorpay",
        content=body,
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 403


def test_webhook_for_unknown_order_is_recorded_as_failed(gateway_client) -> None:
    body = webhook_body("evt_unknown", "order_missing")
    response = gateway_client.post(
        "/webhooks/razorpay",
        content=body,
        headers={"content-type": "application/json", "x-razorpay-signature": sign(body)},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "failed"


def test_self_attested_flow_over_http(gateway_client) -> None:
    started = gateway_client.post(
        "/mentorship/payments/self-attested", json=booking_payload(), headers=as_user(MENTEE)
    )
    assert started.status_code == 200
    attempt = started.json()
    assert attempt["payment_link"].startswith("upi://pay?pa=asha%40okaxis")

    confirmed = gateway_client.post(
        f"/mentorship/payments/self-attested/{attempt['attempt_id']}/confirm",
        json={"transaction_id": "UPI-HTTP-001"},
        headers=as_user(MENTEE),
    )
    assert confirmed.status_code == 200
    session = confirmed.json()["session"]
    assert session["payment_verified"] is False
    assert session["payment_channel"] == "self_attested_transfer"

    ack = gateway_client.post(
        f"/mentorship/sessions/{session['id']}/acknowledge-payment", headers=as_user(MENTOR)
    )
    assert ack.status_code == 200
    assert ack.json()["payee_acknowledged_at_utc"] is not None


def test_cancelled_self_attested_attempt(gateway_client) -> None:
    attempt_id = gateway_client.post(
        "/mentorship/payments/self-attested", json=booking_payload(), headers=as_user(MENTEE)
    ).json()["attempt_id"]
    cancelled = gateway_client.post(
        f"/mentorship/payments/self-attested/{attempt_id}/cancel", headers=as_user(MENTEE)
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["state"] == "cancelled"

    late = gateway_client.post(
        f"/mentorship/payments/self-attested/{attempt_id}/confirm",
        json={"transaction_id": "UPI-HTTP-002"},
        headers=as_user(MENTEE),
    )
    assert late.status_code == 409


def test_self_attested_timeout_over_http(gateway_client) -> None:
    attempt_id = gateway_client.post(
        "/mentorship/payments/self-attested", json=booking_payload(), headers=as_user(MENTEE)
    ).json()["attempt_id"]
    payments = gateway_client.app.state.payments
    payments.clock = lambda: datetime.now(timezone.utc) + timedelta(seconds=301)

    response = gateway_client.post(
        f"/mentorship/payments/self-attested/{attempt_id}/confirm",
        json={"transaction_id": "UPI-HTTP-003"},
        headers=as_user(MENTEE),
    )
    assert response.status_code == 408
    assert response.json()["detail"]["code"] == "payment_timeout"


def test_session_lifecycle_over_http(gateway_client) -> None:
    attempt_id = gateway_client.post(
        "/mentorship/payments/self-attested", json=booking_payload(), headers=as_user(MENTEE)
    ).json()["attempt_id"]
    session_id = gateway_client.post(
        f"/mentorship/payments/self-attested/{attempt_id}/confirm",
        json={"transaction_id": "UPI-HTTP-004"},
        headers=as_user(MENTEE),
    ).json()["session"]["id"]

    started = gateway_client.post(
        f"/mentorship/sessions/{session_id}/start", headers=as_user(MENTOR)
    )
    assert started.json()["status"] == "in_progress"
    completed = gateway_client.post(
        f"/mentorship/sessions/{session_id}/complete", headers=as_user(MENTOR)
    )
    assert completed.json()["status"] == "completed"
    rated = gateway_client.post(
        f"/mentorship/sessions/{session_id}/rate",
        json={"rating": 4, "feedback": "clear next steps"},
        headers=as_user(MENTEE),
    )
    assert rated.status_code == 200
    assert rated.json()["rating"] == 4

    bad_rating = gateway_client.post(
        f"/mentorship/sessions/{session_id}/rate",
        json={"rating": 9},
        headers=as_user(MENTEE),
    )
    assert bad_rating.status_code == 422
