"""Integration tests for API endpoints"""

import json
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from billing_gateway.api.main import serve
from billing_gateway.config import settings
from billing_gateway.domain.audit import AuditAction
from billing_gateway.domain.events import PaymentProcessed
from billing_gateway.domain.models import PaymentStatus, Plan
from billing_gateway.infrastructure.database.repositories import AuditLogRepository
from billing_gateway.infrastructure.gateways.sandbox import SandboxGateway
from billing_gateway.infrastructure.gateways.signatures import sign_payload

HEADERS = {"X-User-Id": "42", "X-Tenant-Id": "7", "User-Agent": "checkout-web"}


def charge_body(**overrides) -> dict:
    body = {
        "amount_cents": 4990,
        "description": "Pro plan - monthly",
        "payer_email": "payer@example.com",
        "payment_method": "credit_card",
        "payment_token": "tok_visa_4242",
        "billing_period": "2026-05",
    }
    body.update(overrides)
    return body


@pytest.fixture
def subscription_id(client: TestClient, plan: Plan) -> int:
    response = client.post("/v1/subscriptions", json={"user_id": 42, "plan_id": plan.id}, headers=HEADERS)
    assert response.status_code == 201
    return response.json()["id"]


def test_health_endpoint(client: TestClient):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "X-Request-ID" in response.headers


def test_metrics_endpoint(client: TestClient):
    """Test Prometheus metrics endpoint"""
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "billing_charge_total" in response.text


def test_create_and_read_subscription(client: TestClient, plan: Plan, published):
    """Test POST then GET returns the read contract"""
    created = client.post("/v1/subscriptions", json={"user_id": 42, "plan_id": plan.id}, headers=HEADERS)
    assert created.status_code == 201

    response = client.get(f"/v1/subscriptions/{created.json()['id']}")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "trial"
    assert data["plan_id"] == plan.id
    assert data["period_end"] is None
    assert data["days_remaining"] == 0
    assert data["plan"] == {"id": plan.id, "name": "Pro", "monthly_price": 4990, "annual_price": 49900}
    assert len(published) == 1


def test_create_subscription_unknown_plan(client: TestClient, db):
    """Test 404 for a plan that does not exist"""
    response = client.post("/v1/subscriptions", json={"user_id": 42, "plan_id": 999}, headers=HEADERS)
    assert response.status_code == 404


def test_create_subscription_rejects_active_status(client: TestClient, plan: Plan):
    """Test only trial and pending are accepted as initial status"""
    response = client.post(
        "/v1/subscriptions", json={"user_id": 42, "plan_id": plan.id, "status": "active"}, headers=HEADERS
    )
    assert response.status_code == 422


def test_get_unknown_subscription(client: TestClient, db):
    """Test 404 for unknown subscription"""
    assert client.get("/v1/subscriptions/12345").status_code == 404


def test_charge_approved(client: TestClient, subscription_id: int, db):
    """Test an approved charge activates the subscription"""
    response = client.post(f"/v1/subscriptions/{subscription_id}/charge", json=charge_body(), headers=HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "approved"
    assert data["payment_status"] == "approved"
    assert data["idempotency_key"] == f"sub_{subscription_id}_2026-05"
    assert data["subscription"]["status"] == "active"
    assert data["subscription"]["amount_paid"] == 4990
    assert data["subscription"]["days_remaining"] in (29, 30)

    audits = AuditLogRepository(db).list_for("Payment", subscription_id, AuditAction.PAYMENT_PROCESSED)
    assert audits[0].user_id == 42
    assert audits[0].tenant_id == 7
    assert audits[0].user_agent == "checkout-web"


def test_charge_twice_same_period(client: TestClient, subscription_id: int, sandbox: SandboxGateway):
    """Test the second call replays the first outcome"""
    first = client.post(f"/v1/subscriptions/{subscription_id}/charge", json=charge_body(), headers=HEADERS)
    second = client.post(f"/v1/subscriptions/{subscription_id}/charge", json=charge_body(), headers=HEADERS)

    assert first.json()["outcome"] == "approved"
    assert second.json()["outcome"] == "duplicate"
    assert second.json()["external_id"] == first.json()["external_id"]
    assert sandbox.charges_made == 1


def test_charge_declined(client: TestClient, subscription_id: int):
    """Test a decline is a 200 with a payer-safe message"""
    response = client.post(
        f"/v1/subscriptions/{subscription_id}/charge",
        json=charge_body(payment_token="tok_decline_funds"),
        headers=HEADERS,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "rejected"
    assert "insufficient balance" in data["user_message"]
    assert data["subscription"]["status"] == "awaiting_payment"


def test_charge_invalid_request(client: TestClient, subscription_id: int):
    """Test construction errors surface as 422"""
    response = client.post(
        f"/v1/subscriptions/{subscription_id}/charge",
        json=charge_body(payment_method="pix", payment_token="tok_visa_4242"),
        headers=HEADERS,
    )
    assert response.status_code == 422


def test_charge_wrong_amount(client: TestClient, subscription_id: int, sandbox: SandboxGateway):
    """Test a charge that does not match the plan price is refused"""
    response = client.post(
        f"/v1/subscriptions/{subscription_id}/charge", json=charge_body(amount_cents=100), headers=HEADERS
    )
    assert response.status_code == 409
    assert sandbox.charges_made == 0


def test_cancel_is_idempotent(client: TestClient, subscription_id: int):
    """Test cancelling twice returns cancelled both times"""
    first = client.post(f"/v1/subscriptions/{subscription_id}/cancel", json={"reason": "too expensive"}, headers=HEADERS)
    second = client.post(f"/v1/subscriptions/{subscription_id}/cancel", headers=HEADERS)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["status"] == "cancelled"

    charge = client.post(f"/v1/subscriptions/{subscription_id}/charge", json=charge_body(), headers=HEADERS)
    assert charge.status_code == 409


def test_webhook_invalid_signature(client: TestClient, subscription_id: int):
    """Test a bad signature is a 401"""
    payload = json.dumps({"type": "payment", "data": {"id": "sbx_1"}}).encode()
    response = client.post(
        "/v1/webhooks/payments",
        content=payload,
        headers={"X-Signature": sign_payload(payload, "wrong-secret"), "Content-Type": "application/json"},
    )
    assert response.status_code == 401


def test_webhook_missing_signature(client: TestClient, db):
    """Test an unsigned notification is a 401"""
    response = client.post("/v1/webhooks/payments", content=b"{}")
    assert response.status_code == 401


def test_webhook_settles_pending_charge(client: TestClient, subscription_id: int, sandbox: SandboxGateway, published):
    """Test a pending instant transfer is activated by the processor notification, once"""
    charge = client.post(
        f"/v1/subscriptions/{subscription_id}/charge",
        json=charge_body(payment_method="pix", payment_token=None),
        headers=HEADERS,
    )
    assert charge.json()["outcome"] == "pending"
    assert charge.json()["subscription"]["status"] == "trial"

    payload, signature = sandbox.settle(charge.json()["external_id"], PaymentStatus.APPROVED)
    headers = {"X-Signature": signature, "Content-Type": "application/json"}
    first = client.post("/v1/webhooks/payments", content=payload, headers=headers)
    second = client.post("/v1/webhooks/payments", content=payload, headers=headers)

    assert first.status_code == 200
    assert first.json()["outcome"] == "applied"
    assert second.json()["outcome"] == "duplicate"
    assert client.get(f"/v1/subscriptions/{subscription_id}").json()["status"] == "active"
    assert len([e for e in published if isinstance(e, PaymentProcessed)]) == 1


def test_webhook_malformed_payload(client: TestClient, db, sandbox: SandboxGateway):
    """Test a correctly signed but unparseable notification is a 400"""
    payload = b"not json"
    response = client.post(
        "/v1/webhooks/payments",
        content=payload,
        headers={"X-Signature": sign_payload(payload, sandbox.webhook_secret)},
    )
    assert response.status_code == 400


def test_webhook_unknown_payment(client: TestClient, db, sandbox: SandboxGateway):
    """Test notifications for payments the processor does not know are acknowledged"""
    payload = json.dumps({"type": "payment", "data": {"id": "sbx_999"}}).encode()
    response = client.post(
        "/v1/webhooks/payments",
        content=payload,
        headers={"X-Signature": sign_payload(payload, sandbox.webhook_secret)},
    )
    assert response.status_code == 200
    assert response.json()["outcome"] == "unknown_subject"


def test_audit_outage_fails_the_request(client: TestClient, plan: Plan):
    """Test a write whose audit entry cannot be stored is reported as a 500"""
    with patch.object(AuditLogRepository, "append", side_effect=OperationalError("INSERT", {}, Exception("db down"))):
        response = client.post("/v1/subscriptions", json={"user_id": 42, "plan_id": plan.id}, headers=HEADERS)

    assert response.status_code == 500
    assert response.json()["request_id"] == response.headers["X-Request-ID"]


def test_serve_runs_the_app_under_uvicorn():
    """Test the billing-api command hands the app and configured bind address to uvicorn"""
    with patch("uvicorn.run") as run:
        serve()

    run.assert_called_once_with(
        "billing_gateway.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
        log_level=settings.log_level.lower(),
    )


def test_charge_retry_too_soon_after_decline(client: TestClient, subscription_id: int, sandbox: SandboxGateway):
    """Test a second attempt right after a decline is refused without reaching the processor"""
    declined = client.post(
        f"/v1/subscriptions/{subscription_id}/charge",
        json=charge_body(payment_token="tok_decline_funds"),
        headers=HEADERS,
    )
    retry = client.post(f"/v1/subscriptions/{subscription_id}/charge", json=charge_body(), headers=HEADERS)

    assert declined.json()["outcome"] == "rejected"
    assert retry.status_code == 409
    assert sandbox.charges_made == 1
