"""Integration Tests for the HTTP API - End-to-End Flows

Self-Explanatory: Pytest with TestClient over a real SQLite database.
Why: Ensure the full onboarding -> consent -> disclosure -> audit path holds
     together, and errors keep the {"status": "error"} shape.
How: Admin/customer JWTs from create_access_token; webhooks captured by
     the MockTransport in conftest.
Run: pytest tests/api/ -v
"""
import json

import pytest
from fastapi.testclient import TestClient

from conftest import customer_headers
from consentbridge.config import Settings
from consentbridge.main import create_app
from consentbridge.security.hybrid_encryption import parse_envelope

API = "/api/v1"

CONTRACT = {
    "allowed_fields": ["name", "email", "phone"],
    "purpose": "Credit underwriting",
    "retention_period_days": 30,
    "legal_basis": "consent",
    "contract_text": "Partner may process listed fields for underwriting only.",
}


@pytest.fixture
def onboarded(client, admin_headers, settings, partner_keys):
    """Customer + approved partner + active consent, all through the API"""
    customer = client.post(f"{API}/customers", headers=admin_headers, json={
        "name": "Ravi Kumar",
        "email": "ravi@example.com",
        "phone": "+919811111111",
        "pan": "PQRSX6789K",
    })
    assert customer.status_code == 201
    customer_id = customer.json()["data"]["customerId"]

    registered = client.post(f"{API}/partners/register", headers=admin_headers, json={
        "partner_name": "Acme Lending",
        "public_key": partner_keys[1],
        "callback_url": "https://partner.example.com/webhook",
        "contract": CONTRACT,
    })
    assert registered.status_code == 201
    partner = registered.json()["data"]
    assert "api_token_hash" not in partner

    approved = client.post(
        f"{API}/partners/{partner['partner_id']}/contract/approve",
        headers=admin_headers,
        json={"approve": True},
    )
    assert approved.json()["data"]["approved_contract"] is True

    consent = client.post(
        f"{API}/consents",
        headers=customer_headers(settings, customer_id),
        json={
            "customer_id": customer_id,
            "partner_id": partner["partner_id"],
            "consent_duration_ms": 7 * 24 * 3600 * 1000,
        },
    )
    assert consent.status_code == 201

    return {
        "customer_id": customer_id,
        "partner_id": partner["partner_id"],
        "partner_headers": {
            "Authorization": f"Bearer {partner['api_token']}",
            "X-Partner-Id": partner["partner_id"],
        },
        "consent_id": consent.json()["data"]["consent_id"],
    }


def test_data_request_end_to_end(client, container, onboarded, partner_keys, webhook_calls):
    response = client.post(f"{API}/partners/data-request", headers=onboarded["partner_headers"], json={
        "consent_id": onboarded["consent_id"],
        "requested_fields": ["name", "phone"],
        "request_id": "req-e2e",
    })

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["encrypted"] is True
    assert body["data"]["encryptionType"] == "secure-temporary-key"

    fields = container.hybrid_engine.decrypt_secure(partner_keys[0], parse_envelope(body["data"]))
    assert fields == {"name": "Ravi Kumar", "phone": "+919811111111"}

    shared = [r for r in webhook_calls if r.headers["X-Event-Type"] == "customer_data_shared"]
    assert len(shared) == 1
    assert shared[0].headers["X-Encryption-Algorithm"] == "SECURE-TEMPORARY-KEY"
    assert json.loads(shared[0].content)["data"]["requestId"] == "req-e2e"


def test_fields_outside_consent(client, onboarded):
    response = client.post(f"{API}/partners/data-request", headers=onboarded["partner_headers"], json={
        "consent_id": onboarded["consent_id"],
        "requested_fields": ["name", "pan"],
    })
    assert response.status_code == 403
    assert response.json() == {"status": "error", "message": "Fields not allowed: pan"}


def test_revoked_consent_blocks_disclosure(client, settings, onboarded, webhook_calls):
    revoked = client.post(
        f"{API}/consents/{onboarded['consent_id']}/revoke",
        headers=customer_headers(settings, onboarded["customer_id"]),
        json={"reason": "no longer needed"},
    )
    assert revoked.json()["data"]["status"] == "revoked"
    assert any(r.headers["X-Event-Type"] == "consent_revoked" for r in webhook_calls)

    response = client.post(f"{API}/partners/data-request", headers=onboarded["partner_headers"], json={
        "consent_id": onboarded["consent_id"],
        "requested_fields": ["name"],
    })
    assert response.status_code == 403
    assert response.json()["status"] == "error"


def test_partner_credentials_required(client, onboarded):
    headers = {**onboarded["partner_headers"], "Authorization": "Bearer wrong-token"}
    response = client.post(f"{API}/partners/data-request", headers=headers, json={
        "consent_id": onboarded["consent_id"],
        "requested_fields": ["name"],
    })
    assert response.status_code == 401
    assert response.json()["status"] == "error"


def test_partner_lists_own_consents(client, onboarded):
    response = client.get(f"{API}/partners/consents", headers=onboarded["partner_headers"])
    assert response.json()["count"] == 1
    assert response.json()["data"][0]["consent_id"] == onboarded["consent_id"]


def test_customer_cannot_read_others(client, settings, onboarded):
    response = client.get(
        f"{API}/consents/customer/{onboarded['customer_id']}",
        headers=customer_headers(settings, "someone-else"),
    )
    assert response.status_code == 403


def test_customer_endpoints_admin_only(client, settings, onboarded):
    response = client.get(f"{API}/customers", headers=customer_headers(settings, onboarded["customer_id"]))
    assert response.status_code == 403
    assert response.json() == {"status": "error", "message": "Insufficient permissions"}


def test_customer_search(client, admin_headers, onboarded):
    response = client.get(
        f"{API}/customers/search",
        headers=admin_headers,
        params={"field": "email", "value": "ravi@example.com"},
    )
    assert response.status_code == 200
    assert response.json()["data"]["customerId"] == onboarded["customer_id"]


def test_short_consent_rejected(client, settings, onboarded):
    response = client.post(
        f"{API}/consents",
        headers=customer_headers(settings, onboarded["customer_id"]),
        json={
            "customer_id": onboarded["customer_id"],
            "partner_id": onboarded["partner_id"],
            "consent_duration_ms": 60000,
        },
    )
    assert response.status_code == 400


def test_audit_logs_and_verification(client, admin_headers, onboarded):
    response = client.get(f"{API}/audit/logs", headers=admin_headers, params={"limit": 50})
    body = response.json()
    assert body["integrityCheck"]["valid"] is True
    assert body["pagination"]["currentPage"] == 1

    # Newest first; verify oldest -> newest
    logs = body["data"]
    event_types = {log["eventType"] for log in logs}
    assert {"customer_created", "partner_registered", "partner_contract_approved", "consent_created"} <= event_types

    verified = client.get(
        f"{API}/audit/verify",
        headers=admin_headers,
        params={"start": logs[-1]["logId"], "end": logs[0]["logId"]},
    )
    assert verified.json()["data"]["valid"] is True


def test_audit_verify_unknown_id(client, admin_headers):
    response = client.get(f"{API}/audit/verify", headers=admin_headers, params={"start": "a", "end": "b"})
    assert response.status_code == 404


def test_public_key_endpoint(client, container):
    response = client.get(f"{API}/audit/public-key")
    assert response.json()["data"]["publicKey"] == container.signature_service.public_key_pem


def test_missing_token(client):
    response = client.get(f"{API}/partners")
    assert response.status_code == 401
    assert response.json() == {"status": "error", "message": "Invalid authentication"}


def test_health_and_metrics(client):
    assert client.get("/health/live").status_code == 200
    ready = client.get("/health/ready")
    assert ready.status_code == 200
    assert client.get("/metrics").status_code == 200


def test_customer_reads_own_profile(client, settings, admin_headers, onboarded):
    response = client.get(f"{API}/customers/me", headers=customer_headers(settings, onboarded["customer_id"]))
    assert response.status_code == 200
    assert response.json()["data"]["customerId"] == onboarded["customer_id"]
    assert response.json()["data"]["email"] == "ravi@example.com"

    # Admins use /customers/{id}
    assert client.get(f"{API}/customers/me", headers=admin_headers).status_code == 403


def test_production_is_default_environment():
    assert Settings().environment == "production"
    assert not Settings().is_development


def test_unhandled_error_hides_detail(container, admin_headers, mocker):
    mocker.patch.object(
        container.partner_registry, "list_partners", side_effect=RuntimeError("password=hunter2")
    )
    app = create_app(container=container)
    with TestClient(app, raise_server_exceptions=False) as test_client:
        response = test_client.get(f"{API}/partners", headers=admin_headers)

    assert response.status_code == 500
    assert response.json() == {"status": "error", "message": "Internal server error"}
