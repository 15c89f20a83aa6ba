"""Shared fixtures - temporary SQLite database, fake clock, keys, seeded entities

Run: pytest tests/ -v
"""

import base64
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from consentbridge.config import Settings
from consentbridge.container import ServiceContainer
from consentbridge.governance.auth import create_access_token
from consentbridge.main import create_app
from consentbridge.models import Actor, ActorType
from consentbridge.partners.registry import ContractRequest
from consentbridge.security import crypto_primitives as primitives

FIELD_KEY = "0123456789abcdef0123456789abcdef"  # 32 bytes
ADMIN = Actor(actor_type=ActorType.ADMIN, actor_id="admin-1")


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(scope="session")
def bank_key_pem():
    return primitives.private_key_to_pem(primitives.generate_rsa_private_key())


@pytest.fixture(scope="session")
def partner_keys():
    """(private_pem, public_pem) of a partner"""
    private_key = primitives.generate_rsa_private_key()
    return (
        primitives.private_key_to_pem(private_key),
        primitives.public_key_to_pem(private_key.public_key()),
    )


@pytest.fixture
def settings(tmp_path, bank_key_pem):
    return Settings(
        environment="test",
        database_url=f"sqlite:///{tmp_path}/consentbridge.db",
        encryption_key=FIELD_KEY,
        signing_key_path=str(tmp_path / "keys" / "signing.pem"),
        signing_private_key_base64=base64.b64encode(bank_key_pem.encode()).decode(),
        jwt_secret="test-secret",
        min_consent_duration_ms=3600000,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def webhook_calls():
    return []


@pytest.fixture
def container(settings, clock, webhook_calls):
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_calls.append(request)
        return httpx.Response(200, json={"received": True})

    services = ServiceContainer(settings, clock=clock, notifier_transport=httpx.MockTransport(handler))
    yield services
    services.close()


@pytest.fixture
def client(container):
    with TestClient(create_app(container=container)) as test_client:
        yield test_client


@pytest.fixture
def admin_headers(settings):
    return {"Authorization": f"Bearer {create_access_token(settings, 'admin-1', 'admin')}"}


def customer_headers(settings, customer_id):
    token = create_access_token(settings, f"user-{customer_id}", "customer", customer_id=customer_id)
    return {"Authorization": f"Bearer {token}"}


def contract_request(fields=("name", "email", "phone")):
    return ContractRequest(
        allowed_fields=list(fields),
        purpose="Credit underwriting",
        retention_period_days=30,
        legal_basis="consent",
        contract_text="Partner may process listed fields for underwriting only.",
    )


@pytest.fixture
def customer(container):
    return container.customer_service.create_customer(
        {
            "name": "Asha Rao",
            "email": "asha@example.com",
            "phone": "+919800000001",
            "pan": "ABCDE1234F",
            "address": "12 MG Road, Bengaluru",
        },
        ADMIN,
    )


@pytest.fixture
def approved_partner(container, partner_keys):
    """Active partner with public key and approved contract for name/email/phone"""
    partner, _ = container.partner_registry.register_partner(
        "Acme Lending",
        contract_request(),
        ADMIN,
        public_key=partner_keys[1],
        callback_url="https://partner.example.com/webhook",
    )
    return container.consent_engine.approve_contract(partner.partner_id, True, ADMIN)


@pytest.fixture
def consent(container, customer, approved_partner):
    owner = Actor(
        actor_type=ActorType.CUSTOMER,
        actor_id="user-1",
        customer_id=customer.customer_id,
    )
    return container.consent_engine.create_consent(
        customer.customer_id, approved_partner.partner_id, 24 * 3600 * 1000, owner
    )
