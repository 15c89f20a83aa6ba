"""Unit Tests for the Partner Registry

Run: pytest tests/partners/ -v
"""
import pytest

from conftest import ADMIN, contract_request
from consentbridge.errors import AuthenticationError, ValidationError
from consentbridge.models import PartnerStatus
from consentbridge.partners.registry import ContractRequest


@pytest.fixture
def registry(container):
    return container.partner_registry


def test_register_returns_one_time_token(container, registry):
    partner, token = registry.register_partner("Acme", contract_request(), ADMIN)

    assert partner.partner_id.startswith("PID-")
    assert partner.status == PartnerStatus.PENDING
    assert len(token) == 64
    stored = container.repository.get_partner(partner.partner_id)
    assert stored.api_token_hash != token
    assert registry.authenticate(partner.partner_id, token).partner_id == partner.partner_id


def test_authenticate_rejects_bad_token(registry):
    partner, _ = registry.register_partner("Acme", contract_request(), ADMIN)
    with pytest.raises(AuthenticationError):
        registry.authenticate(partner.partner_id, "0" * 64)
    with pytest.raises(AuthenticationError):
        registry.authenticate(None, "token")


def test_incomplete_contract(registry):
    contract = ContractRequest(allowed_fields=["name"], purpose="Marketing")
    with pytest.raises(ValidationError) as exc:
        registry.register_partner("Acme", contract, ADMIN)
    assert exc.value.message == "Incomplete contract details: retentionPeriod, legalBasis, contractText"


def test_invalid_public_key(registry):
    with pytest.raises(ValidationError):
        registry.register_partner("Acme", contract_request(), ADMIN, public_key="not-a-key")


def test_contract_change_resets_approval(container, registry, approved_partner):
    partner, changed = registry.update_partner(
        approved_partner.partner_id, ADMIN, contract=contract_request(("name",))
    )
    assert changed is True
    assert partner.approved_contract is False
    assert partner.contract_data is None
    assert [p.partner_id for p in registry.list_pending_contracts()] == [partner.partner_id]


def test_same_contract_keeps_approval(registry, approved_partner):
    partner, changed = registry.update_partner(
        approved_partner.partner_id, ADMIN, contract=contract_request(), callback_url=""
    )
    assert changed is False
    assert partner.approved_contract is True
    assert partner.callback_url is None


def test_update_public_key(registry, approved_partner, partner_keys):
    partner = registry.update_public_key(approved_partner.partner_id, partner_keys[1], ADMIN)
    assert partner.public_key == partner_keys[1]
    assert [p.partner_id for p in registry.list_approved_partners()] == [partner.partner_id]


@pytest.mark.parametrize("callback_url", ["http://[::1", "ftp://partner.example.com/hook", "not a url"])
def test_invalid_callback_url_rejected(registry, callback_url):
    with pytest.raises(ValidationError):
        registry.register_partner("Acme", contract_request(), ADMIN, callback_url=callback_url)


def test_update_rejects_invalid_callback_url(registry, approved_partner):
    with pytest.raises(ValidationError):
        registry.update_partner(approved_partner.partner_id, ADMIN, callback_url="http://[::1")
    assert registry.get_partner(approved_partner.partner_id).callback_url == "https://partner.example.com/webhook"
