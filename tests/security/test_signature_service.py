"""Unit Tests for Signature Service - Persisted bank signing key

Self-Explanatory: Sign/verify, key survives restarts, env override.
Why: Audit signatures must stay verifiable across process restarts.
Run: pytest tests/security/ -v
"""
import base64
import os
import stat

import pytest

from consentbridge.errors import KeyMaterialError
from consentbridge.security import crypto_primitives as primitives
from consentbridge.security.signature_service import SignatureService


@pytest.fixture
def service(bank_key_pem):
    return SignatureService(bank_key_pem)


def test_sign_and_verify(service):
    signature = service.sign("event-hash")
    assert service.verify("event-hash", signature)
    assert service.verify(b"event-hash", signature)


def test_verify_rejects_other_data(service):
    signature = service.sign("event-hash")
    assert not service.verify("event-hash-2", signature)
    assert not service.verify("event-hash", "not base64!!")


def test_verify_with_partner_key(service, partner_keys):
    private_pem, public_pem = partner_keys
    partner = SignatureService(private_pem)
    signature = partner.sign('{"requestId":"r1"}')

    assert service.verify('{"requestId":"r1"}', signature, public_key_pem=public_pem)
    assert not service.verify('{"requestId":"r1"}', signature)


def test_key_persisted_across_restarts(tmp_path):
    key_path = str(tmp_path / "keys" / "signing.pem")
    first = SignatureService.from_settings(key_path)
    signature = first.sign("audit-entry")

    assert os.path.exists(key_path)
    assert stat.S_IMODE(os.stat(key_path).st_mode) == 0o600

    second = SignatureService.from_settings(key_path)
    assert second.public_key_pem == first.public_key_pem
    assert second.verify("audit-entry", signature)


def test_env_key_takes_precedence(tmp_path, bank_key_pem):
    key_path = str(tmp_path / "signing.pem")
    encoded = base64.b64encode(bank_key_pem.encode()).decode()
    service = SignatureService.from_settings(key_path, encoded)

    expected = primitives.public_key_to_pem(primitives.load_private_key(bank_key_pem).public_key())
    assert service.public_key_pem == expected
    assert not os.path.exists(key_path)


def test_env_key_invalid_base64(tmp_path):
    with pytest.raises(KeyMaterialError):
        SignatureService.from_settings(str(tmp_path / "signing.pem"), "%%%not-base64%%%")


def test_corrupt_key_file(tmp_path):
    key_path = tmp_path / "signing.pem"
    key_path.write_text("garbage")
    with pytest.raises(KeyMaterialError):
        SignatureService.from_settings(str(key_path))
