"""Unit Tests for Field Encryption - AES-256-GCM PII at rest

Self-Explanatory: Seal/open single values, digests, key checks, tamper detection.
Run: pytest tests/security/ -v
"""
import hashlib

import pytest

from consentbridge.errors import DecryptionError, KeyMaterialError
from consentbridge.models import EncryptedField
from consentbridge.security.field_encryption import FieldEncryptionEngine

KEY = b"0123456789abcdef0123456789abcdef"


@pytest.fixture
def engine():
    return FieldEncryptionEngine(KEY)


def test_encrypt_decrypt_roundtrip(engine):
    field = engine.encrypt_field("asha@example.com")
    assert field.ciphertext != b"asha@example.com"
    assert len(field.iv) == 16
    assert len(field.auth_tag) == 16
    assert engine.decrypt_field(field) == "asha@example.com"


def test_fresh_iv_per_encryption(engine):
    first = engine.encrypt_field("+919800000001")
    second = engine.encrypt_field("+919800000001")
    assert first.iv != second.iv
    assert first.ciphertext != second.ciphertext
    # Digest is key-independent and stable
    assert first.digest == second.digest == hashlib.sha256(b"+919800000001").hexdigest()


def test_empty_string_roundtrip(engine):
    assert engine.decrypt_field(engine.encrypt_field("")) == ""


@pytest.mark.parametrize("key", [b"x" * 31, b"x" * 33, b""])
def test_rejects_wrong_key_length(key):
    with pytest.raises(KeyMaterialError):
        FieldEncryptionEngine(key)


def test_from_secret_requires_value():
    with pytest.raises(KeyMaterialError):
        FieldEncryptionEngine.from_secret("")


def test_tampered_ciphertext_fails(engine):
    field = engine.encrypt_field("ABCDE1234F")
    flipped = bytes([field.ciphertext[0] ^ 0x01]) + field.ciphertext[1:]
    with pytest.raises(DecryptionError) as exc:
        engine.decrypt_field(field.model_copy(update={"ciphertext": flipped}), stage="field:pan")
    assert exc.value.stage == "field:pan"


def test_tampered_tag_fails(engine):
    field = engine.encrypt_field("ABCDE1234F")
    with pytest.raises(DecryptionError):
        engine.decrypt_field(field.model_copy(update={"auth_tag": b"\x00" * 16}))


def test_wrong_key_fails(engine):
    field = engine.encrypt_field("12 MG Road")
    other = FieldEncryptionEngine(b"f" * 32)
    with pytest.raises(DecryptionError):
        other.decrypt_field(field)


def test_record_hex_format(engine):
    record = engine.encrypt_field("Asha Rao").to_record()
    assert set(record) == {"encryptedValue", "iv", "authTag", "hash"}
    assert len(record["iv"]) == 32  # 16 bytes hex
    restored = EncryptedField.from_record(record)
    assert engine.decrypt_field(restored) == "Asha Rao"


def test_malformed_record_raises_decryption_error():
    with pytest.raises(DecryptionError):
        EncryptedField.from_record({"encryptedValue": "zz", "iv": "00", "authTag": "00", "hash": "h"})


def test_encrypt_record_skips_none_and_unknown(engine):
    sealed = engine.encrypt_record({"name": "Asha", "email": None, "nickname": "A", "address": ""})
    assert set(sealed) == {"name", "address"}


def test_decrypt_fields_skips_absent(engine):
    sealed = engine.encrypt_record({"name": "Asha", "phone": "+91"})
    assert engine.decrypt_fields(sealed, ["name", "pan"]) == {"name": "Asha"}
