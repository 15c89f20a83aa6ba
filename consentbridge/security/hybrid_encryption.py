"""Hybrid Disclosure Encryption - Envelopes only the partner can open

Self-Explanatory: Re-encrypts disclosed PII under the requesting partner's RSA key.
Why: Field ciphertext at rest is under the bank key; partners get their own envelope.
How: Envelope encryption, same shape as data-key + master-key wrapping:

Standard ("RSA-OAEP-SHA256+AES-256-GCM"):
1. Fresh AES-256 key + 16-byte IV per call
2. AES-GCM seal the blob
3. RSA-OAEP(SHA-256) wrap the AES key with the partner public key
4. Ship {encryptedData, iv, authTag, encryptedKey, algorithm} (base64)

Secure per-request ("secure-temporary-key"):
1. One ephemeral AES key + IV for the whole request
2. Each field sealed separately (hex values)
3. Inner payload {encryptedFields, tempKey, algorithm: "AES-256-GCM-TEMP-KEY"}
   sealed with the standard protocol
4. Outer envelope tagged encryptionType "secure-temporary-key"

Partner side: decrypt_hybrid() / decrypt_secure() dispatch on the tags.
"""

import json
from enum import Enum
from typing import Dict, Literal, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from consentbridge.errors import DecryptionError
from consentbridge.security import crypto_primitives as primitives
from consentbridge.utils.metrics import decryption_failures_total, encryption_operations_total

logger = structlog.get_logger()


class EncryptionAlgorithm(str, Enum):
    HYBRID = "RSA-OAEP-SHA256+AES-256-GCM"
    TEMP_KEY = "AES-256-GCM-TEMP-KEY"


class EncryptionType(str, Enum):
    STANDARD = "rsa-oaep-aes-gcm"
    SECURE = "secure-temporary-key"


class HybridEnvelope(BaseModel):
    """Standard envelope; wire keys are camelCase"""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    encrypted_data: str = Field(alias="encryptedData")
    iv: str
    auth_tag: str = Field(alias="authTag")
    encrypted_key: str = Field(alias="encryptedKey")
    algorithm: Literal["RSA-OAEP-SHA256+AES-256-GCM"] = EncryptionAlgorithm.HYBRID.value

    @property
    def encryption_type(self) -> EncryptionType:
        return EncryptionType.STANDARD

    def to_wire(self) -> Dict[str, str]:
        return self.model_dump(by_alias=True)


class SecureEnvelope(HybridEnvelope):
    """Standard envelope wrapping a temporary-key inner payload"""

    envelope_type: Literal["secure-temporary-key"] = Field(
        default=EncryptionType.SECURE.value, alias="encryptionType"
    )

    @property
    def encryption_type(self) -> EncryptionType:
        return EncryptionType.SECURE


Envelope = Union[HybridEnvelope, SecureEnvelope]


def parse_envelope(wire: Dict) -> Envelope:
    """Parse a received envelope into its tagged variant

    Raises:
        DecryptionError: unknown encryptionType/algorithm or missing keys
    """
    if not isinstance(wire, dict):
        raise DecryptionError("envelope", "envelope must be an object")
    encryption_type = wire.get("encryptionType")
    try:
        if encryption_type == EncryptionType.SECURE.value:
            return SecureEnvelope.model_validate(wire)
        if encryption_type in (None, EncryptionType.STANDARD.value):
            fields = {k: v for k, v in wire.items() if k != "encryptionType"}
            return HybridEnvelope.model_validate(fields)
    except PydanticValidationError as e:
        raise DecryptionError("envelope", str(e))
    raise DecryptionError("envelope", f"unsupported encryptionType {encryption_type!r}")


class HybridEncryptionEngine:
    """Builds and opens partner disclosure envelopes"""

    def encrypt_with_public_key(self, data: Union[str, bytes], public_key_pem: str) -> HybridEnvelope:
        """Seal a blob for one partner

        Args:
            data: Plaintext (str is utf-8 encoded)
            public_key_pem: Partner RSA public key (PEM or bare base64 body)

        Returns:
            HybridEnvelope

        Raises:
            KeyMaterialError: public key missing or malformed
        """
        public_key = primitives.load_public_key(public_key_pem)
        if isinstance(data, str):
            data = data.encode("utf-8")

        aes_key = primitives.generate_aes_key()
        iv = primitives.random_iv()
        ciphertext, auth_tag = primitives.aes_gcm_encrypt(aes_key, iv, data)
        wrapped_key = primitives.rsa_oaep_encrypt(public_key, aes_key)

        encryption_operations_total.labels(
            operation="encrypt", algorithm=EncryptionAlgorithm.HYBRID.value
        ).inc()
        return HybridEnvelope(
            encrypted_data=primitives.b64encode(ciphertext),
            iv=primitives.b64encode(iv),
            auth_tag=primitives.b64encode(auth_tag),
            encrypted_key=primitives.b64encode(wrapped_key),
        )

    def encrypt_fields_secure(self, fields: Dict[str, str], public_key_pem: str) -> SecureEnvelope:
        """Seal a field map with a per-request temporary key

        Every field shares the request's ephemeral key and IV; the key is
        discarded once the envelope is built.
        """
        temp_key = primitives.generate_aes_key()
        iv = primitives.random_iv()

        encrypted_fields = {}
        for name, value in fields.items():
            if value is None:
                continue
            ciphertext, auth_tag = primitives.aes_gcm_encrypt(
                temp_key, iv, str(value).encode("utf-8")
            )
            encrypted_fields[name] = {
                "encryptedValue": ciphertext.hex(),
                "iv": iv.hex(),
                "authTag": auth_tag.hex(),
            }

        inner_payload = {
            "encryptedFields": encrypted_fields,
            "tempKey": primitives.b64encode(temp_key),
            "algorithm": EncryptionAlgorithm.TEMP_KEY.value,
        }
        outer = self.encrypt_with_public_key(json.dumps(inner_payload), public_key_pem)

        logger.info(
            "Secure disclosure envelope built",
            field_count=len(encrypted_fields),
            encryption_type=EncryptionType.SECURE.value,
        )
        return SecureEnvelope(**outer.model_dump())

    def decrypt_hybrid(self, private_key_pem: str, envelope: Envelope) -> bytes:
        """Open a standard envelope (partner side)

        Raises:
            DecryptionError: stage "key_unwrap" or "payload"
        """
        if envelope.algorithm != EncryptionAlgorithm.HYBRID.value:
            raise DecryptionError("envelope", f"unsupported algorithm {envelope.algorithm!r}")

        private_key = primitives.load_private_key(private_key_pem)
        try:
            aes_key = primitives.rsa_oaep_decrypt(
                private_key, primitives.b64decode(envelope.encrypted_key, "key_unwrap")
            )
            if len(aes_key) != primitives.AES_KEY_BYTES:
                raise DecryptionError("key_unwrap", "unwrapped key is not 32 bytes")
            return primitives.aes_gcm_decrypt(
                aes_key,
                primitives.b64decode(envelope.iv, "payload"),
                primitives.b64decode(envelope.encrypted_data, "payload"),
                primitives.b64decode(envelope.auth_tag, "payload"),
                stage="payload",
            )
        except DecryptionError as e:
            decryption_failures_total.labels(stage=e.stage).inc()
            logger.error("Envelope decryption failed", stage=e.stage)
            raise

    def decrypt_secure(self, private_key_pem: str, envelope: Envelope) -> Dict[str, str]:
        """Open a secure-temporary-key envelope into its field map"""
        if not isinstance(envelope, SecureEnvelope):
            raise DecryptionError("envelope", "not a secure-temporary-key envelope")

        inner_bytes = self.decrypt_hybrid(private_key_pem, envelope)
        try:
            inner = json.loads(inner_bytes.decode("utf-8"))
            algorithm = inner["algorithm"]
            temp_key = primitives.b64decode(inner["tempKey"], "inner_payload")
            encrypted_fields = inner["encryptedFields"]
        except (ValueError, KeyError, TypeError) as e:
            decryption_failures_total.labels(stage="inner_payload").inc()
            raise DecryptionError("inner_payload", str(e))

        if algorithm != EncryptionAlgorithm.TEMP_KEY.value:
            raise DecryptionError("inner_payload", f"unsupported algorithm {algorithm!r}")

        fields = {}
        for name, record in encrypted_fields.items():
            stage = f"field:{name}"
            try:
                iv = bytes.fromhex(record["iv"])
                ciphertext = bytes.fromhex(record["encryptedValue"])
                auth_tag = bytes.fromhex(record["authTag"])
            except (ValueError, KeyError, TypeError) as e:
                decryption_failures_total.labels(stage="field").inc()
                raise DecryptionError(stage, str(e))
            try:
                plaintext = primitives.aes_gcm_decrypt(
                    temp_key, iv, ciphertext, auth_tag, stage=stage
                )
                fields[name] = plaintext.decode("utf-8")
            except DecryptionError:
                decryption_failures_total.labels(stage="field").inc()
                raise
            except UnicodeDecodeError as e:
                decryption_failures_total.labels(stage="field").inc()
                raise DecryptionError(stage, str(e))
        return fields
