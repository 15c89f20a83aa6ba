"""Field-Level Encryption - PII at rest

Why: Customer PII is stored sealed; a DB dump must not reveal it.
How: AES-256-GCM with the server key (32 bytes, from ENCRYPTION_KEY),
     fresh 16-byte IV per value, plus a key-independent SHA-256 digest for
     equality search.
"""

from typing import Dict, Iterable, Optional

import structlog

from consentbridge.errors import DecryptionError, KeyMaterialError
from consentbridge.models import PII_FIELDS, EncryptedField
from consentbridge.security import crypto_primitives as primitives
from consentbridge.utils.metrics import decryption_failures_total, encryption_operations_total

logger = structlog.get_logger()


class FieldEncryptionEngine:
    """Seals and opens single PII values with the server field key"""

    def __init__(self, key: bytes):
        if len(key) != primitives.AES_KEY_BYTES:
            raise KeyMaterialError(
                f"Field encryption key must be exactly 32 bytes, got {len(key)}"
            )
        self._key = key
        logger.info("Field encryption engine initialized", algorithm="AES-256-GCM")

    @classmethod
    def from_secret(cls, secret: str) -> "FieldEncryptionEngine":
        """Build from the ENCRYPTION_KEY string (utf-8 bytes used as-is)"""
        if not secret:
            raise KeyMaterialError("ENCRYPTION_KEY is not set")
        return cls(secret.encode("utf-8"))

    @staticmethod
    def create_hash(text: str) -> str:
        return primitives.sha256_hex(text)

    def encrypt_field(self, plaintext: str) -> EncryptedField:
        """Encrypt one value

        Args:
            plaintext: Value to seal

        Returns:
            EncryptedField with a fresh IV
        """
        iv = primitives.random_iv()
        ciphertext, auth_tag = primitives.aes_gcm_encrypt(
            self._key, iv, plaintext.encode("utf-8")
        )
        encryption_operations_total.labels(operation="encrypt", algorithm="AES-256-GCM").inc()
        return EncryptedField(
            ciphertext=ciphertext,
            iv=iv,
            auth_tag=auth_tag,
            digest=self.create_hash(plaintext),
        )

    def decrypt_field(self, field: EncryptedField, stage: str = "field") -> str:
        """Decrypt one value

        Raises:
            DecryptionError: wrong key, tampered ciphertext/tag or bad IV
        """
        try:
            plaintext = primitives.aes_gcm_decrypt(
                self._key, field.iv, field.ciphertext, field.auth_tag, stage=stage
            )
            value = plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            decryption_failures_total.labels(stage=stage).inc()
            raise DecryptionError(stage, str(e))
        except DecryptionError:
            decryption_failures_total.labels(stage=stage).inc()
            raise
        encryption_operations_total.labels(operation="decrypt", algorithm="AES-256-GCM").inc()
        return value

    def encrypt_record(self, values: Dict[str, Optional[str]]) -> Dict[str, EncryptedField]:
        """Seal every known PII field present in `values`"""
        return {
            name: self.encrypt_field(value)
            for name, value in values.items()
            if name in PII_FIELDS and value is not None
        }

    def decrypt_fields(
        self, encrypted: Dict[str, EncryptedField], names: Iterable[str]
    ) -> Dict[str, str]:
        """Open the requested fields that exist on the record

        Raises:
            DecryptionError: first field that fails, stage "field:<name>"
        """
        result = {}
        for name in names:
            field = encrypted.get(name)
            if field is None:
                continue
            result[name] = self.decrypt_field(field, stage=f"field:{name}")
        return result
