"""Signature Service - Bank RSA signing key

Self-Explanatory: Signs audit entries and outbound notifications; verifies
partner request signatures.
Why: A key regenerated on every restart makes every stored audit signature
     unverifiable, so the pair is persisted and reloaded.
How:
1. SIGNING_PRIVATE_KEY_BASE64 (base64 PEM) if set
2. Else PEM at SIGNING_KEY_PATH
3. Else generate RSA-2048 once and write it to SIGNING_KEY_PATH (0600)
"""

import base64
import os
from typing import Optional, Union

import structlog

from consentbridge.errors import KeyMaterialError
from consentbridge.security import crypto_primitives as primitives

logger = structlog.get_logger()


class SignatureService:
    """RSA-SHA256 signing with a persisted key pair"""

    def __init__(self, private_key_pem: str):
        self._private_key = primitives.load_private_key(private_key_pem)
        self._public_key = self._private_key.public_key()
        self.public_key_pem = primitives.public_key_to_pem(self._public_key)
        logger.info("Signature service initialized", key_bits=self._private_key.key_size)

    @classmethod
    def from_settings(cls, key_path: str, private_key_base64: Optional[str] = None) -> "SignatureService":
        return cls(cls._get_or_create_private_key(key_path, private_key_base64))

    @staticmethod
    def _get_or_create_private_key(key_path: str, private_key_base64: Optional[str]) -> str:
        """Load the persisted signing key, creating it on first start

        Returns:
            Private key PEM
        """
        if private_key_base64:
            try:
                pem = base64.b64decode(private_key_base64, validate=True).decode("utf-8")
            except (ValueError, UnicodeDecodeError) as e:
                raise KeyMaterialError(f"SIGNING_PRIVATE_KEY_BASE64 is not valid base64 PEM: {e}")
            logger.info("Using signing key from environment")
            return pem

        if os.path.exists(key_path):
            with open(key_path, "r", encoding="utf-8") as f:
                pem = f.read()
            logger.info("Using existing signing key", path=key_path)
            return pem

        logger.info("Creating new signing key", path=key_path)
        pem = primitives.private_key_to_pem(primitives.generate_rsa_private_key())
        directory = os.path.dirname(key_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(pem)
        return pem

    def sign(self, data: Union[str, bytes]) -> str:
        """Sign data

        Returns:
            base64 signature
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        return primitives.rsa_sign(self._private_key, data)

    def verify(
        self,
        data: Union[str, bytes],
        signature: str,
        public_key_pem: Optional[str] = None,
    ) -> bool:
        """Verify a signature with our key, or with `public_key_pem` if given

        Raises:
            KeyMaterialError: `public_key_pem` is malformed
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        public_key = (
            primitives.load_public_key(public_key_pem) if public_key_pem else self._public_key
        )
        return primitives.rsa_verify(public_key, data, signature)
