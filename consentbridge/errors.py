"""ConsentBridge Errors - Typed failures for every gate in the pipeline

Self-Explanatory: One exception class per rejection reason.
Why: Partners and customers must see a stable status code + safe message,
     never ciphertext, key material or stack traces.
How: Services raise these; main.py maps them to {"status": "error", "message": ...}.
"""

from typing import List, Optional


class ConsentBridgeError(Exception):
    """Base class for all domain errors"""

    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.public_message
        super().__init__(self.message)


class ValidationError(ConsentBridgeError):
    status_code = 400
    public_message = "Invalid request"


class AuthenticationError(ConsentBridgeError):
    status_code = 401
    public_message = "Invalid authentication"


class AuthorizationError(ConsentBridgeError):
    status_code = 403
    public_message = "Insufficient permissions"


class ConsentNotActiveError(AuthorizationError):
    public_message = "Consent is not active"


class ContractNotApprovedError(AuthorizationError):
    public_message = "Partner does not have an approved contract"


class ConsentExpiredError(AuthorizationError):
    public_message = "Consent has expired"


class FieldsNotAllowedError(AuthorizationError):
    """Requested fields fall outside the consent's allowed set"""

    def __init__(self, fields: List[str]):
        self.fields = list(fields)
        super().__init__(f"Fields not allowed: {', '.join(self.fields)}")


class InvalidSignatureError(ConsentBridgeError):
    status_code = 400
    public_message = "Invalid request signature"


class NotFoundError(ConsentBridgeError):
    status_code = 404
    public_message = "Resource not found"


class DecryptionError(ConsentBridgeError):
    """AEAD/key-unwrap failure

    `stage` names where it failed (e.g. "key_unwrap", "field:email") and is
    only ever logged; the public message stays generic.
    """

    public_message = "Unable to process encrypted data"

    def __init__(self, stage: str, detail: Optional[str] = None):
        self.stage = stage
        self.detail = detail
        super().__init__(self.public_message)

    def __str__(self) -> str:
        if self.detail:
            return f"Decryption failed at {self.stage}: {self.detail}"
        return f"Decryption failed at {self.stage}"


class KeyMaterialError(ConsentBridgeError):
    public_message = "Key material is missing or malformed"


class DisclosureEncryptionError(ConsentBridgeError):
    public_message = "Unable to encrypt data for partner"
