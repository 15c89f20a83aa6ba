"""ConsentBridge Domain Models

Self-Explanatory: Pydantic models for customers, partners, contracts, consents,
disclosure requests and the actors that touch them.
How: Entities reference each other by id only; storage is id-indexed.
"""

import copy
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from consentbridge.errors import DecryptionError

# Fields held encrypted on every customer record
PII_FIELDS = ("name", "email", "phone", "pan", "address")

# Fields that also carry a plaintext digest for equality search
SEARCHABLE_FIELDS = ("phone", "email", "pan")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActorType(str, Enum):
    CUSTOMER = "customer"
    PARTNER = "partner"
    ADMIN = "admin"
    SYSTEM = "system"


class PartnerStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class ConsentStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"
    PENDING = "pending"


class DataRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FULFILLED = "fulfilled"
    FAILED = "failed"


class Actor(BaseModel):
    """Authenticated caller as seen by the services"""
    actor_type: ActorType
    actor_id: str
    customer_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.actor_type == ActorType.ADMIN


SYSTEM_ACTOR = Actor(actor_type=ActorType.SYSTEM, actor_id="system")


class EncryptedField(BaseModel):
    """One PII value sealed with the server field key (AES-256-GCM)"""
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    digest: str

    def to_record(self) -> Dict[str, str]:
        """Stored form: hex strings under the legacy key names"""
        return {
            "encryptedValue": self.ciphertext.hex(),
            "iv": self.iv.hex(),
            "authTag": self.auth_tag.hex(),
            "hash": self.digest,
        }

    @classmethod
    def from_record(cls, record: Dict[str, str]) -> "EncryptedField":
        try:
            return cls(
                ciphertext=bytes.fromhex(record["encryptedValue"]),
                iv=bytes.fromhex(record["iv"]),
                auth_tag=bytes.fromhex(record["authTag"]),
                digest=record.get("hash", ""),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DecryptionError("field_record", str(e))


class Contract(BaseModel):
    """Data-sharing terms; `contract_id`/`version` are set on approval"""
    allowed_fields: List[str]
    purpose: str
    retention_period_days: int
    legal_basis: str
    contract_text: str
    contract_id: Optional[str] = None
    version: Optional[int] = None

    def snapshot(self) -> "Contract":
        return Contract(**copy.deepcopy(self.model_dump()))


class Partner(BaseModel):
    partner_id: str
    partner_name: str
    public_key: Optional[str] = None
    api_token_hash: str
    callback_url: Optional[str] = None
    status: PartnerStatus = PartnerStatus.PENDING
    requested_contract: Optional[Contract] = None
    approved_contract: bool = False
    contract_data: Optional[Contract] = None
    contract_version: int = 0
    contract_approved_at: Optional[datetime] = None
    contract_approved_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def public_view(self) -> Dict:
        """Partner as returned over the API (no token hash)"""
        return self.model_dump(mode="json", exclude={"api_token_hash"})


class Customer(BaseModel):
    customer_id: str
    encrypted_fields: Dict[str, EncryptedField] = {}
    phone_hash: Optional[str] = None
    email_hash: Optional[str] = None
    pan_hash: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Consent(BaseModel):
    consent_id: str
    customer_id: str
    partner_id: str
    allowed_fields: List[str]
    purpose: str
    retention_period_days: int
    legal_basis: str
    contract_text: str
    contract_id: Optional[str] = None
    status: ConsentStatus = ConsentStatus.ACTIVE
    consent_duration_ms: int
    consent_method: str = "app"
    device_fingerprint: Optional[str] = None
    ip_address_hash: Optional[str] = None
    withdrawal_method: str = "app"
    created_at: datetime
    updated_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class DataRequest(BaseModel):
    request_id: str
    consent_id: str
    partner_id: str
    customer_id: str
    requested_fields: List[str]
    request_signature: Optional[str] = None
    status: DataRequestStatus = DataRequestStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
