"""Partner Registry - Onboarding, API tokens, keys and contract requests

Flow:
1. Admin registers partner with a complete requested contract
2. One-time API token returned; only its SHA-256 is stored
3. Partner uploads an RSA public key for disclosure envelopes
4. Admin approves/rejects the contract (ConsentEngine.approve_contract)
5. Changing the requested contract drops any prior approval
"""

import hmac
import secrets
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import httpx
import structlog
from pydantic import BaseModel, Field

from consentbridge.errors import AuthenticationError, KeyMaterialError, NotFoundError, ValidationError
from consentbridge.governance.audit_chain import AuditChain
from consentbridge.models import Actor, Contract, Partner, PartnerStatus, utcnow
from consentbridge.security import crypto_primitives as primitives
from consentbridge.storage.repository import Repository

logger = structlog.get_logger()


class ContractRequest(BaseModel):
    """Contract terms as submitted; every field is mandatory"""
    allowed_fields: List[str] = Field(default_factory=list)
    purpose: str = ""
    retention_period_days: Optional[int] = None
    legal_basis: str = ""
    contract_text: str = ""

    def missing_fields(self) -> List[str]:
        missing = []
        if not self.allowed_fields:
            missing.append("allowedFields")
        if not self.purpose:
            missing.append("purpose")
        if not self.retention_period_days or self.retention_period_days <= 0:
            missing.append("retentionPeriod")
        if not self.legal_basis:
            missing.append("legalBasis")
        if not self.contract_text:
            missing.append("contractText")
        return missing

    def to_contract(self) -> Contract:
        missing = self.missing_fields()
        if missing:
            raise ValidationError(f"Incomplete contract details: {', '.join(missing)}")
        return Contract(
            allowed_fields=list(self.allowed_fields),
            purpose=self.purpose,
            retention_period_days=self.retention_period_days,
            legal_basis=self.legal_basis,
            contract_text=self.contract_text,
        )


def generate_partner_id() -> str:
    return f"PID-{uuid4().hex[:8]}"


def hash_api_token(token: str) -> str:
    return primitives.sha256_hex(token)


def _validate_public_key(public_key: str):
    try:
        primitives.load_public_key(public_key)
    except KeyMaterialError as e:
        raise ValidationError(f"Invalid partner public key: {e.message}")


def _validate_callback_url(callback_url: str):
    try:
        url = httpx.URL(callback_url)
    except httpx.InvalidURL as e:
        raise ValidationError(f"Invalid callback URL: {e}")
    if url.scheme not in ("http", "https") or not url.host:
        raise ValidationError("Callback URL must be an absolute http(s) URL")


class PartnerRegistry:
    """Partner lifecycle outside of contract approval"""

    def __init__(self, repository: Repository, audit_chain: AuditChain, clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.audit_chain = audit_chain
        self.clock = clock

    def register_partner(
        self,
        partner_name: str,
        contract: ContractRequest,
        actor: Actor,
        public_key: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> Tuple[Partner, str]:
        """Create a pending partner

        Returns:
            (partner, plaintext API token shown exactly once)

        Raises:
            ValidationError: missing name, incomplete contract, bad key or callback URL
        """
        if not partner_name:
            raise ValidationError("Partner name is required")
        requested = contract.to_contract()
        if public_key:
            _validate_public_key(public_key)
        if callback_url:
            _validate_callback_url(callback_url)

        api_token = secrets.token_hex(32)
        now = self.clock()
        partner = Partner(
            partner_id=generate_partner_id(),
            partner_name=partner_name,
            public_key=public_key,
            api_token_hash=hash_api_token(api_token),
            callback_url=callback_url,
            status=PartnerStatus.PENDING,
            requested_contract=requested,
            created_at=now,
            updated_at=now,
        )
        self.repository.create_partner(partner)

        self.audit_chain.record(
            "partner_registered",
            actor.actor_type,
            actor.actor_id,
            partner_id=partner.partner_id,
            action_details={
                "partnerName": partner_name,
                "requestedFields": requested.allowed_fields,
                "purpose": requested.purpose,
            },
        )
        logger.info("Partner registered", partner_id=partner.partner_id)
        return partner, api_token

    def get_partner(self, partner_id: str) -> Partner:
        partner = self.repository.get_partner(partner_id)
        if not partner:
            raise NotFoundError("Partner not found")
        return partner

    def list_partners(self) -> List[Partner]:
        return self.repository.list_partners()

    def list_pending_contracts(self) -> List[Partner]:
        return [p for p in self.repository.list_partners(approved=False) if p.requested_contract]

    def list_approved_partners(self) -> List[Partner]:
        return self.repository.list_partners(approved=True, status=PartnerStatus.ACTIVE.value)

    def get_contract(self, partner_id: str) -> Dict:
        partner = self.get_partner(partner_id)
        return {
            "partnerId": partner.partner_id,
            "partnerName": partner.partner_name,
            "requestedContract": (
                partner.requested_contract.model_dump() if partner.requested_contract else None
            ),
            "approvedContract": partner.approved_contract,
            "contractData": partner.contract_data.model_dump() if partner.contract_data else None,
            "contractApprovedAt": (
                partner.contract_approved_at.isoformat() if partner.contract_approved_at else None
            ),
        }

    def update_partner(
        self,
        partner_id: str,
        actor: Actor,
        partner_name: Optional[str] = None,
        status: Optional[PartnerStatus] = None,
        callback_url: Optional[str] = None,
        contract: Optional[ContractRequest] = None,
    ) -> Tuple[Partner, bool]:
        """Update partner details

        Returns:
            (partner, contract_changed); a new requested contract resets approval
        """
        partner = self.get_partner(partner_id)
        updates: Dict = {"updated_at": self.clock()}
        if partner_name:
            updates["partner_name"] = partner_name
        if status:
            updates["status"] = status
        if callback_url is not None:
            if callback_url:
                _validate_callback_url(callback_url)
            updates["callback_url"] = callback_url or None

        contract_changed = False
        if contract is not None:
            requested = contract.to_contract()
            if requested != partner.requested_contract:
                contract_changed = True
                updates.update({
                    "requested_contract": requested,
                    "approved_contract": False,
                    "contract_data": None,
                    "contract_approved_at": None,
                    "contract_approved_by": None,
                })

        partner = partner.model_copy(update=updates)
        self.repository.save_partner(partner)

        self.audit_chain.record(
            "partner_updated",
            actor.actor_type,
            actor.actor_id,
            partner_id=partner_id,
            action_details={
                "updatedFields": sorted(k for k in updates if k != "updated_at"),
                "contractChanged": contract_changed,
            },
        )
        logger.info("Partner updated", partner_id=partner_id, contract_changed=contract_changed)
        return partner, contract_changed

    def update_public_key(self, partner_id: str, public_key: str, actor: Actor) -> Partner:
        """Replace the partner's RSA public key

        Raises:
            ValidationError: key does not parse
        """
        partner = self.get_partner(partner_id)
        _validate_public_key(public_key)
        partner = partner.model_copy(update={"public_key": public_key, "updated_at": self.clock()})
        self.repository.save_partner(partner)

        self.audit_chain.record(
            "partner_key_updated",
            actor.actor_type,
            actor.actor_id,
            partner_id=partner_id,
            action_details={"publicKeyHash": primitives.sha256_hex(public_key)},
        )
        logger.info("Partner public key updated", partner_id=partner_id)
        return partner

    def authenticate(self, partner_id: Optional[str], api_token: Optional[str]) -> Partner:
        """Resolve a partner from X-Partner-Id + bearer API token

        Raises:
            AuthenticationError: missing/unknown partner or token mismatch
        """
        if not partner_id or not api_token:
            raise AuthenticationError("Partner credentials missing")
        partner = self.repository.get_partner(partner_id)
        if not partner or not hmac.compare_digest(partner.api_token_hash, hash_api_token(api_token)):
            logger.warning("Partner authentication failed", partner_id=partner_id)
            raise AuthenticationError("Invalid partner credentials")
        return partner
