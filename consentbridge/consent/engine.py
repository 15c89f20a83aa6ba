"""Consent & Contract Authorization Engine

Self-Explanatory: Decides whether a partner may see a customer's fields right now.
Why: DPDP-style consent must be explicit, field-scoped, time-bound and revocable,
     and only partners with an approved contract may ask for it.
How: Consents snapshot the partner's approved contract at grant time; every
     disclosure is checked against ownership, expiry (lazily), status, field
     scope and, when provided, the partner's request signature.

Consent lifecycle:
    pending|active -> revoked   (customer or admin)
    active -> expired           (detected on read once now > expiresAt)
    revoked, expired            (terminal)
"""

import json
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import uuid4

import structlog
from pydantic import BaseModel

from consentbridge.errors import (
    AuthorizationError,
    ConsentExpiredError,
    ConsentNotActiveError,
    ContractNotApprovedError,
    FieldsNotAllowedError,
    InvalidSignatureError,
    NotFoundError,
    ValidationError,
)
from consentbridge.governance.audit_chain import AuditChain
from consentbridge.models import (
    Actor,
    ActorType,
    Consent,
    ConsentStatus,
    Partner,
    PartnerStatus,
    utcnow,
)
from consentbridge.security.crypto_primitives import sha256_hex
from consentbridge.security.signature_service import SignatureService
from consentbridge.storage.repository import Repository
from consentbridge.utils.metrics import consent_checks_total, consent_events_total

logger = structlog.get_logger()


class DeviceInfo(BaseModel):
    """How the customer granted consent"""
    consent_method: str = "app"
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    ip_address_hash: Optional[str] = None
    withdrawal_method: str = "app"


def request_signature_payload(request_id: Optional[str], consent_id: str, requested_fields: List[str]) -> str:
    """Bytes a partner signs for a data request (compact JSON, fixed key order)"""
    return json.dumps(
        {"requestId": request_id, "consentId": consent_id, "requestedFields": requested_fields},
        separators=(",", ":"),
    )


class ConsentEngine:
    """Consent creation, revocation, disclosure authorization, contract approval"""

    def __init__(
        self,
        repository: Repository,
        audit_chain: AuditChain,
        signature_service: SignatureService,
        min_consent_duration_ms: int,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.audit_chain = audit_chain
        self.signature_service = signature_service
        self.min_consent_duration_ms = min_consent_duration_ms
        self.clock = clock

    def create_consent(
        self,
        customer_id: str,
        partner_id: str,
        duration_ms: Optional[int],
        actor: Actor,
        device_info: Optional[DeviceInfo] = None,
    ) -> Consent:
        """Grant a partner time-bound access to the fields in its approved contract

        Args:
            customer_id: Customer granting consent
            partner_id: Partner receiving consent
            duration_ms: Lifetime in milliseconds (>= configured minimum)
            actor: Caller (the customer themselves or an admin)
            device_info: Grant channel details

        Returns:
            The stored Consent (status active)

        Raises:
            ValidationError: duration missing or below the minimum
            NotFoundError: customer or partner unknown
            ContractNotApprovedError: partner has no approved contract
        """
        if not customer_id:
            raise ValidationError("Customer id is required")
        if not actor.is_admin and actor.customer_id != customer_id:
            raise AuthorizationError("Not authorized to grant consent for this customer")

        if duration_ms is None:
            raise ValidationError("Consent duration is required")
        if duration_ms < self.min_consent_duration_ms:
            raise ValidationError(
                f"Consent duration must be at least {self.min_consent_duration_ms} ms"
            )

        customer = self.repository.get_customer(customer_id)
        if not customer:
            raise NotFoundError("Customer not found")

        partner = self.repository.get_partner(partner_id)
        if not partner:
            raise NotFoundError("Partner not found")
        if not partner.approved_contract or not partner.contract_data:
            raise ContractNotApprovedError("Partner does not have an approved contract")

        device_info = device_info or DeviceInfo()
        ip_hash = device_info.ip_address_hash
        if not ip_hash and device_info.ip_address:
            ip_hash = sha256_hex(device_info.ip_address)

        contract = partner.contract_data.snapshot()
        now = self.clock()
        consent = Consent(
            consent_id=str(uuid4()),
            customer_id=customer_id,
            partner_id=partner_id,
            allowed_fields=list(contract.allowed_fields),
            purpose=contract.purpose,
            retention_period_days=contract.retention_period_days,
            legal_basis=contract.legal_basis,
            contract_text=contract.contract_text,
            contract_id=contract.contract_id,
            status=ConsentStatus.ACTIVE,
            consent_duration_ms=duration_ms,
            consent_method=device_info.consent_method,
            device_fingerprint=device_info.device_fingerprint,
            ip_address_hash=ip_hash,
            withdrawal_method=device_info.withdrawal_method,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(milliseconds=duration_ms),
        )
        self.repository.create_consent(consent)

        self.audit_chain.record(
            "consent_created",
            actor.actor_type,
            actor.actor_id,
            consent_id=consent.consent_id,
            customer_id=customer_id,
            partner_id=partner_id,
            action_details={
                "allowedFields": consent.allowed_fields,
                "purpose": consent.purpose,
                "contractId": consent.contract_id,
                "consentDurationMs": duration_ms,
                "expiresAt": consent.expires_at.isoformat(),
            },
            metadata={"consentMethod": consent.consent_method, "ipAddressHash": ip_hash},
        )
        consent_events_total.labels(action="created").inc()
        logger.info(
            "Consent created",
            consent_id=consent.consent_id,
            partner_id=partner_id,
            fields=len(consent.allowed_fields),
        )
        return consent

    def get_consent(self, consent_id: str, actor: Actor) -> Consent:
        """Read one consent (admin or owning customer), expiring it lazily"""
        consent = self.repository.get_consent(consent_id)
        if not consent:
            raise NotFoundError("Consent not found")
        if not actor.is_admin and actor.customer_id != consent.customer_id:
            raise AuthorizationError("Not authorized to view this consent")
        return self._refresh_expiry(consent)

    def list_consents(self, status: Optional[ConsentStatus] = None) -> List[Consent]:
        return [self._refresh_expiry(c) for c in self.repository.list_consents(status=status)]

    def list_customer_consents(self, customer_id: str, actor: Actor) -> List[Consent]:
        if not actor.is_admin and actor.customer_id != customer_id:
            raise AuthorizationError("Not authorized to view these consents")
        return [
            self._refresh_expiry(c)
            for c in self.repository.list_consents(customer_id=customer_id)
        ]

    def list_partner_consents(self, partner_id: str, active_only: bool = True) -> List[Consent]:
        consents = [
            self._refresh_expiry(c)
            for c in self.repository.list_consents(partner_id=partner_id)
        ]
        if active_only:
            consents = [c for c in consents if c.status == ConsentStatus.ACTIVE]
        return consents

    def _refresh_expiry(self, consent: Consent) -> Consent:
        """Persist active -> expired once the deadline has passed"""
        if consent.status != ConsentStatus.ACTIVE or not consent.is_expired(self.clock()):
            return consent

        now = self.clock()
        changed = self.repository.update_consent_status(
            consent.consent_id, ConsentStatus.EXPIRED, now, expected_status=ConsentStatus.ACTIVE
        )
        if changed:
            self.audit_chain.record(
                "consent_expired",
                ActorType.SYSTEM,
                "system",
                consent_id=consent.consent_id,
                customer_id=consent.customer_id,
                partner_id=consent.partner_id,
                action_details={"expiresAt": consent.expires_at.isoformat()},
            )
            consent_events_total.labels(action="expired").inc()
            logger.info("Consent expired", consent_id=consent.consent_id)
        return consent.model_copy(update={"status": ConsentStatus.EXPIRED, "updated_at": now})

    def revoke(self, consent_id: str, actor: Actor, reason: Optional[str] = None) -> Consent:
        """Withdraw consent

        Raises:
            NotFoundError: unknown consent
            AuthorizationError: caller is neither admin nor the owning customer
            ConsentNotActiveError: consent already revoked or expired
        """
        consent = self.repository.get_consent(consent_id)
        if not consent:
            raise NotFoundError("Consent not found")
        if not actor.is_admin and actor.customer_id != consent.customer_id:
            raise AuthorizationError("Not authorized to revoke this consent")

        consent = self._refresh_expiry(consent)
        if consent.status not in (ConsentStatus.ACTIVE, ConsentStatus.PENDING):
            raise ConsentNotActiveError(f"Consent is already {consent.status.value}")

        now = self.clock()
        if not self.repository.update_consent_status(
            consent_id, ConsentStatus.REVOKED, now, expected_status=consent.status
        ):
            raise ConsentNotActiveError("Consent status changed concurrently")

        self.audit_chain.record(
            "consent_revoked",
            actor.actor_type,
            actor.actor_id,
            consent_id=consent_id,
            customer_id=consent.customer_id,
            partner_id=consent.partner_id,
            action_details={"previousStatus": consent.status.value, "reason": reason},
        )
        consent_events_total.labels(action="revoked").inc()
        logger.info("Consent revoked", consent_id=consent_id, actor_type=actor.actor_type.value)
        return consent.model_copy(update={"status": ConsentStatus.REVOKED, "updated_at": now})

    def authorize_disclosure(
        self,
        consent_id: str,
        partner_id: str,
        requested_fields: List[str],
        signature: Optional[str] = None,
        request_id: Optional[str] = None,
        partner_public_key: Optional[str] = None,
    ) -> Consent:
        """Gate a disclosure request

        Checks, in order: ownership, expiry, status, field scope, signature.

        Returns:
            The authorizing Consent

        Raises:
            NotFoundError: consent unknown or not issued to this partner
            ConsentExpiredError: now > expiresAt, whatever the stored status
            ConsentNotActiveError: revoked/pending consent
            ValidationError: no fields requested
            FieldsNotAllowedError: fields outside the consent
            InvalidSignatureError: signature does not verify
        """
        consent = self.repository.get_consent(consent_id)
        if not consent or consent.partner_id != partner_id:
            consent_checks_total.labels(result="not_found").inc()
            raise NotFoundError("No active consent found")

        if consent.is_expired(self.clock()):
            self._refresh_expiry(consent)
            consent_checks_total.labels(result="expired").inc()
            raise ConsentExpiredError("Consent has expired")

        if consent.status != ConsentStatus.ACTIVE:
            consent_checks_total.labels(result="inactive").inc()
            raise ConsentNotActiveError(f"Consent is {consent.status.value}")

        if not requested_fields:
            raise ValidationError("At least one field must be requested")

        allowed = set(consent.allowed_fields)
        disallowed = []
        for field in requested_fields:
            if field not in allowed and field not in disallowed:
                disallowed.append(field)
        if disallowed:
            consent_checks_total.labels(result="fields_denied").inc()
            raise FieldsNotAllowedError(disallowed)

        if signature and partner_public_key:
            payload = request_signature_payload(request_id, consent_id, requested_fields)
            if not self.signature_service.verify(payload, signature, partner_public_key):
                consent_checks_total.labels(result="bad_signature").inc()
                raise InvalidSignatureError("Invalid request signature")

        consent_checks_total.labels(result="granted").inc()
        return consent

    def approve_contract(self, partner_id: str, approve: bool, actor: Actor) -> Partner:
        """Approve or reject a partner's requested contract

        Approval snapshots the requested terms under a new contract id and
        bumps the version; rejection clears the approved snapshot.

        Raises:
            NotFoundError: unknown partner
            ValidationError: nothing has been requested
        """
        partner = self.repository.get_partner(partner_id)
        if not partner:
            raise NotFoundError("Partner not found")
        if not partner.requested_contract:
            raise ValidationError("Partner has no requested contract")

        now = self.clock()
        if approve:
            version = partner.contract_version + 1
            contract = partner.requested_contract.snapshot().model_copy(
                update={"contract_id": str(uuid4()), "version": version}
            )
            partner = partner.model_copy(update={
                "approved_contract": True,
                "contract_data": contract,
                "contract_version": version,
                "contract_approved_at": now,
                "contract_approved_by": actor.actor_id,
                "status": PartnerStatus.ACTIVE if partner.status == PartnerStatus.PENDING else partner.status,
                "updated_at": now,
            })
            event_type = "partner_contract_approved"
            details = {"contractId": contract.contract_id, "version": version}
        else:
            partner = partner.model_copy(update={
                "approved_contract": False,
                "contract_data": None,
                "contract_approved_at": None,
                "contract_approved_by": None,
                "updated_at": now,
            })
            event_type = "partner_contract_rejected"
            details = {}

        self.repository.save_partner(partner)
        self.audit_chain.record(
            event_type,
            actor.actor_type,
            actor.actor_id,
            partner_id=partner_id,
            action_details={"partnerName": partner.partner_name, **details},
        )
        logger.info("Partner contract decided", partner_id=partner_id, approved=approve)
        return partner
