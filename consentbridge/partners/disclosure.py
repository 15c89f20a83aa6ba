"""Disclosure Pipeline - From partner request to partner-only envelope

Self-Explanatory: Authorize -> decrypt requested fields -> re-encrypt for partner -> audit.
Why: Field ciphertext is under the bank key; a partner must receive exactly the
     consented fields, sealed under its own key, with a record of the disclosure.
How:
1. Partner contract approved + partner active
2. ConsentEngine.authorize_disclosure (ownership, expiry, status, scope, signature)
3. DataRequest stored (approved), decrypt fields with the server key
4. EncryptedDisclosure when the partner has a public key:
   secure-temporary-key, falling back to standard hybrid, else hard failure
   PlaintextDisclosure only when the partner has no key (logged + audited)
5. DataRequest fulfilled, disclosure audited
"""

import json
from typing import Dict, List, Literal, Optional, Union
from uuid import uuid4

import structlog
from pydantic import BaseModel

from consentbridge.consent.engine import ConsentEngine
from consentbridge.errors import (
    AuthorizationError,
    ConsentBridgeError,
    ContractNotApprovedError,
    DecryptionError,
    DisclosureEncryptionError,
    KeyMaterialError,
    NotFoundError,
    ValidationError,
)
from consentbridge.governance.audit_chain import AuditChain
from consentbridge.models import (
    PII_FIELDS,
    ActorType,
    DataRequest,
    DataRequestStatus,
    Partner,
    PartnerStatus,
)
from consentbridge.security.field_encryption import FieldEncryptionEngine
from consentbridge.security.hybrid_encryption import (
    Envelope,
    HybridEncryptionEngine,
)
from consentbridge.storage.repository import Repository
from consentbridge.utils.metrics import disclosure_denials_total, disclosures_total

logger = structlog.get_logger()


class EncryptedDisclosure(BaseModel):
    encrypted: Literal[True] = True
    envelope: Envelope

    @property
    def encryption_type(self) -> str:
        return self.envelope.encryption_type.value

    def response_data(self) -> Dict:
        return self.envelope.to_wire()


class PlaintextDisclosure(BaseModel):
    encrypted: Literal[False] = False
    fields: Dict[str, str]

    @property
    def encryption_type(self) -> str:
        return "none"

    def response_data(self) -> Dict:
        return dict(self.fields)


DisclosurePayload = Union[EncryptedDisclosure, PlaintextDisclosure]


class DisclosureResult(BaseModel):
    request_id: str
    consent_id: str
    customer_id: str
    requested_fields: List[str]
    payload: DisclosurePayload

    def to_response(self) -> Dict:
        return {
            "status": "success",
            "encrypted": self.payload.encrypted,
            "data": self.payload.response_data(),
        }

    def webhook_data(self) -> Dict:
        """`data` object of the customer_data_shared notification"""
        data = {
            "encrypted": self.payload.encrypted,
            "encryptionType": self.payload.encryption_type,
            "requestId": self.request_id,
            "consentId": self.consent_id,
            "requestedFields": self.requested_fields,
        }
        if isinstance(self.payload, EncryptedDisclosure):
            data.update(self.payload.response_data())
        else:
            data["customerData"] = self.payload.response_data()
        return data


class DisclosureService:
    """Runs a partner data request end to end"""

    def __init__(
        self,
        repository: Repository,
        consent_engine: ConsentEngine,
        field_engine: FieldEncryptionEngine,
        hybrid_engine: HybridEncryptionEngine,
        audit_chain: AuditChain,
    ):
        self.repository = repository
        self.consent_engine = consent_engine
        self.field_engine = field_engine
        self.hybrid_engine = hybrid_engine
        self.audit_chain = audit_chain

    def process_request(
        self,
        partner: Partner,
        consent_id: str,
        requested_fields: List[str],
        request_id: Optional[str] = None,
        signature: Optional[str] = None,
        client_ip_hash: Optional[str] = None,
    ) -> DisclosureResult:
        """Authorize and fulfil one data request

        Raises:
            ContractNotApprovedError, AuthorizationError and every
            ConsentEngine.authorize_disclosure error; DecryptionError or
            DisclosureEncryptionError when the payload cannot be built
        """
        try:
            if not partner.approved_contract:
                raise ContractNotApprovedError("Partner does not have an approved contract")
            if partner.status != PartnerStatus.ACTIVE:
                raise AuthorizationError("Partner is not active")
            if request_id and self.repository.get_data_request(request_id):
                raise ValidationError("Duplicate requestId")

            consent = self.consent_engine.authorize_disclosure(
                consent_id,
                partner.partner_id,
                requested_fields,
                signature=signature,
                request_id=request_id,
                partner_public_key=partner.public_key,
            )
            customer = self.repository.get_customer(consent.customer_id)
            if not customer or not customer.is_active:
                raise NotFoundError("Customer not found")

        except ConsentBridgeError as e:
            disclosure_denials_total.labels(reason=type(e).__name__).inc()
            self.audit_chain.record(
                "data_request_denied",
                ActorType.PARTNER,
                partner.partner_id,
                consent_id=consent_id,
                partner_id=partner.partner_id,
                action_details={
                    "requestedFields": requested_fields,
                    "reason": type(e).__name__,
                },
                metadata={"ipAddressHash": client_ip_hash},
            )
            logger.warning(
                "Data request denied",
                partner_id=partner.partner_id,
                consent_id=consent_id,
                reason=type(e).__name__,
            )
            raise

        data_request = DataRequest(
            request_id=request_id or str(uuid4()),
            consent_id=consent.consent_id,
            partner_id=partner.partner_id,
            customer_id=consent.customer_id,
            requested_fields=list(requested_fields),
            request_signature=signature,
            status=DataRequestStatus.APPROVED,
            expires_at=consent.expires_at,
        )
        self.repository.create_data_request(data_request)
        self.audit_chain.record(
            "data_request",
            ActorType.PARTNER,
            partner.partner_id,
            consent_id=consent.consent_id,
            customer_id=consent.customer_id,
            partner_id=partner.partner_id,
            action_details={
                "requestId": data_request.request_id,
                "requestedFields": data_request.requested_fields,
                "signed": bool(signature),
            },
            metadata={"ipAddressHash": client_ip_hash},
        )

        try:
            fields = self.field_engine.decrypt_fields(
                customer.encrypted_fields,
                [f for f in requested_fields if f in PII_FIELDS],
            )
            payload = self._build_payload(partner, fields)
        except (DecryptionError, DisclosureEncryptionError) as e:
            self._fail(data_request, e)
            raise

        self.repository.update_data_request_status(
            data_request.request_id, DataRequestStatus.FULFILLED, processed_at=self.consent_engine.clock()
        )
        encryption_type = payload.encryption_type
        self.audit_chain.record(
            "data_disclosed",
            ActorType.PARTNER,
            partner.partner_id,
            consent_id=consent.consent_id,
            customer_id=consent.customer_id,
            partner_id=partner.partner_id,
            action_details={
                "requestId": data_request.request_id,
                "disclosedFields": sorted(fields),
                "encrypted": payload.encrypted,
                "encryptionType": encryption_type,
            },
        )
        disclosures_total.labels(encryption_type=encryption_type).inc()
        logger.info(
            "Data disclosed",
            request_id=data_request.request_id,
            partner_id=partner.partner_id,
            fields=len(fields),
            encryption_type=encryption_type,
        )

        return DisclosureResult(
            request_id=data_request.request_id,
            consent_id=consent.consent_id,
            customer_id=consent.customer_id,
            requested_fields=data_request.requested_fields,
            payload=payload,
        )

    def _build_payload(self, partner: Partner, fields: Dict[str, str]) -> DisclosurePayload:
        if not partner.public_key:
            logger.warning(
                "Partner has no public key, disclosing without envelope",
                partner_id=partner.partner_id,
            )
            return PlaintextDisclosure(fields=fields)

        try:
            envelope = self.hybrid_engine.encrypt_fields_secure(fields, partner.public_key)
            return EncryptedDisclosure(envelope=envelope)
        except (KeyMaterialError, ValueError) as e:
            logger.warning(
                "Secure envelope failed, falling back to standard hybrid",
                partner_id=partner.partner_id,
                error=str(e),
            )

        try:
            envelope = self.hybrid_engine.encrypt_with_public_key(json.dumps(fields), partner.public_key)
            return EncryptedDisclosure(envelope=envelope)
        except (KeyMaterialError, ValueError) as e:
            logger.error(
                "Standard hybrid envelope failed",
                partner_id=partner.partner_id,
                error=str(e),
            )
            raise DisclosureEncryptionError()

    def _fail(self, data_request: DataRequest, error: ConsentBridgeError):
        self.repository.update_data_request_status(
            data_request.request_id, DataRequestStatus.FAILED, processed_at=self.consent_engine.clock()
        )
        logger.error(
            "Data request failed",
            request_id=data_request.request_id,
            error=str(error),
            stage=getattr(error, "stage", None),
        )
        disclosure_denials_total.labels(reason=type(error).__name__).inc()
        self.audit_chain.record(
            "data_request_failed",
            ActorType.SYSTEM,
            "disclosure-service",
            consent_id=data_request.consent_id,
            customer_id=data_request.customer_id,
            partner_id=data_request.partner_id,
            action_details={"requestId": data_request.request_id, "reason": type(error).__name__},
        )
