"""Partner Router - Onboarding, contracts and data requests

Endpoints (admin JWT):
- POST /partners/register: Register partner (returns one-time API token)
- GET /partners: List partners
- GET /partners/pending-contracts: Contracts awaiting decision
- GET /partners/approved: Active partners with approved contracts
- GET /partners/{partner_id}: Partner details
- PUT /partners/{partner_id}: Update partner / requested contract
- POST /partners/{partner_id}/keys: Replace partner RSA public key
- GET /partners/{partner_id}/contract: Requested + approved contract
- POST /partners/{partner_id}/contract/approve: Approve or reject

Endpoints (partner API token + X-Partner-Id):
- POST /partners/data-request: Request consented customer fields
- GET /partners/consents: Active consents held by the caller
"""

from typing import List, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import BaseModel

from consentbridge.consent.router import consent_view
from consentbridge.container import ServiceContainer, get_container
from consentbridge.governance.auth import check_role, client_ip_hash, get_current_partner
from consentbridge.models import Actor, Partner, PartnerStatus
from consentbridge.partners.registry import ContractRequest
from consentbridge.security.hybrid_encryption import EncryptionType

router = APIRouter()
logger = structlog.get_logger()


class RegisterPartnerRequest(BaseModel):
    partner_name: str
    public_key: Optional[str] = None
    callback_url: Optional[str] = None
    contract: ContractRequest


class UpdatePartnerRequest(BaseModel):
    partner_name: Optional[str] = None
    status: Optional[PartnerStatus] = None
    callback_url: Optional[str] = None
    contract: Optional[ContractRequest] = None


class PublicKeyRequest(BaseModel):
    public_key: str


class ContractDecisionRequest(BaseModel):
    approve: bool


class DataRequestBody(BaseModel):
    consent_id: str
    requested_fields: List[str]
    request_id: Optional[str] = None
    signature: Optional[str] = None


@router.post("/register", status_code=201)
async def register_partner(
    body: RegisterPartnerRequest,
    background_tasks: BackgroundTasks,
    user: Actor = Depends(check_role("partners")),
    container: ServiceContainer = Depends(get_container),
):
    """Register a partner; the API token is only ever shown here"""
    partner, api_token = container.partner_registry.register_partner(
        body.partner_name,
        body.contract,
        user,
        public_key=body.public_key,
        callback_url=body.callback_url,
    )
    if partner.callback_url:
        background_tasks.add_task(
            container.notifier.notify_contract_status, partner, "partner_registered"
        )
    return {"status": "success", "data": {**partner.public_view(), "api_token": api_token}}


@router.get("")
async def list_partners(
    user: Actor = Depends(check_role("partners")),
    container: ServiceContainer = Depends(get_container),
):
    partners = container.partner_registry.list_partners()
    return {"status": "success", "count": len(partners), "data": [p.public_view() for p in partners]}


@router.get("/pending-contracts")
async def list_pending_contracts(
    user: Actor = Depends(check_role("partners")),
    container: ServiceContainer = Depends(get_container),
):
    partners = container.partner_registry.list_pending_contracts()
    return {"status": "success", "count": len(partners), "data": [p.public_view() for p in partners]}


@router.get("/approved")
async def list_approved_partners(
    user: Actor = Depends(check_role("partners")),
    container: ServiceContainer = Depends(get_container),
):
    partners = container.partner_registry.list_approved_partners()
    return {"status": "success", "count": len(partners), "data": [p.public_view() for p in partners]}


@router.post("/data-request")
async def data_request(
    body: DataRequestBody,
    request: Request,
    background_tasks: BackgroundTasks,
    partner: Partner = Depends(get_current_partner),
    container: ServiceContainer = Depends(get_container),
):
    """Disclose consented fields, sealed for the calling partner"""
    result = container.disclosure_service.process_request(
        partner,
        body.consent_id,
        body.requested_fields,
        request_id=body.request_id,
        signature=body.signature,
        client_ip_hash=client_ip_hash(request),
    )

    if partner.callback_url:
        extra_headers = {}
        if result.payload.encryption_type == EncryptionType.SECURE.value:
            extra_headers["X-Encryption-Algorithm"] = "SECURE-TEMPORARY-KEY"
        background_tasks.add_task(
            container.notifier.notify_partner,
            partner,
            "customer_data_shared",
            result.webhook_data(),
            extra_headers=extra_headers,
        )

    return result.to_response()


@router.get("/consents")
async def partner_consents(
    partner: Partner = Depends(get_current_partner),
    container: ServiceContainer = Depends(get_container),
):
    consents = container.consent_engine.list_partner_consents(partner.partner_id)
    return {"status": "success", "count": len(consents), "data": [consent_view(c) for c in consents]}


@router.get("/{partner_id}")
async def get_partner(
    partner_id: str,
    user: Actor = Depends(check_role("partners")),
    container: ServiceContainer = Depends(get_container),
):
    return {"status": "success", "data": container.partner_registry.get_partner(partner_id).public_view()}


@router.put("/{partner_id}")
async def update_partner(
    partner_id: str,
    body: UpdatePartnerRequest,
    background_tasks: BackgroundTasks,
    user: Actor = Depends(check_role("partners")),
    container: ServiceContainer = Depends(get_container),
):
    partner, contract_changed = container.partner_registry.update_partner(
        partner_id,
        user,
        partner_name=body.partner_name,
        status=body.status,
        callback_url=body.callback_url,
        contract=body.contract,
    )
    if contract_changed and partner.callback_url:
        background_tasks.add_task(
            container.notifier.notify_contract_status, partner, "contract_update_submitted"
        )
    return {"status": "success", "data": partner.public_view()}


@router.post("/{partner_id}/keys")
async def update_public_key(
    partner_id: str,
    body: PublicKeyRequest,
    user: Actor = Depends(check_role("partners")),
    container: ServiceContainer = Depends(get_container),
):
    partner = container.partner_registry.update_public_key(partner_id, body.public_key, user)
    return {"status": "success", "data": partner.public_view()}


@router.get("/{partner_id}/contract")
async def get_contract(
    partner_id: str,
    user: Actor = Depends(check_role("partners")),
    container: ServiceContainer = Depends(get_container),
):
    return {"status": "success", "data": container.partner_registry.get_contract(partner_id)}


@router.post("/{partner_id}/contract/approve")
async def decide_contract(
    partner_id: str,
    body: ContractDecisionRequest,
    background_tasks: BackgroundTasks,
    user: Actor = Depends(check_role("partners")),
    container: ServiceContainer = Depends(get_container),
):
    """Approve or reject the requested contract"""
    partner = container.consent_engine.approve_contract(partner_id, body.approve, user)
    if partner.callback_url:
        if body.approve:
            background_tasks.add_task(
                container.notifier.notify_contract_status,
                partner,
                "contract_approved",
                container.signature_service.public_key_pem,
            )
        else:
            background_tasks.add_task(
                container.notifier.notify_contract_status, partner, "contract_rejected"
            )
    return {"status": "success", "data": partner.public_view()}
