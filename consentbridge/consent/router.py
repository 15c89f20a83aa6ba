"""Consent Router - Grant, read and withdraw consent

Endpoints:
- POST /consents: Grant consent (customer for self, or admin)
- GET /consents: All consents (admin)
- GET /consents/customer/{customer_id}: Consents of one customer
- GET /consents/partner/{partner_id}: Active consents held by a partner (admin)
- GET /consents/{consent_id}: One consent
- POST /consents/{consent_id}/revoke: Withdraw consent
"""

from typing import Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import BaseModel

from consentbridge.consent.engine import DeviceInfo
from consentbridge.container import ServiceContainer, get_container
from consentbridge.governance.auth import check_role
from consentbridge.models import Actor, Consent, ConsentStatus

router = APIRouter()
logger = structlog.get_logger()


class CreateConsentRequest(BaseModel):
    customer_id: Optional[str] = None
    partner_id: str
    consent_duration_ms: Optional[int] = None
    consent_method: str = "app"
    device_fingerprint: Optional[str] = None
    ip_address_hash: Optional[str] = None
    withdrawal_method: str = "app"


class RevokeConsentRequest(BaseModel):
    reason: Optional[str] = None


def consent_view(consent: Consent) -> dict:
    return consent.model_dump(mode="json")


def _schedule_partner_notification(
    background_tasks: BackgroundTasks,
    container: ServiceContainer,
    consent: Consent,
    event_type: str,
):
    partner = container.repository.get_partner(consent.partner_id)
    if not partner or not partner.callback_url:
        return
    background_tasks.add_task(
        container.notifier.notify_partner,
        partner,
        event_type,
        {
            "consentId": consent.consent_id,
            "customerId": consent.customer_id,
            "status": consent.status.value,
            "allowedFields": consent.allowed_fields,
            "expiresAt": consent.expires_at.isoformat(),
        },
    )


@router.post("", status_code=201)
async def create_consent(
    body: CreateConsentRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    user: Actor = Depends(check_role("consent_create")),
    container: ServiceContainer = Depends(get_container),
):
    """Grant a partner access to the fields in its approved contract"""
    customer_id = body.customer_id or user.customer_id
    consent = container.consent_engine.create_consent(
        customer_id=customer_id,
        partner_id=body.partner_id,
        duration_ms=body.consent_duration_ms,
        actor=user,
        device_info=DeviceInfo(
            consent_method=body.consent_method,
            device_fingerprint=body.device_fingerprint,
            ip_address=request.client.host if request.client else None,
            ip_address_hash=body.ip_address_hash,
            withdrawal_method=body.withdrawal_method,
        ),
    )
    _schedule_partner_notification(background_tasks, container, consent, "consent_created")
    return {"status": "success", "data": consent_view(consent)}


@router.get("")
async def list_consents(
    status: Optional[ConsentStatus] = None,
    user: Actor = Depends(check_role("consent_admin")),
    container: ServiceContainer = Depends(get_container),
):
    consents = container.consent_engine.list_consents(status=status)
    return {"status": "success", "count": len(consents), "data": [consent_view(c) for c in consents]}


@router.get("/customer/{customer_id}")
async def list_customer_consents(
    customer_id: str,
    user: Actor = Depends(check_role("consent_read")),
    container: ServiceContainer = Depends(get_container),
):
    consents = container.consent_engine.list_customer_consents(customer_id, user)
    return {"status": "success", "count": len(consents), "data": [consent_view(c) for c in consents]}


@router.get("/partner/{partner_id}")
async def list_partner_consents(
    partner_id: str,
    user: Actor = Depends(check_role("consent_admin")),
    container: ServiceContainer = Depends(get_container),
):
    consents = container.consent_engine.list_partner_consents(partner_id)
    return {"status": "success", "count": len(consents), "data": [consent_view(c) for c in consents]}


@router.get("/{consent_id}")
async def get_consent(
    consent_id: str,
    user: Actor = Depends(check_role("consent_read")),
    container: ServiceContainer = Depends(get_container),
):
    consent = container.consent_engine.get_consent(consent_id, user)
    return {"status": "success", "data": consent_view(consent)}


@router.post("/{consent_id}/revoke")
async def revoke_consent(
    consent_id: str,
    background_tasks: BackgroundTasks,
    body: Optional[RevokeConsentRequest] = None,
    user: Actor = Depends(check_role("consent_revoke")),
    container: ServiceContainer = Depends(get_container),
):
    """Withdraw consent; the partner is notified after the response"""
    consent = container.consent_engine.revoke(consent_id, user, reason=body.reason if body else None)
    _schedule_partner_notification(background_tasks, container, consent, "consent_revoked")
    return {"status": "success", "data": consent_view(consent)}
