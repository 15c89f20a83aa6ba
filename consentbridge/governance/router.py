"""Governance Router - Audit trail queries and chain verification

Endpoints:
- GET /audit/logs: Filtered, paginated audit entries + integrity check (admin)
- GET /audit/verify?start=&end=: Verify chain between two log ids (admin)
- GET /audit/consents/{consent_id}: Trail of one consent
- GET /audit/customers/{customer_id}: Trail of one customer
- GET /audit/partners/{partner_id}: Trail of one partner (admin)
- GET /audit/public-key: Bank signing public key (for verifying signatures)
"""

from datetime import datetime
from typing import Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Query

from consentbridge.container import ServiceContainer, get_container
from consentbridge.errors import AuthorizationError
from consentbridge.governance.auth import check_role
from consentbridge.models import Actor, ActorType

router = APIRouter()
logger = structlog.get_logger()


def _audit_page(container: ServiceContainer, filters: Dict, limit: int, page: int) -> Dict:
    chain = container.audit_chain
    entries, pagination = chain.query(filters, limit=limit, page=page)
    return {
        "status": "success",
        "data": [e.to_wire() for e in entries],
        "pagination": pagination,
        "integrityCheck": chain.integrity_for(entries, container.settings.audit_integrity_window),
    }


@router.get("/logs")
async def get_audit_logs(
    event_type: Optional[str] = None,
    actor_type: Optional[ActorType] = None,
    actor_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    page: int = Query(1, ge=1),
    user: Actor = Depends(check_role("audit")),
    container: ServiceContainer = Depends(get_container),
):
    """Audit entries, newest first"""
    filters = {
        "event_type": event_type,
        "actor_type": actor_type,
        "actor_id": actor_id,
        "start_date": start_date,
        "end_date": end_date,
    }
    logger.info("Audit logs queried", user_id=user.actor_id, page=page)
    return _audit_page(container, filters, limit, page)


@router.get("/verify")
async def verify_chain(
    start: str,
    end: str,
    user: Actor = Depends(check_role("audit")),
    container: ServiceContainer = Depends(get_container),
):
    result = container.audit_chain.verify_chain_integrity(start, end)
    return {"status": "success", "data": result}


@router.get("/consents/{consent_id}")
async def get_consent_audit(
    consent_id: str,
    limit: int = Query(100, ge=1, le=1000),
    page: int = Query(1, ge=1),
    user: Actor = Depends(check_role("audit_own")),
    container: ServiceContainer = Depends(get_container),
):
    # Raises for customers who do not own the consent
    container.consent_engine.get_consent(consent_id, user)
    return _audit_page(container, {"consent_id": consent_id}, limit, page)


@router.get("/customers/{customer_id}")
async def get_customer_audit(
    customer_id: str,
    limit: int = Query(100, ge=1, le=1000),
    page: int = Query(1, ge=1),
    user: Actor = Depends(check_role("audit_own")),
    container: ServiceContainer = Depends(get_container),
):
    if not user.is_admin and user.customer_id != customer_id:
        raise AuthorizationError("Not authorized to view this audit trail")
    return _audit_page(container, {"customer_id": customer_id}, limit, page)


@router.get("/partners/{partner_id}")
async def get_partner_audit(
    partner_id: str,
    limit: int = Query(100, ge=1, le=1000),
    page: int = Query(1, ge=1),
    user: Actor = Depends(check_role("audit")),
    container: ServiceContainer = Depends(get_container),
):
    return _audit_page(container, {"partner_id": partner_id}, limit, page)


@router.get("/public-key")
async def get_public_key(container: ServiceContainer = Depends(get_container)):
    return {"status": "success", "data": {"publicKey": container.signature_service.public_key_pem}}
