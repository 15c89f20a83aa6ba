"""Partner Notifications - Signed webhook pushes

Self-Explanatory: POSTs consent, contract and disclosure events to a partner's callback URL.
Why: Partners react to revocations and receive shared data without polling.
How: One attempt per event via httpx.AsyncClient, scheduled after the response
     is sent. Body signed with the bank key (X-Signature). Every outcome is
     audited; nothing is ever raised to the caller.
"""

import json
from typing import Dict, Optional

import httpx
import structlog

from consentbridge.governance.audit_chain import AuditChain
from consentbridge.models import ActorType, Partner, utcnow
from consentbridge.security.signature_service import SignatureService
from consentbridge.utils.metrics import partner_notifications_total

logger = structlog.get_logger()


class PartnerNotifier:
    """Fire-and-forget webhook delivery"""

    def __init__(
        self,
        signature_service: SignatureService,
        audit_chain: AuditChain,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.signature_service = signature_service
        self.audit_chain = audit_chain
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        logger.info("Partner notifier initialized", timeout=timeout_seconds)

    def sign_payload(self, payload: Dict) -> Dict:
        """Attach a `signature` over the canonical JSON of `payload`"""
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
        return {**payload, "signature": self.signature_service.sign(canonical)}

    async def notify(
        self,
        partner_id: str,
        callback_url: Optional[str],
        event_type: str,
        data: Dict,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> Dict:
        """Deliver one event

        Args:
            partner_id: Recipient partner
            callback_url: Partner webhook URL (skipped when empty)
            event_type: e.g. "consent_revoked", "customer_data_shared"
            data: Event data
            extra_headers: Additional HTTP headers

        Returns:
            {"success": bool, ...}
        """
        if not callback_url:
            logger.debug("No callback URL, skipping notification", partner_id=partner_id)
            return {"success": False, "skipped": True}

        body = json.dumps({
            "eventType": event_type,
            "timestamp": utcnow().isoformat(),
            "partnerId": partner_id,
            "data": data,
        }, default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Event-Type": event_type,
            "X-Partner-Id": partner_id,
            "X-Signature": self.signature_service.sign(body),
            **(extra_headers or {}),
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(callback_url, content=body, headers=headers)
                response.raise_for_status()

            logger.info(
                "Partner notified",
                partner_id=partner_id,
                event_type=event_type,
                status=response.status_code,
            )
            partner_notifications_total.labels(event_type=event_type, result="sent").inc()
            self.audit_chain.record(
                "partner_notification_sent",
                ActorType.SYSTEM,
                "notification-service",
                partner_id=partner_id,
                action_details={"eventType": event_type, "statusCode": response.status_code},
            )
            return {"success": True, "statusCode": response.status_code}

        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(
                "Partner notification failed",
                partner_id=partner_id,
                event_type=event_type,
                error=str(e),
            )
            partner_notifications_total.labels(event_type=event_type, result="failed").inc()
            self.audit_chain.record(
                "partner_notification_failed",
                ActorType.SYSTEM,
                "notification-service",
                partner_id=partner_id,
                action_details={"eventType": event_type, "error": str(e)},
            )
            return {"success": False, "error": str(e)}

    async def notify_partner(self, partner: Partner, event_type: str, data: Dict, **kwargs) -> Dict:
        return await self.notify(partner.partner_id, partner.callback_url, event_type, data, **kwargs)

    async def notify_contract_status(
        self, partner: Partner, event_type: str, bank_public_key: Optional[str] = None
    ) -> Dict:
        """Signed contract lifecycle notification"""
        payload: Dict = {
            "partnerId": partner.partner_id,
            "partnerName": partner.partner_name,
            "approvedContract": partner.approved_contract,
        }
        if partner.contract_data:
            payload["contractDetails"] = partner.contract_data.model_dump()
        if bank_public_key:
            payload["bankPublicKey"] = bank_public_key
        return await self.notify_partner(partner, event_type, self.sign_payload(payload))
