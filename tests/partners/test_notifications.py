"""Unit Tests for Partner Webhooks

Self-Explanatory: Signed delivery, failure handling, audit of every attempt.
How: httpx.MockTransport stands in for the partner endpoint.
Run: pytest tests/partners/ -v
"""
import json

import httpx
import pytest

from consentbridge.partners.notifications import PartnerNotifier


def _entries(container, event_type):
    entries, _ = container.audit_chain.query({"event_type": event_type})
    return entries


@pytest.mark.asyncio
async def test_notify_signed_delivery(container):
    received = []

    def handler(request):
        received.append(request)
        return httpx.Response(200)

    notifier = PartnerNotifier(
        container.signature_service, container.audit_chain, transport=httpx.MockTransport(handler)
    )
    result = await notifier.notify(
        "PID-1", "https://partner.example.com/hook", "consent_revoked", {"consentId": "c-1"}
    )

    assert result["success"] is True
    request = received[0]
    assert request.headers["X-Event-Type"] == "consent_revoked"
    assert request.headers["X-Partner-Id"] == "PID-1"
    assert container.signature_service.verify(request.content, request.headers["X-Signature"])

    body = json.loads(request.content)
    assert body["eventType"] == "consent_revoked"
    assert body["partnerId"] == "PID-1"
    assert body["data"] == {"consentId": "c-1"}
    assert len(_entries(container, "partner_notification_sent")) == 1


@pytest.mark.asyncio
async def test_notify_failure_is_audited_not_raised(container):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    notifier = PartnerNotifier(
        container.signature_service, container.audit_chain, transport=httpx.MockTransport(handler)
    )
    result = await notifier.notify("PID-1", "https://down.example.com", "consent_revoked", {})

    assert result["success"] is False
    failed = _entries(container, "partner_notification_failed")
    assert failed[0].action_details["eventType"] == "consent_revoked"


@pytest.mark.asyncio
async def test_notify_http_error_status(container):
    notifier = PartnerNotifier(
        container.signature_service,
        container.audit_chain,
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    result = await notifier.notify("PID-1", "https://partner.example.com", "contract_approved", {})
    assert result["success"] is False


@pytest.mark.asyncio
async def test_no_callback_skipped(container, mocker):
    spy = mocker.spy(container.audit_chain, "record")
    result = await container.notifier.notify("PID-1", None, "consent_revoked", {})
    assert result == {"success": False, "skipped": True}
    spy.assert_not_called()


@pytest.mark.asyncio
async def test_contract_status_payload_signed(container, approved_partner, webhook_calls):
    await container.notifier.notify_contract_status(
        approved_partner, "contract_approved", bank_public_key=container.signature_service.public_key_pem
    )

    data = json.loads(webhook_calls[0].content)["data"]
    signature = data.pop("signature")
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
    assert container.signature_service.verify(canonical, signature)
    assert data["approvedContract"] is True
    assert data["contractDetails"]["allowed_fields"] == ["name", "email", "phone"]


@pytest.mark.asyncio
async def test_unparseable_callback_url_is_audited_not_raised(container):
    notifier = PartnerNotifier(container.signature_service, container.audit_chain, timeout_seconds=1.0)
    result = await notifier.notify("PID-1", "http://[::1", "consent_revoked", {"consentId": "c-1"})

    assert result["success"] is False
    failed = _entries(container, "partner_notification_failed")
    assert failed[0].partner_id == "PID-1"
