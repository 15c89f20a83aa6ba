"""Service Container - Builds every engine once from Settings

How: create_app() calls build_container(settings) and stores the result on
app.state; routers reach it through Depends(get_container).
"""

from datetime import datetime
from typing import Callable, Optional

import httpx
import structlog
from fastapi import Request

from consentbridge.config import Settings
from consentbridge.consent.engine import ConsentEngine
from consentbridge.customers.service import CustomerService
from consentbridge.governance.audit_chain import AuditChain
from consentbridge.models import utcnow
from consentbridge.partners.disclosure import DisclosureService
from consentbridge.partners.notifications import PartnerNotifier
from consentbridge.partners.registry import PartnerRegistry
from consentbridge.security.field_encryption import FieldEncryptionEngine
from consentbridge.security.hybrid_encryption import HybridEncryptionEngine
from consentbridge.security.signature_service import SignatureService
from consentbridge.storage.database import create_db_engine, init_schema
from consentbridge.storage.repository import Repository
from consentbridge.utils.health_check import HealthChecker

logger = structlog.get_logger()


class ServiceContainer:
    """Process-wide services; secrets are read-only after construction"""

    def __init__(
        self,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        notifier_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.clock = clock

        # Fail fast on bad key material before touching the database
        self.field_engine = FieldEncryptionEngine.from_secret(settings.encryption_key)
        self.signature_service = SignatureService.from_settings(
            settings.signing_key_path, settings.signing_private_key_base64
        )
        self.hybrid_engine = HybridEncryptionEngine()

        self.engine = create_db_engine(settings.database_url)
        init_schema(self.engine)
        self.repository = Repository(self.engine)
        self.audit_chain = AuditChain(self.engine, self.signature_service, clock=clock)

        self.consent_engine = ConsentEngine(
            self.repository,
            self.audit_chain,
            self.signature_service,
            settings.min_consent_duration_ms,
            clock=clock,
        )
        self.partner_registry = PartnerRegistry(self.repository, self.audit_chain, clock=clock)
        self.customer_service = CustomerService(
            self.repository, self.field_engine, self.audit_chain, clock=clock
        )
        self.disclosure_service = DisclosureService(
            self.repository,
            self.consent_engine,
            self.field_engine,
            self.hybrid_engine,
            self.audit_chain,
        )
        self.notifier = PartnerNotifier(
            self.signature_service,
            self.audit_chain,
            timeout_seconds=settings.notification_timeout_seconds,
            transport=notifier_transport,
        )
        self.health_checker = HealthChecker(
            self.engine,
            self.signature_service,
            self.field_engine,
            self.audit_chain,
            audit_window=settings.audit_integrity_window,
        )
        logger.info("Service container ready", database=self.engine.dialect.name)

    def close(self):
        self.engine.dispose()


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
