"""Prometheus Metrics - Observability for consent and disclosure flows

Self-Explanatory: Counters for every gate a data request passes through.
Why: Denial spikes, decryption failures and lost audit writes must be visible
     before a regulator or a partner notices them.
How: prometheus_client counters, exported at /metrics.

Metrics Categories:
1. Disclosure: disclosures, denials by reason
2. Consent: lifecycle events, authorization checks by result
3. Crypto: encryption/decryption operations, decryption failures by stage
4. Compliance: audit entries written, audit write failures
5. Integration: partner webhook deliveries
"""

import structlog
from prometheus_client import REGISTRY, Counter, Info, generate_latest

logger = structlog.get_logger()

# ============================================================================
# DISCLOSURE METRICS
# ============================================================================

disclosures_total = Counter(
    "consentbridge_disclosures_total",
    "Data requests fulfilled",
    ["encryption_type"],  # secure-temporary-key, rsa-oaep-aes-gcm, none
)

disclosure_denials_total = Counter(
    "consentbridge_disclosure_denials_total",
    "Data requests denied or failed",
    ["reason"],
)

# ============================================================================
# CONSENT METRICS
# ============================================================================

consent_events_total = Counter(
    "consentbridge_consent_events_total",
    "Consent lifecycle transitions",
    ["action"],  # created, revoked, expired
)

consent_checks_total = Counter(
    "consentbridge_consent_checks_total",
    "Disclosure authorization checks",
    ["result"],  # granted, expired, fields_denied, ...
)

# ============================================================================
# CRYPTO METRICS
# ============================================================================

encryption_operations_total = Counter(
    "consentbridge_encryption_operations_total",
    "Total encryption/decryption operations",
    ["operation", "algorithm"],
)

decryption_failures_total = Counter(
    "consentbridge_decryption_failures_total",
    "Decryption failures",
    ["stage"],
)

# ============================================================================
# COMPLIANCE METRICS
# ============================================================================

audit_logs_written_total = Counter(
    "consentbridge_audit_logs_written_total",
    "Total audit log entries written",
    ["event_type", "actor_type"],
)

audit_append_failures_total = Counter(
    "consentbridge_audit_append_failures_total",
    "Audit log writes that failed (operation continued)",
    ["event_type"],
)

# ============================================================================
# INTEGRATION METRICS
# ============================================================================

partner_notifications_total = Counter(
    "consentbridge_partner_notifications_total",
    "Partner webhook deliveries",
    ["event_type", "result"],  # sent, failed
)

system_info = Info(
    "consentbridge_system",
    "ConsentBridge system information",
)


def set_system_info(version: str, environment: str):
    system_info.info({"version": version, "environment": environment})


def get_metrics_text() -> bytes:
    """Get Prometheus metrics in text format

    Returns:
        Metrics in Prometheus exposition format
    """
    return generate_latest(REGISTRY)
