"""Health Check - Service dependency status

Self-Explanatory: Liveness, readiness and a comprehensive check.
How: Check DB, key material and the newest stretch of the audit chain.

K8s Integration:
- /health/live: Liveness probe (is service running?)
- /health/ready: Readiness probe (can serve traffic?)
"""

import time
from datetime import datetime, timezone
from typing import Dict

import structlog
from fastapi import status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = structlog.get_logger()


class HealthStatus:
    """Health status constants"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthChecker:
    """Health checks over the container's dependencies"""

    def __init__(self, engine: Engine, signature_service, field_engine, audit_chain, audit_window: int = 100):
        self.engine = engine
        self.signature_service = signature_service
        self.field_engine = field_engine
        self.audit_chain = audit_chain
        self.audit_window = audit_window
        self.start_time = time.time()

    async def check_database(self) -> Dict:
        try:
            with self.engine.connect() as conn:
                start = time.time()
                conn.execute(text("SELECT 1"))
                latency_ms = (time.time() - start) * 1000

            return {
                "status": HealthStatus.HEALTHY,
                "latency_ms": round(latency_ms, 2),
                "message": "Database connection successful"
            }

        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return {
                "status": HealthStatus.UNHEALTHY,
                "message": "Database connection failed"
            }

    async def check_key_material(self) -> Dict:
        """Round-trip a probe through the field key and the signing key"""
        try:
            probe = self.field_engine.encrypt_field("health-probe")
            field_ok = self.field_engine.decrypt_field(probe) == "health-probe"
            signature = self.signature_service.sign("health-probe")
            signing_ok = self.signature_service.verify("health-probe", signature)
        except Exception as e:
            logger.error("Key material health check failed", error=str(e))
            field_ok = signing_ok = False

        healthy = field_ok and signing_ok
        return {
            "status": HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
            "field_key": field_ok,
            "signing_key": signing_ok,
        }

    async def check_audit_chain(self) -> Dict:
        try:
            result = self.audit_chain.verify_tail(self.audit_window)
        except Exception as e:
            logger.error("Audit chain health check failed", error=str(e))
            return {"status": HealthStatus.UNHEALTHY, "message": "Audit chain unreadable"}

        return {
            "status": HealthStatus.HEALTHY if result["valid"] else HealthStatus.DEGRADED,
            "message": result["message"],
        }

    async def liveness_check(self) -> Dict:
        return {
            "status": HealthStatus.HEALTHY,
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def readiness_check(self):
        database = await self.check_database()
        keys = await self.check_key_material()
        ready = (
            database["status"] == HealthStatus.HEALTHY
            and keys["status"] == HealthStatus.HEALTHY
        )
        body = {
            "status": "ready" if ready else "not_ready",
            "checks": {"database": database, "key_material": keys},
        }
        if not ready:
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
        return body

    async def comprehensive_check(self) -> Dict:
        checks = {
            "database": await self.check_database(),
            "key_material": await self.check_key_material(),
            "audit_chain": await self.check_audit_chain(),
        }
        statuses = [c["status"] for c in checks.values()]
        if HealthStatus.UNHEALTHY in statuses:
            overall = HealthStatus.UNHEALTHY
        elif HealthStatus.DEGRADED in statuses:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        return {
            "status": overall,
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
        }
