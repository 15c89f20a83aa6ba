"""ConsentBridge Main FastAPI App - Consent-gated customer data sharing

This file builds the whole service from Settings.
Run with: uvicorn consentbridge.main:create_app --factory --reload
Access at: http://localhost:8000/docs (interactive docs!)

Features:
1. Field-level AES-256-GCM encryption of customer PII
2. Time-bound, field-scoped consent tied to approved partner contracts
3. Per-partner RSA-OAEP + AES-GCM disclosure envelopes
4. Signed, hash-chained, append-only audit trail
5. Signed partner webhooks
6. Prometheus metrics + health checks
"""

from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException

from consentbridge.config import Settings
from consentbridge.container import ServiceContainer
from consentbridge.errors import ConsentBridgeError, DecryptionError
from consentbridge.utils.metrics import get_metrics_text, set_system_info

VERSION = "1.0.0"

# Set up structured logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "message": message})


def register_exception_handlers(app: FastAPI, settings: Settings):
    """Map domain errors to {"status": "error", "message": ...}"""

    @app.exception_handler(ConsentBridgeError)
    async def domain_error_handler(request: Request, exc: ConsentBridgeError):
        if isinstance(exc, DecryptionError):
            logger.error("Decryption error", path=request.url.path, stage=exc.stage)
        elif exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, error=type(exc).__name__)
        else:
            logger.info(
                "Request rejected",
                path=request.url.path,
                error=type(exc).__name__,
                status=exc.status_code,
            )
        return _error(exc.status_code, exc.message)

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err["loc"] if p != "body") for err in exc.errors()]
        return _error(422, f"Invalid request: {', '.join(fields)}")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error", path=request.url.path, error=str(exc))
        if settings.is_development:
            return _error(500, f"{type(exc).__name__}: {exc}")
        return _error(500, "Internal server error")


def create_app(settings: Optional[Settings] = None, container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the FastAPI app

    Args:
        settings: Process settings (defaults to Settings.from_env())
        container: Pre-built services (tests); built from settings otherwise

    Raises:
        KeyMaterialError: field key or signing key unusable
    """
    settings = settings or (container.settings if container else Settings.from_env())
    container = container or ServiceContainer(settings)

    app = FastAPI(
        title="ConsentBridge - Consent-Gated Customer Data Sharing",
        description="""
        **Features:**
        - Field-level PII encryption (AES-256-GCM)
        - Field-scoped, time-bound consent with approved partner contracts
        - Partner-only disclosure envelopes (RSA-OAEP-SHA256 + AES-256-GCM)
        - Signed, hash-chained audit trail
        """,
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app, settings)

    # ========================================================================
    # ROUTERS
    # ========================================================================

    from consentbridge.consent.router import router as consent_router
    from consentbridge.customers.router import router as customer_router
    from consentbridge.governance.router import router as audit_router
    from consentbridge.partners.router import router as partner_router

    app.include_router(customer_router, prefix="/api/v1/customers", tags=["Customers"])
    app.include_router(consent_router, prefix="/api/v1/consents", tags=["Consents"])
    app.include_router(partner_router, prefix="/api/v1/partners", tags=["Partners"])
    app.include_router(audit_router, prefix="/api/v1/audit", tags=["Audit"])

    # ========================================================================
    # HEALTH CHECKS
    # ========================================================================

    health_checker = container.health_checker

    @app.get("/health")
    async def health_check():
        """Basic liveness check"""
        return await health_checker.liveness_check()

    @app.get("/health/live")
    async def health_live():
        """Kubernetes liveness probe"""
        return await health_checker.liveness_check()

    @app.get("/health/ready")
    async def health_ready():
        """Kubernetes readiness probe"""
        return await health_checker.readiness_check()

    @app.get("/health/comprehensive")
    async def health_comprehensive():
        """Comprehensive health check of all components"""
        return await health_checker.comprehensive_check()

    # ========================================================================
    # PROMETHEUS METRICS
    # ========================================================================

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        """Prometheus metrics endpoint"""
        return get_metrics_text()

    @app.get("/")
    async def root():
        return {
            "message": "ConsentBridge - Consent-Gated Customer Data Sharing",
            "version": VERSION,
            "docs": "/docs",
            "metrics": "/metrics",
            "health": "/health/comprehensive",
        }

    @app.on_event("startup")
    async def startup_event():
        set_system_info(VERSION, settings.environment)
        logger.info(
            "ConsentBridge ready",
            environment=settings.environment,
            min_consent_duration_ms=settings.min_consent_duration_ms,
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down ConsentBridge...")
        container.close()

    return app


if __name__ == "__main__":
    logger.info("Starting ConsentBridge server...")
    uvicorn.run("consentbridge.main:create_app", factory=True, host="0.0.0.0", port=8000, reload=True)
