"""ConsentBridge Settings - Environment-driven configuration

Self-Explanatory: Single settings object built from environment variables.
Why: Secrets (field key, signing key) must be loaded once and handed to the
     engines explicitly instead of living in module globals.
How: Settings.from_env() at process start -> create_app(settings).
"""

import os
from typing import Optional

from pydantic import BaseModel

# One hour: the shortest consent a customer may grant
DEFAULT_MIN_CONSENT_DURATION_MS = 3600000


class Settings(BaseModel):
    """Process configuration"""

    app_name: str = "ConsentBridge"
    environment: str = "production"
    database_url: str = "sqlite:///data/consentbridge.db"
    encryption_key: str = ""
    min_consent_duration_ms: int = DEFAULT_MIN_CONSENT_DURATION_MS
    signing_key_path: str = "data/keys/signing_private_key.pem"
    signing_private_key_base64: Optional[str] = None
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    notification_timeout_seconds: float = 10.0
    api_base_url: str = "http://localhost:8000/api/v1"
    audit_integrity_window: int = 100

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from process environment

        Returns:
            Settings with defaults for anything unset
        """
        return cls(
            environment=os.getenv("APP_ENV", "production"),
            database_url=os.getenv("DATABASE_URL", "sqlite:///data/consentbridge.db"),
            encryption_key=os.getenv("ENCRYPTION_KEY", ""),
            min_consent_duration_ms=int(
                os.getenv("MIN_CONSENT_DURATION_MS", DEFAULT_MIN_CONSENT_DURATION_MS)
            ),
            signing_key_path=os.getenv(
                "SIGNING_KEY_PATH", "data/keys/signing_private_key.pem"
            ),
            signing_private_key_base64=os.getenv("SIGNING_PRIVATE_KEY_BASE64") or None,
            jwt_secret=os.getenv("JWT_SECRET", "change-me"),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            notification_timeout_seconds=float(
                os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10")
            ),
            api_base_url=os.getenv("API_BASE_URL", "http://localhost:8000/api/v1"),
            audit_integrity_window=int(os.getenv("AUDIT_INTEGRITY_WINDOW", "100")),
        )
