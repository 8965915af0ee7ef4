"""Web service configuration."""
import os
from dataclasses import dataclass
from typing import Optional

STORE_BACKENDS = ("memory", "postgres")
IDENTITY_BACKENDS = ("memory", "cognito")


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class AppConfig:
    """Settings for one obstrack deployment (one school)."""
    app_id: str = "jaber-school"
    store_backend: str = "memory"
    identity_backend: str = "memory"
    initial_auth_token: Optional[str] = None
    cognito_client_id: Optional[str] = None
    cognito_user_pool_id: Optional[str] = None
    cognito_identity_pool_id: Optional[str] = None
    aws_region: str = "us-east-1"
    # Enrolment used as the denominator of the absence alert
    total_students: int = 555
    absence_threshold: float = 0.05
    pii_hash_salt: Optional[str] = None
    log_level: str = "INFO"
    port: int = 8080

    def __post_init__(self):
        if self.store_backend not in STORE_BACKENDS:
            raise ValueError(f"Unknown STORE_BACKEND: {self.store_backend}")
        if self.identity_backend not in IDENTITY_BACKENDS:
            raise ValueError(f"Unknown IDENTITY_BACKEND: {self.identity_backend}")
        if self.identity_backend == "cognito" and not self.cognito_client_id:
            raise ValueError("COGNITO_CLIENT_ID is required for the cognito backend")
        if self.total_students <= 0:
            raise ValueError("TOTAL_STUDENTS must be positive")
        if not 0 < self.absence_threshold < 1:
            raise ValueError("ABSENCE_THRESHOLD must be between 0 and 1")

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Load configuration from environment variables."""
        return cls(
            app_id=os.getenv("APP_ID", "jaber-school"),
            store_backend=os.getenv("STORE_BACKEND", "memory").lower(),
            identity_backend=os.getenv("IDENTITY_BACKEND", "memory").lower(),
            initial_auth_token=_optional("INITIAL_AUTH_TOKEN"),
            cognito_client_id=_optional("COGNITO_CLIENT_ID"),
            cognito_user_pool_id=_optional("COGNITO_USER_POOL_ID"),
            cognito_identity_pool_id=_optional("COGNITO_IDENTITY_POOL_ID"),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            total_students=int(os.getenv("TOTAL_STUDENTS", "555")),
            absence_threshold=float(os.getenv("ABSENCE_THRESHOLD", "0.05")),
            pii_hash_salt=_optional("PII_HASH_SALT"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", "8080")),
        )
