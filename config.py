import os
from dataclasses import dataclass, field
from typing import List

APPLICATION_STATUS_POLICIES = ("admin", "owner")


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Settings:
    """Runtime settings, read from the environment once at startup."""
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "tuitron_db"
    db_timeout_ms: int = 5000
    firebase_service_key: str = ""
    http_timeout_seconds: float = 10.0
    stripe_secret_key: str = ""
    payment_currency: str = "usd"
    client_url: str = "http://localhost:5173"
    application_status_policy: str = "admin"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = 8000

    def __post_init__(self):
        if self.application_status_policy not in APPLICATION_STATUS_POLICIES:
            raise ValueError(
                f"APPLICATION_STATUS_POLICY must be one of {APPLICATION_STATUS_POLICIES}, "
                f"got {self.application_status_policy!r}"
            )

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            database_name=os.getenv("DATABASE_NAME", cls.database_name),
            db_timeout_ms=int(os.getenv("DB_TIMEOUT_MS", cls.db_timeout_ms)),
            firebase_service_key=os.getenv("FIREBASE_SERVICE_KEY", ""),
            http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", cls.http_timeout_seconds)),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            payment_currency=os.getenv("PAYMENT_CURRENCY", cls.payment_currency).lower(),
            client_url=os.getenv("CLIENT_URL", cls.client_url).rstrip("/"),
            application_status_policy=os.getenv("APPLICATION_STATUS_POLICY", cls.application_status_policy).lower(),
            cors_origins=_csv(os.getenv("CORS_ORIGINS", "*")),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            port=int(os.getenv("PORT", cls.port)),
        )
