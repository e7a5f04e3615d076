"""
Identity Gate

Verifies Firebase ID tokens sent as `Authorization: Bearer <token>` and yields
the trusted identity. Every request is verified again; nothing is cached.
"""
import base64
import json
import logging
from dataclasses import dataclass
from typing import Optional

import firebase_admin
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials

from config import Settings
from errors import ExternalServiceError, Unauthenticated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    email: str
    subject_id: str
    picture_url: Optional[str] = None


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise Unauthenticated("Missing token")
    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise Unauthenticated("Unauthorized")
    return token


class FirebaseVerifier:
    """Wraps a dedicated firebase_admin App so the SDK never relies on the default global app."""

    def __init__(self, app: firebase_admin.App):
        self.app = app

    @classmethod
    def from_settings(cls, settings: Settings, name: str = "tuitron") -> "FirebaseVerifier":
        if not settings.firebase_service_key:
            raise RuntimeError("FIREBASE_SERVICE_KEY is not set")
        service_account = json.loads(base64.b64decode(settings.firebase_service_key).decode("utf-8"))
        app = firebase_admin.initialize_app(
            credentials.Certificate(service_account),
            options={"httpTimeout": settings.http_timeout_seconds},
            name=name,
        )
        return cls(app)

    def verify(self, token: str) -> Identity:
        try:
            claims = firebase_auth.verify_id_token(token, app=self.app)
        except firebase_auth.CertificateFetchError as e:
            logger.exception("Could not fetch identity provider certificates")
            raise ExternalServiceError("Identity provider unavailable") from e
        except (ValueError, firebase_auth.InvalidIdTokenError, firebase_auth.UserDisabledError) as e:
            # Expired and revoked tokens are InvalidIdTokenError subclasses
            logger.info(f"Rejected identity token: {type(e).__name__}")
            raise Unauthenticated("Invalid token") from e

        email = claims.get("email")
        if not email:
            raise Unauthenticated("Token carries no email")
        return Identity(
            email=email.lower(),
            subject_id=claims.get("uid") or claims.get("sub"),
            picture_url=claims.get("picture"),
        )
