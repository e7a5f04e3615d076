"""
Shared fixtures: an in-memory MongoDB (mongomock) with the real indexes,
a fake identity verifier keyed by token, and a mocked Stripe gateway.
"""
from unittest.mock import Mock

import mongomock
import pytest
from fastapi.testclient import TestClient

from accounts import AccountService
from auth import Identity
from config import Settings
from database import ACCOUNTS, create_document, ensure_indexes
from errors import Unauthenticated
from main import Services, create_app


def token_for(email: str) -> str:
    return f"valid:{email}"


def auth_header(email: str) -> dict:
    return {"Authorization": f"Bearer {token_for(email)}"}


def identity_for(email: str) -> Identity:
    return Identity(email=email, subject_id=f"uid-{email.split('@')[0]}", picture_url=None)


def _verify(token: str) -> Identity:
    if not token.startswith("valid:"):
        raise Unauthenticated("Invalid token")
    return identity_for(token.split(":", 1)[1])


@pytest.fixture
def settings():
    return Settings(client_url="http://client.test", payment_currency="usd")


@pytest.fixture
def db():
    database = mongomock.MongoClient()["tuitron_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def verifier():
    fake = Mock()
    fake.verify.side_effect = _verify
    return fake


@pytest.fixture
def gateway():
    fake = Mock()
    fake.create_session.return_value = "https://checkout.stripe.test/c/pay/cs_test_123"
    return fake


@pytest.fixture
def services(settings, db, verifier, gateway):
    return Services(settings, db, verifier, gateway)


@pytest.fixture
def client(settings, db, verifier, gateway):
    return TestClient(create_app(settings, db=db, verifier=verifier, gateway=gateway))


@pytest.fixture
def make_account(db):
    """Insert an account directly and return its id."""
    def _make(email: str, role: str = "student", name: str = "Test User"):
        return create_document(db, ACCOUNTS, {
            "uid": f"uid-{email.split('@')[0]}",
            "email": email,
            "name": name,
            "phone": "01700000000",
            "role": role,
            "image": None,
        })
    return _make


@pytest.fixture
def accounts(db):
    return AccountService(db)
