"""Pytest configuration shared across the suite."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

import models
from api import create_app
from models.db_storage import DBStorage
from models.token_store import RefreshTokenStore
from models.user import User
from services.account_recovery import AccountRecoveryService
from services.token_issuer import JwtSettings, TokenIssuer
from utils.clock import utcnow
from utils.security import hash_password

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"
TEST_ISSUER = "cleanhr-auth-tests"
PASSWORD = "Passw0rd!"


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'tokens.db'}"


@pytest.fixture
def db(db_url):
    """A DBStorage bound to a throwaway SQLite file."""
    storage = DBStorage(db_url)
    storage.reload()
    yield storage
    storage.dispose()


@pytest.fixture
def make_user(db):
    def _make(user_name="jane.doe", email=None, roles=None, is_disabled=False):
        user = User(
            email=email or f"{user_name}@example.com",
            user_name=user_name,
            password_hash=hash_password(PASSWORD),
            roles=roles if roles is not None else ["user"],
            is_disabled=is_disabled,
        )
        db.new(user)
        db.save()
        return user

    return _make


@pytest.fixture
def settings() -> JwtSettings:
    return JwtSettings(secret=TEST_SECRET, issuer=TEST_ISSUER, lifetime_seconds=3600, key_id="test-key")


@pytest.fixture
def store(db) -> RefreshTokenStore:
    return RefreshTokenStore(db)


def build_issuer(storage, settings, clock=utcnow) -> TokenIssuer:
    return TokenIssuer(
        RefreshTokenStore(storage, clock=clock),
        settings,
        user_loader=lambda user_id: storage.get(User, user_id),
        clock=clock,
    )


@pytest.fixture
def issuer(db, settings) -> TokenIssuer:
    return build_issuer(db, settings)


@pytest.fixture
def issuer_factory(settings):
    def _factory(storage, clock=utcnow, **overrides):
        return build_issuer(storage, replace(settings, **overrides), clock=clock)

    return _factory


@pytest.fixture
def past_clock():
    """A clock two days behind, for minting already-expired tokens."""
    return lambda: utcnow() - timedelta(days=2)


class RecordingEmailSender:
    """Keeps (kind, email, code) for every message instead of sending it."""

    def __init__(self):
        self.sent = []

    def send_password_reset_code(self, email, code):
        self.sent.append(("password_reset", email, code))

    def send_email_verification_code(self, email, code):
        self.sent.append(("email_verification", email, code))

    def last_code(self, kind):
        return [code for sent_kind, _, code in self.sent if sent_kind == kind][-1]


@pytest.fixture
def outbox() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def recovery_factory(db, outbox):
    def _factory(clock=utcnow, **kwargs):
        return AccountRecoveryService(db, RefreshTokenStore(db, clock=clock), email_sender=outbox, clock=clock, **kwargs)

    return _factory


@pytest.fixture
def recovery(recovery_factory) -> AccountRecoveryService:
    return recovery_factory()


@pytest.fixture
def app(tmp_path, outbox):
    app = create_app(
        "test", overrides={"DATABASE_URL": f"sqlite:///{tmp_path / 'api.db'}"}, email_sender=outbox
    )
    yield app
    models.storage.dispose()


@pytest.fixture
def client(app):
    return app.test_client()
