"""
Shared pytest fixtures for the external assignment sync test suite.

Provides:
    - encryption_key: Fresh Fernet ENCRYPTION_KEY (session-scoped, autouse)
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - fake_connector: Scriptable connector registered as source_type "Fake"
      (unregistered at session end)
    - source_account: Pre-connected "Fake" SourceAccount id
"""

import os

import pytest
from cryptography.fernet import Fernet

from assignment_sync import create_app
from assignment_sync.integrations.base import (
    BaseConnector,
    register_connector,
    unregister_connector,
)
from assignment_sync.models import db as _db
from assignment_sync.services import reconciliation_service


OWNER = "alice@example.edu"


@pytest.fixture(scope="session", autouse=True)
def encryption_key():
    """Set a stable ENCRYPTION_KEY for the entire test session.

    Connection details are encrypted on connect and decrypted on poll, so
    every test must share one key.
    """
    key = Fernet.generate_key().decode()
    os.environ["ENCRYPTION_KEY"] = key
    yield key


# ── Scriptable connector ─────────────────────────────────────────────────


@register_connector("Fake")
class FakeConnector(BaseConnector):
    """In-memory connector; tests script its behaviour via class attributes."""

    required_details = ("token",)

    valid = True
    validate_error = None
    records: list = []
    poll_error = None
    validate_calls = 0
    poll_calls = 0

    @classmethod
    def reset(cls):
        cls.valid = True
        cls.validate_error = None
        cls.records = []
        cls.poll_error = None
        cls.validate_calls = 0
        cls.poll_calls = 0

    def validate_credentials(self, details):
        type(self).validate_calls += 1
        if self.validate_error is not None:
            raise self.validate_error
        return self.valid

    def poll(self, details):
        type(self).poll_calls += 1
        if self.poll_error is not None:
            raise self.poll_error
        return list(self.records)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session", autouse=True)
def _fake_connector_registration():
    """Drop the "Fake" source_type from the registry once the session ends."""
    yield
    unregister_connector("Fake")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    FakeConnector.reset()
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
    reconciliation_service.clear_change_handler()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def fake_connector():
    """Return the scriptable connector class (already reset)."""
    return FakeConnector


@pytest.fixture()
def source_account(fake_connector):
    """Connect and return a "Fake" source account id owned by OWNER."""
    from assignment_sync.services.source_account_service import connect_source

    account_id = connect_source(OWNER, "Fake", "My LMS", {"token": "secret-token"})
    fake_connector.validate_calls = 0
    return account_id
