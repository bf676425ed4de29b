"""
Shared pytest fixtures for the automation core test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - now: fixed UTC clock value used by engine calls
    - invoice_workflow / deliverable_workflow: seeded approval workflows
    - destination: active webhook destination (with its plaintext secret)
"""

import os
from datetime import datetime, timezone

import pytest
from cryptography.fernet import Fernet

# Secrets are Fernet-encrypted at rest; tests need a key before any import.
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())

from app import create_app  # noqa: E402
from app.models import db as _db  # noqa: E402


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


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
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def now():
    return datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def invoice_workflow():
    """Default any_one workflow for invoices: a single admin role step."""
    from app.services import approval_service
    return approval_service.create_workflow({
        "name": "Invoice approval",
        "entity_type": "invoice",
        "mode": "any_one",
        "is_default": True,
        "steps": [{"approver_kind": "role", "approver_value": "admin"}],
    })


@pytest.fixture()
def deliverable_workflow():
    """Sequential workflow: manager first, then the client."""
    from app.services import approval_service
    return approval_service.create_workflow({
        "name": "Deliverable review",
        "entity_type": "deliverable",
        "mode": "sequential",
        "is_default": True,
        "steps": [
            {"approver_kind": "user", "approver_value": "manager@studio.test"},
            {"approver_kind": "client", "approver_value": "client"},
        ],
    })


@pytest.fixture()
def destination():
    """Active destination; returns (WebhookDestination, plaintext secret)."""
    from app.services import webhook_service
    return webhook_service.create_destination({
        "name": "Accounting hook",
        "url": "https://hooks.example.test/invoices",
    })
