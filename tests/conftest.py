"""
Shared pytest fixtures for the PlanHub test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - gateway: Log-only RegenerationGateway installed on the app
    - root / make_derived / submit: data factories
"""

import pytest

from planhub import create_app
from planhub.core.locks import document_locks, root_locks
from planhub.integrations.regeneration_gateway import RegenerationGateway
from planhub.models import db as _db
from planhub.services import change_intake, document_service
from planhub.services.cascade_applier import set_gateway


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
        root_locks.clear()
        document_locks.clear()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def gateway(app):
    """Fresh log-only gateway per test; patch ``regenerate`` to script outcomes."""
    gw = RegenerationGateway(None, timeout=1.0, retry_backoff=[])
    set_gateway(app, gw)
    yield gw
    set_gateway(app, RegenerationGateway.from_config(app.config))


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def root():
    """A draft root carrying the fields the genesis wizard fills in."""
    return document_service.create_root(
        name="Acme Coffee",
        fields={
            "companyName": "Acme",
            "industry": "Coffee",
            "description": "Roastery and cafés",
            "targetAudience": "Young professionals",
            "valueProposition": "Ethical beans, fast",
            "objectives": "Open 3 stores",
            "revenueModel": "Retail",
            "businessInfo.founded": 2021,
        },
    )


@pytest.fixture()
def make_derived(root):
    """Factory: make_derived("presentation", ["companyName"]) → dict."""

    def _make(doc_type, inherited_fields, root_id=None, name=None):
        return document_service.create_derived(
            root_id or root["id"], doc_type, inherited_fields, name=name,
        )

    return _make


@pytest.fixture()
def submit(root):
    """Factory: submit("objectives", "Open 5 stores") → PendingChange dict."""

    def _submit(field_path, new_value, proposed_by="user", root_id=None, change_id=None):
        return change_intake.submit_change(
            root_id or root["id"], field_path, new_value, proposed_by, change_id=change_id,
        )

    return _submit
