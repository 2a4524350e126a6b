"""
Shared pytest fixtures for the BuildTrack test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - project: Pre-created Project with a manager email
    - sent_emails: EmailLog rows written during the test
"""

import pytest

from buildtrack import create_app
from buildtrack.models import db as _db
from buildtrack.models.email_log import EmailLog
from buildtrack.models.project import Project


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
def project():
    """A project whose manager receives completion emails."""
    p = Project(
        name="Harbor View Tower",
        location="Pier 7",
        manager_name="Sam Rivera",
        manager_email="sam.rivera@example.com",
    )
    _db.session.add(p)
    _db.session.commit()
    return p


@pytest.fixture()
def sent_emails():
    """Callable returning the template names of all logged emails, oldest first."""

    def _sent():
        return [
            log.template_name
            for log in _db.session.execute(
                _db.select(EmailLog).order_by(EmailLog.id)
            ).scalars()
        ]

    return _sent
