import os
import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path so 'app', 'config', and 'ranksync' import correctly
_TESTS_DIR = os.path.dirname(__file__)
_ROOT_DIR = os.path.abspath(os.path.join(_TESTS_DIR, os.pardir))
if _ROOT_DIR not in sys.path:
    sys.path.insert(0, _ROOT_DIR)

from tests.support import factories as test_factories


@pytest.fixture(autouse=True)
def database_url(monkeypatch, tmp_path_factory):
    """Ensure a clean env for tests with per-test sqlite files."""
    db_dir = tmp_path_factory.mktemp("db")
    db_path = Path(db_dir) / "test.sqlite"
    url = f"sqlite:///{db_path.as_posix()}"
    monkeypatch.setenv("DATABASE_URL", url)
    yield url


@pytest.fixture
def app(database_url):
    import app as app_module

    application = app_module.create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SQLALCHEMY_DATABASE_URI": database_url,
            "SSE_HEARTBEAT_SECONDS": 1,
        }
    )
    yield application
    recomputer = application.extensions["aggregate_recomputer"]
    recomputer.wait_idle(timeout=5)
    recomputer.shutdown()
    from ranksync.database.db_manager import db

    with application.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def app_context(app):
    with app.app_context():
        yield app


@pytest.fixture
def db_session(app_context):
    from ranksync.database.db_manager import db

    test_factories.set_session(db.session)
    try:
        yield db.session
    finally:
        db.session.rollback()
        db.session.remove()
        test_factories.reset_session()


@pytest.fixture
def factories(db_session):
    yield test_factories


@pytest.fixture
def client(app):
    return app.test_client()


def _register(client, email):
    resp = client.post("/api/auth/register", json={"email": email, "password": "password123"})
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["user"]["id"]


@pytest.fixture
def auth_client(app):
    """A test client logged in as a freshly registered user (``.user_id`` set)."""
    c = app.test_client()
    c.user_id = _register(c, "owner@example.com")
    return c


@pytest.fixture
def other_client(app):
    c = app.test_client()
    c.user_id = _register(c, "someone@example.com")
    return c


@pytest.fixture
def service(app_context):
    return app_context.extensions["list_service"]


@pytest.fixture
def user_id(db_session, factories):
    user = factories.UserFactory()
    db_session.commit()
    return user.id
