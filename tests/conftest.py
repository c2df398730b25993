import pytest

from securenotes.config import Settings
from securenotes.domain import STATUS_ACTIVE
from securenotes.main import build_services
from securenotes.portal import Portal

PASSWORD = "Secret123!"


@pytest.fixture
def settings(tmp_path):
    return Settings(backend="local", data_dir=str(tmp_path), public_url="http://testserver",
                    signing_secret="test-secret", fetch_retries=0, retry_backoff=0)


@pytest.fixture
def services(settings):
    return build_services(settings)


@pytest.fixture
def portal(services):
    auth, store, files = services
    return Portal(auth, store, files, page_size=2)


@pytest.fixture
def make_account(portal):
    """Register and sign in an account; returns its session."""
    def _make(email, name=""):
        portal.register_user(email, PASSWORD, name)
        return portal.login(email, PASSWORD)
    return _make


@pytest.fixture
def admin(portal, make_account):
    session = make_account("admin@example.edu", "Admin")
    portal.store.promote_by_email("admin@example.edu")
    return session


@pytest.fixture
def student(portal, admin, make_account):
    session = make_account("student@example.edu", "Student")
    portal.set_access(admin, session.user_id, status=STATUS_ACTIVE)
    return session
