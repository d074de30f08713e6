"""
Campus Pass - Test Configuration and Fixtures
"""
import os
import tempfile
from datetime import datetime, timedelta

import pytest
from faker import Faker
from fastapi.testclient import TestClient

# Keep the import-time engine and request log out of the working tree
_TMP = tempfile.mkdtemp(prefix="campus_pass_")
os.environ['DATABASE_URL'] = f"sqlite:///{os.path.join(_TMP, 'import.db')}"
os.environ['LOG_FILE'] = os.path.join(_TMP, 'requests.log')

from database import init_db, make_engine, make_session_factory
from main import app, build_services, get_services
from models import Pass, PassStatus, Role
from notifier import Notifier, NotificationDispatcher

fake = Faker()

START = datetime(2026, 3, 2, 9, 0, 0)


class FixedClock:
    """Deterministic clock; tests move it explicitly."""

    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier(Notifier):

    def __init__(self):
        self.sent = []

    def notify(self, channel, title, body, data=None):
        self.sent.append({"channel": channel, "title": title, "body": body, "data": data or {}})

    def channels(self):
        return [n["channel"] for n in self.sent]

    def of_type(self, kind):
        return [n for n in self.sent if n["data"].get("type") == kind]


class FailingNotifier(Notifier):

    def __init__(self):
        self.calls = 0

    def notify(self, channel, title, body, data=None):
        self.calls += 1
        raise ConnectionError("push gateway unreachable")


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(session_factory, notifier, clock):
    return build_services(session_factory, NotificationDispatcher(notifier), clock=clock)


def _make_user(services, role, parent_id=None, fcm_token=None):
    return services.users.create_user(
        fake.name(), fake.unique.email(), role.value, parent_id=parent_id, fcm_token=fcm_token,
    )


@pytest.fixture
def parent(services):
    return _make_user(services, Role.PARENT)


@pytest.fixture
def student(services, parent):
    return _make_user(services, Role.STUDENT, parent_id=parent.id)


@pytest.fixture
def unlinked_student(services):
    return _make_user(services, Role.STUDENT)


@pytest.fixture
def warden(services):
    return _make_user(services, Role.WARDEN)


@pytest.fixture
def guard(services):
    return _make_user(services, Role.GUARD)


@pytest.fixture
def admin(services):
    return _make_user(services, Role.ADMIN)


@pytest.fixture
def make_user(services):
    def _factory(role, parent_id=None, fcm_token=None):
        return _make_user(services, role, parent_id=parent_id, fcm_token=fcm_token)
    return _factory


@pytest.fixture
def make_pass(services, clock):
    """Insert a pass directly in a given state, bypassing the workflow."""
    def _factory(owner, status=PassStatus.ACTIVE, valid_from=None, valid_to=None,
                 exit_time=None, entry_time=None, pass_type="outing"):
        now = clock()
        record = Pass(
            user_id=owner.id,
            type=pass_type,
            purpose="test",
            valid_from=valid_from or now - timedelta(hours=1),
            valid_to=valid_to or now + timedelta(hours=1),
            barcode=fake.uuid4(),
            status=status,
            exit_time=exit_time,
            entry_time=entry_time,
            version=1,
            created_at=now,
            updated_at=now,
        )
        return services.passes.store.create(record)
    return _factory


@pytest.fixture
def client(services):
    """Test client wired to the per-test services."""
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user):
    return {"X-User-Id": user.id}
