import itertools

import pytest
from fastapi.testclient import TestClient

from academic_tracker import models
from academic_tracker.auth import AuthClient
from academic_tracker.config import Settings
from academic_tracker.container import Container, get_container
from academic_tracker.database import build_engine, create_db_and_tables
from academic_tracker.main import _login_rate_limiter, app

PASSWORD = "Passw0rd1"


@pytest.fixture
def container():
    """Fresh container over an in-memory SQLite database."""
    engine = build_engine("sqlite://")
    create_db_and_tables(engine)
    auth = AuthClient(engine, "test-secret")
    return Container(engine=engine, auth=auth, settings=Settings()).build()


@pytest.fixture
def client(container):
    app.dependency_overrides[get_container] = lambda: container
    _login_rate_limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(container):
    """Factory creating users straight through the repository."""
    counter = itertools.count(1)

    def _make(role=models.UserRole.STUDENT, email=None, password=PASSWORD, **profile):
        n = next(counter)
        email = email or f"{role.value.lower()}{n}@example.com"
        profile.setdefault("first_name", f"First{n}")
        profile.setdefault("last_name", f"Last{n}")
        first = profile.pop("first_name")
        last = profile.pop("last_name")
        return container.users.create_user(email, password, first, last, role, **profile)

    return _make


@pytest.fixture
def active_period(container):
    period = models.AcademicPeriod(
        name="1st Semester 2024-2025",
        semester=models.Semester.FIRST_SEMESTER.value,
        academic_year="2024-2025",
    )
    return container.periods.create(period, make_current=True)


@pytest.fixture
def auth_headers(container):
    def _headers(user):
        token = container.auth.issue_token(user.id, user.role)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def catalog(container, active_period):
    """BSIT and BSED courses, each with four year levels (`BSIT-1` ... `BSIT-4`)."""
    return {
        code: container.courses.create(models.Course(id=code, code=code, name=name))
        for code, name in (("BSIT", "Information Technology"), ("BSED", "Secondary Education"))
    }
