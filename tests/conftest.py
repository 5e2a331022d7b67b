"""
Pytest configuration and fixtures for the helpdesk RBAC tests.
"""
import os
from datetime import datetime, timedelta
from typing import Generator
from unittest.mock import MagicMock

import fakeredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before importing app modules
os.environ["MYSQL_URL"] = "sqlite:///./.pytest_rbac.db"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["JWT_SECRET"] = "test-secret-key-for-unit-tests-only"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["FORWARDED_ALLOW_IPS"] = "testclient"

from helpdesk_rbac.core.config import settings  # noqa: E402
from helpdesk_rbac.core.registry import Registry, build_registry  # noqa: E402
from helpdesk_rbac.db.base import Base  # noqa: E402
from helpdesk_rbac.db.seeds.seed_roles import seed_roles  # noqa: E402
from helpdesk_rbac.db.session import make_engine  # noqa: E402
from helpdesk_rbac.models import (  # noqa: E402
    Department, PermissionAudit, Role, RoleAssignment, User,
)
from helpdesk_rbac.services.notification_service import Notifier  # noqa: E402


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def redis_client() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """SQLite in-memory session with every table created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def shared_db(tmp_path, clock):
    """File-backed SQLite for tests that open one session per thread.

    Yields the session factory and the ids of a seeded ``admin``
    (system_administrator) and ``agent`` (support_agent).
    """
    engine = make_engine(f"sqlite:///{tmp_path / 'rbac.db'}")
    Base.metadata.create_all(bind=engine)
    SharedSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    users = {}
    with SharedSession() as session:
        seeded = seed_roles(session)
        for name, role_name in (("admin", "system_administrator"), ("agent", "support_agent")):
            user = User(email=f"{name}@helpdesk.test", full_name=name.title())
            session.add(user)
            session.flush()
            session.add(RoleAssignment(
                user_id=user.id, role_id=seeded[role_name].id, granted_at=clock(), is_active=True,
            ))
            users[name] = user.id
        session.commit()
    yield SharedSession, users
    engine.dispose()


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock(spec=Notifier)


@pytest.fixture
def registry(redis_client, clock, notifier) -> Registry:
    return build_registry(settings, redis_client=redis_client, clock=clock, notifier=notifier)


@pytest.fixture
def roles(db) -> dict[str, Role]:
    return seed_roles(db)


@pytest.fixture
def make_user(db, roles, clock):
    """Create an active user holding the named roles (permanent grants)."""
    counter = {"n": 0}

    def factory(*role_names: str, department: str = "IT Support", is_active: bool = True) -> User:
        counter["n"] += 1
        dept = db.query(Department).filter(Department.name == department).first()
        user = User(
            email=f"user{counter['n']}@helpdesk.test",
            full_name=f"User {counter['n']}",
            department_id=dept.id if dept else None,
            is_active=is_active,
        )
        db.add(user)
        db.flush()
        for name in role_names:
            db.add(RoleAssignment(
                user_id=user.id,
                role_id=roles[name].id,
                granted_at=clock(),
                is_active=True,
            ))
        db.commit()
        return user

    return factory


@pytest.fixture
def admin(make_user) -> User:
    return make_user("system_administrator")


@pytest.fixture
def regional(make_user) -> User:
    return make_user("regional_manager")


@pytest.fixture
def manager(make_user) -> User:
    return make_user("department_manager")


@pytest.fixture
def agent(make_user) -> User:
    return make_user("support_agent")


@pytest.fixture
def audits(db):
    """Audit rows, optionally filtered by action, oldest first."""

    def fetch(action=None, user_id=None) -> list[PermissionAudit]:
        query = db.query(PermissionAudit)
        if action is not None:
            query = query.filter(PermissionAudit.action == action)
        if user_id is not None:
            query = query.filter(PermissionAudit.user_id == user_id)
        return query.order_by(PermissionAudit.id.asc()).all()

    return fetch
