"""Pytest configuration and fixtures for OpsBoard.

The app runs against an in-memory SQLite database (shared through a
StaticPool), bcrypt at its minimum work factor and a throwaway log
directory. Settings are read at import time, so the environment is set
before any application module is imported.
"""

import itertools
import os
import tempfile

os.environ.setdefault("OPSBOARD_DATABASE_URL", "sqlite://")
os.environ.setdefault("OPSBOARD_BCRYPT_ROUNDS", "4")
os.environ.setdefault("OPSBOARD_LOG_DIR", tempfile.mkdtemp(prefix="opsboard-logs-"))
os.environ.setdefault("OPSBOARD_API_KEYS", "test-key")

import pytest
from fastapi.testclient import TestClient

import config
import crud
import models
import sessions
from database import SessionLocal, engine
from enums import IncidentEnvironment, IncidentStatus, IncidentTier, Role
from main import app
from schemas import UserCreate

PASSWORD = "correct-horse"


@pytest.fixture(autouse=True)
def clean_state(tmp_path, monkeypatch):
    """Fresh schema, no sessions and a private upload directory per test."""
    models.Base.metadata.drop_all(bind=engine)
    models.Base.metadata.create_all(bind=engine)
    sessions.sessions.clear()
    monkeypatch.setattr(config, "UPLOAD_DIR", tmp_path / "uploads")
    yield
    sessions.sessions.clear()


@pytest.fixture
def client() -> TestClient:
    """HTTP client against the FastAPI app."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def db():
    """Session for arranging data and checking what the API persisted."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_team(db):
    counter = itertools.count(1)

    def _make_team(name=None, **fields):
        team = models.Team(name=name or f"Team {next(counter)}", **fields)
        db.add(team)
        db.commit()
        db.refresh(team)
        return team

    return _make_team


@pytest.fixture
def make_user(db):
    """Create users through crud so passwords are hashed like production."""
    counter = itertools.count(1)

    def _make_user(role=Role.DEVELOPER, username=None, password=PASSWORD, team_id=None, **fields):
        return crud.create_user(
            db,
            UserCreate(
                username=username or f"{role.value.lower()}{next(counter)}",
                password=password,
                role=role,
                team_id=team_id,
                **fields,
            ),
        )

    return _make_user


@pytest.fixture
def make_task(db):
    def _make_task(creator, title="Fix login bug", **fields):
        task = models.Task(title=title, creator_id=creator.id, **fields)
        db.add(task)
        db.commit()
        db.refresh(task)
        return task

    return _make_task


@pytest.fixture
def make_incident(db):
    def _make_incident(title="Database latency", **fields):
        fields.setdefault("system", "payments")
        fields.setdefault("environment", IncidentEnvironment.PRODUCTION)
        fields.setdefault("tier", IncidentTier.MAJOR)
        fields.setdefault("status", IncidentStatus.OPEN)
        incident = models.Incident(title=title, incident_metadata={}, **fields)
        db.add(incident)
        db.commit()
        db.refresh(incident)
        return incident

    return _make_incident


@pytest.fixture
def auth_headers():
    """Build session headers for a user without going through /login."""

    def _auth_headers(user):
        token = sessions.create_session(user.id, user.username, user.role)
        return {config.SESSION_HEADER: token}

    return _auth_headers
