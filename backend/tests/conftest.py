# backend/tests/conftest.py
import os

# Keep imports of vasa.database away from the developer's sqlite file
os.environ.setdefault("DATABASE_URL", "sqlite://")

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import vasa.models  # noqa: F401
from vasa.database import Base, get_db
from vasa.dependencies import get_elevenlabs, get_mem0, get_openai, get_turn_writer
from vasa.main import app
from vasa.services.memory_store import MemoryStore
from vasa.services.turn_writer import TurnWriter
from vasa.utils.rate_limit import limiter


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def store(db_session):
    return MemoryStore(db_session)


@pytest.fixture
def services():
    mem0 = Mock()
    mem0.configured = True
    mem0.add = AsyncMock(return_value={"results": []})
    mem0.search = AsyncMock(return_value=[])
    mem0.get_all = AsyncMock(return_value=[])
    mem0.delete_all = AsyncMock(return_value={})

    openai = Mock()
    openai.configured = True
    openai.generate_contextual_response = AsyncMock(return_value="I remember you mentioned your garden.")

    elevenlabs = Mock()
    elevenlabs.agent_id = "agent_test"
    elevenlabs.webhook_security_enabled = False
    elevenlabs.get_signed_url = AsyncMock(return_value=None)

    return SimpleNamespace(
        mem0=mem0,
        openai=openai,
        elevenlabs=elevenlabs,
        turn_writer=TurnWriter(retry_delay=0),
    )


@pytest.fixture
def client(db_session, services):
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_mem0] = lambda: services.mem0
    app.dependency_overrides[get_openai] = lambda: services.openai
    app.dependency_overrides[get_elevenlabs] = lambda: services.elevenlabs
    app.dependency_overrides[get_turn_writer] = lambda: services.turn_writer
    limiter.enabled = False
    try:
        yield TestClient(app)
    finally:
        limiter.enabled = True
        app.dependency_overrides.clear()
