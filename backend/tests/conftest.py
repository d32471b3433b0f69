"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Callable, Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app import database
from app.core.security import create_access_token
from app.database import get_db
from app.main import app
from app.models import Base, Conversation, ConversationMember, MemberRole, User
from app.services.cache import get_cache


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_unread_cache() -> Iterator[None]:
    cache = get_cache()
    cache.clear()
    yield
    cache.clear()


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine, monkeypatch) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine.

    Websocket handlers and event handlers open their own sessions through
    ``app.database.SessionLocal``, so it is pointed at the test engine too.
    """

    factory = sessionmaker(bind=test_engine, autoflush=False, future=True)
    monkeypatch.setattr(database, "SessionLocal", factory)
    return factory


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the database dependency overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(db_session) -> Callable[..., User]:
    def factory(username: str, *, full_name: str | None = None, is_online: bool = False) -> User:
        user = User(username=username, full_name=full_name, is_online=is_online)
        db_session.add(user)
        db_session.commit()
        return user

    return factory


@pytest.fixture()
def make_conversation(db_session) -> Callable[..., Conversation]:
    def factory(*members: User, title: str | None = None, is_group: bool | None = None) -> Conversation:
        if is_group is None:
            is_group = len(members) > 2
        conversation = Conversation(title=title, is_group=is_group, creator_id=members[0].id)
        db_session.add(conversation)
        db_session.flush()
        for member in members:
            role = MemberRole.ADMIN if member is members[0] else MemberRole.MEMBER
            db_session.add(ConversationMember(conversation_id=conversation.id, user_id=member.id, role=role))
        db_session.commit()
        return conversation

    return factory


@pytest.fixture()
def auth_headers() -> Callable[[User], dict[str, str]]:
    def factory(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}

    return factory
