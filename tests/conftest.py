"""Shared fixtures: an isolated SQLite database, a fake completion client
and an authenticated test client for the FastAPI app.
"""

import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sse_starlette import sse

from api import security
from api.main import app
from db.init_db import init_db
from db.models import Chat, Message, User
from db.session import get_db, get_session_factory
from llm.client import StreamHandle, UpstreamError, get_client_factory


class FakeCompletionClient:
    """Stands in for the upstream service.

    ``fragments`` are yielded in order; ``fail_after`` raises after that many
    fragments; ``open_error`` raises before the first one.
    """

    def __init__(self, fragments=None, fail_after: Optional[int] = None,
                 open_error: Optional[Exception] = None, reply: str = ""):
        self.fragments = list(fragments or [])
        self.fail_after = fail_after
        self.open_error = open_error
        self.reply = reply
        self.calls: List[list] = []
        self.handles: List[StreamHandle] = []

    def _chunks(self) -> Iterator[str]:
        if self.open_error is not None:
            raise self.open_error
        for i, frag in enumerate(self.fragments):
            if self.fail_after is not None and i == self.fail_after:
                raise RuntimeError("upstream connection reset")
            yield frag
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise RuntimeError("upstream connection reset")

    def stream(self, messages):
        self.calls.append(messages)
        handle = StreamHandle(self._chunks())
        self.handles.append(handle)
        return handle

    def complete(self, messages):
        self.calls.append(messages)
        if self.open_error is not None:
            raise UpstreamError(str(self.open_error))
        return self.reply


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("OLLAMA_API_KEY", "test-ollama-key")
    monkeypatch.setattr(security, "API_KEY", "test-api-key")


@pytest.fixture(autouse=True)
def _reset_sse_app_status():
    # sse-starlette keeps a process-wide exit event bound to the first loop
    app_status = getattr(sse, "AppStatus", None)
    if app_status is not None:
        app_status.should_exit_event = None
    yield


@pytest.fixture
def session_factory(tmp_path: Path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False}
    )
    init_db(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def fake_llm() -> FakeCompletionClient:
    return FakeCompletionClient(fragments=["Hi there!"])


@pytest.fixture
def client(session_factory, fake_llm):
    def _get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_client_factory] = lambda: (lambda: fake_llm)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def user(db) -> User:
    u = User(
        id=str(uuid.uuid4()),
        first_name="Ada",
        last_name="Lovelace",
        email=f"ada-{uuid.uuid4().hex[:8]}@example.com",
        password_hash=security.hash_password("correct horse"),
    )
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


def auth_headers(user_id: str) -> dict:
    token = security.generate_token(user_id, timedelta(minutes=5))
    return {"X-API-Key": "test-api-key", "Authorization": f"Bearer {token}"}


@pytest.fixture
def headers(user) -> dict:
    return auth_headers(user.id)


def make_chat(db, user_id: str, chat_id: Optional[str] = None, title: str = "New Chat") -> Chat:
    chat = Chat(id=chat_id or str(uuid.uuid4()), user_id=user_id, title=title)
    db.add(chat)
    db.commit()
    db.refresh(chat)
    return chat


def add_messages(db, chat_id: str, n: int, start: Optional[datetime] = None) -> List[Message]:
    """Insert ``n`` alternating user/assistant messages one second apart."""
    start = start or datetime(2024, 1, 1, 12, 0, 0)
    out = []
    for i in range(n):
        m = Message(
            chat_id=chat_id,
            role="user" if i % 2 == 0 else "assistant",
            content=f"msg {i}",
            created_at=start + timedelta(seconds=i),
        )
        db.add(m)
        out.append(m)
    db.commit()
    return out


def parse_sse(text: str) -> List[tuple]:
    """Return ``(event, data)`` pairs from an SSE body, skipping comments."""
    events = []
    for block in text.replace("\r\n", "\n").split("\n\n"):
        event, data = None, []
        for line in block.split("\n"):
            if line.startswith("event:"):
                event = line[len("event:"):].strip()
            elif line.startswith("data:"):
                data.append(line[len("data:"):].lstrip(" "))
        if event is not None or data:
            events.append((event or "message", "\n".join(data)))
    return events
