"""Shared test fixtures."""
import json
from typing import Dict, List, Optional

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from jobtracker.models.outbox import OutboxItem  # noqa: F401
from jobtracker.models.records import SYNCABLE_TABLES, Application, Company, Contact, Reminder  # noqa: F401
from jobtracker.models.settings import UserSetting  # noqa: F401
from jobtracker.models.sync import SyncLog  # noqa: F401

from jobtracker.cloud.auth import AuthSession, RefreshResult
from jobtracker.config import Settings
from jobtracker.context import build_context
from jobtracker.db.migrations import run_migrations

API_BASE = "https://sync.test/api"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    run_migrations(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine):
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


# ─── Fake collaborators ───────────────────────────────────────────────────────

class FakeAuth:
    """AuthProvider double: a fixed token that refresh swaps for a new one."""

    def __init__(self, token: Optional[str] = "token-1"):
        self.token = token
        self.refresh_ok = True
        self.refresh_calls = 0

    def is_authenticated(self) -> bool:
        return self.token is not None

    def get_access_token(self) -> Optional[str]:
        return self.token

    async def refresh_session(self) -> RefreshResult:
        self.refresh_calls += 1
        if not self.refresh_ok:
            return RefreshResult(session=None, error="refresh token revoked")
        self.token = f"token-{self.refresh_calls + 1}"
        return RefreshResult(session=AuthSession(access_token=self.token, refresh_token="r"))


class FakeRemote:
    """
    In-process stand-in for the sync API, served through httpx.MockTransport.

    Records every request. Creates are de-duplicated by Idempotency-Key the
    way the real API does (409 on replay).
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.auth_headers: List[Optional[str]] = []  # Authorization as received
        self.pull_responses: Dict[str, list] = {t: [] for t in SYNCABLE_TABLES}
        self.stored: Dict[str, dict] = {}  # cloud id -> last pushed body
        self.idempotency_keys: Dict[str, str] = {}  # key -> cloud id
        self.deleted: List[str] = []
        self.reachable = True
        self.health_status = 200
        self.status_overrides: Dict[str, int] = {}  # "METHOD /path" -> status
        self.valid_tokens = None  # set of accepted bearer tokens; None accepts all
        self._next_id = 1

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.auth_headers.append(request.headers.get("Authorization"))
        if not self.reachable:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path[len("/api"):]
        override = self.status_overrides.get(f"{request.method} {path}")
        if override is not None:
            return httpx.Response(override, json={"error": "simulated failure"})

        # Health is public; everything else checks the bearer token
        if path == "/health":
            return httpx.Response(self.health_status, json={"status": "ok"})

        if self.valid_tokens is not None:
            token = request.headers.get("Authorization", "").removeprefix("Bearer ")
            if token not in self.valid_tokens:
                return httpx.Response(401, json={"error": "invalid token"})

        parts = path.strip("/").split("/")
        table = parts[0]
        if request.method == "GET":
            return httpx.Response(200, json=self.pull_responses.get(table, []))
        if request.method == "POST":
            key = request.headers.get("Idempotency-Key")
            if key in self.idempotency_keys:
                return httpx.Response(409, json={"error": "duplicate"})
            cloud_id = f"{table}-cloud-{self._next_id}"
            self._next_id += 1
            self.stored[cloud_id] = json.loads(request.content)
            if key:
                self.idempotency_keys[key] = cloud_id
            return httpx.Response(201, json={"id": cloud_id})
        if request.method == "PUT":
            return httpx.Response(200, json={"ok": True})
        if request.method == "DELETE":
            self.deleted.append(path)
            return httpx.Response(204)
        return httpx.Response(405)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and r.url.path == f"/api{path}"
        ]


@pytest.fixture(name="remote")
def remote_fixture() -> FakeRemote:
    return FakeRemote()


@pytest.fixture(name="auth")
def auth_fixture() -> FakeAuth:
    return FakeAuth()


@pytest.fixture(name="settings")
def settings_fixture(tmp_path) -> Settings:
    return Settings(
        api_base_url=API_BASE,
        database_url="sqlite://",
        session_dir=tmp_path / "session",
        request_timeout_seconds=5.0,
    )


@pytest.fixture(name="context")
def context_fixture(settings, engine, auth, remote):
    """Fully wired sync engine talking to FakeRemote."""
    return build_context(
        settings,
        engine=engine,
        auth=auth,
        transport=httpx.MockTransport(remote.handler),
    )
