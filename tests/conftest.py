"""
Pytest fixtures.
A temporary SQLite database per test for the local backend, and a static
in-memory transport (recording calls, optionally gated or failing) for tree tests.
Every test gets a fresh SessionContext, so ledger and state never leak between tests.
"""
import asyncio
import copy
from pathlib import Path
from typing import Any

import pytest

from database_manager import DatabaseManager
from store import AdminStore, AuthorizationScope, SessionContext
from transport import LocalTransport, Result

API_URL = "https://api.test/api/v1"

# Grant scope used by the static routes: client resource 5.
SCOPE = AuthorizationScope.of(client_id=5)


class StaticTransport:
    """Serves fixed payloads keyed "METHOD /path?query"; records calls; can be gated or made to fail."""

    def __init__(self, routes: dict[str, Any]) -> None:
        self.routes = routes
        self.calls: list[str] = []
        self.bodies: list[str | None] = []
        self.failing: set[str] = set()
        self.gate: asyncio.Event | None = None

    async def __call__(self, method: str, url: str, body: str | None = None) -> Result:
        key = f"{method} {url[len(API_URL):]}"
        self.calls.append(key)
        self.bodies.append(body)
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if key in self.failing:
            return Result.failure("Service unavailable", url=url, status=503)
        if key not in self.routes:
            return Result.failure("Not found", url=url, status=404)
        return Result.success(copy.deepcopy(self.routes[key]))

    def count(self, key: str) -> int:
        return self.calls.count(key)


class RecordingTransport:
    """Wraps another transport and records "METHOD /path?query" for every call."""

    def __init__(self, inner) -> None:
        self.inner = inner
        self.calls: list[str] = []

    async def __call__(self, method: str, url: str, body: str | None = None) -> Result:
        self.calls.append(f"{method} {url[len(API_URL):]}")
        return await self.inner(method, url, body)

    def count(self, key: str) -> int:
        return self.calls.count(key)


def acme_globex_routes() -> dict[str, Any]:
    """Two clients (1 Acme, 2 Globex), Alice (10) in Acme, Bob (11) in Globex; Bob authorized."""
    alice = {"id": 10, "email": "alice@acme.test", "contact_name": "Alice", "client_ids": [1]}
    bob = {"id": 11, "email": "bob@globex.test", "contact_name": "Bob", "client_ids": [2]}
    return {
        "GET /clients": [{"id": 1, "name": "Acme"}, {"id": 2, "name": "Globex"}],
        "GET /users": [alice, bob],
        "GET /users?client_id=1": [alice],
        "GET /users?client_id=2": [bob],
        "GET /clients/5/authorized?client_id=1": [{"id": 10, "authorized": False}],
        "GET /clients/5/authorized?client_id=2": [{"id": 11, "authorized": True}],
        "POST /clients/5/authorize": {"resource_type": "clients", "resource_id": 5, "authorized": True},
        "GET /users/10/authorized": [],
        "GET /users/11/authorized": [],
    }


@pytest.fixture
def static_transport() -> StaticTransport:
    return StaticTransport(acme_globex_routes())


@pytest.fixture
def static_store(static_transport: StaticTransport) -> AdminStore:
    """Store over the static Acme/Globex routes."""
    return AdminStore(SessionContext(), static_transport, API_URL)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """A temporary SQLite database path (same path for all managers in a test)."""
    return tmp_path / "test_mercury.db"


@pytest.fixture
def db(db_path: Path, monkeypatch) -> DatabaseManager:
    """Database manager on a fresh SQLite file with tables created."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    dm = DatabaseManager(db_path=db_path)
    dm.init_db()
    return dm


@pytest.fixture
def seeded(db: DatabaseManager) -> dict:
    """
    Acme and Globex; Alice (Acme, authorized on Acme), Bob (Globex, authorized on Globex),
    Carol (Globex, not authorized). Returns the ids by name.
    """
    acme = db.add_client("Acme")
    globex = db.add_client("Globex")
    project = db.add_project(acme.id, "Brand tracker")
    report = db.add_report(project.id, "Q1 wave")
    db.add_scope("admin")
    db.add_scope("billing")
    alice = db.create_user("alice@acme.test", client_id=acme.id, contact_name="Alice")
    bob = db.create_user("bob@globex.test", client_id=globex.id, contact_name="Bob")
    carol = db.create_user("carol@globex.test", client_id=globex.id, authorize=False, contact_name="Carol")
    return {
        "acme": acme.id,
        "globex": globex.id,
        "project": project.id,
        "report": report.id,
        "alice": alice["id"],
        "bob": bob["id"],
        "carol": carol["id"],
    }


@pytest.fixture
def local_transport(db: DatabaseManager, seeded: dict) -> RecordingTransport:
    return RecordingTransport(LocalTransport(db, API_URL))


@pytest.fixture
def local_store(local_transport: RecordingTransport) -> AdminStore:
    """Store over the seeded SQLite backend."""
    return AdminStore(SessionContext(), local_transport, API_URL)
