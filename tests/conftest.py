import asyncio
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def setup_test_db(tmp_path: Path, monkeypatch):
    from collabtable.config import config

    # Override paths to use testing files
    db_file = tmp_path / "server.db"
    monkeypatch.delenv("DB_PATH", raising=False)
    monkeypatch.delenv("SERVER_PASSWORD", raising=False)
    config._config["database"]["path"] = str(db_file)
    config._config["server"]["password"] = None

    yield db_file


@pytest.fixture
async def init_database(setup_test_db):
    from collabtable import db

    await db.init_db()
    yield


@pytest.fixture
def server_db(setup_test_db):
    """Initialise the server database for synchronous tests."""
    from collabtable import db

    asyncio.run(db.init_db())
    return setup_test_db


@pytest.fixture
async def async_client(init_database):
    from collabtable.api import app
    from httpx import AsyncClient, ASGITransport

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def password(monkeypatch):
    monkeypatch.setenv("SERVER_PASSWORD", "secret")
    return "secret"


@pytest.fixture
async def replica(tmp_path: Path):
    from collabtable.replica import Replica

    r = await Replica.open(tmp_path / "replica-a.db")
    yield r
    await r.close()


class ManualClock:
    """Clock source whose time only moves when a test says so."""

    def __init__(self, start: int = 1_000):
        self.current = start

    def __call__(self) -> int:
        return self.current


@pytest.fixture
async def clocked(tmp_path: Path):
    from collabtable.clock import Clock
    from collabtable.replica import Replica

    source = ManualClock()
    r = await Replica.open(tmp_path / "clocked.db", clock=Clock(source))
    yield r, source
    await r.close()


@pytest.fixture
async def other_replica(tmp_path: Path):
    from collabtable.replica import Replica

    r = await Replica.open(tmp_path / "replica-b.db")
    yield r
    await r.close()


@pytest.fixture
async def http_transport(init_database):
    """HttpSyncTransport wired straight into the ASGI app."""
    from collabtable.api import app
    from collabtable.transport import HttpSyncTransport
    from httpx import AsyncClient, ASGITransport

    def build(device_id: str | None = None, password: str | None = None):
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
        transport = HttpSyncTransport("http://test", password=password, device_id=device_id, client=client)
        built.append(transport)
        return transport

    built = []
    yield build
    for transport in built:
        await transport.close()
