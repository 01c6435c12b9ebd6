"""
Top-level test configuration for SQLDesk.

Behavioural tests run against a throwaway SQLite database (aiosqlite) built
from the model metadata. A file in tmp_path is used rather than :memory:,
since every pooled connection to :memory: would see a separate database.
"""

import asyncio
import os
import uuid
from collections.abc import AsyncGenerator

# Ensure test-friendly defaults
os.environ.setdefault("SQLDESK_JSON_LOGS", "false")
os.environ.setdefault("SQLDESK_LOG_LEVEL", "DEBUG")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402

from sqldesk.config import ConnectionTestConfig  # noqa: E402
from sqldesk.db.models import Base, Workspace  # noqa: E402
from sqldesk.db.session import build_session_factory, create_engine  # noqa: E402
from sqldesk.services.connection_probe import ConnectionParams, ProbeResult  # noqa: E402
from sqldesk.services.credential_vault import CredentialVault  # noqa: E402
from sqldesk.services.encryption_service import FernetKeyProvider, generate_key  # noqa: E402
from sqldesk.services.procedure_service import ProcedureLifecycle  # noqa: E402
from sqldesk.services.template_service import TemplateCatalog  # noqa: E402

PROFILE = {
    "host": "db.internal",
    "port": 1433,
    "username": "app",
    "password": "s3cret-pw",
    "database": "sales",
    "encrypt": True,
}


class FakeProbe:
    """Scriptable ConnectionProbe.

    Returns ``result`` (or raises ``error``). When ``gate`` is set the probe
    blocks until the test releases it, which lets tests act mid-probe.
    ``gate_host`` limits the gate to one target host.
    """

    def __init__(self) -> None:
        self.result = ProbeResult(ok=True, latency_ms=1.5)
        self.error: Exception | None = None
        self.delay: float = 0
        self.gate: asyncio.Event | None = None
        self.gate_host: str | None = None
        self.started = asyncio.Event()
        self.calls: list[tuple[ConnectionParams, float]] = []

    async def probe(self, params: ConnectionParams, timeout: float) -> ProbeResult:
        self.calls.append((params, timeout))
        self.started.set()
        if self.gate is not None and self.gate_host in (None, params.host):
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine]:
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'sqldesk.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


async def _create_workspace(session_factory, name: str) -> uuid.UUID:
    async with session_factory() as db, db.begin():
        workspace = Workspace(name=name)
        db.add(workspace)
        await db.flush()
        return workspace.id


@pytest.fixture
def make_workspace(session_factory):
    async def _make(name: str = "ws") -> uuid.UUID:
        return await _create_workspace(session_factory, name)

    return _make


@pytest_asyncio.fixture
async def workspace_id(session_factory) -> uuid.UUID:
    return await _create_workspace(session_factory, "primary")


@pytest_asyncio.fixture
async def other_workspace_id(session_factory) -> uuid.UUID:
    return await _create_workspace(session_factory, "other")


@pytest.fixture
def profile() -> dict:
    return dict(PROFILE)


@pytest.fixture
def key_provider() -> FernetKeyProvider:
    return FernetKeyProvider(generate_key())


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def vault(session_factory, key_provider, probe) -> CredentialVault:
    return CredentialVault(
        session_factory,
        key_provider,
        probe=probe,
        config=ConnectionTestConfig(default_timeout_seconds=2.0, stale_after_seconds=300),
    )


@pytest.fixture
def lifecycle(session_factory, vault) -> ProcedureLifecycle:
    return ProcedureLifecycle(session_factory, vault=vault, max_publish_retries=3)


@pytest.fixture
def catalog(session_factory) -> TemplateCatalog:
    return TemplateCatalog(session_factory)
