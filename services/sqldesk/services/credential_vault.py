"""Per-workspace connection credential vault.

Stores the single external database connection profile of a workspace with
the password encrypted at rest, and owns the connection-health state machine:

    unknown ─┐
    connected ├─ test ─▶ testing ─▶ connected | failed
    failed  ─┘

Any credential change resets the status to ``unknown``. There is no
terminal state.

Tests for one workspace never interleave. Entering ``testing`` is an atomic
conditional UPDATE, so a second caller sees the row already in ``testing``
and gets BusyError instead of starting another probe. A ``testing`` status is
only reclaimed once it outlives its own probe timeout plus a grace period,
which no live test can do. The probe itself runs outside any database
transaction.
"""

import asyncio
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sqldesk.config import ConnectionTestConfig, settings
from sqldesk.db.integrity import is_unique_violation
from sqldesk.db.models import ConnectionStatus, Environment, utc_now
from sqldesk.errors import BusyError, ConflictError, NotFoundError, ValidationError
from sqldesk.logging_config import get_logger
from sqldesk.services.connection_probe import (
    ConnectionParams,
    ConnectionProbe,
    ProbeResult,
    TcpConnectionProbe,
)
from sqldesk.services.encryption_service import KeyProvider
from sqldesk.services.scoping_guard import WorkspaceScopingGuard

logger = get_logger(__name__)

CANCELLED_OUTCOME = ProbeResult(ok=False, error="Connection test cancelled")


class ConnectionProfile(BaseModel):
    """Connection profile submitted by the workspace.

    ``password`` may be omitted when updating an existing profile to keep the
    stored secret.
    """

    model_config = ConfigDict(extra="forbid")

    host: str = Field(min_length=1, max_length=255)
    port: int = Field(ge=1, le=65535)
    username: str = Field(min_length=1, max_length=255)
    password: str | None = Field(default=None, repr=False)
    database: str = Field(min_length=1, max_length=255)
    connection_timeout: int | None = Field(default=None, gt=0, description="Milliseconds")
    encrypt: bool = False

    @field_validator("host", "username", "database")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class ConnectionProfileView(BaseModel):
    """Stored profile as returned to callers. The password is never included."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    workspace_id: uuid.UUID
    host: str
    port: int
    username: str
    database: str
    connection_timeout: int | None
    encrypt: bool
    connection_status: ConnectionStatus
    last_tested_at: datetime | None
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime
    password_set: bool = True


@dataclass(frozen=True)
class ConnectionTestResult:
    status: ConnectionStatus
    ok: bool
    tested_at: datetime
    latency_ms: float | None = None
    error: str | None = None


def parse_profile(profile: ConnectionProfile | Mapping[str, Any]) -> ConnectionProfile:
    """Coerce caller input into a ConnectionProfile, raising ValidationError."""
    if isinstance(profile, ConnectionProfile):
        return profile
    try:
        return ConnectionProfile.model_validate(dict(profile))
    except pydantic.ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or 'profile'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError("Invalid connection profile", errors) from None


class CredentialVault:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        key_provider: KeyProvider,
        probe: ConnectionProbe | None = None,
        guard: WorkspaceScopingGuard | None = None,
        config: ConnectionTestConfig | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._keys = key_provider
        self._probe = probe or TcpConnectionProbe()
        self._guard = guard or WorkspaceScopingGuard()
        self._config = config or settings.connection_test

    # --- Profile storage ---

    async def upsert_connection(
        self,
        workspace_id: uuid.UUID,
        profile: ConnectionProfile | Mapping[str, Any],
        actor: str | None,
    ) -> ConnectionProfileView:
        """Create the workspace's profile, or replace its fields in place."""
        profile = parse_profile(profile)

        async with self._session_factory() as db, db.begin():
            env = await self._find(db, workspace_id, for_update=True)
            if env is None:
                env = await self._create(db, workspace_id, profile, actor)
                created = True
            else:
                self._replace(env, profile, actor)
                await db.flush()
                created = False
            view = ConnectionProfileView.model_validate(env)

        logger.info(
            "Connection profile created" if created else "Connection profile updated",
            workspace_id=str(workspace_id),
            host=view.host,
            database=view.database,
            status=view.connection_status.value,
        )
        return view

    async def _create(
        self,
        db: AsyncSession,
        workspace_id: uuid.UUID,
        profile: ConnectionProfile,
        actor: str | None,
    ) -> Environment:
        if not profile.password:
            raise ValidationError("A password is required when creating a connection profile")
        await self._guard.assert_workspace_exists(db, workspace_id)
        await self._guard.assert_single_environment(db, workspace_id)

        env = Environment(
            workspace_id=workspace_id,
            host=profile.host,
            port=profile.port,
            username=profile.username,
            password=self._keys.encrypt(profile.password),
            database=profile.database,
            connection_timeout=profile.connection_timeout,
            encrypt=profile.encrypt,
            connection_status=ConnectionStatus.UNKNOWN.value,
            created_by=actor,
            updated_by=actor,
        )
        db.add(env)
        try:
            await db.flush()
        except IntegrityError as e:
            if is_unique_violation(e, "uq_environments_workspace_id", "environments"):
                raise ConflictError(
                    "Environment configuration already exists for this workspace"
                ) from e
            raise
        return env

    def _replace(self, env: Environment, profile: ConnectionProfile, actor: str | None) -> None:
        credentials_changed = (
            env.host != profile.host
            or env.port != profile.port
            or env.username != profile.username
            or env.database != profile.database
            or env.encrypt != profile.encrypt
        )
        if profile.password is not None and self._keys.decrypt(env.password) != profile.password:
            env.password = self._keys.encrypt(profile.password)
            credentials_changed = True

        env.host = profile.host
        env.port = profile.port
        env.username = profile.username
        env.database = profile.database
        env.encrypt = profile.encrypt
        env.connection_timeout = profile.connection_timeout
        env.updated_by = actor
        env.updated_at = utc_now()

        if credentials_changed:
            env.connection_status = ConnectionStatus.UNKNOWN.value
            env.last_tested_at = None
            env.test_started_at = None

    async def get_connection(self, workspace_id: uuid.UUID) -> ConnectionProfileView:
        async with self._session_factory() as db:
            env = await self._find(db, workspace_id)
            if env is None:
                raise NotFoundError("Environment", workspace_id)
            return ConnectionProfileView.model_validate(env)

    async def delete_connection(self, workspace_id: uuid.UUID) -> None:
        async with self._session_factory() as db, db.begin():
            env = await self._find(db, workspace_id)
            if env is None:
                raise NotFoundError("Environment", workspace_id)
            await db.delete(env)
        logger.info("Connection profile deleted", workspace_id=str(workspace_id))

    # --- Health testing ---

    async def test_connection(
        self, workspace_id: uuid.UUID, actor: str | None = None
    ) -> ConnectionTestResult:
        """Probe the stored profile and record the outcome.

        Raises BusyError if a test for this workspace is already running and
        NotFoundError if the workspace has no profile. Probe failures,
        exceptions and timeouts are outcomes (status ``failed``), not errors.

        Once the ``testing`` claim may have committed, a cancelled caller still
        leaves a recorded outcome behind, so the workspace never stays in
        ``testing`` until the stale window runs out.
        """
        claim = asyncio.ensure_future(self._begin_test(workspace_id))
        try:
            started_at, params = await asyncio.shield(claim)
        except asyncio.CancelledError:
            await asyncio.shield(self._abandon_claim(workspace_id, claim))
            raise
        logger.info("Connection test started", workspace_id=str(workspace_id), actor=actor)

        try:
            outcome = await self._run_probe(workspace_id, params)
        except asyncio.CancelledError:
            await asyncio.shield(
                self._record_outcome(workspace_id, started_at, CANCELLED_OUTCOME)
            )
            raise

        record = asyncio.ensure_future(self._record_outcome(workspace_id, started_at, outcome))
        try:
            return await asyncio.shield(record)
        except asyncio.CancelledError:
            await asyncio.shield(record)
            raise

    async def _begin_test(self, workspace_id: uuid.UUID) -> tuple[datetime, ConnectionParams]:
        now = utc_now()

        async with self._session_factory() as db:
            current = (
                await db.execute(
                    select(
                        Environment.connection_status,
                        Environment.test_started_at,
                        Environment.connection_timeout,
                    ).where(Environment.workspace_id == workspace_id)
                )
            ).one_or_none()
        if current is None:
            raise NotFoundError("Environment", workspace_id)

        claimable = [
            Environment.connection_status != ConnectionStatus.TESTING.value,
            Environment.test_started_at.is_(None),
        ]
        if (
            current.connection_status == ConnectionStatus.TESTING.value
            and current.test_started_at is not None
            and self._is_stale(current.test_started_at, current.connection_timeout, now)
        ):
            # Reclaim only the abandoned test we looked at, not a newer one
            claimable.append(Environment.test_started_at == current.test_started_at)

        async with self._session_factory() as db, db.begin():
            result = await db.execute(
                update(Environment)
                .where(Environment.workspace_id == workspace_id, or_(*claimable))
                .values(connection_status=ConnectionStatus.TESTING.value, test_started_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                if await self._find(db, workspace_id) is None:
                    raise NotFoundError("Environment", workspace_id)
                raise BusyError(workspace_id)

            env = await self._find(db, workspace_id)
            params = self._to_params(env)

        return now, params

    async def _abandon_claim(self, workspace_id: uuid.UUID, claim: asyncio.Future) -> None:
        """Release a ``testing`` claim whose caller was cancelled before probing."""
        try:
            started_at, _ = await claim
        except (BusyError, NotFoundError):
            return
        await self._record_outcome(workspace_id, started_at, CANCELLED_OUTCOME)

    def _probe_timeout(self, connection_timeout: int | None) -> float:
        if connection_timeout:
            return connection_timeout / 1000
        return self._config.default_timeout_seconds

    def _is_stale(
        self, started_at: datetime, connection_timeout: int | None, now: datetime
    ) -> bool:
        """True once a test has outlived its own probe timeout plus the stale grace."""
        if started_at.tzinfo is None:
            # SQLite hands back naive UTC
            started_at = started_at.replace(tzinfo=UTC)
        window = self._probe_timeout(connection_timeout) + self._config.stale_after_seconds
        return now - started_at > timedelta(seconds=window)

    async def _run_probe(self, workspace_id: uuid.UUID, params: ConnectionParams) -> ProbeResult:
        timeout = self._probe_timeout(params.connection_timeout)
        try:
            return await asyncio.wait_for(self._probe.probe(params, timeout), timeout=timeout)
        except TimeoutError:
            return ProbeResult(ok=False, error=f"Connection test timed out after {timeout:g}s")
        except Exception as e:
            # A probe that blows up is a failed test, reported to the caller
            logger.warning(
                "Connection probe raised",
                workspace_id=str(workspace_id),
                error=str(e),
            )
            return ProbeResult(ok=False, error=str(e) or e.__class__.__name__)

    async def _record_outcome(
        self, workspace_id: uuid.UUID, started_at: datetime, outcome: ProbeResult
    ) -> ConnectionTestResult:
        tested_at = utc_now()
        status = ConnectionStatus.CONNECTED if outcome.ok else ConnectionStatus.FAILED

        async with self._session_factory() as db, db.begin():
            result = await db.execute(
                update(Environment)
                .where(
                    Environment.workspace_id == workspace_id,
                    Environment.connection_status == ConnectionStatus.TESTING.value,
                    Environment.test_started_at == started_at,
                )
                .values(
                    connection_status=status.value,
                    last_tested_at=tested_at,
                    test_started_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # Profile changed, was deleted, or the test was reclaimed as stale
                current = await db.scalar(
                    select(Environment.connection_status).where(
                        Environment.workspace_id == workspace_id
                    )
                )
                logger.warning(
                    "Connection test result discarded",
                    workspace_id=str(workspace_id),
                    probe_ok=outcome.ok,
                    current_status=current,
                )
                status = ConnectionStatus(current) if current else ConnectionStatus.UNKNOWN

        logger.info(
            "Connection test finished",
            workspace_id=str(workspace_id),
            status=status.value,
            latency_ms=outcome.latency_ms,
            error=outcome.error,
        )
        return ConnectionTestResult(
            status=status,
            ok=outcome.ok,
            tested_at=tested_at,
            latency_ms=outcome.latency_ms,
            error=outcome.error,
        )

    # --- Execution hand-off ---

    async def resolve_for_execution(self, workspace_id: uuid.UUID) -> ConnectionParams:
        """Decrypted parameters for the internal execution path only."""
        async with self._session_factory() as db:
            env = await self._find(db, workspace_id)
            if env is None:
                raise NotFoundError("Environment", workspace_id)
            return self._to_params(env)

    # --- Helpers ---

    async def _find(
        self, db: AsyncSession, workspace_id: uuid.UUID, for_update: bool = False
    ) -> Environment | None:
        query = select(Environment).where(Environment.workspace_id == workspace_id)
        if for_update:
            query = query.with_for_update()
        return await db.scalar(query)

    def _to_params(self, env: Environment) -> ConnectionParams:
        return ConnectionParams(
            host=env.host,
            port=env.port,
            username=env.username,
            password=self._keys.decrypt(env.password),
            database=env.database,
            encrypt=env.encrypt,
            connection_timeout=env.connection_timeout,
        )
