"""Stored procedure lifecycle: drafts, publishing and version history.

A procedure always has an editable draft. Publishing snapshots the draft
into the version ledger and makes it the active published body; the ledger
append and the procedure update commit as one transaction.

Drafts are kept inline on the procedure row and are not journaled, so the
ledger holds publish events only.
"""

import asyncio
import uuid
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sqldesk.config import settings
from sqldesk.db.integrity import is_unique_violation
from sqldesk.db.models import (
    ProcedureStatus,
    StoredProcedure,
    StoredProcedureVersion,
    VersionSource,
    utc_now,
)
from sqldesk.errors import ConflictError, NotFoundError, ValidationError
from sqldesk.logging_config import get_logger
from sqldesk.services import version_ledger
from sqldesk.services.connection_probe import ConnectionParams
from sqldesk.services.credential_vault import CredentialVault
from sqldesk.services.keyed_lock import KeyedLock
from sqldesk.services.scoping_guard import WorkspaceScopingGuard

logger = get_logger(__name__)

MAX_NAME_LENGTH = 255


@dataclass
class PublishResult:
    procedure: StoredProcedure
    version: StoredProcedureVersion


@dataclass(frozen=True)
class ProcedureStats:
    total: int
    draft: int
    published: int


@dataclass(frozen=True)
class ExecutionHandoff:
    """What the external execution collaborator needs to run a procedure."""

    procedure_id: uuid.UUID
    name: str
    sql_text: str
    version: int | None  # None when running the unpublished draft
    connection: ConnectionParams


def _clean_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Procedure name must not be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Procedure name must be at most {MAX_NAME_LENGTH} characters")
    return name


class ProcedureLifecycle:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        guard: WorkspaceScopingGuard | None = None,
        vault: CredentialVault | None = None,
        max_publish_retries: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._guard = guard or WorkspaceScopingGuard()
        self._vault = vault
        self._max_retries = (
            settings.publish.max_retries if max_publish_retries is None else max_publish_retries
        )
        self._publish_locks = KeyedLock()

    # --- Reads ---

    async def get(self, workspace_id: uuid.UUID, procedure_id: uuid.UUID) -> StoredProcedure:
        async with self._session_factory() as db:
            return await self._load(db, workspace_id, procedure_id)

    async def list_procedures(self, workspace_id: uuid.UUID) -> list[StoredProcedure]:
        """All procedures in a workspace, most recently edited first."""
        async with self._session_factory() as db:
            result = await db.scalars(
                select(StoredProcedure)
                .where(StoredProcedure.workspace_id == workspace_id)
                .order_by(StoredProcedure.updated_at.desc(), StoredProcedure.name)
            )
            return list(result.all())

    async def stats(self, workspace_id: uuid.UUID) -> ProcedureStats:
        """Procedure counts for a workspace, split by status."""
        async with self._session_factory() as db:
            rows = await db.execute(
                select(StoredProcedure.status, func.count())
                .where(StoredProcedure.workspace_id == workspace_id)
                .group_by(StoredProcedure.status)
            )
            counts = dict(rows.all())

        draft = counts.get(ProcedureStatus.DRAFT.value, 0)
        published = counts.get(ProcedureStatus.PUBLISHED.value, 0)
        return ProcedureStats(total=draft + published, draft=draft, published=published)

    async def history(
        self,
        workspace_id: uuid.UUID,
        procedure_id: uuid.UUID,
        source: VersionSource | None = None,
    ) -> version_ledger.LedgerHistory:
        await self.get(workspace_id, procedure_id)
        return version_ledger.history(self._session_factory, procedure_id, source=source)

    async def latest(
        self,
        workspace_id: uuid.UUID,
        procedure_id: uuid.UUID,
        source: VersionSource | None = None,
    ) -> StoredProcedureVersion:
        async with self._session_factory() as db:
            await self._load(db, workspace_id, procedure_id)
            return await version_ledger.latest(db, procedure_id, source)

    async def get_version(
        self, workspace_id: uuid.UUID, procedure_id: uuid.UUID, version: int
    ) -> StoredProcedureVersion:
        async with self._session_factory() as db:
            await self._load(db, workspace_id, procedure_id)
            return await version_ledger.get_version(db, procedure_id, version)

    # --- Writes ---

    async def create(
        self,
        workspace_id: uuid.UUID,
        name: str,
        sql_draft: str,
        actor: str,
    ) -> StoredProcedure:
        """Create a draft procedure. No ledger entry is written."""
        name = _clean_name(name)

        async with self._session_factory() as db, db.begin():
            await self._guard.assert_workspace_exists(db, workspace_id)
            await self._guard.assert_unique_name(db, workspace_id, name)
            procedure = StoredProcedure(
                workspace_id=workspace_id,
                name=name,
                status=ProcedureStatus.DRAFT.value,
                sql_draft=sql_draft or "",
                sql_published=None,
                published_at=None,
                created_by=actor,
            )
            db.add(procedure)
            await self._flush_named(db, name)

        logger.info(
            "Stored procedure created",
            procedure_id=str(procedure.id),
            workspace_id=str(workspace_id),
            name=name,
            actor=actor,
        )
        return procedure

    async def duplicate(
        self,
        workspace_id: uuid.UUID,
        procedure_id: uuid.UUID,
        new_name: str,
        actor: str,
    ) -> StoredProcedure:
        """Copy a procedure's draft under a new name. The copy always starts as a draft."""
        new_name = _clean_name(new_name)

        async with self._session_factory() as db, db.begin():
            source = await self._load(db, workspace_id, procedure_id)
            await self._guard.assert_unique_name(db, workspace_id, new_name)
            procedure = StoredProcedure(
                workspace_id=workspace_id,
                name=new_name,
                status=ProcedureStatus.DRAFT.value,
                sql_draft=source.sql_draft,
                sql_published=None,
                published_at=None,
                created_by=actor,
            )
            db.add(procedure)
            await self._flush_named(db, new_name)

        logger.info(
            "Stored procedure duplicated",
            procedure_id=str(procedure.id),
            source_procedure_id=str(procedure_id),
            workspace_id=str(workspace_id),
            name=new_name,
            actor=actor,
        )
        return procedure

    async def update_draft(
        self,
        workspace_id: uuid.UUID,
        procedure_id: uuid.UUID,
        sql_draft: str,
        actor: str,
    ) -> StoredProcedure:
        """Replace the draft body. Status and published body are untouched."""
        async with self._session_factory() as db, db.begin():
            procedure = await self._load(db, workspace_id, procedure_id, for_update=True)
            procedure.sql_draft = sql_draft or ""
            procedure.updated_at = utc_now()
            await db.flush()

        logger.debug("Draft updated", procedure_id=str(procedure_id), actor=actor)
        return procedure

    async def publish(
        self,
        workspace_id: uuid.UUID,
        procedure_id: uuid.UUID,
        actor: str,
    ) -> PublishResult:
        """Snapshot the draft as the next published version.

        Publishes of the same procedure are serialized. A version race that
        still slips through (another process) rolls back and is retried up
        to ``publish.max_retries`` times before ConflictError is surfaced.
        Once an attempt has started it runs to completion even if the caller
        is cancelled, and the procedure stays locked until it has.
        """
        async with self._publish_locks.hold(procedure_id):
            attempt = 0
            while True:
                try:
                    result = await self._shielded_attempt(workspace_id, procedure_id, actor)
                except ConflictError:
                    attempt += 1
                    if attempt > self._max_retries:
                        logger.warning(
                            "Publish abandoned after repeated version races",
                            procedure_id=str(procedure_id),
                            attempts=attempt,
                        )
                        raise
                    logger.info(
                        "Retrying publish after version race",
                        procedure_id=str(procedure_id),
                        attempt=attempt,
                    )
                    continue
                break

        logger.info(
            "Stored procedure published",
            procedure_id=str(procedure_id),
            workspace_id=str(workspace_id),
            version=result.version.version,
            actor=actor,
        )
        return result

    async def _shielded_attempt(
        self,
        workspace_id: uuid.UUID,
        procedure_id: uuid.UUID,
        actor: str,
    ) -> PublishResult:
        task = asyncio.ensure_future(self._publish_once(workspace_id, procedure_id, actor))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # Hold the procedure lock until the attempt lands, then let the cancellation through
            await asyncio.wait([task])
            if not task.cancelled() and task.exception() is not None:
                logger.warning(
                    "Publish attempt of a cancelled caller failed",
                    procedure_id=str(procedure_id),
                    error=str(task.exception()),
                )
            raise

    async def _publish_once(
        self,
        workspace_id: uuid.UUID,
        procedure_id: uuid.UUID,
        actor: str,
    ) -> PublishResult:
        async with self._session_factory() as db, db.begin():
            procedure = await self._load(db, workspace_id, procedure_id, for_update=True)
            if not procedure.sql_draft.strip():
                raise ValidationError("Cannot publish an empty SQL body")

            entry = await version_ledger.append(
                db,
                procedure_id=procedure.id,
                workspace_id=procedure.workspace_id,
                source=VersionSource.PUBLISHED,
                name=procedure.name,
                sql_text=procedure.sql_draft,
                actor=actor,
            )
            procedure.sql_published = procedure.sql_draft
            procedure.published_at = entry.created_at
            procedure.status = ProcedureStatus.PUBLISHED.value
            procedure.updated_at = entry.created_at
            await db.flush()

        return PublishResult(procedure=procedure, version=entry)

    async def unpublish(
        self,
        workspace_id: uuid.UUID,
        procedure_id: uuid.UUID,
        actor: str,
    ) -> StoredProcedure:
        """Take a procedure back to draft.

        The published body and timestamp are cleared together. The ledger
        keeps its history, so a later publish continues the numbering.
        """
        async with self._publish_locks.hold(procedure_id):
            async with self._session_factory() as db, db.begin():
                procedure = await self._load(db, workspace_id, procedure_id, for_update=True)
                if procedure.status != ProcedureStatus.PUBLISHED.value:
                    raise ValidationError(f'Procedure "{procedure.name}" is not published')
                procedure.status = ProcedureStatus.DRAFT.value
                procedure.sql_published = None
                procedure.published_at = None
                procedure.updated_at = utc_now()
                await db.flush()

        logger.info(
            "Stored procedure unpublished",
            procedure_id=str(procedure_id),
            workspace_id=str(workspace_id),
            actor=actor,
        )
        return procedure

    async def revert_to_version(
        self,
        workspace_id: uuid.UUID,
        procedure_id: uuid.UUID,
        version: int,
        actor: str,
    ) -> StoredProcedure:
        """Copy a historical version's SQL into the draft. Status is unchanged."""
        async with self._session_factory() as db, db.begin():
            procedure = await self._load(db, workspace_id, procedure_id, for_update=True)
            entry = await version_ledger.get_version(db, procedure.id, version)
            procedure.sql_draft = entry.sql_text
            procedure.updated_at = utc_now()
            await db.flush()

        logger.info(
            "Draft reverted to version",
            procedure_id=str(procedure_id),
            version=version,
            actor=actor,
        )
        return procedure

    async def rename(
        self,
        workspace_id: uuid.UUID,
        procedure_id: uuid.UUID,
        new_name: str,
        actor: str,
    ) -> StoredProcedure:
        new_name = _clean_name(new_name)

        async with self._session_factory() as db, db.begin():
            procedure = await self._load(db, workspace_id, procedure_id, for_update=True)
            if procedure.name == new_name:
                return procedure
            await self._guard.assert_unique_name(
                db, workspace_id, new_name, exclude_id=procedure.id
            )
            old_name = procedure.name
            procedure.name = new_name
            procedure.updated_at = utc_now()
            await self._flush_named(db, new_name)

        logger.info(
            "Stored procedure renamed",
            procedure_id=str(procedure_id),
            old_name=old_name,
            new_name=new_name,
            actor=actor,
        )
        return procedure

    async def delete(self, workspace_id: uuid.UUID, procedure_id: uuid.UUID) -> None:
        """Delete a procedure together with its whole ledger history."""
        async with self._session_factory() as db, db.begin():
            procedure = await self._load(db, workspace_id, procedure_id, for_update=True)
            await db.delete(procedure)

        logger.info(
            "Stored procedure deleted",
            procedure_id=str(procedure_id),
            workspace_id=str(workspace_id),
        )

    # --- Execution hand-off ---

    async def prepare_execution(
        self,
        workspace_id: uuid.UUID,
        procedure_id: uuid.UUID,
        use_draft: bool = False,
    ) -> ExecutionHandoff:
        """Bundle SQL text and decrypted connection for the execution layer.

        By default the published body is used; unpublished procedures raise
        ValidationError unless ``use_draft`` is set.
        """
        if self._vault is None:
            raise RuntimeError("ProcedureLifecycle was built without a CredentialVault")

        async with self._session_factory() as db:
            procedure = await self._load(db, workspace_id, procedure_id)
            if use_draft:
                sql_text, version = procedure.sql_draft, None
            else:
                if procedure.sql_published is None:
                    raise ValidationError(f'Procedure "{procedure.name}" has not been published')
                entry = await version_ledger.latest(db, procedure.id, VersionSource.PUBLISHED)
                sql_text, version = procedure.sql_published, entry.version

        connection = await self._vault.resolve_for_execution(workspace_id)
        return ExecutionHandoff(
            procedure_id=procedure.id,
            name=procedure.name,
            sql_text=sql_text,
            version=version,
            connection=connection,
        )

    # --- Helpers ---

    async def _load(
        self,
        db: AsyncSession,
        workspace_id: uuid.UUID,
        procedure_id: uuid.UUID,
        for_update: bool = False,
    ) -> StoredProcedure:
        query = select(StoredProcedure).where(StoredProcedure.id == procedure_id)
        if for_update:
            query = query.with_for_update()
        procedure = await db.scalar(query)
        if procedure is None:
            raise NotFoundError("Stored procedure", procedure_id)
        self._guard.assert_ownership(
            workspace_id, procedure.workspace_id, "Stored procedure", procedure_id
        )
        return procedure

    async def _flush_named(self, db: AsyncSession, name: str) -> None:
        try:
            await db.flush()
        except IntegrityError as e:
            if is_unique_violation(
                e, "uq_stored_procedures_workspace_name", "stored_procedures"
            ):
                raise ConflictError(
                    f'A stored procedure named "{name}" already exists in this workspace'
                ) from e
            raise
