"""Append-only version ledger for stored procedures.

Every publish is journaled here as an immutable, numbered snapshot. Version
numbers start at 1 and increase by one per procedure with no gaps. They are
assigned here and never supplied by callers.

Functions that write take the caller's session and join its transaction, so
a ledger append commits or rolls back together with the procedure update
that caused it.
"""

import uuid
from collections.abc import AsyncIterator

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sqldesk.db.integrity import is_unique_violation
from sqldesk.db.models import StoredProcedureVersion, VersionSource
from sqldesk.errors import ConflictError, NotFoundError
from sqldesk.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 100


async def append(
    db: AsyncSession,
    procedure_id: uuid.UUID,
    workspace_id: uuid.UUID,
    source: VersionSource,
    name: str,
    sql_text: str,
    actor: str,
) -> StoredProcedureVersion:
    """Append the next version for a procedure.

    The next number is computed as max(version) + 1 within the caller's
    transaction. If a concurrent writer claimed the same number, the unique
    constraint rejects the insert and ConflictError is raised. The caller's
    transaction must then be rolled back; nothing is skipped or overwritten.
    """
    current = await db.scalar(
        select(func.max(StoredProcedureVersion.version)).where(
            StoredProcedureVersion.procedure_id == procedure_id
        )
    )
    next_version = (current or 0) + 1

    entry = StoredProcedureVersion(
        procedure_id=procedure_id,
        workspace_id=workspace_id,
        version=next_version,
        source=source.value,
        name=name,
        sql_text=sql_text,
        created_by=actor,
    )
    db.add(entry)
    try:
        await db.flush()
    except IntegrityError as e:
        if is_unique_violation(e, "uq_stored_procedure_versions", "stored_procedure_versions"):
            logger.warning(
                "Ledger version race",
                procedure_id=str(procedure_id),
                version=next_version,
            )
            raise ConflictError(
                f"Version {next_version} of procedure {procedure_id} was claimed concurrently"
            ) from e
        raise

    logger.info(
        "Ledger entry appended",
        procedure_id=str(procedure_id),
        version=next_version,
        source=entry.source,
    )
    return entry


async def latest(
    db: AsyncSession,
    procedure_id: uuid.UUID,
    source: VersionSource | None = None,
) -> StoredProcedureVersion:
    """Return the highest-version entry, optionally restricted to one source."""
    query = select(StoredProcedureVersion).where(
        StoredProcedureVersion.procedure_id == procedure_id
    )
    if source is not None:
        query = query.where(StoredProcedureVersion.source == source.value)
    entry = await db.scalar(query.order_by(StoredProcedureVersion.version.desc()).limit(1))
    if entry is None:
        raise NotFoundError("Version", f"latest of {procedure_id}")
    return entry


async def get_version(
    db: AsyncSession, procedure_id: uuid.UUID, version: int
) -> StoredProcedureVersion:
    """Return one ledger entry by number."""
    entry = await db.scalar(
        select(StoredProcedureVersion).where(
            StoredProcedureVersion.procedure_id == procedure_id,
            StoredProcedureVersion.version == version,
        )
    )
    if entry is None:
        raise NotFoundError("Version", f"{version} of {procedure_id}")
    return entry


async def count(
    db: AsyncSession,
    procedure_id: uuid.UUID,
    source: VersionSource | None = None,
) -> int:
    query = select(func.count()).where(StoredProcedureVersion.procedure_id == procedure_id)
    if source is not None:
        query = query.where(StoredProcedureVersion.source == source.value)
    return await db.scalar(query) or 0


class LedgerHistory:
    """Lazy, finite, restartable view of a procedure's versions in ascending order.

    Each ``async for`` starts a fresh walk. Entries are fetched page by page
    with keyset pagination on the version number, so a walk never holds a
    session open between pages and never revisits or skips an entry.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        procedure_id: uuid.UUID,
        source: VersionSource | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self._session_factory = session_factory
        self.procedure_id = procedure_id
        self.source = source
        self.page_size = page_size

    def __aiter__(self) -> AsyncIterator[StoredProcedureVersion]:
        return self._walk()

    async def _walk(self) -> AsyncIterator[StoredProcedureVersion]:
        after = 0
        while True:
            page = await self._fetch_page(after)
            for entry in page:
                yield entry
            if len(page) < self.page_size:
                return
            after = page[-1].version

    async def _fetch_page(self, after: int) -> list[StoredProcedureVersion]:
        query = select(StoredProcedureVersion).where(
            StoredProcedureVersion.procedure_id == self.procedure_id,
            StoredProcedureVersion.version > after,
        )
        if self.source is not None:
            query = query.where(StoredProcedureVersion.source == self.source.value)
        query = query.order_by(StoredProcedureVersion.version).limit(self.page_size)
        async with self._session_factory() as db:
            return list((await db.scalars(query)).all())

    async def to_list(self) -> list[StoredProcedureVersion]:
        return [entry async for entry in self]


def history(
    session_factory: async_sessionmaker[AsyncSession],
    procedure_id: uuid.UUID,
    source: VersionSource | None = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> LedgerHistory:
    """Return the version history of a procedure, ordered by version ascending."""
    return LedgerHistory(session_factory, procedure_id, source=source, page_size=page_size)
