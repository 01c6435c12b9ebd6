"""Tests for the append-only version ledger: numbering, races, history walks."""

import uuid
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sqldesk.db.models import StoredProcedure, VersionSource
from sqldesk.errors import ConflictError, NotFoundError
from sqldesk.services import version_ledger


@pytest_asyncio.fixture
async def procedure_id(session_factory, workspace_id) -> uuid.UUID:
    async with session_factory() as db, db.begin():
        proc = StoredProcedure(
            workspace_id=workspace_id, name="usp_ledger", sql_draft="SELECT 1", created_by="alice"
        )
        db.add(proc)
        await db.flush()
        return proc.id


async def _append(
    session_factory, procedure_id, workspace_id, sql, source=VersionSource.PUBLISHED
):
    async with session_factory() as db, db.begin():
        return await version_ledger.append(
            db,
            procedure_id=procedure_id,
            workspace_id=workspace_id,
            source=source,
            name="usp_ledger",
            sql_text=sql,
            actor="alice",
        )


class TestAppend:
    async def test_numbers_start_at_one_and_have_no_gaps(
        self, session_factory, procedure_id, workspace_id
    ):
        entries = [
            await _append(session_factory, procedure_id, workspace_id, f"SELECT {i}")
            for i in range(5)
        ]
        assert [e.version for e in entries] == [1, 2, 3, 4, 5]
        assert entries[2].sql_text == "SELECT 2"
        assert entries[0].source == VersionSource.PUBLISHED.value
        assert entries[0].created_at is not None

    async def test_numbering_is_per_procedure(
        self, session_factory, procedure_id, workspace_id
    ):
        async with session_factory() as db, db.begin():
            other = StoredProcedure(
                workspace_id=workspace_id, name="usp_other", sql_draft="x", created_by="bob"
            )
            db.add(other)
            await db.flush()
            other_id = other.id

        await _append(session_factory, procedure_id, workspace_id, "a")
        await _append(session_factory, procedure_id, workspace_id, "b")
        entry = await _append(session_factory, other_id, workspace_id, "c")
        assert entry.version == 1

    async def test_version_race_raises_conflict(self):
        db = AsyncMock(spec=AsyncSession)
        db.scalar.return_value = 3
        db.flush.side_effect = IntegrityError(
            "INSERT",
            {},
            Exception(
                "UNIQUE constraint failed: stored_procedure_versions.procedure_id, "
                "stored_procedure_versions.version"
            ),
        )

        with pytest.raises(ConflictError, match="Version 4"):
            await version_ledger.append(
                db,
                procedure_id=uuid.uuid4(),
                workspace_id=uuid.uuid4(),
                source=VersionSource.PUBLISHED,
                name="usp",
                sql_text="x",
                actor="alice",
            )

    async def test_other_integrity_errors_propagate(self):
        db = AsyncMock(spec=AsyncSession)
        db.scalar.return_value = None
        db.flush.side_effect = IntegrityError(
            "INSERT", {}, Exception("FOREIGN KEY constraint failed")
        )

        with pytest.raises(IntegrityError):
            await version_ledger.append(
                db,
                procedure_id=uuid.uuid4(),
                workspace_id=uuid.uuid4(),
                source=VersionSource.PUBLISHED,
                name="usp",
                sql_text="x",
                actor="alice",
            )

    async def test_duplicate_version_rejected_by_constraint(
        self, session_factory, procedure_id, workspace_id
    ):
        await _append(session_factory, procedure_id, workspace_id, "first")

        # Simulate a stale max(version) read by a concurrent writer
        with pytest.raises(ConflictError):
            async with session_factory() as db, db.begin():
                db.scalar = AsyncMock(return_value=0)
                await version_ledger.append(
                    db,
                    procedure_id=procedure_id,
                    workspace_id=workspace_id,
                    source=VersionSource.PUBLISHED,
                    name="usp_ledger",
                    sql_text="second",
                    actor="bob",
                )

        async with session_factory() as db:
            assert await version_ledger.count(db, procedure_id) == 1


class TestLookups:
    async def test_latest_and_get_version(self, session_factory, procedure_id, workspace_id):
        await _append(session_factory, procedure_id, workspace_id, "v1")
        await _append(session_factory, procedure_id, workspace_id, "v2", VersionSource.DRAFT)

        async with session_factory() as db:
            assert (await version_ledger.latest(db, procedure_id)).sql_text == "v2"
            published = await version_ledger.latest(db, procedure_id, VersionSource.PUBLISHED)
            assert published.version == 1
            assert (await version_ledger.get_version(db, procedure_id, 2)).sql_text == "v2"
            assert await version_ledger.count(db, procedure_id) == 2
            assert await version_ledger.count(db, procedure_id, VersionSource.DRAFT) == 1

    async def test_missing_entries_are_not_found(self, session_factory, procedure_id):
        async with session_factory() as db:
            with pytest.raises(NotFoundError):
                await version_ledger.latest(db, procedure_id)
            with pytest.raises(NotFoundError):
                await version_ledger.get_version(db, procedure_id, 1)


class TestHistory:
    async def test_ascending_and_restartable(self, session_factory, procedure_id, workspace_id):
        for i in range(7):
            await _append(session_factory, procedure_id, workspace_id, f"SELECT {i}")

        history = version_ledger.history(session_factory, procedure_id, page_size=3)
        first = [e.version async for e in history]
        second = [e.version async for e in history]
        assert first == [1, 2, 3, 4, 5, 6, 7]
        assert second == first

    async def test_exact_page_multiple(self, session_factory, procedure_id, workspace_id):
        for i in range(4):
            await _append(session_factory, procedure_id, workspace_id, f"SELECT {i}")

        history = version_ledger.history(session_factory, procedure_id, page_size=2)
        assert [e.version for e in await history.to_list()] == [1, 2, 3, 4]

    async def test_source_filter(self, session_factory, procedure_id, workspace_id):
        await _append(session_factory, procedure_id, workspace_id, "a")
        await _append(session_factory, procedure_id, workspace_id, "b", VersionSource.DRAFT)
        await _append(session_factory, procedure_id, workspace_id, "c")

        history = version_ledger.history(
            session_factory, procedure_id, source=VersionSource.PUBLISHED
        )
        assert [e.sql_text for e in await history.to_list()] == ["a", "c"]

    async def test_empty_history(self, session_factory, procedure_id):
        assert await version_ledger.history(session_factory, procedure_id).to_list() == []

    async def test_sees_entries_appended_between_walks(
        self, session_factory, procedure_id, workspace_id
    ):
        history = version_ledger.history(session_factory, procedure_id)
        await _append(session_factory, procedure_id, workspace_id, "a")
        assert len(await history.to_list()) == 1
        await _append(session_factory, procedure_id, workspace_id, "b")
        assert len(await history.to_list()) == 2

    def test_page_size_must_be_positive(self, session_factory):
        with pytest.raises(ValueError):
            version_ledger.history(session_factory, uuid.uuid4(), page_size=0)
