"""Tests for the shared template catalog: CRUD, template validation, render, Redis cache."""

import asyncio
import json
import uuid
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sqldesk.errors import ConflictError, NotFoundError, ValidationError
from sqldesk.services.template_service import (
    TEMPLATE_CACHE_PREFIX,
    TEMPLATE_GENERATION_PREFIX,
    TemplateCatalog,
    TemplateRecord,
    render_template,
    validate_template,
)

SQL = "CREATE PROCEDURE {{procedureName}} AS\nSELECT * FROM {{table}}"
SCHEMA = {"table": {"name": "table", "type": "string", "required": True}}


class TestValidateTemplate:
    def test_valid(self):
        result = validate_template(SQL, SCHEMA)
        assert result.valid
        assert result.errors == []
        assert result.warnings == []

    def test_create_or_alter_header(self):
        sql = "create or alter procedure {{procedureName}} as select 1"
        assert validate_template(sql).valid

    @pytest.mark.parametrize("sql", ["", "   "])
    def test_empty_body(self, sql):
        result = validate_template(sql)
        assert not result.valid
        assert result.errors == ["SQL template cannot be empty"]

    def test_missing_procedure_name_header(self):
        result = validate_template("CREATE PROCEDURE usp_fixed AS SELECT 1")
        assert not result.valid
        assert len(result.errors) == 2

    def test_placeholder_outside_header(self):
        result = validate_template("SELECT '{{procedureName}}'")
        assert not result.valid
        assert result.errors == [
            "Template must contain a valid CREATE [OR ALTER] PROCEDURE {{procedureName}} header"
        ]

    def test_undeclared_placeholder(self):
        result = validate_template(SQL + " WHERE {{cond}}", SCHEMA)
        assert not result.valid
        assert result.errors == ["Undeclared placeholders found: cond"]

    def test_placeholders_unchecked_without_schema(self):
        assert validate_template(SQL + " WHERE {{cond}}").valid

    def test_unused_parameter_is_warning(self):
        schema = {**SCHEMA, "extra": {"name": "extra", "type": "number"}}
        result = validate_template(SQL, schema)
        assert result.valid
        assert result.warnings == ["Unused parameters found: extra"]

    def test_bad_schema(self):
        result = validate_template(SQL, {"table": {"name": "tbl", "type": "string"}})
        assert not result.valid


class TestRenderTemplate:
    def _record(self, schema=SCHEMA) -> TemplateRecord:
        return TemplateRecord(
            id=uuid.uuid4(),
            name="Select all",
            description=None,
            sql_template=SQL,
            params_schema=schema,
            created_by="admin",
            created_at=None,
            updated_at=None,
        )

    def test_render(self):
        record = self._record()
        rendered = render_template(record, "usp_orders", {"table": "orders"})
        assert rendered.sql == "CREATE PROCEDURE usp_orders AS\nSELECT * FROM orders"
        assert rendered.params == {"table": "orders"}
        # The template itself is untouched
        assert record.sql_template == SQL

    def test_render_rejects_missing_params(self):
        with pytest.raises(ValidationError):
            render_template(self._record(), "usp_orders", {})

    def test_render_without_schema_needs_values_for_placeholders(self):
        with pytest.raises(ValidationError, match="no value"):
            render_template(self._record(schema=None), "usp_orders", {})


class TestCatalogCrud:
    async def test_create_and_get(self, catalog):
        created = await catalog.create_template(
            "Select all", SQL, "admin", description="All rows", params_schema=SCHEMA
        )
        fetched = await catalog.get_template(created.id)

        assert fetched.name == "Select all"
        assert fetched.description == "All rows"
        assert fetched.params_schema == SCHEMA
        assert fetched.created_by == "admin"

    async def test_create_rejects_invalid_template(self, catalog):
        with pytest.raises(ValidationError) as exc_info:
            await catalog.create_template("Broken", "SELECT 1", "admin")
        assert len(exc_info.value.errors) == 2

    async def test_create_rejects_blank_name(self, catalog):
        with pytest.raises(ValidationError):
            await catalog.create_template("  ", SQL, "admin")

    async def test_duplicate_name_conflicts(self, catalog):
        await catalog.create_template("Select all", SQL, "admin")
        with pytest.raises(ConflictError):
            await catalog.create_template("Select all", SQL, "someone")

    async def test_get_missing(self, catalog):
        with pytest.raises(NotFoundError):
            await catalog.get_template(uuid.uuid4())

    async def test_list_recently_updated_first(self, catalog):
        a = await catalog.create_template("A", SQL, "admin")
        await catalog.create_template("B", SQL, "admin")
        await asyncio.sleep(0.01)
        await catalog.update_template(a.id, "admin", description="touched")

        assert [t.name for t in await catalog.list_templates()] == ["A", "B"]

    async def test_update_fields(self, catalog):
        created = await catalog.create_template("A", SQL, "admin", params_schema=SCHEMA)

        updated = await catalog.update_template(
            created.id,
            "admin",
            name="Renamed",
            sql_template=SQL + " WHERE 1 = 1",
            description="d",
        )
        assert updated.name == "Renamed"
        assert updated.sql_template.endswith("WHERE 1 = 1")
        assert updated.description == "d"
        assert updated.params_schema == SCHEMA

    async def test_update_drops_schema(self, catalog):
        created = await catalog.create_template("A", SQL, "admin", params_schema=SCHEMA)
        updated = await catalog.update_template(created.id, "admin", params_schema=None)
        assert updated.params_schema is None

    async def test_update_validates_merged_template(self, catalog):
        created = await catalog.create_template("A", SQL, "admin", params_schema=SCHEMA)
        with pytest.raises(ValidationError, match="Undeclared"):
            await catalog.update_template(created.id, "admin", sql_template=SQL + " {{x}}")
        assert (await catalog.get_template(created.id)).sql_template == SQL

    async def test_update_name_conflict(self, catalog):
        await catalog.create_template("A", SQL, "admin")
        b = await catalog.create_template("B", SQL, "admin")
        with pytest.raises(ConflictError):
            await catalog.update_template(b.id, "admin", name="A")

    async def test_delete(self, catalog):
        created = await catalog.create_template("A", SQL, "admin")
        await catalog.delete_template(created.id)
        with pytest.raises(NotFoundError):
            await catalog.get_template(created.id)
        with pytest.raises(NotFoundError):
            await catalog.delete_template(created.id)

    async def test_render_preview(self, catalog):
        created = await catalog.create_template("A", SQL, "admin", params_schema=SCHEMA)
        rendered = await catalog.render(created.id, "usp_a", {"table": "t"})
        assert rendered.sql == "CREATE PROCEDURE usp_a AS\nSELECT * FROM t"


class TestTemplateRecord:
    async def test_json_round_trip_keeps_types(self, catalog):
        created = await catalog.create_template("A", SQL, "admin", params_schema=SCHEMA)
        restored = TemplateRecord.from_json(created.to_json())
        assert restored == created


class FakeRedis:
    """In-memory Redis covering the commands the catalog cache uses.

    ``set_gate`` holds writes back until released, so a test can finish an
    update while a reader is still between its database load and its write.
    """

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.set_gate: asyncio.Event | None = None
        self.set_started = asyncio.Event()
        self.set_calls = 0

    async def mget(self, *keys: str) -> list[str | None]:
        return [self.data.get(k) for k in keys]

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.set_calls += 1
        self.set_started.set()
        if self.set_gate is not None:
            await self.set_gate.wait()
        self.data[key] = value
        self.ttls[key] = ex

    async def incr(self, key: str) -> int:
        value = int(self.data.get(key, "0")) + 1
        self.data[key] = str(value)
        return value

    async def delete(self, *keys: str) -> int:
        return sum(self.data.pop(k, None) is not None for k in keys)


class TestTemplateCache:
    @pytest.fixture
    def redis(self) -> FakeRedis:
        return FakeRedis()

    @pytest.fixture
    def cached_catalog(self, session_factory, redis):
        return TemplateCatalog(session_factory, redis=redis, cache_ttl_seconds=60)

    async def test_miss_populates_cache(self, cached_catalog, redis):
        created = await cached_catalog.create_template("A", SQL, "admin")

        await cached_catalog.get_template(created.id)

        key = f"{TEMPLATE_CACHE_PREFIX}{created.id}"
        assert redis.set_calls == 1
        assert redis.ttls[key] == 60
        entry = json.loads(redis.data[key])
        assert entry["generation"] == "0"
        cached = TemplateRecord.from_dict(entry["template"])
        assert (cached.id, cached.name, cached.sql_template) == (created.id, "A", SQL)

    async def test_hit_skips_database(self, cached_catalog, redis, session_factory):
        created = await cached_catalog.create_template("A", SQL, "admin")
        first = await cached_catalog.get_template(created.id)

        # Drop the row behind the cache's back: a hit must not read the DB
        await TemplateCatalog(session_factory).delete_template(created.id)

        assert (await cached_catalog.get_template(created.id)) == first
        assert redis.set_calls == 1

    async def test_update_and_delete_invalidate(self, cached_catalog, redis):
        created = await cached_catalog.create_template("A", SQL, "admin", description="old")
        await cached_catalog.get_template(created.id)

        await cached_catalog.update_template(created.id, "admin", description="new")
        assert f"{TEMPLATE_CACHE_PREFIX}{created.id}" not in redis.data
        assert redis.data[f"{TEMPLATE_GENERATION_PREFIX}{created.id}"] == "1"
        assert (await cached_catalog.get_template(created.id)).description == "new"

        await cached_catalog.delete_template(created.id)
        with pytest.raises(NotFoundError):
            await cached_catalog.get_template(created.id)

    async def test_read_racing_update_does_not_cache_old_template(self, cached_catalog, redis):
        created = await cached_catalog.create_template("A", SQL, "admin", description="old")
        redis.set_gate = asyncio.Event()

        # The reader loads the old row, then stalls before writing the cache
        reader = asyncio.create_task(cached_catalog.get_template(created.id))
        await redis.set_started.wait()
        await cached_catalog.update_template(created.id, "admin", description="new")
        redis.set_gate.set()
        assert (await reader).description == "old"

        redis.set_gate = None
        assert (await cached_catalog.get_template(created.id)).description == "new"

    async def test_redis_failure_falls_back_to_database(self, session_factory):
        redis = AsyncMock()
        redis.mget.side_effect = RedisConnectionError("redis down")
        redis.incr.side_effect = RedisConnectionError("redis down")
        catalog = TemplateCatalog(session_factory, redis=redis, cache_ttl_seconds=60)

        created = await catalog.create_template("A", SQL, "admin")
        assert (await catalog.get_template(created.id)).name == "A"
        redis.set.assert_not_awaited()
        # A failed invalidation is logged, the update itself still lands
        updated = await catalog.update_template(created.id, "admin", description="d")
        assert updated.description == "d"

    async def test_zero_ttl_disables_cache(self, session_factory):
        redis = AsyncMock()
        catalog = TemplateCatalog(session_factory, redis=redis, cache_ttl_seconds=0)
        created = await catalog.create_template("A", SQL, "admin")
        await catalog.get_template(created.id)
        redis.mget.assert_not_awaited()
        redis.set.assert_not_awaited()
