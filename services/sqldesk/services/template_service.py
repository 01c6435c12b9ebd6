"""Shared procedure template catalog.

Templates are workspace-agnostic SQL blueprints with ``{{placeholder}}``
parameters. Reads go through an optional Redis cache; every write commits
first and then invalidates the cached entry.
"""

import json
import re
import uuid
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sqldesk.config import settings
from sqldesk.db.integrity import is_unique_violation
from sqldesk.db.models import ProcedureTemplate, utc_now
from sqldesk.errors import ConflictError, NotFoundError, ValidationError
from sqldesk.logging_config import get_logger
from sqldesk.services.template_params import (
    PROCEDURE_NAME_PLACEHOLDER,
    check_params_schema,
    extract_placeholders,
    substitute,
    validate_params,
)

logger = get_logger(__name__)

TEMPLATE_CACHE_PREFIX = "sqldesk:template:"
TEMPLATE_GENERATION_PREFIX = "sqldesk:template-gen:"
HEADER_RE = re.compile(r"CREATE\s+(?:OR\s+ALTER\s+)?PROCEDURE\s+\{\{procedureName\}\}", re.I)

_UNSET: Any = object()


@dataclass(frozen=True)
class TemplateRecord:
    """Read-only snapshot of a template row."""

    id: uuid.UUID
    name: str
    description: str | None
    sql_template: str
    params_schema: dict[str, Any] | None
    created_by: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, template: ProcedureTemplate) -> "TemplateRecord":
        return cls(
            id=template.id,
            name=template.name,
            description=template.description,
            sql_template=template.sql_template,
            params_schema=template.params_schema,
            created_by=template.created_by,
            created_at=template.created_at,
            updated_at=template.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["id"] = str(self.id)
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TemplateRecord":
        data = dict(data)
        data["id"] = uuid.UUID(data["id"])
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        return cls(**data)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "TemplateRecord":
        return cls.from_dict(json.loads(raw))


@dataclass
class TemplateValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RenderedTemplate:
    sql: str
    params: dict[str, Any]


def validate_template(
    sql_template: str, params_schema: Mapping[str, Any] | None = None
) -> TemplateValidation:
    """Static checks on a template body and its parameter definitions."""
    if not sql_template or not sql_template.strip():
        return TemplateValidation(valid=False, errors=["SQL template cannot be empty"])

    errors: list[str] = []
    warnings: list[str] = []
    placeholders = extract_placeholders(sql_template)

    if PROCEDURE_NAME_PLACEHOLDER not in placeholders:
        errors.append("Template must contain {{procedureName}} placeholder in the procedure header")
    if not HEADER_RE.search(sql_template):
        errors.append(
            "Template must contain a valid CREATE [OR ALTER] PROCEDURE {{procedureName}} header"
        )

    if params_schema is not None:
        schema_errors = check_params_schema(params_schema)
        errors.extend(schema_errors)
        if not schema_errors:
            declared = set(params_schema)
            undeclared = [
                p for p in placeholders if p not in declared and p != PROCEDURE_NAME_PLACEHOLDER
            ]
            if undeclared:
                errors.append(f"Undeclared placeholders found: {', '.join(undeclared)}")
            unused = [p for p in params_schema if p not in placeholders]
            if unused:
                warnings.append(f"Unused parameters found: {', '.join(unused)}")

    return TemplateValidation(valid=not errors, errors=errors, warnings=warnings)


def render_template(
    template: TemplateRecord, procedure_name: str, params: Mapping[str, Any] | None
) -> RenderedTemplate:
    """Validate ``params`` against the template schema and substitute them.

    Pure: the template is never modified.
    """
    resolved = validate_params(template.params_schema, params)
    sql = substitute(template.sql_template, procedure_name, resolved)
    return RenderedTemplate(sql=sql, params=resolved)


def _ensure_valid(sql_template: str, params_schema: Mapping[str, Any] | None) -> None:
    validation = validate_template(sql_template, params_schema)
    if not validation.valid:
        raise ValidationError(
            f"Template validation failed: {', '.join(validation.errors)}", validation.errors
        )


class TemplateCatalog:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: aioredis.Redis | None = None,
        cache_ttl_seconds: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._redis = redis
        self._cache_ttl = (
            settings.templates.cache_ttl_seconds if cache_ttl_seconds is None else cache_ttl_seconds
        )

    # --- Reads ---

    async def get_template(self, template_id: uuid.UUID) -> TemplateRecord:
        cached, generation = await self._cache_get(template_id)
        if cached is not None:
            return cached

        async with self._session_factory() as db:
            template = await db.get(ProcedureTemplate, template_id)
            if template is None:
                raise NotFoundError("Procedure template", template_id)
            record = TemplateRecord.from_model(template)

        await self._cache_put(record, generation)
        return record

    async def list_templates(self) -> list[TemplateRecord]:
        async with self._session_factory() as db:
            result = await db.scalars(
                select(ProcedureTemplate).order_by(ProcedureTemplate.updated_at.desc())
            )
            return [TemplateRecord.from_model(t) for t in result.all()]

    async def render(
        self,
        template_id: uuid.UUID,
        procedure_name: str,
        params: Mapping[str, Any] | None = None,
    ) -> RenderedTemplate:
        """Preview the SQL a template produces for the given parameters."""
        return render_template(await self.get_template(template_id), procedure_name, params)

    # --- Writes ---

    async def create_template(
        self,
        name: str,
        sql_template: str,
        actor: str,
        description: str | None = None,
        params_schema: dict[str, Any] | None = None,
    ) -> TemplateRecord:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Template name must not be empty")
        _ensure_valid(sql_template, params_schema)

        async with self._session_factory() as db, db.begin():
            await self._assert_unique_name(db, name)
            template = ProcedureTemplate(
                name=name,
                description=description,
                sql_template=sql_template,
                params_schema=params_schema,
                created_by=actor,
            )
            db.add(template)
            await self._flush_named(db, name)
            record = TemplateRecord.from_model(template)

        logger.info("Procedure template created", template_id=str(record.id), name=name)
        return record

    async def update_template(
        self,
        template_id: uuid.UUID,
        actor: str,
        *,
        name: str | None = None,
        description: str | None = _UNSET,
        sql_template: str | None = None,
        params_schema: dict[str, Any] | None = _UNSET,
    ) -> TemplateRecord:
        """Update selected fields. Pass ``params_schema=None`` to drop the schema."""
        async with self._session_factory() as db, db.begin():
            template = await db.get(ProcedureTemplate, template_id, with_for_update=True)
            if template is None:
                raise NotFoundError("Procedure template", template_id)

            if name is not None:
                name = name.strip()
                if not name:
                    raise ValidationError("Template name must not be empty")
                if name != template.name:
                    await self._assert_unique_name(db, name)
                    template.name = name

            new_sql = template.sql_template if sql_template is None else sql_template
            new_schema = template.params_schema if params_schema is _UNSET else params_schema
            if sql_template is not None or params_schema is not _UNSET:
                _ensure_valid(new_sql, new_schema)
            template.sql_template = new_sql
            template.params_schema = new_schema

            if description is not _UNSET:
                template.description = description
            template.updated_at = utc_now()
            await self._flush_named(db, template.name)
            record = TemplateRecord.from_model(template)

        await self._cache_invalidate(template_id)
        logger.info("Procedure template updated", template_id=str(template_id), actor=actor)
        return record

    async def delete_template(self, template_id: uuid.UUID) -> None:
        async with self._session_factory() as db, db.begin():
            template = await db.get(ProcedureTemplate, template_id)
            if template is None:
                raise NotFoundError("Procedure template", template_id)
            await db.delete(template)

        await self._cache_invalidate(template_id)
        logger.info("Procedure template deleted", template_id=str(template_id))

    # --- Helpers ---

    async def _assert_unique_name(self, db: AsyncSession, name: str) -> None:
        existing = await db.scalar(
            select(ProcedureTemplate.id).where(ProcedureTemplate.name == name)
        )
        if existing is not None:
            raise ConflictError(f'A procedure template named "{name}" already exists')

    async def _flush_named(self, db: AsyncSession, name: str) -> None:
        try:
            await db.flush()
        except IntegrityError as e:
            if is_unique_violation(e, "uq_procedure_templates_name", "procedure_templates"):
                raise ConflictError(f'A procedure template named "{name}" already exists') from e
            raise

    # --- Cache ---
    #
    # Every write bumps a per-template generation counter after it commits.
    # A reader notes the generation before loading from the database and
    # stores it with the cached entry; entries from an older generation are
    # ignored, so a slow reader cannot put a superseded template back.

    def _cache_key(self, template_id: uuid.UUID) -> str:
        return f"{TEMPLATE_CACHE_PREFIX}{template_id}"

    def _generation_key(self, template_id: uuid.UUID) -> str:
        return f"{TEMPLATE_GENERATION_PREFIX}{template_id}"

    @property
    def _cache_enabled(self) -> bool:
        return self._redis is not None and self._cache_ttl > 0

    async def _cache_get(self, template_id: uuid.UUID) -> tuple[TemplateRecord | None, str | None]:
        """Return the cached record, if current, and the generation it was read under."""
        if not self._cache_enabled:
            return None, None
        try:
            raw, generation = await self._redis.mget(
                self._cache_key(template_id), self._generation_key(template_id)
            )
        except RedisError as e:
            logger.warning("Template cache read failed", template_id=str(template_id), error=str(e))
            return None, None

        generation = generation or "0"
        if raw:
            entry = json.loads(raw)
            if entry.get("generation") == generation:
                return TemplateRecord.from_dict(entry["template"]), generation
        return None, generation

    async def _cache_put(self, record: TemplateRecord, generation: str | None) -> None:
        if generation is None:
            return
        entry = json.dumps({"generation": generation, "template": record.to_dict()})
        try:
            await self._redis.set(self._cache_key(record.id), entry, ex=self._cache_ttl)
        except RedisError as e:
            logger.warning("Template cache write failed", template_id=str(record.id), error=str(e))

    async def _cache_invalidate(self, template_id: uuid.UUID) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.incr(self._generation_key(template_id))
            await self._redis.delete(self._cache_key(template_id))
        except RedisError as e:
            logger.error(
                "Template cache invalidation failed; entry expires with its TTL",
                template_id=str(template_id),
                error=str(e),
            )
