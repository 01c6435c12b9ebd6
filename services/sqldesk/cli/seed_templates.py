"""
Seed the shared procedure template catalog from a YAML file.

Idempotent: templates whose name already exists are skipped. The whole file
is validated before anything is written.
Run via: python -m sqldesk.cli.seed_templates path/to/templates.yaml

File format:

    templates:
      - name: Select by id
        description: Fetch one row by primary key
        sql_template: |
          CREATE PROCEDURE {{procedureName}} @id INT AS
          SELECT * FROM {{table}} WHERE id = @id
        params_schema:
          table: {name: table, type: identifier, required: true}

Reads configuration from environment variables:
  DATABASE_URL        - Database URL (falls back to SQLDESK_DATABASE_URL / settings)
  SQLDESK_SEED_ACTOR  - Recorded as created_by (default: "system")
"""

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any

import yaml
from sqlalchemy import select

from sqldesk.config import settings
from sqldesk.db.models import ProcedureTemplate
from sqldesk.db.session import close_db, get_db_session, get_session_factory, init_db
from sqldesk.errors import ConflictError, ValidationError
from sqldesk.services.template_service import TemplateCatalog, validate_template

# Use stdlib logging, structlog isn't configured yet during seeding
logger = logging.getLogger("sqldesk.seed_templates")
logging.basicConfig(level=logging.INFO, format="%(message)s")


def load_templates(path: Path) -> list[dict[str, Any]]:
    """Read and check every template in the file.

    Nothing is written until the whole file is known to be valid, so a bad
    entry never leaves a partial seed behind. Raises ValueError listing all
    problems found.
    """
    with path.open() as f:
        data = yaml.safe_load(f) or {}

    templates = data.get("templates") if isinstance(data, dict) else None
    if not isinstance(templates, list):
        raise ValueError(f"{path}: expected a top-level 'templates' list")

    problems: list[str] = []
    entries: list[dict[str, Any]] = []
    seen: set[str] = set()
    for i, entry in enumerate(templates, start=1):
        if not isinstance(entry, dict):
            problems.append(f"template #{i}: expected a mapping")
            continue
        name = entry.get("name")
        sql_template = entry.get("sql_template")
        if not isinstance(name, str) or not name.strip():
            problems.append(f"template #{i}: 'name' must be a non-empty string")
            continue
        name = name.strip()
        label = f"template #{i} ({name})"
        if not isinstance(sql_template, str):
            problems.append(f"{label}: 'sql_template' must be a string")
            continue
        if name in seen:
            problems.append(f"{label}: name appears more than once")
            continue
        seen.add(name)

        description = entry.get("description")
        params_schema = entry.get("params_schema")
        if description is not None and not isinstance(description, str):
            problems.append(f"{label}: 'description' must be a string")
        if params_schema is not None and not isinstance(params_schema, dict):
            problems.append(f"{label}: 'params_schema' must be a mapping")
            continue

        validation = validate_template(sql_template, params_schema)
        problems.extend(f"{label}: {error}" for error in validation.errors)
        entries.append(
            {
                "name": name,
                "sql_template": sql_template,
                "description": description,
                "params_schema": params_schema,
            }
        )

    if problems:
        raise ValueError(f"{path}: " + "; ".join(problems))
    return entries


async def seed(path: Path) -> int:
    """Create missing templates. Returns the number of templates created."""
    database_url = os.environ.get("DATABASE_URL", "").strip() or settings.database_url
    actor = os.environ.get("SQLDESK_SEED_ACTOR", "").strip() or "system"

    # Ensure async driver
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    templates = load_templates(path)
    await init_db(database_url)

    try:
        async with get_db_session() as session:
            result = await session.scalars(select(ProcedureTemplate.name))
            existing = set(result.all())

        catalog = TemplateCatalog(get_session_factory())
        created = 0
        for entry in templates:
            name = entry["name"]
            if name in existing:
                logger.info("Template %s already exists, skipping", name)
                continue
            try:
                await catalog.create_template(
                    name=name,
                    sql_template=entry["sql_template"],
                    actor=actor,
                    description=entry["description"],
                    params_schema=entry["params_schema"],
                )
            except ConflictError:
                # Created concurrently by another seeder
                logger.info("Template %s already exists, skipping", name)
                continue
            created += 1
            logger.info("Created template: %s", name)
    finally:
        await close_db()

    logger.info("Template seeding complete (%d created, %d total)", created, len(templates))
    return created


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        logger.error("usage: python -m sqldesk.cli.seed_templates <templates.yaml>")
        return 2

    path = Path(args[0])
    if not path.is_file():
        logger.error("Template file not found: %s", path)
        return 1

    try:
        asyncio.run(seed(path))
    except (ValueError, ValidationError) as e:
        logger.error("Template seeding failed: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
