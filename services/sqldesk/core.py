"""
Wiring for the SQLDesk core.

Builds the database, Redis and encryption resources from settings and hands
back the services that hosts (an API server, a worker, the CLI) call into.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqldesk.config import Settings, settings
from sqldesk.db.session import close_db, get_db_health, get_session_factory, init_db
from sqldesk.logging_config import configure_logging, get_logger
from sqldesk.redis.client import close_redis, get_redis_client, get_redis_health, init_redis
from sqldesk.services.connection_probe import ConnectionProbe
from sqldesk.services.credential_vault import CredentialVault
from sqldesk.services.encryption_service import build_key_provider
from sqldesk.services.procedure_service import ProcedureLifecycle
from sqldesk.services.scoping_guard import WorkspaceScopingGuard
from sqldesk.services.template_instantiator import TemplateInstantiator
from sqldesk.services.template_service import TemplateCatalog

logger = get_logger(__name__)


@dataclass
class SQLDeskCore:
    vault: CredentialVault
    procedures: ProcedureLifecycle
    templates: TemplateCatalog
    instantiator: TemplateInstantiator
    cache_enabled: bool = False

    async def ready(self) -> dict[str, str | dict[str, str]]:
        """Readiness check for hosts.

        Redis is only checked when the template cache is enabled.
        """
        checks: dict[str, str] = {}

        checks["database"] = "healthy" if await get_db_health() else "unhealthy"
        if self.cache_enabled:
            checks["redis"] = "healthy" if await get_redis_health() else "unhealthy"

        if not all(v == "healthy" for v in checks.values()):
            logger.warning("Readiness check failed", checks=checks)
            return {"status": "not ready", "checks": checks}

        return {"status": "ready", "checks": checks}


@asynccontextmanager
async def lifespan(
    config: Settings = settings,
    probe: ConnectionProbe | None = None,
) -> AsyncGenerator[SQLDeskCore]:
    """Start core resources, yield the wired services, then shut down."""
    configure_logging(json_logs=config.json_logs, log_level=config.log_level)
    logger.info("Starting SQLDesk core", version="0.1.0")

    # Fail before touching the database if no key is configured
    key_provider = build_key_provider(config)

    await init_db(config.database_url)
    logger.info("Database initialized")

    try:
        cache_enabled = config.templates.cache_ttl_seconds > 0
        redis = None
        if cache_enabled:
            await init_redis(str(config.redis_url))
            redis = get_redis_client()
            logger.info("Redis initialized")

        session_factory = get_session_factory()
        guard = WorkspaceScopingGuard()
        vault = CredentialVault(
            session_factory, key_provider, probe=probe, guard=guard, config=config.connection_test
        )
        procedures = ProcedureLifecycle(
            session_factory,
            guard=guard,
            vault=vault,
            max_publish_retries=config.publish.max_retries,
        )
        templates = TemplateCatalog(
            session_factory,
            redis=redis,
            cache_ttl_seconds=config.templates.cache_ttl_seconds,
        )
        yield SQLDeskCore(
            vault=vault,
            procedures=procedures,
            templates=templates,
            instantiator=TemplateInstantiator(templates, procedures),
            cache_enabled=cache_enabled,
        )
    finally:
        await close_redis()
        await close_db()
        logger.info("SQLDesk core stopped")
