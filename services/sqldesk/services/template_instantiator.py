"""Create draft procedures from shared templates."""

import uuid
from collections.abc import Mapping
from typing import Any

from sqldesk.db.models import StoredProcedure
from sqldesk.errors import ValidationError
from sqldesk.logging_config import get_logger
from sqldesk.services.procedure_service import ProcedureLifecycle
from sqldesk.services.template_params import PROCEDURE_NAME_PLACEHOLDER
from sqldesk.services.template_service import TemplateCatalog, render_template

logger = get_logger(__name__)


class TemplateInstantiator:
    def __init__(self, catalog: TemplateCatalog, lifecycle: ProcedureLifecycle) -> None:
        self._catalog = catalog
        self._lifecycle = lifecycle

    async def instantiate(
        self,
        template_id: uuid.UUID,
        workspace_id: uuid.UUID,
        params: Mapping[str, Any] | None,
        actor: str,
        procedure_name: str | None = None,
    ) -> StoredProcedure:
        """Render a template and save the result as a new draft procedure.

        The procedure is named ``procedure_name``, else the ``procedureName``
        parameter, else the template's own name.
        """
        if params is not None and not isinstance(params, Mapping):
            raise ValidationError("Template parameters must be an object")

        template = await self._catalog.get_template(template_id)
        payload = dict(params or {})
        requested_name = payload.pop(PROCEDURE_NAME_PLACEHOLDER, None)
        name = procedure_name or requested_name or template.name
        if not isinstance(name, str):
            raise ValidationError(f"{PROCEDURE_NAME_PLACEHOLDER} must be a string")
        name = name.strip()

        rendered = render_template(template, name, payload)
        procedure = await self._lifecycle.create(workspace_id, name, rendered.sql, actor)

        logger.info(
            "Procedure instantiated from template",
            template_id=str(template_id),
            procedure_id=str(procedure.id),
            workspace_id=str(workspace_id),
            name=procedure.name,
        )
        return procedure
