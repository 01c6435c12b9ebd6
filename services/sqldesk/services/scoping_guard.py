"""Workspace scoping guard.

Stateless invariant checks shared by every write path: procedure name
uniqueness within a workspace, one environment per workspace, and tenant
isolation. Checks run inside the caller's session so they see the same
transaction as the write that follows.
"""

import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sqldesk.db.models import Environment, StoredProcedure, Workspace
from sqldesk.errors import ConflictError, NotFoundError


class WorkspaceScopingGuard:
    async def assert_workspace_exists(self, db: AsyncSession, workspace_id: uuid.UUID) -> None:
        found = await db.scalar(select(Workspace.id).where(Workspace.id == workspace_id))
        if found is None:
            raise NotFoundError("Workspace", workspace_id)

    async def assert_unique_name(
        self,
        db: AsyncSession,
        workspace_id: uuid.UUID,
        name: str,
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        """Raise ConflictError if another procedure in the workspace has this name."""
        query = select(func.count()).where(
            StoredProcedure.workspace_id == workspace_id,
            StoredProcedure.name == name,
        )
        if exclude_id is not None:
            query = query.where(StoredProcedure.id != exclude_id)
        if await db.scalar(query):
            raise ConflictError(
                f'A stored procedure named "{name}" already exists in this workspace'
            )

    async def assert_single_environment(self, db: AsyncSession, workspace_id: uuid.UUID) -> None:
        """Raise ConflictError if the workspace already has a connection profile."""
        existing = await db.scalar(
            select(Environment.id).where(Environment.workspace_id == workspace_id)
        )
        if existing is not None:
            raise ConflictError("Environment configuration already exists for this workspace")

    def assert_ownership(
        self,
        workspace_id: uuid.UUID,
        entity_workspace_id: uuid.UUID,
        kind: str = "Entity",
        ident: object = None,
    ) -> None:
        # Foreign entities are reported as missing so their existence does not leak
        if workspace_id != entity_workspace_id:
            raise NotFoundError(kind, ident)
