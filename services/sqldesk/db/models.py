"""
SQLAlchemy database models for SQLDesk.

All models use:
- UUIDv7 primary keys (time-sortable)
- snake_case column names
- Plural table names
- TIMESTAMPTZ with UTC for all timestamps
- Hard deletes (no soft delete columns)

Column types are portable (generic Uuid, JSON with a JSONB variant) so the
same metadata runs on PostgreSQL in production and SQLite in tests.
"""

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import sqlalchemy as sa
from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONVariant = sa.JSON().with_variant(JSONB(), "postgresql")


def generate_uuid7() -> uuid.UUID:
    """Generate a UUIDv7 (time-sortable UUID)."""
    import time

    timestamp_ms = int(time.time() * 1000)
    rand_bytes = uuid.uuid4().bytes[6:]

    uuid_bytes = (
        timestamp_ms.to_bytes(6, "big")
        + bytes([0x70 | (rand_bytes[0] & 0x0F)])  # Version 7
        + bytes([0x80 | (rand_bytes[1] & 0x3F)])  # Variant
        + rand_bytes[2:]
    )
    return uuid.UUID(bytes=uuid_bytes)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class ConnectionStatus(StrEnum):
    UNKNOWN = "unknown"
    TESTING = "testing"
    CONNECTED = "connected"
    FAILED = "failed"


class ProcedureStatus(StrEnum):
    DRAFT = "draft"
    PUBLISHED = "published"


class VersionSource(StrEnum):
    DRAFT = "draft"
    PUBLISHED = "published"


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONVariant,
    }


class Workspace(Base):
    """Tenant boundary owned by the surrounding platform.

    Kept minimal: the core only needs a parent row for cascades.
    """

    __tablename__ = "workspaces"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=generate_uuid7)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    environment: Mapped["Environment"] = relationship(
        back_populates="workspace",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )
    procedures: Mapped[list["StoredProcedure"]] = relationship(
        back_populates="workspace", cascade="all, delete-orphan", passive_deletes=True
    )


class Environment(Base):
    """A workspace's single external database connection profile.

    The password column holds Fernet ciphertext; plaintext never touches
    the database.
    """

    __tablename__ = "environments"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=generate_uuid7)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    password: Mapped[str] = mapped_column(Text, nullable=False)
    database: Mapped[str] = mapped_column(String(255), nullable=False)
    connection_timeout: Mapped[int | None] = mapped_column(Integer, nullable=True)  # ms
    encrypt: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    connection_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConnectionStatus.UNKNOWN.value
    )  # unknown, testing, connected, failed
    last_tested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    test_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    workspace: Mapped["Workspace"] = relationship(back_populates="environment")

    __table_args__ = (
        sa.UniqueConstraint("workspace_id", name="uq_environments_workspace_id"),
    )


class StoredProcedure(Base):
    """SQL procedure with an editable draft and an optional published body.

    Drafts live inline; only publishes are journaled in stored_procedure_versions.
    """

    __tablename__ = "stored_procedures"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=generate_uuid7)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProcedureStatus.DRAFT.value
    )  # draft, published
    sql_draft: Mapped[str] = mapped_column(Text, nullable=False, default="")
    sql_published: Mapped[str | None] = mapped_column(Text, nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    workspace: Mapped["Workspace"] = relationship(back_populates="procedures")
    versions: Mapped[list["StoredProcedureVersion"]] = relationship(
        back_populates="procedure",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="StoredProcedureVersion.version",
    )

    __table_args__ = (
        sa.UniqueConstraint("workspace_id", "name", name="uq_stored_procedures_workspace_name"),
        Index("ix_stored_procedures_workspace_id", "workspace_id"),
        Index("ix_stored_procedures_updated_at", "updated_at"),
    )


class StoredProcedureVersion(Base):
    """Immutable ledger entry. Rows are only ever inserted."""

    __tablename__ = "stored_procedure_versions"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=generate_uuid7)
    procedure_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        ForeignKey("stored_procedures.id", ondelete="CASCADE"),
        nullable=False,
    )
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)  # draft, published
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sql_text: Mapped[str] = mapped_column(Text, nullable=False)

    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    procedure: Mapped["StoredProcedure"] = relationship(back_populates="versions")

    __table_args__ = (
        sa.UniqueConstraint("procedure_id", "version", name="uq_stored_procedure_versions"),
        Index("ix_stored_procedure_versions_procedure_id", "procedure_id"),
        Index("ix_stored_procedure_versions_workspace_id", "workspace_id"),
    )


class ProcedureTemplate(Base):
    """Reusable parameterized SQL blueprint, shared across workspaces."""

    __tablename__ = "procedure_templates"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=generate_uuid7)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    sql_template: Mapped[str] = mapped_column(Text, nullable=False)
    params_schema: Mapped[dict[str, Any] | None] = mapped_column(JSONVariant, nullable=True)

    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        sa.UniqueConstraint("name", name="uq_procedure_templates_name"),
        Index("ix_procedure_templates_created_by", "created_by"),
    )
