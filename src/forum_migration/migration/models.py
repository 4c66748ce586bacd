"""
SQLAlchemy models for forum migration state tracking.

This module defines the database schema for the identifier registry,
per-kind resume cursors, and import run records.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class IDMapping(Base):
    """
    Maps source external IDs to target internal IDs.

    This is the idempotency key of the whole import: a row with a mapping is
    never created again, and later stages resolve references through it
    (posts reference users and categories, memberships reference groups).
    """

    __tablename__ = "id_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    namespace: Mapped[str] = mapped_column(
        String(50), nullable=False, comment="Registry namespace (user, category, post, ...)"
    )
    external_id: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Prefixed source id (composite keys comma-joined)"
    )
    internal_id: Mapped[int] = mapped_column(
        BigInteger, nullable=False, comment="ID assigned by the target system"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), comment="When mapping was created"
    )

    __table_args__ = (
        UniqueConstraint("namespace", "external_id", name="uq_namespace_external_id"),
        Index("idx_namespace_internal_id", "namespace", "internal_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<IDMapping(namespace='{self.namespace}', external_id='{self.external_id}', "
            f"internal_id={self.internal_id})>"
        )


class ImportCursor(Base):
    """
    Resume position for one entity kind.

    The value is the source key of the last row of the last batch that,
    together with every batch before it, finished without row failures.
    Stored as JSON so composite keys survive the round trip.
    """

    __tablename__ = "import_cursors"

    entity_kind: Mapped[str] = mapped_column(String(50), primary_key=True)
    cursor_value: Mapped[dict] = mapped_column(
        JSON, nullable=False, comment="{'value': <scalar or list>}"
    )
    rows_processed: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Rows processed up to this cursor"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<ImportCursor(entity_kind='{self.entity_kind}', cursor={self.cursor_value})>"


class ImportRun(Base):
    """
    One record per import run.

    Tracks overall status and per-kind statistics so an operator can see what
    the last run did without reading the log file.
    """

    __tablename__ = "import_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="in_progress",
        comment="Run status: in_progress, completed, failed",
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    dry_run: Mapped[bool] = mapped_column(nullable=False, default=False)
    stats: Mapped[dict | None] = mapped_column(
        JSON, nullable=True, comment="Per-kind created/skipped/failed counts"
    )
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fatal_error: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="ck_import_runs_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<ImportRun(run_id='{self.run_id}', status='{self.status}')>"
