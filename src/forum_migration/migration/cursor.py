"""
Source cursor reader.

Pulls ordered batches of source rows for one entity kind and keeps the
per-kind resume cursor in the state database.
"""

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select

from forum_migration.client.exceptions import SourceError
from forum_migration.config import StateConfig
from forum_migration.entities import EntityKind, get_stage
from forum_migration.migration.database import get_session
from forum_migration.migration.models import ImportCursor
from forum_migration.source.base import SourceAdapter
from forum_migration.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExternalRecord:
    """One source row of a given kind.

    ``key`` is the row's source key: a scalar, or a tuple for composite keys.
    """

    kind: EntityKind
    key: Any
    data: dict[str, Any] = field(compare=False)


def _encode_cursor(cursor: Any) -> dict[str, Any]:
    if isinstance(cursor, tuple):
        cursor = list(cursor)
    return {"value": cursor}


def _numeric(cursor: Any) -> bool:
    parts = cursor if isinstance(cursor, tuple) else (cursor,)
    return all(isinstance(part, int) for part in parts)


def _decode_cursor(stored: dict[str, Any] | None) -> Any:
    if not stored:
        return None
    value = stored.get("value")
    # JSON turns composite keys into lists
    if isinstance(value, list):
        return tuple(value)
    return value


class SourceCursorReader:
    """Reads source rows in batches and persists resume positions.

    Args:
        source: Source adapter (None when only managing persisted cursors)
        state_config: State database configuration (cursor storage)
        batch_size: Rows per batch
    """

    def __init__(
        self, source: SourceAdapter | None, state_config: StateConfig, batch_size: int
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.source = source
        self.database_url = state_config.database_url
        self.batch_size = batch_size

    def fetch_next(self, kind: EntityKind, cursor: Any) -> tuple[list[ExternalRecord], Any]:
        """
        Fetch the batch after ``cursor``.

        Rows sharing a key are collapsed to the first one; order is preserved.

        Returns:
            Tuple of (records, new_cursor). Records are empty once the kind is
            exhausted, in which case the cursor is returned unchanged.

        Raises:
            SourceError: If the source cannot be read
        """
        stage = get_stage(kind)
        if self.source is None:
            raise SourceError("No source adapter configured")

        try:
            rows, next_cursor = self.source.fetch(kind, cursor, self.batch_size)
        except SourceError:
            raise
        except Exception as e:
            logger.error("source_fetch_failed", kind=kind.value, cursor=cursor, error=str(e))
            raise SourceError(f"Failed to fetch {kind.value} rows after {cursor!r}: {e}") from e

        if not rows:
            return [], cursor

        records: list[ExternalRecord] = []
        seen: set[Any] = set()
        for row in rows:
            try:
                key = stage.row_key(row)
            except KeyError as e:
                raise SourceError(f"{kind.value} row is missing key column {e}") from e
            if key in seen:
                continue
            seen.add(key)
            records.append(ExternalRecord(kind=kind, key=key, data=row))

        if len(records) < len(rows):
            logger.debug(
                "duplicate_source_rows_collapsed",
                kind=kind.value,
                fetched=len(rows),
                unique=len(records),
            )

        return records, next_cursor

    def load_cursor(self, kind: EntityKind) -> Any:
        """Get the persisted cursor for a kind (None when starting fresh)."""
        with get_session(self.database_url) as session:
            stored = session.execute(
                select(ImportCursor.cursor_value).filter_by(entity_kind=kind.value)
            ).scalar_one_or_none()
        return _decode_cursor(stored)

    def save_cursor(self, kind: EntityKind, cursor: Any, rows_processed: int = 0) -> None:
        """
        Persist the cursor for a kind.

        Numeric cursors only move forward; a value behind the stored one is
        ignored. String keys (anonymous usernames) are ordered by the source
        database's collation, so they are stored as given.

        Raises:
            StateError: If the write fails
        """
        if cursor is None:
            return

        with get_session(self.database_url) as session:
            existing = session.get(ImportCursor, kind.value)
            if existing is None:
                session.add(
                    ImportCursor(
                        entity_kind=kind.value,
                        cursor_value=_encode_cursor(cursor),
                        rows_processed=rows_processed,
                    )
                )
            else:
                current = _decode_cursor(existing.cursor_value)
                if _numeric(cursor) and _numeric(current) and cursor <= current:
                    logger.debug(
                        "cursor_not_advanced", kind=kind.value, current=current, proposed=cursor
                    )
                    return
                existing.cursor_value = _encode_cursor(cursor)
                existing.rows_processed = existing.rows_processed + rows_processed

        logger.debug("cursor_saved", kind=kind.value, cursor=cursor)

    def reset(self, kind: EntityKind | None = None) -> int:
        """
        Forget persisted cursors so the next run reads from the start.

        Returns:
            Number of cursors removed
        """
        with get_session(self.database_url) as session:
            query = session.query(ImportCursor)
            if kind is not None:
                query = query.filter(ImportCursor.entity_kind == kind.value)
            count = query.delete(synchronize_session=False)

        logger.info("cursors_reset", kind=kind.value if kind else "all", count=count)
        return count

    def list_cursors(self) -> list[dict[str, Any]]:
        """All persisted cursors, for status display."""
        with get_session(self.database_url) as session:
            cursors = session.execute(
                select(ImportCursor).order_by(ImportCursor.entity_kind)
            ).scalars().all()
            return [
                {
                    "kind": c.entity_kind,
                    "cursor": _decode_cursor(c.cursor_value),
                    "rows_processed": c.rows_processed,
                    "updated_at": c.updated_at,
                }
                for c in cursors
            ]
