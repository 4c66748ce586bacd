"""Interface between the import engine and a source database."""

from typing import Any, Protocol, runtime_checkable

from forum_migration.entities import EntityKind


@runtime_checkable
class SourceAdapter(Protocol):
    """Protocol for reading source rows in batches.

    Rows are plain dicts. Each kind is read in a fixed order on its key and
    the adapter hands back an opaque cursor that resumes after the last row
    returned. Passing ``None`` starts from the beginning.
    """

    def count(self, kind: EntityKind) -> int:
        """Total number of rows of this kind (for progress display)."""
        ...

    def fetch(
        self, kind: EntityKind, cursor: Any, limit: int
    ) -> tuple[list[dict[str, Any]], Any]:
        """Fetch up to ``limit`` rows after ``cursor``.

        Returns:
            Tuple of (rows, next_cursor). Rows are empty when exhausted.
        """
        ...

    def config_values(self) -> dict[str, Any]:
        """Site-wide source values (``phpbb_version``, ``max_filesize``)."""
        ...
