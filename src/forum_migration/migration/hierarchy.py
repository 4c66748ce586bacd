"""
Category hierarchy resolution.

The ``category_mapping`` option maps source forums onto category paths that
may not exist yet on the target, e.g. ``{"4": ["Support", "Linux"]}``. The
resolver creates every category on those paths, parents before children, and
reports which category each mapped forum ends up in.
"""

import traceback
from collections.abc import Iterable
from dataclasses import dataclass, field

from forum_migration.client.exceptions import (
    FATAL_TARGET_ERRORS,
    APIError,
    HierarchyError,
)
from forum_migration.client.target_client import ForumTarget
from forum_migration.config import SKIP, ImportConfig
from forum_migration.entities import EntityKind
from forum_migration.migration.importer import ImportErrorRecord
from forum_migration.migration.registry import IdentifierRegistry
from forum_migration.utils.logging import get_logger, log_row_failure

logger = get_logger(__name__)

CategoryPath = tuple[str, ...]


def ordered_paths(category_mapping: dict[str, list[str] | str]) -> list[CategoryPath]:
    """Every category path the mapping needs, in creation order.

    Each configured path contributes all of its prefixes. Paths are sorted by
    depth and then by their comma-joined form, so a parent always comes
    before its children and the order is stable between runs.
    """
    paths: set[CategoryPath] = set()
    for value in category_mapping.values():
        if value == SKIP:
            continue
        for depth in range(1, len(value) + 1):
            paths.add(tuple(value[:depth]))
    return sorted(paths, key=lambda path: (len(path), ",".join(path)))


@dataclass
class HierarchyResult:
    """Outcome of one hierarchy pass."""

    order: list[CategoryPath] = field(default_factory=list)
    path_ids: dict[CategoryPath, int] = field(default_factory=dict)
    category_ids: dict[str, int] = field(default_factory=dict)
    skipped_forums: set[str] = field(default_factory=set)
    errors: list[ImportErrorRecord] = field(default_factory=list)
    created: int = 0
    reused: int = 0


class HierarchyResolver:
    """Creates the categories named by ``category_mapping``.

    The configuration is read, never modified. The path table lives for one
    resolve() call; the registry is the only durable record of what exists.

    Args:
        config: Import configuration
        registry: Identifier registry
        target: Target system categories are created in
    """

    def __init__(self, config: ImportConfig, registry: IdentifierRegistry, target: ForumTarget):
        self.config = config
        self.registry = registry
        self.target = target

    def external_id(self, path: Iterable[str]) -> str:
        return self.config.prefixed(list(path))

    async def resolve(self) -> HierarchyResult:
        """Create or reuse every mapped category path.

        Returns:
            HierarchyResult with the creation order, the id of every resolved
            path, the category of every mapped forum, and one error per path
            that could not be resolved

        Raises:
            DuplicateMappingError: If a created category conflicts with the registry
            StateError: If the registry cannot be read or written
            NetworkError, ServerError, RateLimitError, AuthenticationError,
            AuthorizationError: If the target is unusable
        """
        mapping = self.config.category_mapping
        result = HierarchyResult(order=ordered_paths(mapping))
        result.skipped_forums = {forum_id for forum_id, value in mapping.items() if value == SKIP}
        planned: set[CategoryPath] = set()

        for path in result.order:
            external_id = self.external_id(path)
            parent = path[:-1]
            parent_id = None

            if parent:
                parent_id = result.path_ids.get(parent)
                if parent_id is None and parent not in planned:
                    error = HierarchyError(
                        f"Parent category {' > '.join(parent)} of {' > '.join(path)} "
                        "was not created"
                    )
                    logger.warning("category_parent_missing", path=list(path))
                    result.errors.append(self._error(external_id, error))
                    continue

            existing = self.registry.lookup(EntityKind.MAPPED_CATEGORY, external_id)
            if existing is not None:
                result.path_ids[path] = existing
                result.reused += 1
                continue

            if self.config.dry_run:
                planned.add(path)
                logger.info("category_path_planned", path=list(path))
                continue

            attributes = {"name": path[-1]}
            if parent_id is not None:
                attributes["parent_category_id"] = parent_id

            try:
                created = await self.target.create(EntityKind.MAPPED_CATEGORY, attributes)
            except FATAL_TARGET_ERRORS:
                raise
            except APIError as e:
                log_row_failure(
                    logger, e, EntityKind.MAPPED_CATEGORY.value, external_id, step="create_category"
                )
                result.errors.append(self._error(external_id, e))
                continue

            self.registry.register(EntityKind.MAPPED_CATEGORY, external_id, created.internal_id)
            result.path_ids[path] = created.internal_id
            result.created += 1
            logger.info(
                "category_path_created", path=list(path), internal_id=created.internal_id
            )

        for forum_id, value in mapping.items():
            if value == SKIP:
                continue
            internal_id = result.path_ids.get(tuple(value))
            if internal_id is not None:
                result.category_ids[forum_id] = internal_id

        logger.info(
            "category_hierarchy_resolved",
            paths=len(result.order),
            created=result.created,
            reused=result.reused,
            errors=len(result.errors),
        )
        return result

    def _error(self, external_id: str, error: BaseException) -> ImportErrorRecord:
        return ImportErrorRecord(
            entity_kind=EntityKind.MAPPED_CATEGORY.value,
            external_id=external_id,
            message=str(error),
            cause=type(error).__name__,
            traceback="".join(traceback.format_exception(error)) if error.__traceback__ else "",
        )
