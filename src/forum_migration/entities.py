"""Central entity kind definitions - single source of truth.

This module defines every kind of record the importer moves, the registry
namespace each kind's ids live in, and the fixed stage order of an import
run. Later stages reference the mappings of earlier ones (a post needs its
author and category), so the order here is a dependency order.
"""

from dataclasses import dataclass
from enum import Enum


class EntityKind(str, Enum):
    """Kinds of source records."""

    USER = "user"
    ANONYMOUS_USER = "anonymous_user"
    GROUP = "group"
    GROUP_MEMBERSHIP = "group_membership"
    MAPPED_CATEGORY = "mapped_category"
    CATEGORY = "category"
    POST = "post"
    MESSAGE = "message"
    BOOKMARK = "bookmark"
    # Secondary ids recorded by post-create callbacks (source topic -> target topic)
    TOPIC = "topic"

    @property
    def namespace(self) -> str:
        """Registry namespace for this kind's external ids.

        Anonymous users are users, messages are posts, and mapped categories
        are categories on the target side, so they share lookup tables.
        """
        return _NAMESPACES.get(self, self.value)


_NAMESPACES = {
    EntityKind.ANONYMOUS_USER: EntityKind.USER.value,
    EntityKind.MESSAGE: EntityKind.POST.value,
    EntityKind.MAPPED_CATEGORY: EntityKind.CATEGORY.value,
}


@dataclass(frozen=True)
class StageInfo:
    """Metadata for one import stage."""

    kind: EntityKind
    description: str
    key_columns: tuple[str, ...]  # Source columns forming the external id
    option_flag: str | None = None  # ImportConfig flag that enables an optional stage
    uses_cursor: bool = True

    def row_key(self, row: dict) -> object:
        """Extract the source key from a row (a tuple for composite keys)."""
        if len(self.key_columns) == 1:
            return row[self.key_columns[0]]
        return tuple(row[column] for column in self.key_columns)


# Stage order of every run. Optional stages are skipped when their flag is off;
# the relative order of the others never changes.
STAGES: tuple[StageInfo, ...] = (
    StageInfo(EntityKind.USER, "Users", ("user_id",)),
    StageInfo(
        EntityKind.ANONYMOUS_USER,
        "Anonymous users",
        ("post_username",),
        option_flag="import_anonymous_users",
    ),
    StageInfo(EntityKind.GROUP, "Groups", ("group_id",)),
    StageInfo(EntityKind.GROUP_MEMBERSHIP, "Group memberships", ("group_id", "user_id")),
    StageInfo(
        EntityKind.MAPPED_CATEGORY,
        "Mapped categories",
        (),
        uses_cursor=False,
    ),
    StageInfo(EntityKind.CATEGORY, "Categories", ("forum_id",)),
    StageInfo(EntityKind.POST, "Topics and posts", ("post_id",)),
    StageInfo(
        EntityKind.MESSAGE,
        "Private messages",
        ("msg_id",),
        option_flag="import_private_messages",
    ),
    StageInfo(
        EntityKind.BOOKMARK,
        "Bookmarks",
        ("user_id", "topic_id"),
        option_flag="import_bookmarks",
    ),
)

STAGE_BY_KIND: dict[EntityKind, StageInfo] = {stage.kind: stage for stage in STAGES}

IMPORTABLE_KINDS: list[str] = [stage.kind.value for stage in STAGES]


def get_stage(kind: EntityKind | str) -> StageInfo:
    """Get stage metadata for an entity kind.

    Raises:
        ValueError: If the kind has no import stage
    """
    try:
        return STAGE_BY_KIND[EntityKind(kind)]
    except (KeyError, ValueError) as e:
        raise ValueError(f"Unknown entity kind: {kind}") from e
