"""Entity mappers for translating phpBB rows into target create requests.

This module provides a base mapper class and one mapper per entity kind.
A mapper is a pure function of the row plus registry lookups: it either
returns a MappedRequest, raises MappingError when the row cannot be
translated, or raises SkipRecord to drop the row on purpose.
"""

import hashlib
import html
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from forum_migration.client.exceptions import MappingError, SkipRecord
from forum_migration.config import ImportConfig
from forum_migration.entities import EntityKind
from forum_migration.migration.cursor import ExternalRecord
from forum_migration.migration.registry import IdentifierRegistry
from forum_migration.migration.text import TextProcessor
from forum_migration.utils.logging import get_logger

logger = get_logger(__name__)

# phpBB constants
ANONYMOUS_USER_ID = 1
USER_INACTIVE = 1
GROUP_SPECIAL = 3
ITEM_LOCKED = 1
POST_NORMAL = 0

_GROUP_NAME_INVALID = re.compile(r"[^a-zA-Z0-9\-_. ]")

@dataclass(frozen=True)
class SecondaryId:
    """An id the create response carries besides the record's own.

    ``response_key`` names the field of the response holding the internal id
    that ``external_id`` maps to in ``kind``'s namespace.
    """

    kind: EntityKind
    external_id: str
    response_key: str


@dataclass
class MappedRequest:
    """Target attributes for one row.

    ``secondary_ids`` are registered together with the record itself, in the
    same transaction (e.g. the topic a first post opened).
    """

    attributes: dict[str, Any]
    secondary_ids: tuple[SecondaryId, ...] = ()


class LookupContext:
    """Read-only view of the identifier registry handed to mappers.

    Args:
        registry: Identifier registry
        config: Import configuration
        category_ids: Forum id -> category id resolved from the category mapping
    """

    def __init__(
        self,
        registry: IdentifierRegistry,
        config: ImportConfig,
        category_ids: Mapping[str, int] | None = None,
    ):
        self._registry = registry
        self._config = config
        self._category_ids = dict(category_ids or {})

    def internal_id_for(self, kind: EntityKind, external_id: str) -> int | None:
        """Internal id registered for an external id, or None."""
        return self._registry.lookup(kind, external_id)

    def category_for_forum(self, forum_id: Any) -> int | None:
        """Category a source forum's content lands in.

        Forums in the category mapping resolve to their configured path,
        everything else to the category imported for the forum itself.
        """
        if self._config.is_skipped_forum(forum_id):
            return None
        if self._config.is_mapped_forum(forum_id):
            resolved = self._category_ids.get(str(forum_id))
            if resolved is not None:
                return resolved
            path = self._config.category_mapping[str(forum_id)]
            return self.internal_id_for(EntityKind.CATEGORY, self._config.prefixed(path))
        return self.internal_id_for(EntityKind.CATEGORY, self._config.prefixed(forum_id))


def _timestamp(value: Any) -> str | None:
    """Convert a unix timestamp to ISO-8601 UTC (0 and None mean unknown)."""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), UTC).isoformat()


def _without_none(attributes: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in attributes.items() if v is not None}


class EntityMapper:
    """Base class for mapping one kind of source row."""

    kind: EntityKind

    def __init__(
        self,
        config: ImportConfig,
        lookup: LookupContext,
        text_processor: TextProcessor | None = None,
    ):
        """Initialize mapper.

        Args:
            config: Import configuration
            lookup: Registry lookups for resolving references
            text_processor: BBCode to Markdown converter
        """
        self.config = config
        self.lookup = lookup
        self.text_processor = text_processor or TextProcessor()

    def external_id(self, record: ExternalRecord) -> str:
        """Registry external id for a record."""
        return self.config.prefixed(record.key)

    def map(self, record: ExternalRecord) -> MappedRequest:
        """Translate a record into a create request.

        Raises:
            MappingError: If the row cannot be translated
            SkipRecord: If the row should be dropped on purpose
        """
        raise NotImplementedError

    def _user_id(self, user_id: Any) -> int | None:
        return self.lookup.internal_id_for(EntityKind.USER, self.config.prefixed(user_id))


class UserMapper(EntityMapper):
    """Registered phpBB users."""

    kind = EntityKind.USER

    def map(self, record: ExternalRecord) -> MappedRequest:
        row = record.data
        username = (row.get("username") or "").strip()
        if not username:
            raise MappingError(f"User {record.key} has no username")

        created_at = _timestamp(row.get("user_regdate"))
        return MappedRequest(
            _without_none(
                {
                    "username": username,
                    "email": row.get("user_email") or None,
                    "name": username,
                    "created_at": created_at,
                    "last_seen_at": _timestamp(row.get("user_lastvisit")) or created_at,
                    "website": row.get("user_website") or None,
                    "location": row.get("user_from") or None,
                    "active": row.get("user_type") != USER_INACTIVE,
                    "admin": row.get("group_name") == "ADMINISTRATORS",
                    "moderator": row.get("group_name") == "GLOBAL_MODERATORS",
                }
            )
        )


class AnonymousUserMapper(EntityMapper):
    """Guest posters, identified only by the name they typed."""

    kind = EntityKind.ANONYMOUS_USER

    def external_id(self, record: ExternalRecord) -> str:
        return self.config.prefixed(f"anon_{record.key}")

    def map(self, record: ExternalRecord) -> MappedRequest:
        username = record.data["post_username"]
        digest = hashlib.sha1(username.encode("utf-8")).hexdigest()[:16]
        created_at = _timestamp(record.data.get("first_post_time"))
        return MappedRequest(
            _without_none(
                {
                    "username": username,
                    "email": f"anonymous_{digest}@no-email.invalid",
                    "name": username,
                    "created_at": created_at,
                    "last_seen_at": created_at,
                    "active": False,
                }
            )
        )


class GroupMapper(EntityMapper):
    """User groups."""

    kind = EntityKind.GROUP

    def map(self, record: ExternalRecord) -> MappedRequest:
        row = record.data
        if row.get("group_type") == GROUP_SPECIAL:
            raise SkipRecord(f"Group {record.key} is a built-in phpBB group")

        name = row.get("group_name") or ""
        if not name:
            raise MappingError(f"Group {record.key} has no name")

        full = f"{self.config.site_name}_{name}" if self.config.site_name else name
        group_name = _GROUP_NAME_INVALID.sub("_", full[:20])

        description = row.get("group_desc")
        try:
            bio_raw = self.text_processor.process_raw_text(description)
        except Exception as e:
            logger.debug("group_description_not_processed", group_id=record.key, error=str(e))
            bio_raw = description

        return MappedRequest(
            _without_none({"name": group_name, "full_name": name, "bio_raw": bio_raw or None})
        )


class GroupMembershipMapper(EntityMapper):
    """Users' group memberships."""

    kind = EntityKind.GROUP_MEMBERSHIP

    def map(self, record: ExternalRecord) -> MappedRequest:
        row = record.data
        group_id = self.lookup.internal_id_for(
            EntityKind.GROUP, self.config.prefixed(row["group_id"])
        )
        if group_id is None:
            raise SkipRecord(f"Group {row['group_id']} was not imported")

        user_id = self._user_id(row["user_id"])
        if user_id is None:
            raise MappingError(f"User {row['user_id']} of group {row['group_id']} was not imported")

        return MappedRequest(
            {"group_id": group_id, "user_id": user_id, "owner": bool(row.get("group_leader"))}
        )


class CategoryMapper(EntityMapper):
    """Forums that are imported as categories of their own."""

    kind = EntityKind.CATEGORY

    def map(self, record: ExternalRecord) -> MappedRequest:
        row = record.data
        forum_id = row["forum_id"]
        if self.config.is_skipped_forum(forum_id):
            raise SkipRecord(f"Forum {forum_id} is marked skip")
        if self.config.is_mapped_forum(forum_id):
            raise SkipRecord(f"Forum {forum_id} is mapped onto a configured category")

        parent_category_id = None
        parent_id = row.get("parent_id") or 0
        if parent_id > 0:
            parent_category_id = self.lookup.category_for_forum(parent_id)
            if parent_category_id is None:
                raise MappingError(
                    f"Parent forum {parent_id} of forum {forum_id} has no category"
                )

        description = row.get("forum_desc")
        return MappedRequest(
            _without_none(
                {
                    "name": html.unescape(row.get("forum_name") or f"Forum {forum_id}"),
                    "description": self.text_processor.process_raw_text(description) or None,
                    "position": row.get("left_id"),
                    "parent_category_id": parent_category_id,
                    "created_at": _timestamp(row.get("first_post_time")),
                }
            )
        )


class PostMapper(EntityMapper):
    """Topics (first posts) and replies."""

    kind = EntityKind.POST

    def _author_id(self, row: dict[str, Any]) -> int:
        user_id = self._user_id(row["poster_id"])
        if user_id is None and row["poster_id"] == ANONYMOUS_USER_ID and row.get("post_username"):
            user_id = self.lookup.internal_id_for(
                EntityKind.ANONYMOUS_USER, self.config.prefixed(f"anon_{row['post_username']}")
            )
        if user_id is None:
            user_id = self.config.fallback_user_id
        return user_id

    def map(self, record: ExternalRecord) -> MappedRequest:
        row = record.data
        forum_id = row["forum_id"]
        if self.config.is_skipped_forum(forum_id):
            raise SkipRecord(f"Forum {forum_id} is marked skip")

        attributes: dict[str, Any] = {
            "user_id": self._author_id(row),
            "raw": self.text_processor.process_raw_text(row.get("post_text"), row.get("bbcode_uid")),
            "created_at": _timestamp(row.get("post_time")),
        }
        topic_key = self.config.prefixed(row["topic_id"])

        if row["post_id"] == row.get("topic_first_post_id"):
            category_id = self.lookup.category_for_forum(forum_id)
            if category_id is None:
                raise MappingError(f"Forum {forum_id} of topic {row['topic_id']} has no category")
            attributes.update(
                {
                    "title": html.unescape(row.get("topic_title") or ""),
                    "category": category_id,
                    "views": row.get("topic_views"),
                    "pinned": (row.get("topic_type") or POST_NORMAL) != POST_NORMAL,
                    "closed": row.get("topic_status") == ITEM_LOCKED,
                }
            )
            tags = self.config.tags_for_forum(forum_id)
            if tags:
                attributes["tags"] = tags
            return MappedRequest(
                _without_none(attributes),
                secondary_ids=(SecondaryId(EntityKind.TOPIC, topic_key, "topic_id"),),
            )

        topic_id = self.lookup.internal_id_for(EntityKind.TOPIC, topic_key)
        if topic_id is None:
            raise MappingError(f"Topic {row['topic_id']} of post {record.key} was not imported")
        attributes["topic_id"] = topic_id
        return MappedRequest(_without_none(attributes))


class MessageMapper(EntityMapper):
    """Private messages, imported as private topics and replies."""

    kind = EntityKind.MESSAGE

    def external_id(self, record: ExternalRecord) -> str:
        return self.config.prefixed(f"pm:{record.key}")

    def _recipient_ids(self, to_address: str | None) -> list[int]:
        # to_address looks like "u_2:u_3:g_5"; groups are not expanded
        recipients = []
        for address in (to_address or "").split(":"):
            if not address.startswith("u_"):
                continue
            user_id = self._user_id(address[2:])
            if user_id is not None and user_id not in recipients:
                recipients.append(user_id)
        return recipients

    def map(self, record: ExternalRecord) -> MappedRequest:
        row = record.data
        author_id = self._user_id(row["author_id"])
        if author_id is None:
            raise MappingError(f"Author {row['author_id']} of message {record.key} was not imported")

        attributes: dict[str, Any] = {
            "user_id": author_id,
            "raw": self.text_processor.process_raw_text(
                row.get("message_text"), row.get("bbcode_uid")
            ),
            "created_at": _timestamp(row.get("message_time")),
        }

        root_level = row.get("root_level") or 0
        if root_level == 0:
            recipients = [uid for uid in self._recipient_ids(row.get("to_address")) if uid != author_id]
            if not recipients:
                raise SkipRecord(f"Message {record.key} has no imported recipients")
            attributes.update(
                {
                    "title": html.unescape(row.get("message_subject") or ""),
                    "archetype": "private_message",
                    "target_user_ids": recipients,
                }
            )
            topic_key = self.config.prefixed(f"pm:{record.key}")
            return MappedRequest(
                _without_none(attributes),
                secondary_ids=(SecondaryId(EntityKind.TOPIC, topic_key, "topic_id"),),
            )

        topic_id = self.lookup.internal_id_for(
            EntityKind.TOPIC, self.config.prefixed(f"pm:{root_level}")
        )
        if topic_id is None:
            raise MappingError(f"Conversation {root_level} of message {record.key} was not imported")
        attributes["topic_id"] = topic_id
        return MappedRequest(_without_none(attributes))


class BookmarkMapper(EntityMapper):
    """Topic bookmarks, attached to the topic's first post."""

    kind = EntityKind.BOOKMARK

    def map(self, record: ExternalRecord) -> MappedRequest:
        row = record.data
        user_id = self._user_id(row["user_id"])
        if user_id is None:
            raise SkipRecord(f"User {row['user_id']} was not imported")

        post_id = self.lookup.internal_id_for(
            EntityKind.POST, self.config.prefixed(row.get("topic_first_post_id"))
        )
        if post_id is None:
            raise SkipRecord(f"First post of topic {row['topic_id']} was not imported")

        return MappedRequest({"user_id": user_id, "post_id": post_id})


_MAPPERS: dict[EntityKind, type[EntityMapper]] = {
    EntityKind.USER: UserMapper,
    EntityKind.ANONYMOUS_USER: AnonymousUserMapper,
    EntityKind.GROUP: GroupMapper,
    EntityKind.GROUP_MEMBERSHIP: GroupMembershipMapper,
    EntityKind.CATEGORY: CategoryMapper,
    EntityKind.POST: PostMapper,
    EntityKind.MESSAGE: MessageMapper,
    EntityKind.BOOKMARK: BookmarkMapper,
}


def create_mapper(
    kind: EntityKind,
    config: ImportConfig,
    lookup: LookupContext,
    text_processor: TextProcessor | None = None,
) -> EntityMapper:
    """Create the mapper for an entity kind.

    Raises:
        NotImplementedError: If the kind has no row mapper
    """
    mapper_class = _MAPPERS.get(kind)
    if not mapper_class:
        raise NotImplementedError(f"No mapper for entity kind: {kind.value}")
    return mapper_class(config, lookup, text_processor)
