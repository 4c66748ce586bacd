"""Shared fixtures: a temporary state database and in-memory collaborators."""

import copy
from collections.abc import Callable
from typing import Any

import pytest

from forum_migration.client.target_client import CreatedRecord
from forum_migration.config import ImportConfig, StateConfig
from forum_migration.entities import EntityKind, get_stage
from forum_migration.migration.coordinator import ImportOrchestrator
from forum_migration.migration.cursor import SourceCursorReader
from forum_migration.migration.database import dispose_engines
from forum_migration.migration.registry import IdentifierRegistry

# Keys the fake source orders and resumes by, where they differ from the row key
CURSOR_FIELDS = {EntityKind.CATEGORY: ("left_id",)}


class FakeSource:
    """Source adapter over in-memory rows, with keyset pagination."""

    def __init__(self, rows: dict[EntityKind, list[dict[str, Any]]], max_filesize: int = 0):
        self.rows = rows
        self.max_filesize = max_filesize
        self.fetches: list[tuple[EntityKind, Any]] = []

    def _cursor_fields(self, kind: EntityKind) -> tuple[str, ...]:
        return CURSOR_FIELDS.get(kind, get_stage(kind).key_columns)

    def _position(self, kind: EntityKind, row: dict[str, Any]) -> Any:
        fields = self._cursor_fields(kind)
        if len(fields) == 1:
            return row[fields[0]]
        return tuple(row[f] for f in fields)

    def count(self, kind: EntityKind) -> int:
        return len(self.rows.get(kind, []))

    def fetch(self, kind: EntityKind, cursor: Any, limit: int):
        self.fetches.append((kind, cursor))
        ordered = sorted(self.rows.get(kind, []), key=lambda row: self._position(kind, row))
        remaining = [
            row for row in ordered if cursor is None or self._position(kind, row) > cursor
        ]
        batch = [dict(row) for row in remaining[:limit]]
        if not batch:
            return [], cursor
        return batch, self._position(kind, batch[-1])

    def config_values(self) -> dict[str, Any]:
        return {"phpbb_version": "3.0.14", "max_filesize": self.max_filesize}

    def close(self) -> None:
        pass


class FakeTarget:
    """Target that assigns increasing ids and records every create.

    ``fail`` is called with (kind, attributes) before each create; an
    exception it returns is raised instead of creating the record.
    """

    def __init__(self, fail: Callable[[EntityKind, dict], Exception | None] | None = None):
        self.fail = fail
        self.created: list[tuple[EntityKind, dict[str, Any], int]] = []
        self.settings: dict[str, Any] = {}
        self.next_id = 1000
        self.closed = False

    async def create(self, kind: EntityKind, attributes: dict[str, Any]) -> CreatedRecord:
        if self.fail is not None:
            error = self.fail(kind, attributes)
            if error is not None:
                raise error

        self.next_id += 1
        internal_id = self.next_id
        payload: dict[str, Any] = {"id": internal_id}
        if kind.namespace == "post":
            if "topic_id" in attributes:
                payload["topic_id"] = attributes["topic_id"]
            else:
                payload["topic_id"] = internal_id + 50000
        self.created.append((kind, copy.deepcopy(attributes), internal_id))
        return CreatedRecord(internal_id=internal_id, payload=payload)

    async def get_site_setting(self, name: str) -> Any:
        return self.settings.get(name)

    async def update_site_setting(self, name: str, value: Any) -> None:
        self.settings[name] = value

    async def close(self) -> None:
        self.closed = True

    def created_of(self, kind: EntityKind) -> list[dict[str, Any]]:
        return [attributes for k, attributes, _ in self.created if k == kind]


def board_rows() -> dict[EntityKind, list[dict[str, Any]]]:
    """A small phpBB board: three users, one custom group, two forums, two topics."""
    return {
        EntityKind.USER: [
            {
                "user_id": 2,
                "username": "admin",
                "user_email": "admin@example.com",
                "user_regdate": 1200000000,
                "user_lastvisit": 1300000000,
                "user_type": 3,
                "group_name": "ADMINISTRATORS",
            },
            {
                "user_id": 3,
                "username": "alice",
                "user_email": "alice@example.com",
                "user_regdate": 1200000500,
                "user_lastvisit": 0,
                "user_type": 0,
                "group_name": "REGISTERED",
            },
            {
                "user_id": 4,
                "username": "bob",
                "user_email": "bob@example.com",
                "user_regdate": 1200000900,
                "user_lastvisit": 1250000000,
                "user_type": 1,
                "group_name": "REGISTERED",
            },
        ],
        EntityKind.ANONYMOUS_USER: [
            {"post_username": "guest", "first_post_time": 1200003000},
        ],
        EntityKind.GROUP: [
            {"group_id": 1, "group_type": 3, "group_name": "GUESTS", "group_desc": ""},
            {"group_id": 7, "group_type": 0, "group_name": "Beta testers", "group_desc": "Testers"},
        ],
        EntityKind.GROUP_MEMBERSHIP: [
            {"group_id": 1, "user_id": 2, "group_leader": 0},
            {"group_id": 7, "user_id": 3, "group_leader": 1},
            {"group_id": 7, "user_id": 4, "group_leader": 0},
        ],
        EntityKind.CATEGORY: [
            {
                "forum_id": 1,
                "parent_id": 0,
                "left_id": 1,
                "forum_name": "General",
                "forum_desc": "",
                "first_post_time": 1200002000,
            },
            {
                "forum_id": 2,
                "parent_id": 1,
                "left_id": 2,
                "forum_name": "News &amp; Announcements",
                "forum_desc": "Official news",
                "first_post_time": 1200001000,
            },
        ],
        EntityKind.POST: [
            _post(100, 10, 2, poster_id=3, first=100, title="Welcome"),
            _post(101, 10, 2, poster_id=4, first=100, title="Welcome"),
            _post(102, 11, 1, poster_id=2, first=102, title="Rules"),
            _post(103, 11, 1, poster_id=1, first=102, title="Rules", post_username="guest"),
        ],
        EntityKind.MESSAGE: [
            {
                "msg_id": 50,
                "root_level": 0,
                "author_id": 3,
                "message_time": 1200004000,
                "message_subject": "Hi",
                "message_text": "Hello bob",
                "to_address": "u_4",
                "bbcode_uid": "",
            },
            {
                "msg_id": 51,
                "root_level": 50,
                "author_id": 4,
                "message_time": 1200004100,
                "message_subject": "Re: Hi",
                "message_text": "Hi alice",
                "to_address": "u_3",
                "bbcode_uid": "",
            },
        ],
        EntityKind.BOOKMARK: [
            {"user_id": 3, "topic_id": 11, "topic_first_post_id": 102},
            {"user_id": 4, "topic_id": 10, "topic_first_post_id": 100},
        ],
    }


def _post(
    post_id: int,
    topic_id: int,
    forum_id: int,
    poster_id: int,
    first: int,
    title: str,
    post_username: str = "",
) -> dict[str, Any]:
    return {
        "post_id": post_id,
        "topic_id": topic_id,
        "forum_id": forum_id,
        "topic_title": title,
        "topic_first_post_id": first,
        "topic_views": 12,
        "topic_type": 0,
        "topic_status": 0,
        "poster_id": poster_id,
        "post_username": post_username,
        "post_time": 1200003000 + post_id,
        "post_text": f"Post {post_id}",
        "bbcode_uid": "",
    }


@pytest.fixture
def state_config(tmp_path):
    yield StateConfig(db_path=str(tmp_path / "state.db"))
    dispose_engines()


@pytest.fixture
def registry(state_config) -> IdentifierRegistry:
    return IdentifierRegistry(state_config)


@pytest.fixture
def source() -> FakeSource:
    return FakeSource(board_rows())


@pytest.fixture
def target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
def make_orchestrator(state_config, registry):
    """Build an orchestrator over the shared state database."""

    def _make(
        source: FakeSource,
        target: FakeTarget,
        batch_size: int = 2,
        **options: Any,
    ) -> ImportOrchestrator:
        reader = SourceCursorReader(source, state_config, batch_size)
        return ImportOrchestrator(
            source=source,
            target=target,
            registry=registry,
            reader=reader,
            options=ImportConfig(**options),
        )

    return _make
