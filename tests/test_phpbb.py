"""Tests for the phpBB3 source adapter against a SQLite copy of the schema."""

import pytest
from sqlalchemy import create_engine, text

from forum_migration.client.exceptions import SourceError
from forum_migration.config import SourceDatabaseConfig
from forum_migration.entities import EntityKind
from forum_migration.source import PhpBB3Adapter, SourceAdapter
from forum_migration.source.phpbb import _keyset_condition

SCHEMA = [
    "CREATE TABLE phpbb_config (config_name TEXT PRIMARY KEY, config_value TEXT)",
    "CREATE TABLE phpbb_groups (group_id INTEGER PRIMARY KEY, group_type INTEGER, "
    "group_name TEXT, group_desc TEXT)",
    "CREATE TABLE phpbb_users (user_id INTEGER PRIMARY KEY, username TEXT, user_email TEXT, "
    "user_regdate INTEGER, user_lastvisit INTEGER, user_type INTEGER, "
    "user_inactive_reason INTEGER, user_website TEXT, user_from TEXT, group_id INTEGER)",
    "CREATE TABLE phpbb_user_group (group_id INTEGER, user_id INTEGER, group_leader INTEGER, "
    "user_pending INTEGER)",
    "CREATE TABLE phpbb_forums (forum_id INTEGER PRIMARY KEY, parent_id INTEGER, "
    "left_id INTEGER, forum_name TEXT, forum_desc TEXT, forum_type INTEGER)",
    "CREATE TABLE phpbb_topics (topic_id INTEGER PRIMARY KEY, forum_id INTEGER, "
    "topic_title TEXT, topic_first_post_id INTEGER, topic_views INTEGER, topic_type INTEGER, "
    "topic_status INTEGER, topic_time INTEGER)",
    "CREATE TABLE phpbb_posts (post_id INTEGER PRIMARY KEY, topic_id INTEGER, "
    "poster_id INTEGER, post_username TEXT, post_time INTEGER, post_text TEXT, "
    "bbcode_uid TEXT)",
    "CREATE TABLE phpbb_privmsgs (msg_id INTEGER PRIMARY KEY, root_level INTEGER, "
    "author_id INTEGER, message_time INTEGER, message_subject TEXT, message_text TEXT, "
    "to_address TEXT, bbcode_uid TEXT)",
    "CREATE TABLE phpbb_bookmarks (user_id INTEGER, topic_id INTEGER)",
]

DATA = [
    "INSERT INTO phpbb_config VALUES ('version', '3.0.12'), ('max_filesize', '262144'), "
    "('board_disable', '0')",
    "INSERT INTO phpbb_groups VALUES (1, 3, 'GUESTS', ''), (5, 3, 'ADMINISTRATORS', ''), "
    "(7, 0, 'Testers', 'People who test')",
    "INSERT INTO phpbb_users VALUES "
    "(1, 'Anonymous', '', 0, 0, 2, 0, '', '', 1), "
    "(2, 'admin', 'admin@example.com', 1200000000, 0, 3, 0, '', '', 5), "
    "(3, 'alice', 'alice@example.com', 1200000100, 0, 0, 0, '', 'Berlin', 7), "
    "(4, 'bob', 'bob@example.com', 1200000200, 0, 0, 0, '', '', 7)",
    "INSERT INTO phpbb_user_group VALUES (5, 2, 0, 0), (7, 3, 1, 0), (7, 4, 0, 0), "
    "(7, 2, 0, 1)",
    "INSERT INTO phpbb_forums VALUES (1, 0, 1, 'General', '', 1), "
    "(2, 1, 2, 'News', '', 1), (3, 0, 5, 'Homepage', '', 2), (4, 0, 3, 'Off topic', '', 1)",
    "INSERT INTO phpbb_topics VALUES (10, 2, 'Welcome', 100, 5, 0, 0, 1200001000), "
    "(11, 1, 'Rules', 102, 3, 1, 1, 1200002000)",
    "INSERT INTO phpbb_posts VALUES (100, 10, 3, '', 1200001000, 'Hi', 'u1'), "
    "(101, 10, 1, 'visitor', 1200001100, 'Hello', ''), "
    "(102, 11, 2, '', 1200002000, 'Rules', ''), "
    "(103, 11, 1, 'visitor', 1200002100, 'Ok', ''), "
    "(104, 11, 1, 'another', 1200002200, 'Me too', '')",
    "INSERT INTO phpbb_privmsgs VALUES (50, 0, 3, 1200003000, 'Hi', 'Hello', 'u_4', '')",
    "INSERT INTO phpbb_bookmarks VALUES (4, 11), (3, 10), (3, 11)",
]


@pytest.fixture
def adapter(tmp_path):
    url = f"sqlite:///{tmp_path / 'phpbb.db'}"
    engine = create_engine(url)
    with engine.begin() as conn:
        for statement in SCHEMA + DATA:
            conn.execute(text(statement))

    adapter = PhpBB3Adapter(SourceDatabaseConfig(url=url), engine=engine)
    yield adapter
    adapter.close()


def fetch_all(adapter, kind, limit=2):
    rows, cursor = [], None
    while True:
        batch, cursor = adapter.fetch(kind, cursor, limit)
        if not batch:
            return rows
        rows.extend(batch)


def test_adapter_satisfies_protocol(adapter):
    assert isinstance(adapter, SourceAdapter)


def test_config_values(adapter):
    assert adapter.config_values() == {"phpbb_version": "3.0.12", "max_filesize": 262144}


def test_users_exclude_anonymous_and_bots(adapter):
    rows = fetch_all(adapter, EntityKind.USER)

    assert [r["user_id"] for r in rows] == [2, 3, 4]
    assert rows[0]["group_name"] == "ADMINISTRATORS"
    assert adapter.count(EntityKind.USER) == 3


def test_fetch_returns_last_key_as_cursor(adapter):
    rows, cursor = adapter.fetch(EntityKind.USER, None, 2)

    assert [r["user_id"] for r in rows] == [2, 3]
    assert cursor == 3

    rows, cursor = adapter.fetch(EntityKind.USER, 4, 2)
    assert rows == []
    assert cursor == 4


def test_anonymous_users_grouped_by_name(adapter):
    rows = fetch_all(adapter, EntityKind.ANONYMOUS_USER, limit=1)

    assert [(r["post_username"], r["first_post_time"]) for r in rows] == [
        ("another", 1200002200),
        ("visitor", 1200001100),
    ]
    assert adapter.count(EntityKind.ANONYMOUS_USER) == 2


def test_memberships_use_composite_cursor(adapter):
    rows, cursor = adapter.fetch(EntityKind.GROUP_MEMBERSHIP, None, 2)

    assert [(r["group_id"], r["user_id"]) for r in rows] == [(5, 2), (7, 3)]
    assert cursor == (7, 3)

    rows, cursor = adapter.fetch(EntityKind.GROUP_MEMBERSHIP, cursor, 2)
    assert [(r["group_id"], r["user_id"]) for r in rows] == [(7, 4)]


def test_forums_in_tree_order_without_links(adapter):
    rows = fetch_all(adapter, EntityKind.CATEGORY)

    assert [r["forum_id"] for r in rows] == [1, 2, 4]
    assert rows[1]["first_post_time"] == 1200001000
    assert rows[2]["first_post_time"] is None


def test_posts_carry_topic_columns(adapter):
    rows = fetch_all(adapter, EntityKind.POST)

    assert [r["post_id"] for r in rows] == [100, 101, 102, 103, 104]
    first = rows[0]
    assert first["forum_id"] == 2
    assert first["topic_first_post_id"] == 100
    assert first["topic_title"] == "Welcome"
    assert first["bbcode_uid"] == "u1"


def test_messages_and_bookmarks(adapter):
    [message] = fetch_all(adapter, EntityKind.MESSAGE)
    assert message["to_address"] == "u_4"

    bookmarks = fetch_all(adapter, EntityKind.BOOKMARK)
    assert [(b["user_id"], b["topic_id"], b["topic_first_post_id"]) for b in bookmarks] == [
        (3, 10, 100),
        (3, 11, 102),
        (4, 11, 102),
    ]


def test_table_prefix(tmp_path):
    url = f"sqlite:///{tmp_path / 'other.db'}"
    engine = create_engine(url)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE forum_config (config_name TEXT, config_value TEXT)"))
        conn.execute(text("INSERT INTO forum_config VALUES ('version', '3.1.0')"))

    adapter = PhpBB3Adapter(SourceDatabaseConfig(url=url, table_prefix="forum_"), engine=engine)

    assert adapter.config_values()["phpbb_version"] == "3.1.0"
    assert adapter.config_values()["max_filesize"] == 0


def test_query_errors_become_source_errors(tmp_path):
    adapter = PhpBB3Adapter(SourceDatabaseConfig(url=f"sqlite:///{tmp_path / 'empty.db'}"))

    with pytest.raises(SourceError):
        adapter.count(EntityKind.USER)


def test_unknown_kind(adapter):
    with pytest.raises(SourceError):
        adapter.fetch(EntityKind.TOPIC, None, 10)


def test_keyset_condition():
    assert _keyset_condition(("a",), None) == ("1 = 1", {})
    assert _keyset_condition(("a",), 5) == ("((a > :c0))", {"c0": 5})

    condition, params = _keyset_condition(("a", "b"), (7, 3))
    assert condition == "((a > :c0) OR (a = :c0 AND b > :c1))"
    assert params == {"c0": 7, "c1": 3}

    with pytest.raises(SourceError):
        _keyset_condition(("a", "b"), 5)
