"""phpBB3 source adapter.

Reads a phpBB 3.0/3.1 database through SQLAlchemy Core. Every kind is read
with keyset pagination (``WHERE key > :cursor ORDER BY key LIMIT n``), so a
batch costs the same at the end of a large table as at the start, and the
cursor can be persisted between runs.
"""

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from forum_migration.client.exceptions import SourceError
from forum_migration.config import SourceDatabaseConfig
from forum_migration.entities import EntityKind
from forum_migration.utils.logging import get_logger

logger = get_logger(__name__)

# phpBB constants
ANONYMOUS_USER_ID = 1
USER_IGNORE = 2
FORUM_LINK = 2


@dataclass(frozen=True)
class _KindQuery:
    """SQL for one entity kind.

    ``select`` holds ``{p}`` for the table prefix and ``{keyset}`` for the
    resume condition. ``order_columns`` are the SQL expressions the rows are
    ordered by, ``cursor_fields`` the row keys holding the same values.
    """

    select: str
    count: str
    order_columns: tuple[str, ...]
    cursor_fields: tuple[str, ...]


_QUERIES: dict[EntityKind, _KindQuery] = {
    EntityKind.USER: _KindQuery(
        select=(
            "SELECT u.user_id, u.username, u.user_email, u.user_regdate, u.user_lastvisit, "
            "u.user_type, u.user_inactive_reason, u.user_website, u.user_from, g.group_name "
            "FROM {p}users u LEFT OUTER JOIN {p}groups g ON g.group_id = u.group_id "
            f"WHERE u.user_type <> {USER_IGNORE} AND {{keyset}} "
            "ORDER BY u.user_id LIMIT :limit"
        ),
        count=f"SELECT COUNT(*) FROM {{p}}users WHERE user_type <> {USER_IGNORE}",
        order_columns=("u.user_id",),
        cursor_fields=("user_id",),
    ),
    EntityKind.ANONYMOUS_USER: _KindQuery(
        select=(
            "SELECT p.post_username, MIN(p.post_time) AS first_post_time "
            "FROM {p}posts p "
            f"WHERE p.poster_id = {ANONYMOUS_USER_ID} AND p.post_username <> '' AND {{keyset}} "
            "GROUP BY p.post_username ORDER BY p.post_username LIMIT :limit"
        ),
        count=(
            "SELECT COUNT(DISTINCT post_username) FROM {p}posts "
            f"WHERE poster_id = {ANONYMOUS_USER_ID} AND post_username <> ''"
        ),
        order_columns=("p.post_username",),
        cursor_fields=("post_username",),
    ),
    EntityKind.GROUP: _KindQuery(
        select=(
            "SELECT g.group_id, g.group_type, g.group_name, g.group_desc "
            "FROM {p}groups g WHERE {keyset} ORDER BY g.group_id LIMIT :limit"
        ),
        count="SELECT COUNT(*) FROM {p}groups",
        order_columns=("g.group_id",),
        cursor_fields=("group_id",),
    ),
    EntityKind.GROUP_MEMBERSHIP: _KindQuery(
        select=(
            "SELECT ug.group_id, ug.user_id, ug.group_leader "
            "FROM {p}user_group ug WHERE ug.user_pending = 0 AND {keyset} "
            "ORDER BY ug.group_id, ug.user_id LIMIT :limit"
        ),
        count="SELECT COUNT(*) FROM {p}user_group WHERE user_pending = 0",
        order_columns=("ug.group_id", "ug.user_id"),
        cursor_fields=("group_id", "user_id"),
    ),
    # Pre-order (left_id) puts every parent forum ahead of its children
    EntityKind.CATEGORY: _KindQuery(
        select=(
            "SELECT f.forum_id, f.parent_id, f.left_id, f.forum_name, f.forum_desc, "
            "x.first_post_time "
            "FROM {p}forums f LEFT OUTER JOIN ("
            "SELECT MIN(topic_time) AS first_post_time, forum_id FROM {p}topics GROUP BY forum_id"
            ") x ON f.forum_id = x.forum_id "
            f"WHERE f.forum_type <> {FORUM_LINK} AND {{keyset}} "
            "ORDER BY f.left_id LIMIT :limit"
        ),
        count=f"SELECT COUNT(*) FROM {{p}}forums WHERE forum_type <> {FORUM_LINK}",
        order_columns=("f.left_id",),
        cursor_fields=("left_id",),
    ),
    EntityKind.POST: _KindQuery(
        select=(
            "SELECT p.post_id, p.topic_id, t.forum_id, t.topic_title, t.topic_first_post_id, "
            "t.topic_views, t.topic_type, t.topic_status, p.poster_id, p.post_username, "
            "p.post_time, p.post_text, p.bbcode_uid "
            "FROM {p}posts p JOIN {p}topics t ON t.topic_id = p.topic_id "
            "WHERE {keyset} ORDER BY p.post_id LIMIT :limit"
        ),
        count="SELECT COUNT(*) FROM {p}posts",
        order_columns=("p.post_id",),
        cursor_fields=("post_id",),
    ),
    EntityKind.MESSAGE: _KindQuery(
        select=(
            "SELECT m.msg_id, m.root_level, m.author_id, m.message_time, m.message_subject, "
            "m.message_text, m.to_address, m.bbcode_uid "
            "FROM {p}privmsgs m WHERE {keyset} ORDER BY m.msg_id LIMIT :limit"
        ),
        count="SELECT COUNT(*) FROM {p}privmsgs",
        order_columns=("m.msg_id",),
        cursor_fields=("msg_id",),
    ),
    EntityKind.BOOKMARK: _KindQuery(
        select=(
            "SELECT b.user_id, b.topic_id, t.topic_first_post_id "
            "FROM {p}bookmarks b JOIN {p}topics t ON t.topic_id = b.topic_id "
            "WHERE {keyset} ORDER BY b.user_id, b.topic_id LIMIT :limit"
        ),
        count="SELECT COUNT(*) FROM {p}bookmarks",
        order_columns=("b.user_id", "b.topic_id"),
        cursor_fields=("user_id", "topic_id"),
    ),
}


def _keyset_condition(columns: tuple[str, ...], cursor: Any) -> tuple[str, dict[str, Any]]:
    """Build the WHERE fragment that resumes after ``cursor``.

    For (a, b) this is ``a > :c0 OR (a = :c0 AND b > :c1)``.
    """
    if cursor is None:
        return "1 = 1", {}

    values = tuple(cursor) if isinstance(cursor, (list, tuple)) else (cursor,)
    if len(values) != len(columns):
        raise SourceError(f"Cursor {cursor!r} does not match key columns {columns}")

    params = {f"c{i}": value for i, value in enumerate(values)}
    clauses = []
    for i, column in enumerate(columns):
        equal = [f"{columns[j]} = :c{j}" for j in range(i)]
        clauses.append("(" + " AND ".join([*equal, f"{column} > :c{i}"]) + ")")
    return "(" + " OR ".join(clauses) + ")", params


class PhpBB3Adapter:
    """Source adapter for a phpBB3 database.

    Args:
        config: Source database configuration
        engine: Existing engine to use instead of creating one from ``config.url``
    """

    def __init__(self, config: SourceDatabaseConfig, engine: Engine | None = None):
        self.config = config
        self.prefix = config.table_prefix
        try:
            self.engine = engine or create_engine(config.url, pool_pre_ping=True)
        except (SQLAlchemyError, ImportError) as e:
            raise SourceError(f"Failed to connect to source database: {e}") from e

    def _query(self, kind: EntityKind) -> _KindQuery:
        try:
            return _QUERIES[kind]
        except KeyError:
            raise SourceError(f"Entity kind '{kind.value}' is not read from the source") from None

    def _execute(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        try:
            with self.engine.connect() as conn:
                result = conn.execute(text(sql), params or {})
                return [dict(row) for row in result.mappings()]
        except SQLAlchemyError as e:
            logger.error("source_query_failed", error=str(e))
            raise SourceError(f"Source query failed: {e}") from e

    def count(self, kind: EntityKind) -> int:
        query = self._query(kind)
        rows = self._execute(query.count.format(p=self.prefix))
        return int(next(iter(rows[0].values()))) if rows else 0

    def fetch(
        self, kind: EntityKind, cursor: Any, limit: int
    ) -> tuple[list[dict[str, Any]], Any]:
        query = self._query(kind)
        keyset, params = _keyset_condition(query.order_columns, cursor)
        sql = query.select.format(p=self.prefix, keyset=keyset)
        rows = self._execute(sql, {**params, "limit": limit})

        if not rows:
            return [], cursor

        last = rows[-1]
        if len(query.cursor_fields) == 1:
            next_cursor = last[query.cursor_fields[0]]
        else:
            next_cursor = tuple(last[field] for field in query.cursor_fields)

        logger.debug("source_batch_fetched", kind=kind.value, rows=len(rows), cursor=next_cursor)
        return rows, next_cursor

    def config_values(self) -> dict[str, Any]:
        rows = self._execute(
            f"SELECT config_name, config_value FROM {self.prefix}config "
            "WHERE config_name IN ('version', 'max_filesize')"
        )
        values = {row["config_name"]: row["config_value"] for row in rows}
        try:
            max_filesize = int(values.get("max_filesize") or 0)
        except ValueError:
            max_filesize = 0
        return {
            "phpbb_version": values.get("version"),
            "max_filesize": max_filesize,
        }

    def close(self) -> None:
        """Release pooled source connections."""
        self.engine.dispose()
