"""
State database engines and sessions.

The registry, the cursor table and the run log all live in one state database
(SQLite file by default, PostgreSQL for shared setups). Each registered
mapping is committed on its own, so SQLite runs in WAL mode to keep those
small commits cheap and crash safe.

Engines are cached per URL for the life of the process; ``get_session`` is
the only way the engine touches them.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine, event, pool, text
from sqlalchemy.orm import Session, sessionmaker

from forum_migration.client.exceptions import ConfigurationError, StateError
from forum_migration.migration.models import Base
from forum_migration.utils.logging import get_logger

logger = get_logger(__name__)

_engines: dict[str, tuple[Engine, sessionmaker]] = {}

# Seconds a writer waits for a SQLite lock before failing
SQLITE_BUSY_TIMEOUT = 30


def _configure_sqlite(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def create_database_engine(
    database_url: str,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> Engine:
    """
    Create an engine for a state database URL.

    SQLite gets one connection per session (NullPool) and a busy timeout;
    server databases get a pre-pinged pool.

    Raises:
        ConfigurationError: If the URL is empty or not understood
    """
    if not database_url:
        raise ConfigurationError("State database URL is empty")

    try:
        if database_url.startswith("sqlite"):
            engine = create_engine(
                database_url,
                poolclass=pool.NullPool,
                connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            )
            event.listen(engine, "connect", _configure_sqlite)
        else:
            engine = create_engine(
                database_url,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_pre_ping=True,
            )
    except Exception as e:
        raise ConfigurationError(f"Invalid state database URL: {e}") from e

    logger.debug("state_engine_created", dialect=engine.dialect.name)
    return engine


def init_database(
    database_url: str,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> Engine:
    """
    Create the state tables if needed and cache the engine for ``database_url``.

    Safe to call repeatedly; later calls for the same URL reuse the engine.

    Raises:
        ConfigurationError: If the engine cannot be created
        StateError: If the tables cannot be created
    """
    cached = _engines.get(database_url)
    if cached is not None:
        return cached[0]

    engine = create_database_engine(database_url, pool_size=pool_size, max_overflow=max_overflow)
    try:
        Base.metadata.create_all(engine)
    except Exception as e:
        engine.dispose()
        logger.error("state_tables_not_created", error=str(e))
        raise StateError(f"Cannot create state tables: {e}") from e

    _engines[database_url] = (engine, sessionmaker(bind=engine, expire_on_commit=False))
    logger.info("state_database_ready", tables=sorted(Base.metadata.tables))
    return engine


def get_engine(database_url: str) -> Engine:
    """Cached engine for a URL, initializing the database on first use."""
    return init_database(database_url)


@contextmanager
def get_session(database_url: str) -> Generator[Session, None, None]:
    """
    Session that commits when the block exits cleanly.

    Usage:
        with get_session(config.state.database_url) as session:
            session.add(mapping)

    Raises:
        StateError: If anything inside the block fails at the database level
    """
    init_database(database_url)
    session = _engines[database_url][1]()

    try:
        yield session
        session.commit()
    except StateError:
        session.rollback()
        raise
    except Exception as e:
        session.rollback()
        logger.error("state_session_rolled_back", error=str(e))
        raise StateError(f"State database operation failed: {e}") from e
    finally:
        session.close()


def dispose_engines() -> None:
    """Close every cached engine."""
    for engine, _ in _engines.values():
        engine.dispose()
    _engines.clear()


def validate_database_connection(database_url: str) -> bool:
    """True if a connection to the state database can be opened."""
    try:
        engine = create_database_engine(database_url)
    except ConfigurationError as e:
        logger.error("state_database_unreachable", error=str(e))
        return False

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("state_database_unreachable", error=str(e))
        return False
    finally:
        engine.dispose()
