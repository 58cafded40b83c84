"""SQLite engine, session factory and schema bootstrap for the local store"""
import logging
import os
from datetime import datetime, timezone

from sqlalchemy import create_engine, event, inspect as sa_inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()

# Append-only enforcement at the storage layer, independent of the ORM
AUDIT_LOG_TRIGGERS = (
    """
    CREATE TRIGGER IF NOT EXISTS audit_log_no_update
    BEFORE UPDATE ON audit_log
    BEGIN
        SELECT RAISE(ABORT, 'audit_log is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS audit_log_no_delete
    BEFORE DELETE ON audit_log
    BEGIN
        SELECT RAISE(ABORT, 'audit_log is append-only');
    END
    """,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite stores DateTime columns in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_db_engine(database_url: str):
    """Create an engine; SQLite connections get foreign keys and WAL."""
    url = make_url(database_url)
    is_sqlite = url.get_backend_name() == "sqlite"
    connect_args = {"check_same_thread": False} if is_sqlite else {}

    db_engine = create_engine(database_url, connect_args=connect_args)

    if is_sqlite:
        @event.listens_for(db_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return db_engine


def init_db(db_engine) -> None:
    """Create tables, install audit triggers and apply additive migrations."""
    import models  # noqa: F401  registers mappers on Base

    database = db_engine.url.database
    if db_engine.dialect.name == "sqlite" and database and database != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(database)), exist_ok=True)

    Base.metadata.create_all(bind=db_engine)

    insp = sa_inspect(db_engine)
    with db_engine.begin() as conn:
        if db_engine.dialect.name == "sqlite":
            for ddl in AUDIT_LOG_TRIGGERS:
                conn.execute(text(ddl))

        # Migrate: videos.gps_track_json arrived after the first schema
        video_cols = {c["name"] for c in insp.get_columns("videos")}
        if "gps_track_json" not in video_cols:
            conn.execute(text("ALTER TABLE videos ADD COLUMN gps_track_json TEXT"))
            logger.info("Added gps_track_json column to videos table")

        # Migrate: sync_queue.version arrived with in-flight edit detection
        queue_cols = {c["name"] for c in insp.get_columns("sync_queue")}
        if "version" not in queue_cols:
            conn.execute(text("ALTER TABLE sync_queue ADD COLUMN version INTEGER NOT NULL DEFAULT 1"))
            logger.info("Added version column to sync_queue table")

    logger.info(f"Local store ready at {db_engine.url}")


def make_session_factory(db_engine):
    # Rows returned from a committed transaction stay readable after the session closes
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine)
