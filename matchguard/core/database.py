"""Database engine and session factory for the durable store."""
import logging
import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)


def _ensure_sqlite_dir(url: str) -> None:
    """Create the parent directory of a file-based SQLite database."""
    if not url.startswith("sqlite:///"):
        return
    path = url[len("sqlite:///"):]
    directory = os.path.dirname(path)
    if not directory or path == ":memory:":
        return
    try:
        os.makedirs(directory, exist_ok=True)
    except PermissionError as e:
        logger.warning(f"Cannot create data directory {directory}: {e}")


def create_db_engine(url: str) -> Engine:
    """Create an engine; SQLite gets WAL mode and a busy timeout."""
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        _ensure_sqlite_dir(url)

    engine = create_engine(
        url,
        connect_args={"check_same_thread": False} if is_sqlite else {},
        echo=False,
    )

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            """Configure SQLite connection for better concurrency handling."""
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
