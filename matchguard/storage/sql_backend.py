"""SQL durable store backed by SQLAlchemy.

Options and per-user fields are stored as JSON columns. Each call runs in
its own short session so the store is safe to share between request
threads.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from matchguard.core.database import create_session_factory
from matchguard.core.exceptions import StorageUnavailableError
from matchguard.models import Base, Option, UserField

logger = logging.getLogger(__name__)


class SqlDurableStore:
    """Durable option/user-field store on a relational database."""

    def __init__(self, engine: Engine, create_tables: bool = True):
        self._engine = engine
        self._session_factory = create_session_factory(engine)
        if create_tables:
            Base.metadata.create_all(bind=engine)

    @contextmanager
    def _session(self, operation: str, key: str) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"SQL {operation} failed for {key}: {e}")
            raise StorageUnavailableError(operation, key) from e
        finally:
            db.close()

    def get_option(self, name: str, default: Any = None) -> Any:
        with self._session("get", name) as db:
            row = db.get(Option, name)
            return default if row is None else row.value

    def update_option(self, name: str, value: Any) -> None:
        with self._session("update", name) as db:
            row = db.get(Option, name)
            if row is None:
                db.add(Option(name=name, value=value))
            else:
                row.value = value

    def delete_option(self, name: str) -> bool:
        with self._session("delete", name) as db:
            row = db.get(Option, name)
            if row is None:
                return False
            db.delete(row)
            return True

    def _user_field(self, db: Session, user_id: str, name: str):
        return db.execute(
            select(UserField).where(UserField.user_id == str(user_id), UserField.name == name)
        ).scalars().first()

    def get_user_field(self, user_id: str, name: str, default: Any = None) -> Any:
        with self._session("get", f"{user_id}/{name}") as db:
            row = self._user_field(db, user_id, name)
            return default if row is None else row.value

    def update_user_field(self, user_id: str, name: str, value: Any) -> None:
        with self._session("update", f"{user_id}/{name}") as db:
            row = self._user_field(db, user_id, name)
            if row is None:
                db.add(UserField(user_id=str(user_id), name=name, value=value))
            else:
                row.value = value

    def delete_user_field(self, user_id: str, name: str) -> bool:
        with self._session("delete", f"{user_id}/{name}") as db:
            row = self._user_field(db, user_id, name)
            if row is None:
                return False
            db.delete(row)
            return True
