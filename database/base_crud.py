"""Generic CRUD helpers shared by every repository.

Each method accepts an optional external ``session``. With a session the
caller owns the transaction and nothing is committed here; without one a
short-lived session is opened and committed.
"""
from typing import Optional, List, Dict, Any, Type, TypeVar
from sqlalchemy.orm import Session

from .connection import DatabaseConnection
from .models import Base

ModelT = TypeVar("ModelT", bound=Base)


class BaseCRUD:
    """Base repository providing get/list/create/update/delete by model."""

    def __init__(self, conn: DatabaseConnection) -> None:
        self.conn = conn

    def _get_session(self) -> Session:
        return self.conn.get_session()

    def get_by_id(self, model: Type[ModelT], record_id: int,
                  session: Optional[Session] = None) -> Optional[ModelT]:
        """Fetch one row by primary key.

        Args:
            model: ORM model class.
            record_id: primary key.
            session: external session (optional).

        Returns:
            The row, or None when missing.
        """
        if session:
            return session.get(model, record_id)

        with self._get_session() as sess:
            return sess.get(model, record_id)

    def get_all(self, model: Type[ModelT],
                filters: Optional[Dict[str, Any]] = None,
                session: Optional[Session] = None) -> List[ModelT]:
        """List rows matching simple equality filters.

        Args:
            model: ORM model class.
            filters: column name -> value.
            session: external session (optional).

        Returns:
            Matching rows ordered by primary key.
        """
        def _query(sess):
            query = sess.query(model)
            for column, value in (filters or {}).items():
                query = query.filter(getattr(model, column) == value)
            return query.order_by(model.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def create(self, model: Type[ModelT], session: Optional[Session] = None,
               **fields: Any) -> ModelT:
        """Insert a row.

        Args:
            model: ORM model class.
            session: external session (optional, flushed but not committed).
            **fields: column values.

        Returns:
            The new row with its primary key populated.
        """
        def _do(sess):
            record = model(**fields)
            sess.add(record)
            sess.flush()
            return record

        if session:
            return _do(session)

        with self._get_session() as sess:
            record = _do(sess)
            sess.commit()
            return record

    def update_by_id(self, model: Type[ModelT], record_id: int,
                     session: Optional[Session] = None,
                     **fields: Any) -> Optional[ModelT]:
        """Update columns of one row.

        Returns:
            The updated row, or None when missing.
        """
        def _do(sess):
            record = sess.get(model, record_id)
            if record is None:
                return None
            for column, value in fields.items():
                setattr(record, column, value)
            sess.flush()
            return record

        if session:
            return _do(session)

        with self._get_session() as sess:
            record = _do(sess)
            sess.commit()
            return record

    def delete_by_id(self, model: Type[ModelT], record_id: int,
                     session: Optional[Session] = None) -> bool:
        """Delete one row.

        Returns:
            True when a row was deleted.
        """
        def _do(sess):
            record = sess.get(model, record_id)
            if record is None:
                return False
            sess.delete(record)
            sess.flush()
            return True

        if session:
            return _do(session)

        with self._get_session() as sess:
            deleted = _do(sess)
            sess.commit()
            return deleted
