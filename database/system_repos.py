"""System repositories - auxiliary rows outside the pipeline model.

Currently the durable layer of the board cache. Rows here are disposable
and rebuilt from the placement tables whenever they are missing.
"""
from typing import Optional
from datetime import datetime
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import BoardCacheEntry


class CacheEntryRepository(BaseCRUD):
    """Board cache entry repository, one namespace per ``scope``."""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_entry(self, scope: str, cache_key: str,
                  session: Optional[Session] = None
                  ) -> Optional[BoardCacheEntry]:
        def _query(sess):
            return sess.query(BoardCacheEntry).filter(
                BoardCacheEntry.scope == scope,
                BoardCacheEntry.cache_key == cache_key,
            ).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def upsert(self, scope: str, cache_key: str, payload: str,
               stored_at: datetime) -> None:
        """Insert or replace one entry."""
        with self._get_session() as sess:
            entry = self.get_entry(scope, cache_key, session=sess)
            if entry is None:
                sess.add(BoardCacheEntry(
                    scope=scope, cache_key=cache_key,
                    payload=payload, stored_at=stored_at,
                ))
            else:
                entry.payload = payload
                entry.stored_at = stored_at
            try:
                sess.commit()
            except IntegrityError:
                # another writer inserted the key first
                sess.rollback()
                entry = self.get_entry(scope, cache_key, session=sess)
                entry.payload = payload
                entry.stored_at = stored_at
                sess.commit()

    def delete_key(self, scope: str, cache_key: str) -> int:
        with self._get_session() as sess:
            count = sess.query(BoardCacheEntry).filter(
                BoardCacheEntry.scope == scope,
                BoardCacheEntry.cache_key == cache_key,
            ).delete(synchronize_session=False)
            sess.commit()
            return count

    def delete_prefix(self, scope: str, prefix: str) -> int:
        """Delete every entry of ``scope`` whose key starts with ``prefix``."""
        with self._get_session() as sess:
            count = sess.query(BoardCacheEntry).filter(
                BoardCacheEntry.scope == scope,
                BoardCacheEntry.cache_key.startswith(prefix, autoescape=True),
            ).delete(synchronize_session=False)
            sess.commit()
            return count
