"""Tiered board cache.

Layer 1 is process memory with a short TTL. Layer 2 is a durable,
session-scoped store with a longer TTL that depends on the board variant.
Both layers are keyed by ``(pipeline, viewer filter, variant)`` and are
dropped for a whole pipeline whenever the transition executor writes to it.

The cache is an explicit service: one instance per process, built with an
injected Clock and layer-2 store, handed to whoever needs it.
"""
import json
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from database.manager import DatabaseManager
from .clock import Clock

MEMORY = "memory"
SESSION = "session"

STORAGE_PREFIX = "kanban_"
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9-]")
NO_FILTER = "*"


def _segment(value: str) -> str:
    """Percent-encode one key segment so it never contains the ``-`` separator."""
    return quote(value, safe="").replace("-", "%2D")


@dataclass(frozen=True)
class CacheKey:
    """Board cache key.

    Renders as ``<pipeline>-<filter>-<variant>``. The filter and variant are
    percent-encoded with ``-`` escaped too, and a missing filter renders as
    ``*`` (which ``quote`` always escapes), so distinct keys never collide.

    >>> CacheKey(1, "vlad-pop").render()
    '1-vlad%2Dpop-default'
    """

    pipeline_id: int
    filter_key: Optional[str] = None
    variant: str = "default"

    def render(self) -> str:
        filter_part = NO_FILTER if self.filter_key is None else _segment(self.filter_key)
        return f"{self.pipeline_id}-{filter_part}-{_segment(self.variant)}"

    def __str__(self) -> str:
        return self.render()


def pipeline_prefix(pipeline_id: int) -> str:
    return f"{pipeline_id}-"


def storage_key(key: str) -> str:
    """Layer-2 storage key, prefixed and restricted to ``[A-Za-z0-9_-]``.

    Every other byte, ``_`` included, becomes ``_xx`` (its UTF-8 hex), so two
    keys map to one storage key only when they are equal, and a key prefix
    maps to a storage key prefix.

    >>> storage_key("1-ana.pop")
    'kanban_1-ana_2epop'
    """
    return STORAGE_PREFIX + _UNSAFE_KEY_CHARS.sub(_escape_char, key)


def _escape_char(match) -> str:
    return "".join(f"_{b:02x}" for b in match.group(0).encode("utf-8"))


@dataclass(frozen=True)
class CacheEntry:
    items: List[Dict[str, Any]]
    timestamp: datetime


@dataclass(frozen=True)
class CacheHit:
    entry: CacheEntry
    source: str


class MemoryCacheLayer:
    """Layer 1: process-local dict. Never a source of truth for other processes."""

    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SessionCacheStore(ABC):
    """Layer 2 backend: raw string payloads keyed by rendered cache key."""

    @abstractmethod
    def read(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def write(self, key: str, payload: str, stored_at: datetime) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        pass


class DatabaseSessionStore(SessionCacheStore):
    """Layer 2 on the ``board_cache_entries`` table, namespaced by scope."""

    def __init__(self, db: DatabaseManager, scope: str = "server") -> None:
        self.db = db
        self.scope = scope

    def read(self, key: str) -> Optional[str]:
        entry = self.db.cache_entries.get_entry(self.scope, storage_key(key))
        return entry.payload if entry else None

    def write(self, key: str, payload: str, stored_at: datetime) -> None:
        self.db.cache_entries.upsert(self.scope, storage_key(key), payload, stored_at)

    def delete(self, key: str) -> None:
        self.db.cache_entries.delete_key(self.scope, storage_key(key))

    def delete_prefix(self, prefix: str) -> int:
        return self.db.cache_entries.delete_prefix(self.scope, storage_key(prefix))


class TieredCache:
    """Two-layer read cache for board rows.

    ``get`` checks memory, then the session store. ``put`` writes both
    layers, skipping layer 2 when the serialized payload exceeds
    ``max_session_bytes``. ``invalidate`` drops every key of a pipeline in
    both layers and bumps the pipeline's generation, so a board read that
    started before the invalidation cannot store its now-stale rows.

    Args:
        clock: time source for TTLs and entry timestamps.
        session_store: layer-2 backend, or None for memory only.
        memory: layer-1 instance (a fresh one when None).
        memory_ttl_seconds: layer-1 TTL.
        session_ttls: variant -> layer-2 TTL; ``"default"`` is the fallback.
        max_session_bytes: layer-2 size ceiling.
    """

    def __init__(self, clock: Clock,
                 session_store: Optional[SessionCacheStore] = None,
                 memory: Optional[MemoryCacheLayer] = None,
                 memory_ttl_seconds: int = 60,
                 session_ttls: Optional[Dict[str, int]] = None,
                 max_session_bytes: int = 4 * 1024 * 1024) -> None:
        self.clock = clock
        self.memory = memory or MemoryCacheLayer()
        self.session_store = session_store
        self.memory_ttl_seconds = memory_ttl_seconds
        self.session_ttls = dict(session_ttls or {"default": 900})
        self.max_session_bytes = max_session_bytes
        self._lock = threading.Lock()
        self._generations: Dict[int, int] = {}
        self._global_generation = 0
        self._invalidated_at: Dict[int, datetime] = {}

    def session_ttl(self, variant: str) -> int:
        return self.session_ttls.get(variant, self.session_ttls.get("default", 900))

    # ================================================================
    # Generations
    # ================================================================

    def generation(self, pipeline_id: int) -> int:
        """Opaque token to pass back to ``put`` for a read that starts now."""
        with self._lock:
            return self._global_generation * 1_000_000 + self._generations.get(pipeline_id, 0)

    def _is_fresh(self, key: CacheKey, entry: CacheEntry) -> bool:
        with self._lock:
            watermark = self._invalidated_at.get(key.pipeline_id)
        return watermark is None or entry.timestamp >= watermark

    # ================================================================
    # Reads and writes
    # ================================================================

    def get(self, key: CacheKey) -> Optional[CacheHit]:
        """Look a key up in memory, then in the session store.

        Returns:
            CacheHit with ``source`` ``"memory"`` or ``"session"``; None on miss.
        """
        rendered = key.render()
        now = self.clock.now()

        entry = self.memory.get(rendered)
        if entry is not None:
            age = (now - entry.timestamp).total_seconds()
            if age < self.memory_ttl_seconds and self._is_fresh(key, entry):
                return CacheHit(entry, MEMORY)
            self.memory.delete(rendered)

        if self.session_store is None:
            return None
        try:
            raw = self.session_store.read(rendered)
        except SQLAlchemyError as e:
            logger.warning(f"Session cache read failed for {rendered}: {e}")
            return None
        if raw is None:
            return None

        entry = _decode(raw)
        expired = (
            entry is None
            or (now - entry.timestamp).total_seconds() >= self.session_ttl(key.variant)
            or not self._is_fresh(key, entry)
        )
        if expired:
            self._drop_session_key(rendered)
            return None
        return CacheHit(entry, SESSION)

    def put(self, key: CacheKey, items: List[Dict[str, Any]],
            as_of: Optional[datetime] = None,
            generation: Optional[int] = None) -> bool:
        """Store board rows in both layers.

        Args:
            key: cache key.
            items: board rows (JSON-serializable).
            as_of: when the rows were read; defaults to now.
            generation: token from ``generation()`` taken before the read.

        Returns:
            False when the write was discarded because the pipeline was
            invalidated after the read began.
        """
        if generation is not None and generation != self.generation(key.pipeline_id):
            logger.debug(f"Discarding stale board rows for {key}")
            return False

        entry = CacheEntry(items=list(items), timestamp=as_of or self.clock.now())
        if not self._is_fresh(key, entry):
            return False

        rendered = key.render()
        self.memory.set(rendered, entry)

        if self.session_store is None:
            return True
        payload = json.dumps(
            {"items": entry.items, "timestamp": entry.timestamp.isoformat()},
            default=str, ensure_ascii=False,
        )
        size = len(payload.encode("utf-8"))
        if size > self.max_session_bytes:
            logger.debug(f"Board rows for {rendered} too large for session cache ({size} bytes)")
            return True
        try:
            self.session_store.write(rendered, payload, entry.timestamp)
        except SQLAlchemyError as e:
            logger.warning(f"Session cache write failed for {rendered}: {e}")
        return True

    # ================================================================
    # Invalidation
    # ================================================================

    def invalidate(self, pipeline_id: int) -> None:
        """Drop every entry of a pipeline from both layers."""
        with self._lock:
            self._generations[pipeline_id] = self._generations.get(pipeline_id, 0) + 1
            self._invalidated_at[pipeline_id] = self.clock.now()
        prefix = pipeline_prefix(pipeline_id)
        removed = self.memory.delete_prefix(prefix)
        if self.session_store is not None:
            try:
                removed += self.session_store.delete_prefix(prefix)
            except SQLAlchemyError as e:
                logger.warning(f"Session cache invalidation failed for pipeline {pipeline_id}: {e}")
        logger.debug(f"Invalidated {removed} board cache entries for pipeline {pipeline_id}")

    def invalidate_all(self) -> None:
        """Clear both layers entirely."""
        now = self.clock.now()
        with self._lock:
            self._global_generation += 1
            for pipeline_id in list(self._invalidated_at):
                self._invalidated_at[pipeline_id] = now
        self.memory.clear()
        if self.session_store is not None:
            try:
                self.session_store.delete_prefix("")
            except SQLAlchemyError as e:
                logger.warning(f"Session cache clear failed: {e}")
        logger.info("Board cache cleared")

    def _drop_session_key(self, rendered: str) -> None:
        try:
            self.session_store.delete(rendered)
        except SQLAlchemyError as e:
            logger.warning(f"Session cache cleanup failed for {rendered}: {e}")


def _decode(raw: str) -> Optional[CacheEntry]:
    """Parse a layer-2 payload; None when it is not ``{items: list, timestamp}``."""
    try:
        data = json.loads(raw)
        items = data["items"]
        timestamp = datetime.fromisoformat(data["timestamp"])
    except (ValueError, TypeError, KeyError):
        return None
    if not isinstance(items, list):
        return None
    return CacheEntry(items=items, timestamp=timestamp)
