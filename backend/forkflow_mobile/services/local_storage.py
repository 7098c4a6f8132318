"""
Durable local key-value storage.

Holds the offline action queue, the offline record mirror, the GPS cache,
the last-sync marker and performance-metric snapshots. Values are JSON text.
Reads of corrupted values degrade to "absent"; failed writes are logged and
never raised, so a full disk cannot take the field client down.
"""
import json
import logging
from typing import Any, Dict, Optional, Protocol

from sqlalchemy.orm import sessionmaker

from ..models.base import Base, make_engine, make_session_factory
from ..models.kv_entry import KeyValueEntry

logger = logging.getLogger(__name__)

# Storage keys
PENDING_ACTIONS_KEY = "forkflow_pending_actions"
LAST_SYNC_KEY = "forkflow_last_sync"
OFFLINE_INTERACTIONS_KEY = "forkflow_offline_interactions"
GPS_CACHE_KEY = "forkflow_gps_cache"
PERFORMANCE_METRICS_KEY = "forkflow_performance_metrics"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    """Process-local store; used by tests and as a fallback when no database is configured."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)


class SqlKeyValueStore:
    """Key-value store backed by the ``kv_entries`` table."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> "SqlKeyValueStore":
        engine = make_engine(database_url)
        Base.metadata.create_all(bind=engine)
        return cls(make_session_factory(engine))

    def get(self, key: str) -> Optional[str]:
        db = self.session_factory()
        try:
            entry = db.query(KeyValueEntry).filter(KeyValueEntry.key == key).first()
            return entry.value if entry else None
        finally:
            db.close()

    def set(self, key: str, value: str) -> None:
        db = self.session_factory()
        try:
            entry = db.query(KeyValueEntry).filter(KeyValueEntry.key == key).first()
            if entry:
                entry.value = value
            else:
                db.add(KeyValueEntry(key=key, value=value))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def remove(self, key: str) -> None:
        db = self.session_factory()
        try:
            db.query(KeyValueEntry).filter(KeyValueEntry.key == key).delete()
            db.commit()
        finally:
            db.close()


def load_json(store: Optional[KeyValueStore], key: str, default: Any = None) -> Any:
    """Read and decode a JSON value, returning ``default`` when missing or unreadable."""
    if store is None:
        return default
    try:
        raw = store.get(key)
    except Exception as exc:
        logger.warning("Local storage read failed for %s: %s", key, exc)
        return default
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        logger.warning("Discarding corrupted local storage value for %s: %s", key, exc)
        return default


def save_json(store: Optional[KeyValueStore], key: str, value: Any) -> bool:
    """Encode and write a JSON value. Returns False (after logging) if the write failed."""
    if store is None:
        return False
    try:
        store.set(key, json.dumps(value))
        return True
    except Exception as exc:
        logger.warning("Local storage write failed for %s: %s", key, exc)
        return False


def remove_key(store: Optional[KeyValueStore], key: str) -> None:
    if store is None:
        return
    try:
        store.remove(key)
    except Exception as exc:
        logger.warning("Local storage remove failed for %s: %s", key, exc)
