"""
Durable key-value store for batches, recipients, schedules and reminders.

The core only needs get / put / list-by-prefix with read-after-write
consistency for a single writer, plus compare_and_set to guard status
transitions. MongoStore is the production backend; MemoryStore keeps the
same contract in-process for tests and local runs.
"""

import copy
import logging
import re
import threading
from typing import Any, Dict, List, Optional

from pymongo import MongoClient, ReturnDocument
from pymongo.errors import AutoReconnect, PyMongoError

import config
from errors import PersistenceError
from utils.logging_utils import retry_with_backoff

logger = logging.getLogger("escalation.database")


class DurableStore:
    """Interface shared by every storage backend."""

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def put(self, key: str, doc: Dict[str, Any]) -> None:
        raise NotImplementedError

    def list_by_prefix(self, prefix: str) -> List[Dict[str, Any]]:
        """All documents whose key starts with prefix, ordered by key."""
        raise NotImplementedError

    def compare_and_set(self, key: str, field: str, expected: Any,
                        updates: Dict[str, Any]) -> bool:
        """Apply updates only if doc[field] == expected. Returns True if applied."""
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def ping(self) -> bool:
        return True


class MemoryStore(DurableStore):
    """Thread-safe in-process store. Documents are deep-copied in and out."""

    def __init__(self):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            doc = self._docs.get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def put(self, key, doc):
        with self._lock:
            self._docs[key] = copy.deepcopy(doc)

    def list_by_prefix(self, prefix):
        with self._lock:
            return [
                copy.deepcopy(self._docs[k])
                for k in sorted(self._docs)
                if k.startswith(prefix)
            ]

    def compare_and_set(self, key, field, expected, updates):
        with self._lock:
            doc = self._docs.get(key)
            if doc is None or doc.get(field) != expected:
                return False
            doc.update(copy.deepcopy(updates))
            return True

    def delete(self, key):
        with self._lock:
            return self._docs.pop(key, None) is not None


def _log_retry(attempt: int, error: Exception, delay: float):
    logger.warning(f"MongoDB connection lost ({error}), retry {attempt} in {delay:.1f}s")


_transient = retry_with_backoff(
    max_retries=2, initial_delay=0.5, exceptions=(AutoReconnect,), on_retry=_log_retry
)


class MongoStore(DurableStore):
    """
    All records live in one collection keyed by `_id`.

    compare_and_set maps to find_one_and_update with the expected value in the
    filter, so a status transition is atomic even when several processes
    share the database.
    """

    COLLECTION = "records"

    def __init__(self, collection=None):
        if collection is None:
            collection = get_db()[self.COLLECTION]
        self._collection = collection

    @staticmethod
    def _strip(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if doc is None:
            return None
        doc = dict(doc)
        doc.pop("_id", None)
        return doc

    def get(self, key):
        try:
            return self._strip(_transient(self._collection.find_one)({"_id": key}))
        except PyMongoError as e:
            raise PersistenceError(f"get {key} failed: {e}") from e

    def put(self, key, doc):
        try:
            _transient(self._collection.replace_one)({"_id": key}, {**doc, "_id": key}, upsert=True)
        except PyMongoError as e:
            raise PersistenceError(f"put {key} failed: {e}") from e

    def list_by_prefix(self, prefix):
        query = {"_id": {"$regex": "^" + re.escape(prefix)}}
        try:
            cursor = _transient(self._collection.find)(query).sort("_id", 1)
            return [self._strip(doc) for doc in cursor]
        except PyMongoError as e:
            raise PersistenceError(f"list {prefix} failed: {e}") from e

    def compare_and_set(self, key, field, expected, updates):
        try:
            doc = _transient(self._collection.find_one_and_update)(
                {"_id": key, field: expected},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise PersistenceError(f"compare_and_set {key} failed: {e}") from e
        return doc is not None

    def delete(self, key):
        try:
            result = _transient(self._collection.delete_one)({"_id": key})
        except PyMongoError as e:
            raise PersistenceError(f"delete {key} failed: {e}") from e
        return result.deleted_count > 0

    def ping(self):
        try:
            self._collection.database.command("ping")
            return True
        except PyMongoError as e:
            logger.error(f"MongoDB ping failed: {e}")
            return False


_client = None
_store = None


def get_db():
    """Lazily connect so importing this module never touches the network."""
    global _client
    if _client is None:
        _client = MongoClient(config.DATABASE_URL, tz_aware=True)
    return _client[config.MONGO_DB_NAME]


def get_store() -> DurableStore:
    """Process-wide store selected by STORE_BACKEND."""
    global _store
    if _store is None:
        if config.STORE_BACKEND == "memory":
            logger.warning("Using in-memory store - state will not survive a restart")
            _store = MemoryStore()
        else:
            _store = MongoStore()
    return _store


def set_store(store: Optional[DurableStore]):
    """Override the process-wide store (tests, embedding applications)."""
    global _store
    _store = store
