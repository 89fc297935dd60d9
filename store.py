"""
Resource store

A key-addressed document store. The engine only talks to `ResourceStore`;
`MongoResourceStore` is the production implementation.

Documents are plain dicts. The key travels separately and is returned
under "id" on reads, never as "_id".
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ExecutionTimeout, WTimeoutError

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base class for store failures the engine knows how to classify."""


class StoreUnavailableError(StoreError):
    """The store could not be reached or timed out. A write may still have landed."""


class KeyConflictError(StoreError):
    """An insert violated a key or a unique field."""


def new_key() -> str:
    return str(ObjectId())


def now() -> datetime:
    return datetime.now(timezone.utc)


class ResourceStore(ABC):
    @abstractmethod
    def get_by_key(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        """Return the document stored under `key`, or None."""

    @abstractmethod
    def query_by_field(self, collection: str, field: str, value: Any, limit: int = 0) -> List[Dict[str, Any]]:
        """Return documents whose `field` equals `value`."""

    @abstractmethod
    def insert(self, collection: str, key: str, data: Dict[str, Any]) -> str:
        """Create a new document under `key`.

        Raises KeyConflictError if the key or a unique field is taken.
        """

    @abstractmethod
    def conditional_update(self, collection: str, key: str, field: str, expected: Any, new: Any) -> bool:
        """Set `field` to `new` only if it currently equals `expected`.

        Returns False when the document is missing or the value no longer
        matches. The check and the write are one atomic operation.
        """

    @abstractmethod
    def update(self, collection: str, key: str, changes: Dict[str, Any]) -> bool:
        """Unconditional last-write-wins update. False if the document is missing."""

    @abstractmethod
    def delete(self, collection: str, key: str) -> bool:
        """Remove a document. False if it was not there."""

    @abstractmethod
    def find(self, collection: str, limit: int = 0) -> List[Dict[str, Any]]:
        """Return every document of a collection."""


def _key(key: str):
    # Keys we generate are ObjectId strings; provider uids are stored as-is
    if ObjectId.is_valid(key):
        return ObjectId(key)
    return key


def _shape(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


@contextmanager
def _translate_errors(operation: str, collection: str):
    try:
        yield
    except DuplicateKeyError as e:
        raise KeyConflictError(f"{operation} on {collection}: {e}") from e
    except (ConnectionFailure, ExecutionTimeout, WTimeoutError) as e:
        logger.warning("Store unavailable during %s on %s: %s", operation, collection, e)
        raise StoreUnavailableError(f"{operation} on {collection}: {e}") from e


class MongoResourceStore(ResourceStore):
    def __init__(self, database):
        self._db = database

    def get_by_key(self, collection, key):
        with _translate_errors("get", collection):
            return _shape(self._db[collection].find_one({"_id": _key(key)}))

    def query_by_field(self, collection, field, value, limit=0):
        with _translate_errors("query", collection):
            return [_shape(d) for d in self._db[collection].find({field: value}, limit=limit)]

    def insert(self, collection, key, data):
        doc = dict(data)
        doc.pop("id", None)
        doc["_id"] = _key(key)
        doc.setdefault("created_at", now())
        doc.setdefault("updated_at", doc["created_at"])
        with _translate_errors("insert", collection):
            self._db[collection].insert_one(doc)
        return key

    def conditional_update(self, collection, key, field, expected, new):
        with _translate_errors("conditional update", collection):
            result = self._db[collection].update_one(
                {"_id": _key(key), field: expected},
                {"$set": {field: new, "updated_at": now()}},
            )
        return result.matched_count == 1

    def update(self, collection, key, changes):
        changes = {k: v for k, v in changes.items() if k not in ("id", "_id")}
        changes["updated_at"] = now()
        with _translate_errors("update", collection):
            result = self._db[collection].update_one({"_id": _key(key)}, {"$set": changes})
        return result.matched_count == 1

    def delete(self, collection, key):
        with _translate_errors("delete", collection):
            result = self._db[collection].delete_one({"_id": _key(key)})
        return result.deleted_count == 1

    def find(self, collection, limit=0):
        with _translate_errors("find", collection):
            return [_shape(d) for d in self._db[collection].find({}, limit=limit)]
