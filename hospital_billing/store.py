"""
Document store adapter.

Every operation in hospital_billing reads and writes plain ``{"id": ..., **fields}``
dicts through a DocumentStore handle passed in by the caller:

    get(collection, id)            -> dict | None
    query(collection, *filters)    -> list[dict]
    set(collection, id, data)      -> create or replace
    update(collection, id, fields) -> merge top-level fields, NotFoundError if absent
    run_transaction(fn)            -> fn(txn) with all-or-nothing writes

MongoStore backs deployments (transactions need a replica set), MemoryStore
backs tests and local tooling.
"""

import copy
import logging
import operator
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from bson import ObjectId

from hospital_billing.config import TRANSACTION_MAX_ATTEMPTS
from hospital_billing.errors import NotFoundError, TransactionConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Filter = Tuple[str, str, Any]

_RANGE_OPERATORS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

_MONGO_OPERATORS = {
    "==": "$eq",
    "!=": "$ne",
    "in": "$in",
    "not-in": "$nin",
    "<": "$lt",
    "<=": "$lte",
    ">": "$gt",
    ">=": "$gte",
}


def where(field: str, op: str, value: Any) -> Filter:
    """Build a query filter, e.g. ``where("status", "in", ["approved", "dispensed"])``."""
    if op not in _MONGO_OPERATORS:
        raise ValueError(f"Unsupported query operator: {op}")
    return (field, op, value)


def new_document_id() -> str:
    return str(ObjectId())


def strip_unset(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop keys whose value is None, recursing into nested dicts.

    Free-form payment/detail payloads from the UI carry optional keys that were
    never filled in; they are removed before the payload is written.
    """
    if not data:
        return {}
    cleaned = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, dict):
            value = strip_unset(value)
        cleaned[key] = value
    return cleaned


def matches(doc: Dict[str, Any], filters) -> bool:
    """Evaluate filters against a document with MongoDB semantics for missing fields."""
    for field, op, value in filters:
        actual = doc.get(field)
        if op == "==":
            if actual != value:
                return False
        elif op == "!=":
            if actual == value:
                return False
        elif op == "in":
            if actual not in value:
                return False
        elif op == "not-in":
            if actual in value:
                return False
        else:
            if actual is None:
                return False
            try:
                if not _RANGE_OPERATORS[op](actual, value):
                    return False
            except TypeError:
                return False
    return True


class Transaction(ABC):
    """Reads and writes scoped to one store transaction."""

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def query(self, collection: str, *filters: Filter) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        ...


class DocumentStore(ABC):

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def query(self, collection: str, *filters: Filter) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """Run ``fn`` so that its writes commit together or not at all.

        ``fn`` may be invoked more than once when a concurrent writer wins, so it
        must read everything it depends on through the transaction handle.
        """

    def new_id(self) -> str:
        return new_document_id()

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = data.get("id") or self.new_id()
        self.set(collection, doc_id, data)
        return doc_id


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryTransaction(Transaction):
    """Buffers writes until commit; reads do not see the transaction's own writes."""

    def __init__(self, store: "MemoryStore"):
        self._store = store
        self._read_versions: Dict[Tuple[str, str], int] = {}
        self._query_versions: Dict[str, int] = {}
        self._writes: List[Tuple[str, str, Dict[str, Any], bool]] = []

    def get(self, collection, doc_id):
        with self._store._lock:
            self._read_versions.setdefault((collection, doc_id), self._store._version(collection, doc_id))
            return self._store.get(collection, doc_id)

    def query(self, collection, *filters):
        with self._store._lock:
            self._query_versions.setdefault(collection, self._store._collection_version(collection))
            return self._store.query(collection, *filters)

    def set(self, collection, doc_id, data):
        self._writes.append((collection, doc_id, copy.deepcopy(data), False))

    def update(self, collection, doc_id, fields):
        pending_create = any(c == collection and i == doc_id and not merge for c, i, _, merge in self._writes)
        if not pending_create and self.get(collection, doc_id) is None:
            raise NotFoundError(f"{collection}/{doc_id} not found", collection, doc_id)
        self._writes.append((collection, doc_id, copy.deepcopy(fields), True))

    def _is_current(self) -> bool:
        for (collection, doc_id), version in self._read_versions.items():
            if self._store._version(collection, doc_id) != version:
                return False
        for collection, version in self._query_versions.items():
            if self._store._collection_version(collection) != version:
                return False
        return True

    def _apply(self) -> None:
        for collection, doc_id, data, merge in self._writes:
            self._store._write(collection, doc_id, data, merge)


class MemoryStore(DocumentStore):
    """Thread-safe dict-backed store with optimistic transactions."""

    def __init__(self, max_attempts: int = TRANSACTION_MAX_ATTEMPTS):
        self.max_attempts = max_attempts
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._versions: Dict[Tuple[str, str], int] = {}
        self._collection_versions: Dict[str, int] = {}
        self._lock = threading.RLock()

    def get(self, collection, doc_id):
        with self._lock:
            doc = self._data.get(collection, {}).get(doc_id)
            if doc is None:
                return None
            return {"id": doc_id, **copy.deepcopy(doc)}

    def query(self, collection, *filters):
        with self._lock:
            return [
                {"id": doc_id, **copy.deepcopy(doc)}
                for doc_id, doc in self._data.get(collection, {}).items()
                if matches(doc, filters)
            ]

    def set(self, collection, doc_id, data):
        with self._lock:
            self._write(collection, doc_id, data, merge=False)

    def update(self, collection, doc_id, fields):
        with self._lock:
            if doc_id not in self._data.get(collection, {}):
                raise NotFoundError(f"{collection}/{doc_id} not found", collection, doc_id)
            self._write(collection, doc_id, fields, merge=True)

    def run_transaction(self, fn):
        for attempt in range(1, self.max_attempts + 1):
            txn = MemoryTransaction(self)
            result = fn(txn)
            with self._lock:
                if txn._is_current():
                    txn._apply()
                    return result
            logger.warning(f"Transaction conflict, retrying (attempt {attempt}/{self.max_attempts})")
        raise TransactionConflictError(f"Transaction aborted after {self.max_attempts} attempts")

    def _write(self, collection, doc_id, data, merge):
        body = {key: copy.deepcopy(value) for key, value in data.items() if key != "id"}
        docs = self._data.setdefault(collection, {})
        if merge and doc_id in docs:
            docs[doc_id] = {**docs[doc_id], **body}
        else:
            docs[doc_id] = body
        key = (collection, doc_id)
        self._versions[key] = self._versions.get(key, 0) + 1
        self._collection_versions[collection] = self._collection_versions.get(collection, 0) + 1

    def _version(self, collection, doc_id):
        return self._versions.get((collection, doc_id), 0)

    def _collection_version(self, collection):
        return self._collection_versions.get(collection, 0)


# ---------------------------------------------------------------------------
# MongoDB store
# ---------------------------------------------------------------------------

def _id_filter(doc_id: str) -> Dict[str, Any]:
    # Older records were inserted with ObjectId keys, newer ones with string ids
    if ObjectId.is_valid(doc_id):
        return {"_id": {"$in": [doc_id, ObjectId(doc_id)]}}
    return {"_id": doc_id}


def _from_mongo(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    out = dict(doc)
    out["id"] = str(out.pop("_id"))
    return out


def _to_mongo(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if key not in ("id", "_id")}


def to_mongo_filter(filters) -> Dict[str, Any]:
    query: Dict[str, Dict[str, Any]] = {}
    for field, op, value in filters:
        if op in ("in", "not-in"):
            value = list(value)
        query.setdefault(field, {})[_MONGO_OPERATORS[op]] = value
    return query


class MongoTransaction(Transaction):

    def __init__(self, db, session):
        self.db = db
        self.session = session

    def get(self, collection, doc_id):
        return _from_mongo(self.db[collection].find_one(_id_filter(doc_id), session=self.session))

    def query(self, collection, *filters):
        cursor = self.db[collection].find(to_mongo_filter(filters), session=self.session)
        return [_from_mongo(doc) for doc in cursor]

    def set(self, collection, doc_id, data):
        self.db[collection].replace_one({"_id": doc_id}, _to_mongo(data), upsert=True, session=self.session)

    def update(self, collection, doc_id, fields):
        result = self.db[collection].update_one(_id_filter(doc_id), {"$set": _to_mongo(fields)}, session=self.session)
        if result.matched_count == 0:
            raise NotFoundError(f"{collection}/{doc_id} not found", collection, doc_id)


class MongoStore(DocumentStore):

    def __init__(self, db, client=None):
        self.db = db
        self.client = client if client is not None else db.client

    def get(self, collection, doc_id):
        return _from_mongo(self.db[collection].find_one(_id_filter(doc_id)))

    def query(self, collection, *filters):
        return [_from_mongo(doc) for doc in self.db[collection].find(to_mongo_filter(filters))]

    def set(self, collection, doc_id, data):
        self.db[collection].replace_one({"_id": doc_id}, _to_mongo(data), upsert=True)

    def update(self, collection, doc_id, fields):
        result = self.db[collection].update_one(_id_filter(doc_id), {"$set": _to_mongo(fields)})
        if result.matched_count == 0:
            raise NotFoundError(f"{collection}/{doc_id} not found", collection, doc_id)

    def run_transaction(self, fn):
        # with_transaction retries the callback on TransientTransactionError
        with self.client.start_session() as session:
            return session.with_transaction(lambda s: fn(MongoTransaction(self.db, s)))
