# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================

"""
Document store gateway over Firestore, plus an in-memory implementation for
tests and local runs.

Documents are plain camelCase dicts. Writes may carry Firestore sentinels
(SERVER_TIMESTAMP, ArrayUnion, Increment); the in-memory store resolves them
the same way the server does.
"""

from __future__ import annotations

import copy
import functools
import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Protocol, TypeVar

from firebase_admin import firestore
from google.api_core import exceptions
from google.cloud.firestore_v1 import (
    SERVER_TIMESTAMP,
    ArrayUnion,
    FieldFilter,
    Increment,
    Query,
)
from google.cloud.firestore_v1.field_path import FieldPath

from billing.errors import AlreadyExistsError, NotFoundError, UpstreamError

logger = logging.getLogger(__name__)

# Firestore rejects "in" filters with more than 10 values.
IN_QUERY_CHUNK_SIZE = 10
# Hard ceiling enforced by Firestore for one batched write.
STORE_BATCH_LIMIT = 500
# Every batched job commits well below the ceiling.
MAX_BATCH_OPERATIONS = 450

Filter = tuple[str, str, Any]
T = TypeVar("T")


class WriteBatch(Protocol):
    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        ...

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        ...

    def commit(self) -> None:
        ...


class Transaction(Protocol):
    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        ...

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        ...

    def create(self, collection: str, doc_id: str, data: dict) -> None:
        ...

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        ...


class DocumentStore(Protocol):
    """Operations the reconciliation jobs need from the document store."""

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        ...

    def get_many(self, collection: str, doc_ids: Iterable[str]) -> Dict[str, dict]:
        ...

    def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[tuple[str, dict]]:
        ...

    def list_page(
        self, collection: str, limit: int, start_after: str | None = None
    ) -> list[tuple[str, dict]]:
        ...

    def create(self, collection: str, doc_id: str, data: dict) -> None:
        ...

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        ...

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        ...

    def batch(self) -> WriteBatch:
        ...

    def run_transaction(self, callback: Callable[[Transaction], T]) -> T:
        ...


def chunked(items: list, size: int) -> Iterator[list]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _unique_ids(doc_ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(doc_id for doc_id in doc_ids if doc_id))


class BatchedWriter:
    """
    Accumulates writes and commits whenever `max_ops` operations are pending,
    then starts a fresh batch. `flush()` commits whatever is left.
    """

    def __init__(self, store: DocumentStore, max_ops: int = MAX_BATCH_OPERATIONS):
        if max_ops <= 0 or max_ops > STORE_BATCH_LIMIT:
            raise ValueError(f"max_ops must be within 1..{STORE_BATCH_LIMIT}")
        self.store = store
        self.max_ops = max_ops
        self.commits = 0
        self.operations = 0
        self._batch: WriteBatch | None = None
        self._pending = 0

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        self._current().set(collection, doc_id, data, merge=merge)
        self._written()

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self._current().update(collection, doc_id, data)
        self._written()

    def flush(self) -> int:
        self._commit()
        return self.commits

    def _current(self) -> WriteBatch:
        if self._batch is None:
            self._batch = self.store.batch()
        return self._batch

    def _written(self) -> None:
        self._pending += 1
        self.operations += 1
        if self._pending >= self.max_ops:
            self._commit()

    def _commit(self) -> None:
        if self._batch is None or not self._pending:
            return
        self._batch.commit()
        self.commits += 1
        logger.info("Committed batch %d (%d writes)", self.commits, self._pending)
        self._batch = None
        self._pending = 0


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_value(current: Any, value: Any, merge: bool) -> Any:
    if value is SERVER_TIMESTAMP:
        return _now()
    if isinstance(value, ArrayUnion):
        merged = list(current) if isinstance(current, list) else []
        for item in value.values:
            if item not in merged:
                merged.append(copy.deepcopy(item))
        return merged
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) else 0
        return base + value.value
    if isinstance(value, dict):
        return _apply_fields(current if merge and isinstance(current, dict) else None, value, merge)
    return copy.deepcopy(value)


def _apply_fields(existing: Optional[dict], data: dict, merge: bool) -> dict:
    result = copy.deepcopy(existing) if existing else {}
    for key, value in data.items():
        result[key] = _resolve_value(result.get(key), value, merge)
    return result


def _matches(data: dict, field_name: str, op: str, value: Any) -> bool:
    if field_name not in data:
        return False
    actual = data[field_name]
    try:
        if op == "==":
            return actual == value
        if op == "!=":
            return actual != value
        if op == "<":
            return actual < value
        if op == "<=":
            return actual <= value
        if op == ">":
            return actual > value
        if op == ">=":
            return actual >= value
        if op == "in":
            return actual in value
        if op == "array-contains":
            return isinstance(actual, list) and value in actual
    except TypeError:
        return False
    raise ValueError(f"Unsupported filter operator: {op}")


class _InMemoryWrites:
    """Write buffer shared by batches and transactions."""

    def __init__(self, store: "InMemoryDocumentStore"):
        self._store = store
        self.ops: list[tuple[str, str, str, dict, bool]] = []

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        self.ops.append(("set", collection, doc_id, data, merge))

    def create(self, collection: str, doc_id: str, data: dict) -> None:
        self.ops.append(("create", collection, doc_id, data, False))

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self.ops.append(("update", collection, doc_id, data, False))


class _InMemoryBatch(_InMemoryWrites):
    def commit(self) -> None:
        if len(self.ops) > STORE_BATCH_LIMIT:
            raise UpstreamError(
                f"Batch of {len(self.ops)} writes exceeds the {STORE_BATCH_LIMIT} limit"
            )
        self._store._apply(self.ops)
        self._store.committed_batches.append(len(self.ops))
        self.ops = []


class _InMemoryTransaction(_InMemoryWrites):
    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return self._store.get(collection, doc_id)


class InMemoryDocumentStore:
    """Simple in-memory document store for development and tests."""

    def __init__(self):
        self.collections: Dict[str, Dict[str, dict]] = defaultdict(dict)
        self.committed_batches: list[int] = []
        self._lock = threading.RLock()

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.collections.clear()
            self.committed_batches.clear()

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock:
            doc = self.collections[collection].get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def get_many(self, collection: str, doc_ids: Iterable[str]) -> Dict[str, dict]:
        results: Dict[str, dict] = {}
        for chunk in chunked(_unique_ids(doc_ids), IN_QUERY_CHUNK_SIZE):
            for doc_id, data in self.query(collection, [("__name__", "in", chunk)]):
                results[doc_id] = data
        return results

    def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[tuple[str, dict]]:
        filters = list(filters)
        with self._lock:
            rows = []
            for doc_id, data in self.collections[collection].items():
                candidate = {**data, "__name__": doc_id}
                if all(_matches(candidate, f, op, v) for f, op, v in filters):
                    rows.append((doc_id, copy.deepcopy(data)))
        if order_by:
            rows = [row for row in rows if row[1].get(order_by) is not None]
            rows.sort(key=lambda row: row[1][order_by], reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    def list_page(
        self, collection: str, limit: int, start_after: str | None = None
    ) -> list[tuple[str, dict]]:
        with self._lock:
            ids = sorted(self.collections[collection])
            if start_after is not None:
                ids = [doc_id for doc_id in ids if doc_id > start_after]
            return [
                (doc_id, copy.deepcopy(self.collections[collection][doc_id]))
                for doc_id in ids[:limit]
            ]

    def create(self, collection: str, doc_id: str, data: dict) -> None:
        self._apply([("create", collection, doc_id, data, False)])

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        self._apply([("set", collection, doc_id, data, merge)])

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self._apply([("update", collection, doc_id, data, False)])

    def batch(self) -> _InMemoryBatch:
        return _InMemoryBatch(self)

    def run_transaction(self, callback: Callable[[Transaction], T]) -> T:
        with self._lock:
            transaction = _InMemoryTransaction(self)
            result = callback(transaction)
            self._apply(transaction.ops)
            return result

    def _apply(self, ops: list[tuple[str, str, str, dict, bool]]) -> None:
        with self._lock:
            # Validate everything first so a failing op leaves no partial writes.
            pending: Dict[tuple[str, str], Optional[dict]] = {}
            for kind, collection, doc_id, data, merge in ops:
                key = (collection, doc_id)
                existing = (
                    pending[key]
                    if key in pending
                    else self.collections[collection].get(doc_id)
                )
                if kind == "create":
                    if existing is not None:
                        raise AlreadyExistsError(f"{collection}/{doc_id} already exists")
                    pending[key] = _apply_fields(None, data, merge=False)
                elif kind == "update":
                    if existing is None:
                        raise NotFoundError(f"{collection}/{doc_id} not found")
                    pending[key] = _apply_fields(existing, data, merge=False)
                else:
                    pending[key] = _apply_fields(
                        existing if merge else None, data, merge=merge
                    )
            for (collection, doc_id), doc in pending.items():
                self.collections[collection][doc_id] = doc


# ---------------------------------------------------------------------------
# Firestore implementation
# ---------------------------------------------------------------------------


def _translate_errors(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except exceptions.AlreadyExists as e:
            raise AlreadyExistsError(str(e)) from e
        except exceptions.NotFound as e:
            raise NotFoundError(str(e)) from e
        except exceptions.GoogleAPICallError as e:
            raise UpstreamError(f"Firestore call failed: {e}") from e

    return wrapper


class _FirestoreBatch:
    def __init__(self, store: "FirestoreDocumentStore"):
        self._store = store
        self._batch = store.client.batch()

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        self._batch.set(self._store.doc_ref(collection, doc_id), data, merge=merge)

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self._batch.update(self._store.doc_ref(collection, doc_id), data)

    @_translate_errors
    def commit(self) -> None:
        self._batch.commit()


class _FirestoreTransaction:
    def __init__(self, store: "FirestoreDocumentStore", transaction):
        self._store = store
        self._transaction = transaction

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        snapshot = self._store.doc_ref(collection, doc_id).get(
            transaction=self._transaction
        )
        return snapshot.to_dict() if snapshot.exists else None

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        self._transaction.set(self._store.doc_ref(collection, doc_id), data, merge=merge)

    def create(self, collection: str, doc_id: str, data: dict) -> None:
        self._transaction.create(self._store.doc_ref(collection, doc_id), data)

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self._transaction.update(self._store.doc_ref(collection, doc_id), data)


class FirestoreDocumentStore:
    """Firestore-backed store. Expects the Firebase Admin app to be initialized."""

    def __init__(self, client=None):
        self.client = client or firestore.client()

    def doc_ref(self, collection: str, doc_id: str):
        return self.client.collection(collection).document(doc_id)

    @_translate_errors
    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        snapshot = self.doc_ref(collection, doc_id).get()
        return snapshot.to_dict() if snapshot.exists else None

    @_translate_errors
    def get_many(self, collection: str, doc_ids: Iterable[str]) -> Dict[str, dict]:
        results: Dict[str, dict] = {}
        for chunk in chunked(_unique_ids(doc_ids), IN_QUERY_CHUNK_SIZE):
            refs = [self.doc_ref(collection, doc_id) for doc_id in chunk]
            query = self.client.collection(collection).where(
                filter=FieldFilter(FieldPath.document_id(), "in", refs)
            )
            for snapshot in query.stream():
                results[snapshot.id] = snapshot.to_dict()
        return results

    @_translate_errors
    def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[tuple[str, dict]]:
        query = self.client.collection(collection)
        for field_name, op, value in filters:
            query = query.where(filter=FieldFilter(field_name, op, value))
        if order_by:
            direction = Query.DESCENDING if descending else Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        if limit is not None:
            query = query.limit(limit)
        return [(snapshot.id, snapshot.to_dict()) for snapshot in query.stream()]

    @_translate_errors
    def list_page(
        self, collection: str, limit: int, start_after: str | None = None
    ) -> list[tuple[str, dict]]:
        query = (
            self.client.collection(collection)
            .order_by(FieldPath.document_id())
            .limit(limit)
        )
        if start_after:
            # A deleted cursor document still orders by its id.
            query = query.start_after(
                {FieldPath.document_id(): self.doc_ref(collection, start_after)}
            )
        return [(snapshot.id, snapshot.to_dict()) for snapshot in query.stream()]

    @_translate_errors
    def create(self, collection: str, doc_id: str, data: dict) -> None:
        self.doc_ref(collection, doc_id).create(data)

    @_translate_errors
    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        self.doc_ref(collection, doc_id).set(data, merge=merge)

    @_translate_errors
    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self.doc_ref(collection, doc_id).update(data)

    def batch(self) -> _FirestoreBatch:
        return _FirestoreBatch(self)

    @_translate_errors
    def run_transaction(self, callback: Callable[[Transaction], T]) -> T:
        transaction = self.client.transaction()

        @firestore.transactional
        def _run(transaction):
            return callback(_FirestoreTransaction(self, transaction))

        return _run(transaction)
