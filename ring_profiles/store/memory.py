from __future__ import annotations

import copy
import threading
from typing import Callable, Dict, List, Optional, Tuple

from ring_profiles.errors import RecordNotFoundError, TransactionError
from ring_profiles.store.base import FILTER_OPS, Filter, Record, RecordStore, T, Transaction, check_filters

_MISSING = object()


def _matches(record: Record, filters: List[Filter]) -> bool:
    for field, op, value in filters:
        current = record.get(field, _MISSING)
        if op not in ("==", "!="):
            # Like Firestore, range filters never match missing or null fields.
            if current is _MISSING or current is None:
                return False
        elif current is _MISSING:
            current = None
        try:
            if not FILTER_OPS[op](current, value):
                return False
        except TypeError:
            return False
    return True


class _MemoryTransaction(Transaction):
    def __init__(self, docs: Dict[str, Dict[str, Record]]):
        self._docs = docs
        # (collection, key) -> record to write, or None for delete.
        self._writes: Dict[Tuple[str, str], Optional[Record]] = {}

    def get(self, collection: str, key: str) -> Optional[Record]:
        if self._writes:
            raise TransactionError("Transactions require all reads to be executed before all writes")
        doc = self._docs.get(collection, {}).get(key)
        return copy.deepcopy(doc) if doc is not None else None

    def set(self, collection: str, key: str, data: Record) -> None:
        self._writes[(collection, key)] = copy.deepcopy(dict(data))

    def update(self, collection: str, key: str, data: Record) -> None:
        pending = self._writes.get((collection, key), _MISSING)
        if pending is _MISSING:
            base = self._docs.get(collection, {}).get(key)
        else:
            base = pending
        if base is None:
            raise RecordNotFoundError(collection, key)
        merged = copy.deepcopy(base)
        merged.update(copy.deepcopy(dict(data)))
        self._writes[(collection, key)] = merged

    def delete(self, collection: str, key: str) -> None:
        self._writes[(collection, key)] = None

    def commit(self) -> None:
        for (collection, key), record in self._writes.items():
            if record is None:
                self._docs.get(collection, {}).pop(key, None)
            else:
                self._docs.setdefault(collection, {})[key] = record


class InMemoryRecordStore(RecordStore):
    """Thread-safe in-memory record store.

    Storage semantics:
    - Stored only in the API process memory (cleared on restart).
    - Not shared across multiple API instances; use the Firestore store for that.
    - Transactions are serialized by one lock, so two concurrent transactions on
      the same key never interleave.
    """

    name = "memory"

    def __init__(self):
        self._lock = threading.RLock()
        self._docs: Dict[str, Dict[str, Record]] = {}

    def get(self, collection: str, key: str) -> Optional[Record]:
        with self._lock:
            doc = self._docs.get(collection, {}).get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def set(self, collection: str, key: str, data: Record) -> None:
        with self._lock:
            self._docs.setdefault(collection, {})[key] = copy.deepcopy(dict(data))

    def update(self, collection: str, key: str, data: Record) -> None:
        with self._lock:
            doc = self._docs.get(collection, {}).get(key)
            if doc is None:
                raise RecordNotFoundError(collection, key)
            doc.update(copy.deepcopy(dict(data)))

    def delete(self, collection: str, key: str) -> None:
        with self._lock:
            self._docs.get(collection, {}).pop(key, None)

    def query(self, collection: str, filters: List[Filter]) -> List[Tuple[str, Record]]:
        check_filters(filters)
        with self._lock:
            return [
                (key, copy.deepcopy(doc))
                for key, doc in self._docs.get(collection, {}).items()
                if _matches(doc, filters)
            ]

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        with self._lock:
            txn = _MemoryTransaction(self._docs)
            result = fn(txn)
            txn.commit()
            return result

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._docs.get(collection, {}))
