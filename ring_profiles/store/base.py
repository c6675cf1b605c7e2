from __future__ import annotations

import abc
import operator
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

T = TypeVar("T")

Record = Dict[str, Any]
Filter = Tuple[str, str, Any]

# Comparison operators understood by RecordStore.query(). Same spelling as Firestore.
FILTER_OPS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def check_filters(filters: List[Filter]) -> None:
    for field, op, _ in filters:
        if op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter operator {op!r} on field {field!r}")


class Transaction(abc.ABC):
    """One all-or-nothing unit of work.

    Reads must come before writes (Firestore enforces this; the in-memory store
    mirrors it so code behaves the same on both backends). Writes are buffered
    and only become visible when the transaction function returns.
    """

    @abc.abstractmethod
    def get(self, collection: str, key: str) -> Optional[Record]: ...

    @abc.abstractmethod
    def set(self, collection: str, key: str, data: Record) -> None: ...

    @abc.abstractmethod
    def update(self, collection: str, key: str, data: Record) -> None: ...

    @abc.abstractmethod
    def delete(self, collection: str, key: str) -> None: ...


class RecordStore(abc.ABC):
    """Transactional document store keyed by (collection, key)."""

    name: str = "abstract"

    @abc.abstractmethod
    def get(self, collection: str, key: str) -> Optional[Record]: ...

    @abc.abstractmethod
    def set(self, collection: str, key: str, data: Record) -> None: ...

    @abc.abstractmethod
    def update(self, collection: str, key: str, data: Record) -> None:
        """Merge ``data`` into an existing document. Raises RecordNotFoundError if missing."""

    @abc.abstractmethod
    def delete(self, collection: str, key: str) -> None: ...

    @abc.abstractmethod
    def query(self, collection: str, filters: List[Filter]) -> List[Tuple[str, Record]]:
        """Return ``(key, record)`` pairs matching every filter."""

    @abc.abstractmethod
    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """Run ``fn`` exactly once inside a transaction and return its result.

        If ``fn`` raises, nothing it wrote is applied and the exception propagates
        unchanged. Contention is reported as TransactionError, never retried.
        """
