from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Tuple

from firebase_admin import firestore
from google.api_core import exceptions as gexc
from google.cloud.firestore_v1.base_query import FieldFilter

from ring_profiles.errors import RecordNotFoundError, RecordStoreError, TransactionError
from ring_profiles.store.base import Filter, Record, RecordStore, T, Transaction, check_filters

logger = logging.getLogger("ring_profiles.store.firestore")


class _FnFailed(Exception):
    """Carries an exception raised by the transaction body through Firestore's wrapper."""

    def __init__(self, error: BaseException):
        super().__init__(str(error))
        self.error = error


class _FirestoreTransaction(Transaction):
    def __init__(self, client: Any, transaction: Any):
        self._client = client
        self._txn = transaction
        self._wrote = False

    def _ref(self, collection: str, key: str):
        return self._client.collection(collection).document(key)

    def get(self, collection: str, key: str) -> Optional[Record]:
        if self._wrote:
            raise TransactionError("Transactions require all reads to be executed before all writes")
        try:
            snap = self._ref(collection, key).get(transaction=self._txn)
        except gexc.GoogleAPICallError as e:
            raise RecordStoreError(f"Failed to read {collection}/{key}: {e}") from e
        return snap.to_dict() if snap.exists else None

    def set(self, collection: str, key: str, data: Record) -> None:
        self._wrote = True
        self._txn.set(self._ref(collection, key), dict(data))

    def update(self, collection: str, key: str, data: Record) -> None:
        self._wrote = True
        self._txn.update(self._ref(collection, key), dict(data))

    def delete(self, collection: str, key: str) -> None:
        self._wrote = True
        self._txn.delete(self._ref(collection, key))


class FirestoreRecordStore(RecordStore):
    """Record store backed by Cloud Firestore through firebase_admin.

    Transactions run with ``max_attempts=1``: a commit that loses a race is
    reported as TransactionError instead of being retried.

    The sweep query (``confirmed == False`` and ``expiresAt < now``) needs a
    composite index on the usernames collection.
    """

    name = "firestore"

    def __init__(self, client: Any = None):
        self._client = client if client is not None else firestore.client()

    def _ref(self, collection: str, key: str):
        return self._client.collection(collection).document(key)

    def get(self, collection: str, key: str) -> Optional[Record]:
        try:
            snap = self._ref(collection, key).get()
        except gexc.GoogleAPICallError as e:
            raise RecordStoreError(f"Failed to read {collection}/{key}: {e}") from e
        return snap.to_dict() if snap.exists else None

    def set(self, collection: str, key: str, data: Record) -> None:
        try:
            self._ref(collection, key).set(dict(data))
        except gexc.GoogleAPICallError as e:
            raise RecordStoreError(f"Failed to write {collection}/{key}: {e}") from e

    def update(self, collection: str, key: str, data: Record) -> None:
        try:
            self._ref(collection, key).update(dict(data))
        except gexc.NotFound as e:
            raise RecordNotFoundError(collection, key) from e
        except gexc.GoogleAPICallError as e:
            raise RecordStoreError(f"Failed to update {collection}/{key}: {e}") from e

    def delete(self, collection: str, key: str) -> None:
        try:
            self._ref(collection, key).delete()
        except gexc.GoogleAPICallError as e:
            raise RecordStoreError(f"Failed to delete {collection}/{key}: {e}") from e

    def query(self, collection: str, filters: List[Filter]) -> List[Tuple[str, Record]]:
        check_filters(filters)
        q = self._client.collection(collection)
        for field, op, value in filters:
            q = q.where(filter=FieldFilter(field, op, value))
        try:
            return [(snap.id, snap.to_dict()) for snap in q.stream()]
        except gexc.GoogleAPICallError as e:
            raise RecordStoreError(f"Failed to query {collection}: {e}") from e

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        def body(txn: Any) -> T:
            try:
                return fn(_FirestoreTransaction(self._client, txn))
            except Exception as e:
                raise _FnFailed(e) from e

        try:
            return firestore.transactional(body)(self._client.transaction(max_attempts=1))
        except _FnFailed as failed:
            raise failed.error
        except gexc.NotFound as e:
            raise RecordStoreError(f"Transaction touched a missing document: {e}") from e
        except (gexc.GoogleAPICallError, ValueError) as e:
            # ValueError is what the SDK raises once max_attempts is exhausted.
            logger.warning("Firestore transaction aborted (%s)", e.__class__.__name__)
            raise TransactionError(f"Transaction failed: {e}") from e
