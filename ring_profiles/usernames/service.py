from __future__ import annotations

import dataclasses
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from ring_profiles.errors import (
    CorruptReservationError,
    RecordStoreError,
    UsernameTakenError,
    UsernameTemporarilyReservedError,
)
from ring_profiles.store.base import RecordStore, Transaction
from ring_profiles.usernames.models import (
    ConfirmedReservation,
    ReservationOutcome,
    ReservationStatus,
    SweepResult,
    UnconfirmedReservation,
    UsernameReservation,
    as_utc,
    normalize_username,
    reservation_from_record,
    reservation_to_record,
)

logger = logging.getLogger("ring_profiles.usernames")

DEFAULT_GRACE_PERIOD = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsernameReservationService:
    """Maps a username to at most one confirmed owner.

    A profile update first *reserves* the name (an unconfirmed hold that blocks
    other claimants for ``grace_period``), then *confirms* it once the rest of
    the profile write succeeded. Holds that are never confirmed become
    claimable by anyone after they expire; ``sweep_expired`` garbage-collects
    them.

    All mutual exclusion is delegated to the record store's transactions. Every
    public operation is a single transaction attempt; nothing here retries.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        grace_period: timedelta = DEFAULT_GRACE_PERIOD,
        usernames_collection: str = "usernames",
        users_collection: str = "users",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if grace_period <= timedelta(0):
            raise ValueError("grace_period must be positive")
        self._store = store
        self._grace = grace_period
        self._usernames = usernames_collection
        self._users = users_collection
        self._clock = clock or _utcnow

    @property
    def grace_period(self) -> timedelta:
        return self._grace

    def now(self) -> datetime:
        return as_utc(self._clock())

    def lookup(self, name: str) -> Optional[UsernameReservation]:
        """Plain (non-transactional) read of the current reservation for ``name``."""
        key = normalize_username(name)
        if not key:
            return None
        raw = self._store.get(self._usernames, key)
        return reservation_from_record(key, raw) if raw is not None else None

    # -- reserve ---------------------------------------------------------------

    def reserve(self, requested_name: str, owner_id: str) -> ReservationOutcome:
        now = self.now()
        return self._store.run_transaction(lambda txn: self.reserve_within(txn, requested_name, owner_id, now=now))

    def reserve_within(
        self,
        txn: Transaction,
        requested_name: str,
        owner_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> ReservationOutcome:
        """Apply the reservation decision inside a caller-owned transaction.

        Performs only reads until the decision is made, so callers may add their
        own writes to ``txn`` afterwards. Raises UsernameTakenError or
        UsernameTemporarilyReservedError without writing anything.
        """
        if not owner_id:
            raise ValueError("owner_id is required")
        key = normalize_username(requested_name)
        if not key:
            raise ValueError("Username is required")
        now = as_utc(now) if now is not None else self.now()

        existing_raw = txn.get(self._usernames, key)
        user = txn.get(self._users, owner_id) or {}
        previous_key = normalize_username(user.get("username") or "")
        previous_raw = None
        if previous_key and previous_key != key:
            previous_raw = txn.get(self._usernames, previous_key)

        existing = reservation_from_record(key, existing_raw) if existing_raw is not None else None
        status, reservation, changed = self._decide(existing, requested_name, owner_id, now)

        released = None
        released_reservation = None
        if previous_raw is not None and previous_raw.get("ownerId") == owner_id:
            try:
                released_reservation = reservation_from_record(previous_key, previous_raw)
            except CorruptReservationError:
                logger.warning("Releasing corrupt username reservation %s", previous_key, exc_info=True)
            txn.delete(self._usernames, previous_key)
            released = previous_key
            logger.info("Released previous username %s for user %s", previous_key, owner_id)

        if changed:
            txn.set(self._usernames, key, reservation_to_record(reservation, now=now))

        return ReservationOutcome(
            reservation=reservation,
            status=status,
            released_previous=released,
            released_reservation=released_reservation,
        )

    def _decide(
        self,
        existing: Optional[UsernameReservation],
        requested_name: str,
        owner_id: str,
        now: datetime,
    ) -> Tuple[ReservationStatus, UsernameReservation, bool]:
        def fresh_hold() -> UnconfirmedReservation:
            return UnconfirmedReservation.hold(
                display_name=requested_name, owner_id=owner_id, now=now, grace_period=self._grace
            )

        if existing is None:
            return "created", fresh_hold(), True

        if existing.owner_id == owner_id:
            if isinstance(existing, ConfirmedReservation):
                display_name = requested_name.strip()
                if display_name == existing.display_name:
                    return "already_owned", existing, False
                # Same key, different letter case: keep ownership, update what we show.
                return "already_owned", dataclasses.replace(existing, display_name=display_name), True
            return "refreshed", fresh_hold(), True

        if isinstance(existing, ConfirmedReservation):
            raise UsernameTakenError(existing.key)

        if not existing.is_expired(now):
            raise UsernameTemporarilyReservedError(existing.key)

        logger.info(
            "Username %s reservation by %s expired at %s, reclaiming for %s",
            existing.key,
            existing.owner_id,
            existing.expires_at.isoformat(),
            owner_id,
        )
        return "reclaimed", fresh_hold(), True

    # -- confirm / release -------------------------------------------------------

    def confirm(self, key: str, owner_id: str) -> Optional[ConfirmedReservation]:
        now = self.now()
        return self._store.run_transaction(lambda txn: self.confirm_within(txn, key, owner_id, now=now))

    def confirm_within(
        self,
        txn: Transaction,
        key: str,
        owner_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[ConfirmedReservation]:
        """Promote the caller's hold to permanent ownership.

        Returns None (and logs) on ownership drift: the record is gone or now
        belongs to someone else. That is not an error for the caller.
        """
        key = normalize_username(key)
        now = as_utc(now) if now is not None else self.now()

        raw = txn.get(self._usernames, key)
        if raw is None:
            logger.warning("Ownership drift: username %s has no reservation to confirm for %s", key, owner_id)
            return None

        current = reservation_from_record(key, raw)
        if current.owner_id != owner_id:
            logger.warning(
                "Ownership drift: username %s is held by %s, not confirming for %s",
                key,
                current.owner_id,
                owner_id,
            )
            return None

        if isinstance(current, ConfirmedReservation):
            return current

        confirmed = current.confirm(now)
        txn.set(self._usernames, key, reservation_to_record(confirmed, now=now))
        return confirmed

    def release(self, key: str, owner_id: str) -> bool:
        """Drop the caller's *unconfirmed* hold on ``key``. Returns True if one was deleted."""
        key = normalize_username(key)

        def body(txn: Transaction) -> bool:
            raw = txn.get(self._usernames, key)
            if raw is None:
                return False
            current = reservation_from_record(key, raw)
            if current.owner_id != owner_id or isinstance(current, ConfirmedReservation):
                return False
            txn.delete(self._usernames, key)
            return True

        released = self._store.run_transaction(body)
        if released:
            logger.info("Released unconfirmed username %s for %s", key, owner_id)
        return released

    def rollback_within(
        self,
        txn: Transaction,
        outcome: ReservationOutcome,
        owner_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[UsernameReservation]:
        """Undo a reserve_within() whose surrounding update failed.

        Drops the caller's hold on the requested key (if still an unconfirmed
        hold of theirs) and puts back the previous username freed by that
        reservation, unless someone has claimed it since. Returns the restored
        previous reservation, or None when the caller is left without one.
        Callers may add their own writes to ``txn`` afterwards.
        """
        now = as_utc(now) if now is not None else self.now()
        key = outcome.reservation.key
        previous = outcome.released_reservation

        held_raw = txn.get(self._usernames, key)
        previous_raw = None
        if previous is not None:
            previous_raw = txn.get(self._usernames, previous.key)

        if held_raw is not None and held_raw.get("ownerId") == owner_id and held_raw.get("confirmed") is not True:
            txn.delete(self._usernames, key)

        if previous is None:
            return None
        if previous_raw is not None:
            logger.warning(
                "Cannot restore username %s for %s: claimed by %s in the meantime",
                previous.key,
                owner_id,
                previous_raw.get("ownerId"),
            )
            return None

        txn.set(self._usernames, previous.key, reservation_to_record(previous, now=now))
        logger.info("Restored previous username %s for %s", previous.key, owner_id)
        return previous

    # -- maintenance -----------------------------------------------------------

    def sweep_expired(self) -> SweepResult:
        """Delete unconfirmed reservations whose grace period has elapsed.

        Each candidate is re-read and deleted in its own transaction, so a key
        that was reclaimed after the query ran is left alone.
        """
        now = self.now()
        candidates = self._store.query(
            self._usernames,
            [("confirmed", "==", False), ("expiresAt", "<", now)],
        )

        cleaned = 0
        for key, _ in candidates:
            try:
                deleted = self._store.run_transaction(lambda txn, key=key: self._delete_if_expired(txn, key))
            except RecordStoreError:
                logger.warning("Failed to clean expired username reservation %s", key, exc_info=True)
                continue
            if deleted:
                cleaned += 1
                logger.info("Cleaned expired username reservation: %s", key)

        logger.info("Cleaned %d expired username reservations", cleaned)
        return SweepResult(cleaned=cleaned)

    def _delete_if_expired(self, txn: Transaction, key: str) -> bool:
        raw = txn.get(self._usernames, key)
        if raw is None:
            return False
        try:
            current = reservation_from_record(key, raw)
        except CorruptReservationError:
            logger.warning("Skipping corrupt username reservation %s", key, exc_info=True)
            return False
        if isinstance(current, ConfirmedReservation) or not current.is_expired(self.now()):
            return False
        txn.delete(self._usernames, key)
        return True
