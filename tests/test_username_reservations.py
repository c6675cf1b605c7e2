from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone

import pytest

from ring_profiles.errors import (
    CorruptReservationError,
    TransactionError,
    UsernameTakenError,
    UsernameTemporarilyReservedError,
)
from ring_profiles.store.memory import InMemoryRecordStore
from ring_profiles.usernames.models import (
    ConfirmedReservation,
    UnconfirmedReservation,
    reservation_from_record,
    reservation_to_record,
)
from ring_profiles.usernames.service import UsernameReservationService

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _service(store=None, clock=None):
    store = store if store is not None else InMemoryRecordStore()
    clock = clock or FakeClock()
    return UsernameReservationService(store, grace_period=timedelta(minutes=5), clock=clock), store, clock


def test_reserve_creates_unconfirmed_hold_with_grace_window():
    service, store, clock = _service()

    outcome = service.reserve("Alice", "user-a")

    assert outcome.status == "created"
    res = outcome.reservation
    assert isinstance(res, UnconfirmedReservation)
    assert res.key == "alice"
    assert res.display_name == "Alice"
    assert res.owner_id == "user-a"
    assert res.expires_at == res.reserved_at + timedelta(minutes=5)

    raw = store.get("usernames", "alice")
    assert raw["confirmed"] is False
    assert raw["confirmedAt"] is None
    assert raw["expiresAt"] == T0 + timedelta(minutes=5)


def test_concurrent_reserves_admit_a_single_owner():
    service, store, _ = _service()
    barrier = threading.Barrier(8)
    results = []

    def claim(owner: str) -> None:
        barrier.wait()
        try:
            service.reserve("alice", owner)
            results.append(("ok", owner))
        except UsernameTemporarilyReservedError:
            results.append(("busy", owner))

    threads = [threading.Thread(target=claim, args=(f"user-{i}",)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [owner for status, owner in results if status == "ok"]
    assert len(winners) == 1
    assert len(results) == 8
    assert store.count("usernames") == 1
    assert service.lookup("alice").owner_id == winners[0]


def test_case_insensitive_collision():
    service, _, _ = _service()
    service.reserve("Alice", "user-a")

    with pytest.raises(UsernameTemporarilyReservedError) as exc:
        service.reserve("ALICE", "user-b")
    assert exc.value.key == "alice"


def test_expired_hold_is_reclaimed_by_another_owner():
    service, store, clock = _service()
    service.reserve("alice", "user-a")

    clock.advance(300)
    outcome = service.reserve("alice", "user-b")

    assert outcome.status == "reclaimed"
    assert outcome.reservation.owner_id == "user-b"
    assert service.lookup("alice").owner_id == "user-b"
    assert store.count("usernames") == 1


def test_hold_blocks_others_until_the_last_second_of_the_grace_period():
    service, _, clock = _service()
    service.reserve("alice", "user-a")

    clock.advance(299)
    with pytest.raises(UsernameTemporarilyReservedError):
        service.reserve("alice", "user-b")


def test_confirmed_username_is_never_reclaimed():
    service, _, clock = _service()
    service.reserve("alice", "user-a")
    confirmed = service.confirm("alice", "user-a")
    assert isinstance(confirmed, ConfirmedReservation)

    clock.advance(60 * 60 * 24 * 365)
    with pytest.raises(UsernameTakenError):
        service.reserve("alice", "user-b")


def test_self_reserve_is_idempotent():
    service, store, clock = _service()
    service.reserve("alice", "user-a")
    clock.advance(30)

    outcome = service.reserve("alice", "user-a")

    assert outcome.status == "refreshed"
    assert outcome.reservation.reserved_at == T0 + timedelta(seconds=30)
    assert store.count("usernames") == 1
    assert service.lookup("alice").owner_id == "user-a"


def test_reserving_an_already_confirmed_own_name_keeps_it_confirmed():
    service, store, _ = _service()
    service.reserve("alice", "user-a")
    service.confirm("alice", "user-a")

    outcome = service.reserve("Alice", "user-a")

    assert outcome.status == "already_owned"
    assert isinstance(outcome.reservation, ConfirmedReservation)
    raw = store.get("usernames", "alice")
    assert raw["confirmed"] is True
    assert raw["expiresAt"] is None
    assert raw["displayName"] == "Alice"


def test_previous_username_is_released_when_switching():
    service, store, _ = _service()
    service.reserve("old", "user-a")
    service.confirm("old", "user-a")
    store.set("users", "user-a", {"username": "old", "usernameConfirmed": True})

    outcome = service.reserve("new", "user-a")
    service.confirm("new", "user-a")

    assert outcome.released_previous == "old"
    assert service.lookup("old") is None
    other = service.reserve("old", "user-b")
    assert other.status == "created"


def test_previous_username_owned_by_someone_else_is_not_deleted():
    service, store, clock = _service()
    # user-a's profile still says "old", but the hold expired and user-b took it.
    service.reserve("old", "user-a")
    store.set("users", "user-a", {"username": "old"})
    clock.advance(301)
    service.reserve("old", "user-b")

    outcome = service.reserve("new", "user-a")

    assert outcome.released_previous is None
    assert service.lookup("old").owner_id == "user-b"


def test_conflict_leaves_previous_username_untouched():
    service, store, _ = _service()
    service.reserve("old", "user-a")
    service.confirm("old", "user-a")
    store.set("users", "user-a", {"username": "old"})
    service.reserve("taken", "user-b")
    service.confirm("taken", "user-b")

    with pytest.raises(UsernameTakenError):
        service.reserve("taken", "user-a")

    assert service.lookup("old").owner_id == "user-a"


def test_confirm_reports_ownership_drift(caplog):
    service, store, clock = _service()
    service.reserve("alice", "user-a")
    clock.advance(301)
    service.reserve("alice", "user-b")

    with caplog.at_level(logging.WARNING, logger="ring_profiles.usernames"):
        assert service.confirm("alice", "user-a") is None

    assert "Ownership drift" in caplog.text
    raw = store.get("usernames", "alice")
    assert raw["ownerId"] == "user-b"
    assert raw["confirmed"] is False


def test_confirm_of_missing_record_returns_none():
    service, _, _ = _service()
    assert service.confirm("ghost", "user-a") is None


def test_confirm_sets_confirmed_fields():
    service, store, clock = _service()
    service.reserve("alice", "user-a")
    clock.advance(10)

    confirmed = service.confirm("ALICE", "user-a")

    assert confirmed.confirmed_at == T0 + timedelta(seconds=10)
    raw = store.get("usernames", "alice")
    assert raw["confirmed"] is True
    assert raw["confirmedAt"] == T0 + timedelta(seconds=10)
    assert raw["expiresAt"] is None


def test_release_only_drops_own_unconfirmed_holds():
    service, _, _ = _service()
    service.reserve("alice", "user-a")
    service.reserve("bob", "user-b")
    service.confirm("bob", "user-b")

    assert service.release("alice", "user-b") is False
    assert service.release("bob", "user-b") is False
    assert service.release("alice", "user-a") is True
    assert service.lookup("alice") is None
    assert service.lookup("bob").owner_id == "user-b"


def test_sweep_deletes_only_expired_unconfirmed_holds():
    service, store, clock = _service()
    service.reserve("stale", "user-a")
    service.reserve("kept", "user-b")
    service.confirm("kept", "user-b")
    clock.advance(240)
    service.reserve("fresh", "user-c")
    clock.advance(70)

    result = service.sweep_expired()

    assert result.cleaned == 1
    assert service.lookup("stale") is None
    assert service.lookup("kept") is not None
    assert service.lookup("fresh") is not None


class _RacingStore(InMemoryRecordStore):
    """Runs a hook right after query() returns, before the sweep deletes anything."""

    def __init__(self):
        super().__init__()
        self.after_query = None

    def query(self, collection, filters):
        rows = super().query(collection, filters)
        hook, self.after_query = self.after_query, None
        if hook is not None:
            hook()
        return rows


def test_sweep_does_not_delete_a_key_reclaimed_mid_sweep():
    store = _RacingStore()
    service, _, clock = _service(store=store)
    service.reserve("alice", "user-a")
    clock.advance(301)
    store.after_query = lambda: service.reserve("alice", "user-b")

    result = service.sweep_expired()

    assert result.cleaned == 0
    assert store.count("usernames") == 1
    assert service.lookup("alice").owner_id == "user-b"


def test_sweep_skips_corrupt_records():
    service, store, clock = _service()
    store.set("usernames", "broken", {"confirmed": False, "expiresAt": T0 - timedelta(days=1)})

    assert service.sweep_expired().cleaned == 0
    assert store.get("usernames", "broken") is not None


class _FailingStore(InMemoryRecordStore):
    def run_transaction(self, fn):
        def explode(txn):
            fn(txn)
            raise TransactionError("commit aborted")

        return super().run_transaction(explode)


def test_transaction_failure_leaves_no_reservation():
    service, store, _ = _service(store=_FailingStore())

    with pytest.raises(TransactionError):
        service.reserve("alice", "user-a")

    assert store.get("usernames", "alice") is None


def test_example_timeline():
    service, _, clock = _service()

    service.reserve("alice", "user-a")  # t=0, user-a's profile write then fails
    clock.advance(10)
    with pytest.raises(UsernameTemporarilyReservedError):
        service.reserve("alice", "user-b")

    clock.advance(291)  # t=301
    assert service.reserve("alice", "user-b").reservation.owner_id == "user-b"
    clock.advance(1)
    assert service.confirm("alice", "user-b") is not None

    clock.advance(8)  # t=310
    with pytest.raises(UsernameTakenError):
        service.reserve("alice", "user-a")


def test_record_round_trip_preserves_variant():
    hold = UnconfirmedReservation.hold(display_name="Alice", owner_id="u", now=T0, grace_period=timedelta(minutes=5))
    assert reservation_from_record("alice", reservation_to_record(hold, now=T0)) == hold

    confirmed = hold.confirm(T0 + timedelta(seconds=5))
    record = reservation_to_record(confirmed, now=T0)
    assert record["expiresAt"] is None
    assert reservation_from_record("alice", record) == confirmed


def test_confirmed_record_with_expiry_is_rejected():
    with pytest.raises(CorruptReservationError):
        reservation_from_record(
            "alice",
            {"ownerId": "u", "reservedAt": T0, "confirmed": True, "confirmedAt": T0, "expiresAt": T0},
        )


def test_naive_timestamps_are_read_as_utc():
    res = reservation_from_record(
        "alice",
        {"ownerId": "u", "reservedAt": T0.replace(tzinfo=None), "confirmed": False, "expiresAt": "2026-01-01T12:05:00"},
    )
    assert res.reserved_at == T0
    assert res.expires_at == T0 + timedelta(minutes=5)


def test_rollback_restores_the_released_username():
    service, store, _ = _service()
    service.reserve("old", "user-a")
    service.confirm("old", "user-a")
    store.set("users", "user-a", {"username": "old"})
    outcome = service.reserve("new", "user-a")
    assert isinstance(outcome.released_reservation, ConfirmedReservation)

    restored = store.run_transaction(lambda txn: service.rollback_within(txn, outcome, "user-a"))

    assert restored.key == "old"
    assert service.lookup("new") is None
    assert service.lookup("old") == outcome.released_reservation


def test_rollback_never_touches_a_hold_reclaimed_by_someone_else():
    service, store, clock = _service()
    outcome = service.reserve("alice", "user-a")
    clock.advance(301)
    service.reserve("alice", "user-b")

    restored = store.run_transaction(lambda txn: service.rollback_within(txn, outcome, "user-a"))

    assert restored is None
    assert service.lookup("alice").owner_id == "user-b"


def test_malformed_timestamp_is_a_corrupt_record():
    with pytest.raises(CorruptReservationError):
        reservation_from_record(
            "alice",
            {"ownerId": "u", "reservedAt": "yesterday-ish", "confirmed": False, "expiresAt": T0},
        )


def test_sweep_skips_records_with_unparseable_timestamps():
    service, store, _ = _service()
    store.set(
        "usernames",
        "garbled",
        {"ownerId": "u", "reservedAt": "not-a-date", "confirmed": False, "expiresAt": T0 - timedelta(days=1)},
    )

    assert service.sweep_expired().cleaned == 0
    assert store.get("usernames", "garbled") is not None
