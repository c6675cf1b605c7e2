from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Literal, Optional, Union

from ring_profiles.errors import CorruptReservationError

ReservationStatus = Literal["created", "refreshed", "reclaimed", "already_owned"]


def normalize_username(name: str) -> str:
    return (name or "").strip().lower()


def as_utc(value: Any) -> Optional[datetime]:
    """Coerce a stored timestamp to an aware UTC datetime (None passes through)."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError as e:
            raise CorruptReservationError(f"Unparseable timestamp {value!r}") from e
    if not isinstance(value, datetime):
        raise CorruptReservationError(f"Expected a timestamp, got {type(value).__name__}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class UnconfirmedReservation:
    """Provisional hold created while a profile update is in flight."""

    key: str
    display_name: str
    owner_id: str
    reserved_at: datetime
    expires_at: datetime

    confirmed: Literal[False] = False

    @classmethod
    def hold(
        cls, *, display_name: str, owner_id: str, now: datetime, grace_period: timedelta
    ) -> "UnconfirmedReservation":
        return cls(
            key=normalize_username(display_name),
            display_name=display_name.strip(),
            owner_id=owner_id,
            reserved_at=now,
            expires_at=now + grace_period,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def confirm(self, now: datetime) -> "ConfirmedReservation":
        return ConfirmedReservation(
            key=self.key,
            display_name=self.display_name,
            owner_id=self.owner_id,
            reserved_at=self.reserved_at,
            confirmed_at=now,
        )


@dataclass(frozen=True)
class ConfirmedReservation:
    """Permanent ownership. Never expires on its own."""

    key: str
    display_name: str
    owner_id: str
    reserved_at: datetime
    confirmed_at: datetime

    confirmed: Literal[True] = True

    def is_expired(self, now: datetime) -> bool:
        return False


UsernameReservation = Union[UnconfirmedReservation, ConfirmedReservation]


def reservation_to_record(reservation: UsernameReservation, *, now: datetime) -> Dict[str, Any]:
    """Encode a reservation into the stored document shape (key is the document id)."""
    record: Dict[str, Any] = {
        "displayName": reservation.display_name,
        "ownerId": reservation.owner_id,
        "reservedAt": reservation.reserved_at,
        "confirmed": reservation.confirmed,
        "confirmedAt": None,
        "expiresAt": None,
        "updatedAt": now,
    }
    if isinstance(reservation, ConfirmedReservation):
        record["confirmedAt"] = reservation.confirmed_at
    else:
        record["expiresAt"] = reservation.expires_at
    return record


def reservation_from_record(key: str, data: Dict[str, Any]) -> UsernameReservation:
    owner_id = data.get("ownerId")
    if not owner_id:
        raise CorruptReservationError(f"Reservation {key!r} has no ownerId")

    reserved_at = as_utc(data.get("reservedAt"))
    if reserved_at is None:
        raise CorruptReservationError(f"Reservation {key!r} has no reservedAt")

    display_name = data.get("displayName") or key

    if data.get("confirmed") is True:
        confirmed_at = as_utc(data.get("confirmedAt"))
        if confirmed_at is None or data.get("expiresAt") is not None:
            raise CorruptReservationError(f"Confirmed reservation {key!r} must have confirmedAt and no expiresAt")
        return ConfirmedReservation(
            key=key,
            display_name=display_name,
            owner_id=owner_id,
            reserved_at=reserved_at,
            confirmed_at=confirmed_at,
        )

    expires_at = as_utc(data.get("expiresAt"))
    if expires_at is None:
        raise CorruptReservationError(f"Unconfirmed reservation {key!r} has no expiresAt")
    return UnconfirmedReservation(
        key=key,
        display_name=display_name,
        owner_id=owner_id,
        reserved_at=reserved_at,
        expires_at=expires_at,
    )


@dataclass(frozen=True)
class ReservationOutcome:
    reservation: UsernameReservation
    status: ReservationStatus
    # Old key freed in the same transaction, if any, and what it held before.
    released_previous: Optional[str] = None
    released_reservation: Optional[UsernameReservation] = None


@dataclass(frozen=True)
class SweepResult:
    cleaned: int
