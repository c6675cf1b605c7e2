from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ring_profiles.errors import RecordStoreError, UsernameTakenError, UsernameTemporarilyReservedError
from ring_profiles.models import ProfileForm
from ring_profiles.profiles.validation import validate_profile_form
from ring_profiles.store.base import RecordStore, Transaction
from ring_profiles.usernames.models import ConfirmedReservation, ReservationOutcome, UsernameReservation
from ring_profiles.usernames.service import UsernameReservationService

logger = logging.getLogger("ring_profiles.profiles")

USERNAME_TAKEN_MESSAGE = "Username is already taken"
USERNAME_RESERVED_MESSAGE = "Username is temporarily reserved. Try again in a few minutes."


def _mirror_fields(reservation: Optional[UsernameReservation]) -> Dict[str, Any]:
    """Username fields kept on the user record; all cleared when the user holds no name."""
    if reservation is None:
        return {"username": None, "usernameReservedAt": None, "usernameConfirmed": False, "usernameConfirmedAt": None}
    confirmed = isinstance(reservation, ConfirmedReservation)
    return {
        "username": reservation.display_name,
        "usernameReservedAt": reservation.reserved_at,
        "usernameConfirmed": confirmed,
        "usernameConfirmedAt": reservation.confirmed_at if confirmed else None,
    }


@dataclass
class ProfileUpdateResult:
    success: bool
    message: Optional[str] = None
    field_errors: Dict[str, str] = field(default_factory=dict)
    username: Optional[str] = None
    username_confirmed: bool = False


class ProfileUpdateWorkflow:
    """Update a user's profile, claiming a new username along the way.

    Steps:
    1. validate the form (nothing is written on failure)
    2. reserve the username and mirror it onto the user record, in one transaction
    3. write the rest of the profile
    4. confirm the username; a failed confirmation is logged, not raised

    If step 3 fails and ``release_on_failure`` is set, the hold is dropped, the
    previous username is put back (when nobody took it meanwhile) and the user
    record is pointed at whatever the user still owns. Otherwise the hold
    expires after the grace period.
    """

    def __init__(
        self,
        store: RecordStore,
        usernames: UsernameReservationService,
        *,
        users_collection: str = "users",
        release_on_failure: bool = True,
    ):
        self._store = store
        self._usernames = usernames
        self._users = users_collection
        self._release_on_failure = release_on_failure

    def update_profile(self, user_id: str, form: ProfileForm) -> ProfileUpdateResult:
        field_errors = validate_profile_form(form)
        if field_errors:
            return ProfileUpdateResult(success=False, field_errors=field_errors)

        username = (form.username or "").strip()
        outcome: Optional[ReservationOutcome] = None
        if username:
            now = self._usernames.now()
            try:
                outcome = self._store.run_transaction(
                    lambda txn: self._reserve_and_mirror(txn, user_id, username, now)
                )
            except UsernameTakenError:
                return ProfileUpdateResult(success=False, field_errors={"username": USERNAME_TAKEN_MESSAGE})
            except UsernameTemporarilyReservedError:
                return ProfileUpdateResult(success=False, field_errors={"username": USERNAME_RESERVED_MESSAGE})
            except Exception:
                logger.exception("Username reservation transaction failed for user %s", user_id)
                raise

        try:
            self._write_profile(user_id, form, self._usernames.now())
        except Exception:
            logger.exception("Profile update failed after username reservation for user %s", user_id)
            if outcome is not None and self._release_on_failure and outcome.status != "already_owned":
                self._rollback_quietly(outcome, user_id)
            raise

        if outcome is None:
            return ProfileUpdateResult(success=True, message="Profile updated successfully!")

        try:
            confirmed = self._store.run_transaction(
                lambda txn: self._confirm_and_mirror(txn, user_id, outcome.reservation.key, self._usernames.now())
            )
        except RecordStoreError:
            # The profile is already written; the hold expires if it stays unconfirmed.
            logger.warning(
                "Profile for %s updated but confirming username %s failed",
                user_id,
                outcome.reservation.key,
                exc_info=True,
            )
            confirmed = None
        else:
            if confirmed is None:
                logger.warning(
                    "Profile for %s updated but username %s could not be confirmed; username field may be stale",
                    user_id,
                    outcome.reservation.key,
                )

        return ProfileUpdateResult(
            success=True,
            message="Profile updated successfully!",
            username=outcome.reservation.display_name,
            username_confirmed=confirmed is not None,
        )

    def _reserve_and_mirror(
        self, txn: Transaction, user_id: str, username: str, now: datetime
    ) -> ReservationOutcome:
        user = txn.get(self._users, user_id) or {}
        outcome = self._usernames.reserve_within(txn, username, user_id, now=now)
        user.update(_mirror_fields(outcome.reservation))
        user["updatedAt"] = now
        txn.set(self._users, user_id, user)
        return outcome

    def _confirm_and_mirror(
        self, txn: Transaction, user_id: str, key: str, now: datetime
    ) -> Optional[ConfirmedReservation]:
        user = txn.get(self._users, user_id) or {}
        confirmed = self._usernames.confirm_within(txn, key, user_id, now=now)
        if confirmed is None:
            return None
        user.update(_mirror_fields(confirmed))
        txn.set(self._users, user_id, user)
        return confirmed

    def _write_profile(self, user_id: str, form: ProfileForm, now: datetime) -> None:
        update = {
            "name": form.name.strip(),
            "email": form.email.strip(),
            "bio": (form.bio or "").strip(),
            "company": (form.company or "").strip(),
            "position": (form.position or "").strip(),
            "location": (form.location or "").strip(),
            "website": (form.website or "").strip(),
            "socialLinks": {
                "linkedin": (form.linkedin or "").strip(),
                "twitter": (form.twitter or "").strip(),
                "github": (form.github or "").strip(),
            },
            "updatedAt": now,
        }

        def body(txn: Transaction) -> None:
            user = txn.get(self._users, user_id) or {}
            user.update(update)
            txn.set(self._users, user_id, user)

        self._store.run_transaction(body)

    def _rollback_and_mirror(self, txn: Transaction, user_id: str, outcome: ReservationOutcome, now: datetime) -> None:
        user = txn.get(self._users, user_id) or {}
        restored = self._usernames.rollback_within(txn, outcome, user_id, now=now)
        user.update(_mirror_fields(restored))
        user["updatedAt"] = now
        txn.set(self._users, user_id, user)

    def _rollback_quietly(self, outcome: ReservationOutcome, user_id: str) -> None:
        try:
            self._store.run_transaction(
                lambda txn: self._rollback_and_mirror(txn, user_id, outcome, self._usernames.now())
            )
        except RecordStoreError:
            # The hold still expires after the grace period.
            logger.warning("Could not roll back username %s for %s", outcome.reservation.key, user_id, exc_info=True)
