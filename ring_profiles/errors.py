from __future__ import annotations


class UsernameReservationError(Exception):
    """Base class for expected username conflicts."""

    def __init__(self, key: str, message: str):
        super().__init__(message)
        self.key = key


class UsernameTakenError(UsernameReservationError):
    def __init__(self, key: str):
        super().__init__(key, "Username is already taken")


class UsernameTemporarilyReservedError(UsernameReservationError):
    def __init__(self, key: str):
        super().__init__(key, "Username is temporarily reserved by another user")


class CorruptReservationError(ValueError):
    """A stored reservation record doesn't decode into a valid variant."""


class RecordStoreError(RuntimeError):
    """Infrastructure failure talking to the record store."""


class TransactionError(RecordStoreError):
    pass


class RecordNotFoundError(RecordStoreError):
    def __init__(self, collection: str, key: str):
        super().__init__(f"{collection}/{key} does not exist")
        self.collection = collection
        self.key = key
