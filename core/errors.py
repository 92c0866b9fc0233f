# core/errors.py
"""Exception hierarchy shared by the store, the price feed and the CLI."""


class TrackerError(Exception):
    """Base exception for all crypto tracker errors."""


class ValidationError(TrackerError):
    """Raised when transaction input is rejected before any mutation."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


class MissingFieldError(ValidationError):
    def __init__(self, field: str):
        super().__init__(field, f"Missing required field '{field}'.")


class InvalidValueError(ValidationError):
    def __init__(self, field: str, value, reason: str):
        self.value = value
        super().__init__(field, f"Invalid value for '{field}': {value!r} ({reason}).")


class NotFoundError(TrackerError):
    """Raised when removing a transaction id that is not stored."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"No transaction with id '{transaction_id}'.")


class FeedError(TrackerError):
    """Raised when the market price feed cannot be read."""


class PersistenceError(TrackerError):
    """Raised when a storage backend cannot read or write."""
