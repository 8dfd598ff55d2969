"""Run-level exceptions."""

from customer_sync.clients.base import StoreError


class SetupError(Exception):
    """Raised before any write when a run cannot start.

    Missing credentials, unreadable or invalid input, no customer array.
    """


class SyncAbortedError(Exception):
    """Raised when a batch fails entirely on a table whose policy is "abort"."""

    def __init__(self, table: str, operation: str, errors: list[dict]):
        self.table = table
        self.operation = operation
        self.errors = errors
        super().__init__(
            f"{operation} on {table} failed for every row of a batch ({len(errors)} errors)"
        )


__all__ = ["SetupError", "StoreError", "SyncAbortedError"]
