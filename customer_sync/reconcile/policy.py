"""Uniform bulk-then-per-row write policy.

Every batched write goes through the same ladder:

    bulk attempt -> per-row fallback -> conflict resolver -> recorded failure

The ladder is parameterized by table and operation; the callables decide
what "bulk", "single" and "resolve conflict" mean for that write.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from customer_sync.clients.base import StoreError
from customer_sync.config import ABORT, CONTINUE
from customer_sync.errors import SyncAbortedError

logger = logging.getLogger(__name__)

BulkWrite = Callable[[list[dict]], None]
SingleWrite = Callable[[dict], None]
# Returns a short label of what the resolver did ("updated", "unchanged", ...)
ConflictResolver = Callable[[dict, StoreError], str]

# Row errors kept per batch for diagnostics
MAX_RECORDED_ERRORS = 20


@dataclass
class BatchOutcome:
    """Result of one batch through the write ladder."""

    table: str
    operation: str
    attempted: int = 0
    written: int = 0
    failed: int = 0
    resolved: dict[str, int] = field(default_factory=dict)
    used_fallback: bool = False
    # Rows written or resolved, in batch order
    applied: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def failed_entirely(self) -> bool:
        return self.attempted > 0 and self.failed == self.attempted

    def record_error(self, row_label: str, error: Exception) -> None:
        self.failed += 1
        if len(self.errors) < MAX_RECORDED_ERRORS:
            detail = error.to_dict() if isinstance(error, StoreError) else {"message": str(error)}
            self.errors.append({"row": row_label, **detail})


class BatchWritePolicy:
    """Apply the write ladder to one batch at a time."""

    def __init__(
        self,
        failure_policy: Optional[dict[str, str]] = None,
        pace_seconds: float = 0.0,
        pace_every: int = 50,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the policy.

        Args:
            failure_policy: Per-table "continue" (default) or "abort" when a
                batch fails on every row
            pace_seconds: Delay inserted every ``pace_every`` fallback rows
            pace_every: Fallback rows between pacing delays
            sleep: Sleep function (injectable for tests)
        """
        self.failure_policy = failure_policy or {}
        self.pace_seconds = pace_seconds
        self.pace_every = pace_every
        self._sleep = sleep

    def _pace(self, index: int) -> None:
        if self.pace_seconds > 0 and index and index % self.pace_every == 0:
            self._sleep(self.pace_seconds)

    def run(
        self,
        table: str,
        operation: str,
        rows: list[dict],
        bulk: BulkWrite,
        single: SingleWrite,
        on_conflict: Optional[ConflictResolver] = None,
        label: Callable[[dict], str] = str,
    ) -> BatchOutcome:
        """Write one batch.

        Args:
            table: Target table (selects the failure policy)
            operation: Operation name for logs and diagnostics
            rows: Rows of this batch
            bulk: Writes the whole batch in one call
            single: Writes one row
            on_conflict: Called for rows whose single write hit a unique
                violation; raising marks the row failed
            label: Short identity of a row for logs

        Returns:
            BatchOutcome with counts and recorded row errors

        Raises:
            SyncAbortedError: If every row failed and the table's policy is "abort"
        """
        outcome = BatchOutcome(table=table, operation=operation, attempted=len(rows))
        if not rows:
            return outcome

        try:
            bulk(rows)
            outcome.written = len(rows)
            outcome.applied.extend(rows)
            return outcome
        except StoreError as e:
            outcome.used_fallback = True
            logger.warning(
                f"Bulk {operation} on {table} failed, falling back to per-row writes",
                extra={"table": table, "operation": operation, "row_count": len(rows), "error": str(e)},
            )

        for index, row in enumerate(rows):
            self._pace(index)
            try:
                single(row)
                outcome.written += 1
                outcome.applied.append(row)
                continue
            except StoreError as e:
                row_error = e

            if on_conflict is not None and row_error.is_unique_violation:
                try:
                    action = on_conflict(row, row_error)
                    outcome.resolved[action] = outcome.resolved.get(action, 0) + 1
                    outcome.applied.append(row)
                    continue
                except StoreError as e:
                    row_error = e

            outcome.record_error(label(row), row_error)
            logger.error(
                f"{operation} failed for row {label(row)} on {table}",
                extra={"table": table, "operation": operation, "row": label(row), "error": str(row_error)},
            )

        if outcome.failed_entirely:
            logger.error(
                f"Every row of a {operation} batch on {table} failed",
                extra={"table": table, "operation": operation, "row_count": len(rows)},
            )
            if self.failure_policy.get(table, CONTINUE) == ABORT:
                raise SyncAbortedError(table, operation, outcome.errors)

        return outcome
