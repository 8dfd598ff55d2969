"""Structured logging utilities for sync observability.

Provides consistent logging format with required fields:
- table
- run_id
- step
- row_count
- written / failed
- duration_ms
"""

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class PipelineLogContext:
    """Context for pipeline logging with required fields."""

    table: str
    run_id: str
    step: str = ""
    row_count: int = 0
    written: Optional[int] = None
    failed: Optional[int] = None
    duration_ms: Optional[float] = None
    status: str = "success"
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging."""
        data = asdict(self)
        data["timestamp"] = datetime.now(timezone.utc).isoformat()
        # Remove None values
        return {k: v for k, v in data.items() if v is not None}

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class PipelineLogger:
    """Structured logger for the writes against one table."""

    def __init__(self, table: str, run_id: str):
        """Initialize pipeline logger.

        Args:
            table: Target table name
            run_id: Unique run identifier
        """
        self.table = table
        self.run_id = run_id
        self.logger = logging.getLogger(f"sync.{table}")

    def _log(self, level: int, step: str, **kwargs) -> None:
        """Internal logging method with structured context."""
        ctx = PipelineLogContext(
            table=self.table,
            run_id=self.run_id,
            step=step,
            **kwargs
        )
        self.logger.log(level, ctx.to_json(), extra=ctx.to_dict())

    def log_write(
        self,
        operation: str,
        attempted: int,
        written: int,
        failed: int,
        duration_ms: float,
        offset: int = 0,
    ) -> None:
        """Log one batch write."""
        self._log(
            logging.WARNING if failed else logging.INFO,
            step=operation,
            status="partial_failure" if failed else "success",
            row_count=attempted,
            written=written,
            failed=failed,
            duration_ms=round(duration_ms, 2),
            extra={"offset": offset},
        )

    def log_transform(
        self,
        step: str,
        input_count: int,
        output_count: int,
        duration_ms: float,
    ) -> None:
        """Log a dedupe / merge step."""
        self._log(
            logging.INFO,
            step=step,
            status="success",
            row_count=output_count,
            duration_ms=round(duration_ms, 2),
            extra={
                "input_count": input_count,
                "output_count": output_count,
                "dropped_count": input_count - output_count,
            }
        )


@contextmanager
def timed_operation(name: str, logger: logging.Logger = None):
    """Context manager to time an operation.

    Usage:
        with timed_operation("extract") as timer:
            result = extractor.extract(located)
        print(f"Took {timer.duration_ms}ms")

    Args:
        name: Operation name for logging
        logger: Optional logger instance

    Yields:
        Timer object with duration_ms attribute
    """
    class Timer:
        def __init__(self):
            self.start_time = time.time()
            self.end_time = None
            self.duration_ms = 0

    timer = Timer()

    try:
        yield timer
    finally:
        timer.end_time = time.time()
        timer.duration_ms = (timer.end_time - timer.start_time) * 1000

        if logger:
            logger.debug(
                f"Operation '{name}' completed",
                extra={"operation": name, "duration_ms": timer.duration_ms}
            )
