"""Store client interface plus shared HTTP machinery."""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

# Postgres SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"


class StoreError(Exception):
    """Raised when the store rejects a read or write."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details
        super().__init__(message)

    @property
    def is_unique_violation(self) -> bool:
        return self.code == UNIQUE_VIOLATION or self.status_code == 409

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "status_code": self.status_code,
            "code": self.code,
            "details": self.details,
        }


@dataclass
class RequestMetrics:
    """Metrics for store requests."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_duration_ms: float = 0
    request_durations: list[float] = field(default_factory=list)

    def record_request(self, duration_ms: float, success: bool) -> None:
        """Record a request."""
        self.total_requests += 1
        self.total_duration_ms += duration_ms
        self.request_durations.append(duration_ms)
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1

    @property
    def avg_duration_ms(self) -> float:
        """Average request duration."""
        if not self.request_durations:
            return 0
        return sum(self.request_durations) / len(self.request_durations)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "total_duration_ms": round(self.total_duration_ms, 2),
            "avg_duration_ms": round(self.avg_duration_ms, 2),
        }


class StoreClient(ABC):
    """Generic CRUD surface of the relational store.

    Filters are equality filters (``{"column": value}``); ``in_filters``
    restrict a column to a set of values. Every method raises StoreError
    on failure.
    """

    @abstractmethod
    def select(
        self,
        table: str,
        columns: Sequence[str] = ("*",),
        filters: Optional[dict] = None,
        in_filters: Optional[dict[str, Sequence[Any]]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[dict]:
        """Read rows."""

    @abstractmethod
    def insert(self, table: str, rows: list[dict]) -> None:
        """Insert rows."""

    @abstractmethod
    def upsert(
        self,
        table: str,
        rows: list[dict],
        on_conflict: str,
        ignore_duplicates: bool = False,
    ) -> None:
        """Insert rows, updating (or ignoring) rows whose ``on_conflict`` key exists."""

    @abstractmethod
    def update(self, table: str, values: dict, filters: dict) -> None:
        """Update rows matching all equality filters."""

    @abstractmethod
    def delete(self, table: str, column: str, values: Sequence[Any]) -> None:
        """Delete rows whose ``column`` is in ``values``."""

    def select_all(
        self,
        table: str,
        columns: Sequence[str] = ("*",),
        filters: Optional[dict] = None,
        in_filters: Optional[dict[str, Sequence[Any]]] = None,
        page_size: int = 1000,
    ) -> list[dict]:
        """Read every matching row, page by page."""
        rows: list[dict] = []
        offset = 0

        while True:
            page = self.select(
                table,
                columns=columns,
                filters=filters,
                in_filters=in_filters,
                limit=page_size,
                offset=offset,
            )
            rows.extend(page)
            if len(page) < page_size:
                break
            offset += page_size

        logger.debug(
            f"Read {len(rows)} rows from {table}",
            extra={"table": table, "row_count": len(rows)},
        )
        return rows


class BaseAPIClient(StoreClient):
    """Base class for HTTP store clients with retry and rate limiting support."""

    def __init__(
        self,
        base_url: str,
        timeout: int = 30,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        rate_limit_requests: int = 100,
        rate_limit_period: int = 60,
    ):
        """Initialize base API client.

        Args:
            base_url: Base URL for the API
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts for transient failures
            backoff_factor: Exponential backoff factor
            rate_limit_requests: Max requests per period
            rate_limit_period: Rate limit period in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.rate_limit_requests = rate_limit_requests
        self.rate_limit_period = rate_limit_period

        # Request tracking for rate limiting
        self._request_timestamps: list[float] = []

        self.metrics = RequestMetrics()

        # Transient statuses only; constraint violations surface immediately.
        # POST is never retried: a timed-out insert may already be committed.
        self.session = requests.Session()
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "PATCH", "DELETE"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @abstractmethod
    def get_auth_headers(self) -> dict:
        """Get authentication headers for requests."""

    def _wait_for_rate_limit(self) -> None:
        """Wait if necessary to respect rate limits."""
        now = time.time()

        self._request_timestamps = [
            ts for ts in self._request_timestamps
            if now - ts < self.rate_limit_period
        ]

        if len(self._request_timestamps) >= self.rate_limit_requests:
            oldest = min(self._request_timestamps)
            wait_time = self.rate_limit_period - (now - oldest)

            if wait_time > 0:
                logger.warning(
                    f"Rate limit reached, waiting {wait_time:.2f}s",
                    extra={"wait_seconds": wait_time}
                )
                time.sleep(wait_time)

        self._request_timestamps.append(time.time())

    @staticmethod
    def _error_from_response(response: requests.Response) -> StoreError:
        """Build a StoreError from an error response body."""
        code = details = None
        message = response.text or response.reason or f"HTTP {response.status_code}"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("code")
            details = body.get("details") or body.get("hint")
            message = body.get("message") or message
        return StoreError(message, status_code=response.status_code, code=code, details=details)

    def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_data: Any = None,
        headers: Optional[dict] = None,
    ) -> requests.Response:
        """Make HTTP request with rate limiting, timing, and logging.

        Raises:
            StoreError: On transport errors and non-2xx responses
        """
        self._wait_for_rate_limit()

        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        request_headers = self.get_auth_headers()
        if headers:
            request_headers.update(headers)

        start_time = time.time()

        logger.debug(
            f"Making {method} request",
            extra={"url": url, "params": params}
        )

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                headers=request_headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            duration_ms = (time.time() - start_time) * 1000
            self.metrics.record_request(duration_ms, success=False)

            logger.error(
                f"Store request failed",
                extra={
                    "method": method,
                    "endpoint": endpoint,
                    "error": str(e),
                    "duration_ms": round(duration_ms, 2),
                }
            )
            raise StoreError(str(e)) from e

        duration_ms = (time.time() - start_time) * 1000
        self.metrics.record_request(duration_ms, success=response.ok)

        logger.debug(
            f"Store request completed",
            extra={
                "method": method,
                "endpoint": endpoint,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
                "response_size_bytes": len(response.content),
            }
        )

        if not response.ok:
            raise self._error_from_response(response)

        return response
