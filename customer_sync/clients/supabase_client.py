"""Supabase (PostgREST) store client."""

import logging
import os
from typing import Any, Optional, Sequence

from customer_sync.auth.api_key import APIKeyAuth
from customer_sync.clients.base import BaseAPIClient

logger = logging.getLogger(__name__)

REST_PATH = "rest/v1"


def _quote(value: Any) -> str:
    """Quote a value for a PostgREST ``in.(...)`` list."""
    text = str(value)
    if any(ch in text for ch in ',()"\\ '):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def build_filter_params(
    filters: Optional[dict] = None,
    in_filters: Optional[dict[str, Sequence[Any]]] = None,
) -> dict:
    """Translate equality / membership filters into PostgREST query params."""
    params = {}

    for column, value in (filters or {}).items():
        params[column] = "is.null" if value is None else f"eq.{value}"

    for column, values in (in_filters or {}).items():
        params[column] = f"in.({','.join(_quote(v) for v in values)})"

    return params


class SupabaseClient(BaseAPIClient):
    """Store client speaking PostgREST through Supabase's gateway.

    Features:
    - apikey + bearer authentication
    - upsert via ``on_conflict`` with merge or ignore resolution
    - ``limit``/``offset`` paging for reads
    - Automatic retries of transient failures
    """

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: int = 30,
        rate_limit_requests: int = 300,
        rate_limit_period: int = 60,
    ):
        """Initialize the Supabase client.

        Args:
            url: Project URL (or from env: SUPABASE_URL)
            api_key: Service key (or from env: SUPABASE_KEY)
            timeout: Request timeout in seconds
            rate_limit_requests: Max requests per period
            rate_limit_period: Rate limit period in seconds
        """
        url = url or os.getenv("SUPABASE_URL")
        if not url:
            raise ValueError("SUPABASE_URL is required")

        api_key_value = api_key or os.getenv("SUPABASE_KEY")
        if not api_key_value:
            raise ValueError("SUPABASE_KEY is required")

        super().__init__(
            base_url=f"{url.rstrip('/')}/{REST_PATH}",
            timeout=timeout,
            rate_limit_requests=rate_limit_requests,
            rate_limit_period=rate_limit_period,
        )

        self.api_key_auth = APIKeyAuth(api_key=api_key_value)

    def get_auth_headers(self) -> dict:
        """Get apikey + bearer headers."""
        return self.api_key_auth.get_auth_header()

    def select(
        self,
        table: str,
        columns: Sequence[str] = ("*",),
        filters: Optional[dict] = None,
        in_filters: Optional[dict[str, Sequence[Any]]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[dict]:
        params = {"select": ",".join(columns)}
        params.update(build_filter_params(filters, in_filters))
        if limit is not None:
            params["limit"] = limit
        if offset:
            params["offset"] = offset

        response = self._make_request("GET", table, params=params)
        return response.json()

    def insert(self, table: str, rows: list[dict]) -> None:
        if not rows:
            return
        self._make_request(
            "POST",
            table,
            json_data=rows,
            headers={"Prefer": "return=minimal"},
        )

    def upsert(
        self,
        table: str,
        rows: list[dict],
        on_conflict: str,
        ignore_duplicates: bool = False,
    ) -> None:
        if not rows:
            return
        resolution = "ignore-duplicates" if ignore_duplicates else "merge-duplicates"
        self._make_request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json_data=rows,
            headers={"Prefer": f"resolution={resolution},return=minimal"},
        )

    def update(self, table: str, values: dict, filters: dict) -> None:
        if not filters:
            raise ValueError("update requires at least one filter")
        self._make_request(
            "PATCH",
            table,
            params=build_filter_params(filters),
            json_data=values,
            headers={"Prefer": "return=minimal"},
        )

    def delete(self, table: str, column: str, values: Sequence[Any]) -> None:
        if not values:
            return
        self._make_request(
            "DELETE",
            table,
            params=build_filter_params(in_filters={column: values}),
            headers={"Prefer": "return=minimal"},
        )

        logger.info(
            f"Deleted {len(values)} rows from {table}",
            extra={"table": table, "column": column, "row_count": len(values)},
        )
