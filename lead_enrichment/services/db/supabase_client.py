"""
Supabase REST client - uses httpx directly against PostgREST.

Update and delete calls return the affected rows (Prefer: return=representation),
which is what the job store relies on for compare-and-swap writes.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from ...config import Settings
from ...errors import ConfigurationError

logger = logging.getLogger(__name__)


def _encode(value: Any) -> str:
    if isinstance(value, bool):
        value = "true" if value else "false"
    return quote(str(value), safe=",()-_.:@")


class SupabaseTable:
    """Simple table query builder."""

    def __init__(self, client: "SupabaseClient", table_name: str):
        self.client = client
        self.table_name = table_name
        self._select_columns = "*"
        self._filters: List[str] = []
        self._order_by = None
        self._order_desc = False
        self._limit = None
        self._operation = "select"
        self._payload: Any = None
        self._upsert_conflict: Optional[str] = None

    def select(self, columns: str = "*") -> "SupabaseTable":
        self._select_columns = columns
        return self

    def eq(self, column: str, value: Any) -> "SupabaseTable":
        self._filters.append(f"{column}=eq.{_encode(value)}")
        return self

    def in_(self, column: str, values: List[Any]) -> "SupabaseTable":
        """Filter where column value is in the given list."""
        values_str = ",".join(_encode(v) for v in values)
        self._filters.append(f"{column}=in.({values_str})")
        return self

    def lte(self, column: str, value: Any) -> "SupabaseTable":
        self._filters.append(f"{column}=lte.{_encode(value)}")
        return self

    def lt(self, column: str, value: Any) -> "SupabaseTable":
        self._filters.append(f"{column}=lt.{_encode(value)}")
        return self

    def order(self, column: str, desc: bool = False) -> "SupabaseTable":
        self._order_by = column
        self._order_desc = desc
        return self

    def limit(self, count: int) -> "SupabaseTable":
        self._limit = count
        return self

    def insert(self, data: Any) -> "SupabaseTable":
        self._payload = data
        self._operation = "insert"
        return self

    def upsert(self, data: Any, on_conflict: Optional[str] = None) -> "SupabaseTable":
        self._payload = data
        self._upsert_conflict = on_conflict
        self._operation = "upsert"
        return self

    def update(self, data: Dict[str, Any]) -> "SupabaseTable":
        self._payload = data
        self._operation = "update"
        return self

    def delete(self) -> "SupabaseTable":
        self._operation = "delete"
        return self

    def _build_url(self) -> str:
        url = f"{self.client.rest_url}/{self.table_name}"
        params = [f"select={self._select_columns}"]
        params.extend(self._filters)

        if self._order_by:
            direction = ".desc" if self._order_desc else ".asc"
            params.append(f"order={self._order_by}{direction}")

        if self._limit:
            params.append(f"limit={self._limit}")

        return f"{url}?{'&'.join(params)}"

    def _filtered_url(self) -> str:
        url = f"{self.client.rest_url}/{self.table_name}"
        if self._filters:
            url = f"{url}?{'&'.join(self._filters)}"
        return url

    def execute(self) -> "SupabaseResponse":
        url = f"{self.client.rest_url}/{self.table_name}"

        if self._operation == "insert":
            response = self.client._request("POST", url, json=self._payload)
            return SupabaseResponse(response)

        if self._operation == "upsert":
            headers = {"Prefer": "return=representation,resolution=merge-duplicates"}
            if self._upsert_conflict:
                url = f"{url}?on_conflict={self._upsert_conflict}"
            response = self.client._request("POST", url, json=self._payload, extra_headers=headers)
            return SupabaseResponse(response)

        if self._operation == "update":
            response = self.client._request("PATCH", self._filtered_url(), json=self._payload)
            return SupabaseResponse(response)

        if self._operation == "delete":
            response = self.client._request("DELETE", self._filtered_url())
            return SupabaseResponse(response)

        response = self.client._request("GET", self._build_url())
        return SupabaseResponse(response)


class SupabaseResponse:
    """Response wrapper. data is always a list of rows."""

    def __init__(self, response: httpx.Response):
        self.status_code = response.status_code
        try:
            self.data = response.json() if response.text else []
        except ValueError:
            logger.warning("[Supabase] Non-JSON response body (status %s)", response.status_code)
            self.data = []

        if isinstance(self.data, dict):
            self.data = [self.data]


class SupabaseClient:
    """Simple Supabase REST client."""

    def __init__(self, url: str, key: str, timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        self.url = url.rstrip("/")
        self.key = key
        self.rest_url = f"{self.url}/rest/v1"
        self.headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def _request(
        self,
        method: str,
        url: str,
        json: Any = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        headers = {**self.headers}
        if extra_headers:
            headers.update(extra_headers)

        response = self._client.request(method, url, json=json, headers=headers)
        if response.status_code >= 400:
            logger.error(
                "[Supabase] %s %s failed with %s: %s",
                method, url.split("?")[0], response.status_code, response.text[:500],
            )
        response.raise_for_status()
        return response

    def table(self, table_name: str) -> SupabaseTable:
        return SupabaseTable(self, table_name)

    def close(self) -> None:
        self._client.close()


def build_supabase_client(settings: Settings) -> SupabaseClient:
    if not settings.supabase_url or not settings.supabase_key:
        raise ConfigurationError("Missing SUPABASE_URL or SUPABASE_KEY environment variables")
    return SupabaseClient(settings.supabase_url, settings.supabase_key)


def check_connection(db: SupabaseClient) -> bool:
    """Test if the Supabase connection works."""
    try:
        db.table("enrichment_jobs").select("id").limit(1).execute()
        return True
    except httpx.HTTPError as e:
        logger.warning("[Supabase] Connection test failed: %s", e)
        return False
