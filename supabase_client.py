# supabase_client.py - Minimal async client for Supabase edge functions and tables
"""
Talks to a Supabase project over plain HTTP with httpx:

- Edge functions: POST {url}/functions/v1/{name}
- Tables (PostgREST): GET/POST {url}/rest/v1/{table}

Connection failures become TransportError; error responses and unreadable
bodies become BackendResponseError. Nothing is retried.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx

from errors import BackendResponseError, TransportError

logger = logging.getLogger("Supabase")


def extract_field(payload: Any, keys: Iterable[str]) -> str:
    """
    Return the first non-empty string found under one of ``keys``.

    Returns "" when the payload is not a mapping or none of the keys match.
    """
    if not isinstance(payload, Mapping):
        return ""
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, Mapping):
        for key in ("error", "message", "msg"):
            if body.get(key):
                return str(body[key])
    return f"{response.status_code} {response.reason_phrase}"


class SupabaseClient:
    """
    One shared HTTP client per Supabase project.

    Args:
        url: Project URL
        key: Anon key, sent as both ``apikey`` and bearer token
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(self, url: str, key: str, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url.rstrip("/")
        self.key = key
        self._http = httpx.AsyncClient(
            base_url=self.url,
            headers={"apikey": key, "Authorization": f"Bearer {key}"},
            timeout=timeout,
            transport=transport,
        )

    async def _request(self, method: str, path: str, label: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"{label} Error: {e}") from e
        if response.is_error:
            raise BackendResponseError(f"{label} Error: {_error_message(response)}")
        return response

    async def invoke(self, function: str, body: Dict[str, Any], label: Optional[str] = None) -> Any:
        """
        Call an edge function with a JSON body and return the decoded JSON.
        """
        label = label or function
        response = await self._request("POST", f"/functions/v1/{function}", label, json=body)
        try:
            return response.json()
        except ValueError as e:
            raise BackendResponseError(f"{label} Error: response is not JSON") from e

    async def select(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        response = await self._request("GET", f"/rest/v1/{table}", f"Select {table}", params=params)
        rows = response.json()
        if not isinstance(rows, list):
            raise BackendResponseError(f"Select {table} Error: expected a list of rows")
        return rows

    async def insert(self, table: str, row: Dict[str, Any]) -> None:
        await self._request(
            "POST", f"/rest/v1/{table}", f"Insert {table}",
            json=row, headers={"Prefer": "return=minimal"},
        )

    async def test_connection(self) -> Dict[str, Any]:
        """
        Call the ``test-connection`` health check function.
        """
        data = await self.invoke("test-connection", {}, label="Connection test")
        if not isinstance(data, Mapping) or not data.get("success"):
            raise BackendResponseError(f"Connection test failed: {data!r}")
        logger.info("Connection test: %s", data.get("message", "ok"))
        return dict(data)

    async def aclose(self):
        await self._http.aclose()
