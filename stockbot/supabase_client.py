"""Async client for the Supabase REST (PostgREST) and RPC endpoints.

Only the handful of verbs the bot needs are implemented: select, insert,
update and rpc. Filters use PostgREST operator syntax ("eq.X", "ilike.*X*").
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx

logger = logging.getLogger("stockbot.db")


class ApiError(RuntimeError):
    """Raised when a remote HTTP API answers with an error status."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


def eq(value: object) -> str:
    return f"eq.{value}"


def ilike(pattern: str) -> str:
    return f"ilike.*{pattern}*"


def in_list(values: Iterable[str]) -> str:
    """Render an `in.(...)` filter; values are double-quoted so commas and parentheses survive."""
    quoted = []
    for value in values:
        escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
        quoted.append(f'"{escaped}"')
    return f"in.({','.join(quoted)})"


class SupabaseClient:
    """Thin async wrapper around the REST endpoints with service-role auth."""

    def __init__(self, base_url: str, service_role_key: str, http: httpx.AsyncClient) -> None:
        """Purpose: Configure the REST base URL, credentials and shared HTTP client.
        Inputs/Outputs: Inputs are the project URL, service-role key and an AsyncClient.
        Side Effects / State: Stores headers for every request.
        Dependencies: Uses httpx.AsyncClient owned by the app lifespan.
        Failure Modes: Raises ValueError if URL or key is missing.
        If Removed: No database reads or RPC calls can be made.
        Testing Notes: Build with an httpx.MockTransport and inspect requests.
        """
        # Validate credentials up front so misconfiguration fails at startup.
        if not base_url:
            raise ValueError("SUPABASE_URL is required")
        if not service_role_key:
            raise ValueError("SUPABASE_SERVICE_ROLE_KEY is required")
        self._rest_url = f"{base_url.rstrip('/')}/rest/v1"
        self._http = http
        self._headers = {
            "apikey": service_role_key,
            "Authorization": f"Bearer {service_role_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Dict[str, str]] = None,
        or_filter: Optional[str] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Run a filtered select and return the decoded rows."""
        params: Dict[str, Any] = {"select": columns}
        params.update(filters or {})
        if or_filter:
            params["or"] = or_filter
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit
        data = await self._request("GET", f"/{table}", params=params)
        return data if isinstance(data, list) else []

    async def insert(self, table: str, row: Dict[str, Any]) -> None:
        await self._request("POST", f"/{table}", json=row, prefer="return=minimal")

    async def update(self, table: str, values: Dict[str, Any], filters: Dict[str, str]) -> None:
        await self._request("PATCH", f"/{table}", params=filters, json=values, prefer="return=minimal")

    async def rpc(self, function: str, params: Dict[str, Any]) -> Any:
        """Invoke a stored procedure and return its JSON result (None when empty)."""
        return await self._request("POST", f"/rpc/{function}", json=params)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        """Purpose: Send one REST request and decode the response.
        Inputs/Outputs: Inputs are method, path, params, JSON body and Prefer header;
            output is decoded JSON or None for empty bodies.
        Side Effects / State: Network I/O through the shared AsyncClient.
        Dependencies: httpx; called by every public verb.
        Failure Modes: Error statuses raise ApiError with the server message;
            transport errors propagate as httpx.HTTPError.
        If Removed: All data access breaks.
        Testing Notes: Return a 400 with {"message": "x"} and expect ApiError("x").
        """
        # Attach auth headers and an optional Prefer directive.
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        resp = await self._http.request(method, self._rest_url + path, params=params, json=json, headers=headers)
        if resp.status_code >= 400:
            message = _error_message(resp)
            logger.warning("method=%s path=%s status=%s error=%s", method, path, resp.status_code, message)
            raise ApiError(message, status=resp.status_code)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)
