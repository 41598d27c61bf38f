"""
Supabase-backed remote store adapter (PostgREST over the caller's session).

This adapter implements RemoteStoreProtocol using a provided Supabase async
client. It is intentionally duck-typed to avoid a hard dependency during
testing. The client is expected to expose `.table(name)` returning a query
builder offering select/insert/upsert/update/delete, `.eq`, `.order`, `.limit`
and an awaitable `.execute()` whose result carries `.data`.

Security:
- The client must be initialized with the anon key; the user's access token
  is attached by the client after sign-in so RLS applies to every call.
- Never pass a service-role client here: it bypasses RLS.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx
from supabase import PostgrestAPIError

from .ports import RemoteStoreError, RemoteTransportError

logger = logging.getLogger("progress_tracker.storage")


# HTTP status PostgREST answers with for its own error codes.
_PGRST_STATUS = {
    "PGRST116": 406,
    "PGRST301": 401,
    "PGRST302": 401,
    "PGRST303": 401,
}


def _status_from_code(code: Optional[str]) -> Optional[int]:
    # PostgREST surfaces HTTP-ish codes for some errors (e.g. "404").
    if code and code.isdigit() and len(code) == 3:
        return int(code)
    return _PGRST_STATUS.get(code or "")


class SupabaseRemoteStore:
    """Remote store using a supabase client for PostgREST operations."""

    def __init__(self, client: Any):
        # Duck-typed supabase client, e.g., from `supabase.acreate_client(...)`.
        self._client = client

    # --- Helpers -----------------------------------------------------------------

    def _table(self, collection: str) -> Any:
        c = self._client
        if hasattr(c, "table"):
            return c.table(collection)
        if hasattr(c, "from_"):
            return c.from_(collection)
        raise RuntimeError("invalid_supabase_client")

    @staticmethod
    def _apply_filters(query: Any, filters: Optional[Mapping[str, Any]]) -> Any:
        for column, value in (filters or {}).items():
            query = query.eq(column, value)
        return query

    async def _execute(self, query: Any, *, op: str, collection: str) -> List[Dict[str, Any]]:
        try:
            response = await query.execute()
        except PostgrestAPIError as exc:
            code = getattr(exc, "code", None)
            message = getattr(exc, "message", None) or str(exc)
            logger.info("Remote store rejected %s on %s: code=%s", op, collection, code)
            status = getattr(exc, "status", None)
            if not isinstance(status, int):
                status = _status_from_code(code)
            raise RemoteStoreError(str(message), code=code, status=status) from exc
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            logger.warning("Remote store transport failure on %s %s: %s", op, collection, exc.__class__.__name__)
            raise RemoteTransportError(f"{op}_{collection}_transport") from exc
        data = getattr(response, "data", None)
        if data is None and isinstance(response, dict):
            data = response.get("data")
        if data is None:
            return []
        if isinstance(data, dict):
            return [data]
        return [dict(row) for row in data]

    @staticmethod
    def _single(rows: List[Dict[str, Any]], *, op: str) -> Dict[str, Any]:
        if not rows:
            # Insert/upsert with RLS returning nothing: treat as hidden row.
            raise RemoteStoreError(f"{op}_returned_no_row", code="PGRST116")
        return rows[0]

    # --- Protocol methods --------------------------------------------------------

    async def select(
        self,
        collection: str,
        *,
        columns: str = "*",
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        query = self._apply_filters(self._table(collection).select(columns), filters)
        if order_by:
            query = query.order(order_by, desc=descending)
        if limit:
            query = query.limit(int(limit))
        return await self._execute(query, op="select", collection=collection)

    async def insert(self, collection: str, row: Mapping[str, Any]) -> Dict[str, Any]:
        query = self._table(collection).insert(dict(row))
        return self._single(await self._execute(query, op="insert", collection=collection), op="insert")

    async def upsert(self, collection: str, row: Mapping[str, Any], *, on_conflict: str = "id") -> Dict[str, Any]:
        query = self._table(collection).upsert(dict(row), on_conflict=on_conflict)
        return self._single(await self._execute(query, op="upsert", collection=collection), op="upsert")

    async def update(
        self, collection: str, values: Mapping[str, Any], *, filters: Mapping[str, Any]
    ) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("update_requires_filters")
        query = self._apply_filters(self._table(collection).update(dict(values)), filters)
        return await self._execute(query, op="update", collection=collection)

    async def delete(self, collection: str, *, filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("delete_requires_filters")
        query = self._apply_filters(self._table(collection).delete(), filters)
        return await self._execute(query, op="delete", collection=collection)


__all__ = ["SupabaseRemoteStore"]
