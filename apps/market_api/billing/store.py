from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import httpx

from ..settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_RETRY_STATUSES = {429, 500, 502, 503, 504}


class RecordStoreError(RuntimeError):
    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RecordStore(Protocol):
    """Filtered CRUD over named collections.

    Filters are equality maps; nested JSON keys use dots (``metadata.event_invoice_id``).
    There is no atomicity across calls.
    """

    async def get(
        self, collection: str, filters: Mapping[str, Any], fields: Sequence[str] | None = None
    ) -> List[Dict[str, Any]]:
        ...

    async def insert(self, collection: str, record: Mapping[str, Any]) -> None:
        ...

    async def patch(self, collection: str, filters: Mapping[str, Any], fields: Mapping[str, Any]) -> None:
        ...

    async def aclose(self) -> None:
        ...


def _filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{'true' if value else 'false'}"
    if hasattr(value, "value"):
        value = value.value
    return f"eq.{value}"


def _filter_column(key: str) -> str:
    # metadata.event_invoice_id -> metadata->>event_invoice_id
    parts = [p for p in str(key).split(".") if p]
    if len(parts) <= 1:
        return str(key)
    return "->".join(parts[:-1]) + "->>" + parts[-1]


def _project(record: Dict[str, Any], fields: Sequence[str] | None) -> Dict[str, Any]:
    if not fields:
        return record
    return {f: record.get(f) for f in fields}


class RestRecordStore:
    """PostgREST-style record store (Supabase ``/rest/v1``)."""

    def __init__(
        self,
        base_url: str | None = None,
        service_key: str | None = None,
        *,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_base_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or default_settings.SUPABASE_URL).rstrip("/")
        self.service_key = service_key or default_settings.SUPABASE_SERVICE_ROLE_KEY
        if not self.base_url or not self.service_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")
        self.max_retries = default_settings.RECORD_STORE_MAX_RETRIES if max_retries is None else int(max_retries)
        self.retry_base_seconds = (
            default_settings.RECORD_STORE_RETRY_BASE_SECONDS if retry_base_seconds is None else float(retry_base_seconds)
        )
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/rest/v1",
            timeout=timeout or default_settings.RECORD_STORE_TIMEOUT_SECONDS,
            transport=transport,
        )

    def _headers(self, *, write: bool = False) -> Dict[str, str]:
        headers = {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
        }
        if write:
            headers["Content-Type"] = "application/json"
            headers["Prefer"] = "return=minimal"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                resp = await self._client.request(method, path, **kwargs)
            except httpx.TransportError as exc:
                last_error = exc
                logger.warning("Record store %s %s transport error (attempt %s): %s", method, path, attempt + 1, exc)
            else:
                if resp.status_code < 400:
                    return resp
                if resp.status_code not in _RETRY_STATUSES or attempt >= self.max_retries:
                    raise RecordStoreError(
                        f"{method} {path} failed: {resp.status_code} {resp.text[:200]}",
                        status_code=resp.status_code,
                    )
                logger.warning("Record store %s %s returned %s (attempt %s)", method, path, resp.status_code, attempt + 1)
            if attempt < self.max_retries:
                await asyncio.sleep(self.retry_base_seconds * (2 ** attempt))
        raise RecordStoreError(f"{method} {path} failed after {self.max_retries + 1} attempts: {last_error}")

    def _params(self, filters: Mapping[str, Any]) -> Dict[str, str]:
        return {_filter_column(k): _filter_value(v) for k, v in filters.items()}

    async def get(
        self, collection: str, filters: Mapping[str, Any], fields: Sequence[str] | None = None
    ) -> List[Dict[str, Any]]:
        params = self._params(filters)
        params["select"] = ",".join(fields) if fields else "*"
        resp = await self._request("GET", f"/{collection}", params=params, headers=self._headers())
        data = resp.json()
        return [row for row in data if isinstance(row, dict)] if isinstance(data, list) else []

    async def insert(self, collection: str, record: Mapping[str, Any]) -> None:
        await self._request("POST", f"/{collection}", json=dict(record), headers=self._headers(write=True))

    async def patch(self, collection: str, filters: Mapping[str, Any], fields: Mapping[str, Any]) -> None:
        if not filters:
            raise RecordStoreError(f"Refusing unfiltered patch on {collection}")
        await self._request(
            "PATCH",
            f"/{collection}",
            params=self._params(filters),
            json=dict(fields),
            headers=self._headers(write=True),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def _lookup(record: Mapping[str, Any], key: str) -> Any:
    value: Any = record
    for part in str(key).split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def _matches(record: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    for key, expected in filters.items():
        if hasattr(expected, "value"):
            expected = expected.value
        if _lookup(record, key) != expected:
            return False
    return True


class FirestoreRecordStore:
    """Record store over Firestore collections (firebase-admin).

    The SDK is blocking, so each call runs in a worker thread.
    """

    def __init__(self, db: Any = None, *, timeout_s: float = 25.0):
        if db is None:
            from ..database import get_db

            db = get_db()
        self._db = db
        self._timeout_s = timeout_s

    async def _to_thread(self, fn):
        return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self._timeout_s)

    def _query(self, collection: str, filters: Mapping[str, Any]):
        query = self._db.collection(collection)
        for key, value in filters.items():
            if hasattr(value, "value"):
                value = value.value
            query = query.where(key, "==", value)
        return query

    def _snaps(self, collection: str, filters: Mapping[str, Any]) -> Iterable[Any]:
        try:
            return list(self._query(collection, filters).stream())
        except Exception as exc:
            raise RecordStoreError(f"Firestore query on {collection} failed: {exc}") from exc

    async def get(
        self, collection: str, filters: Mapping[str, Any], fields: Sequence[str] | None = None
    ) -> List[Dict[str, Any]]:
        def run() -> List[Dict[str, Any]]:
            out: List[Dict[str, Any]] = []
            for snap in self._snaps(collection, filters):
                d = snap.to_dict() or {}
                d.setdefault("id", snap.id)
                # Firestore has no JSON-path filters; re-check dotted keys in Python.
                if _matches(d, filters):
                    out.append(_project(d, fields))
            return out

        return await self._to_thread(run)

    async def insert(self, collection: str, record: Mapping[str, Any]) -> None:
        def run() -> None:
            try:
                ref = self._db.collection(collection).document(str(record["id"])) if record.get("id") else self._db.collection(collection).document()
                ref.set(dict(record))
            except Exception as exc:
                raise RecordStoreError(f"Firestore insert into {collection} failed: {exc}") from exc

        await self._to_thread(run)

    async def patch(self, collection: str, filters: Mapping[str, Any], fields: Mapping[str, Any]) -> None:
        if not filters:
            raise RecordStoreError(f"Refusing unfiltered patch on {collection}")

        def run() -> None:
            for snap in self._snaps(collection, filters):
                try:
                    snap.reference.set(dict(fields), merge=True)
                except Exception as exc:
                    raise RecordStoreError(f"Firestore patch on {collection}/{snap.id} failed: {exc}") from exc

        await self._to_thread(run)

    async def aclose(self) -> None:
        return None


def build_record_store(config: Settings | None = None) -> RecordStore:
    config = config or default_settings
    backend = (config.RECORD_STORE_BACKEND or "rest").strip().lower()
    if backend == "firestore":
        return FirestoreRecordStore()
    if backend == "rest":
        return RestRecordStore(
            config.SUPABASE_URL,
            config.SUPABASE_SERVICE_ROLE_KEY,
            timeout=config.RECORD_STORE_TIMEOUT_SECONDS,
            max_retries=config.RECORD_STORE_MAX_RETRIES,
            retry_base_seconds=config.RECORD_STORE_RETRY_BASE_SECONDS,
        )
    raise RuntimeError(f"Unknown RECORD_STORE_BACKEND: {backend}")
