from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

import pytest

from apps.market_api.billing.reconciler import WebhookReconciler
from apps.market_api.billing.store import RecordStoreError, _matches
from apps.market_api.settings import Settings


class FakeRecordStore:
    """In-memory RecordStore that logs every write."""

    def __init__(self, data: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.data: Dict[str, List[Dict[str, Any]]] = {k: [dict(r) for r in v] for k, v in (data or {}).items()}
        self.writes: List[Tuple[str, str, Dict[str, Any]]] = []
        # (op, collection) pairs that raise RecordStoreError.
        self.fail_on: Set[Tuple[str, str]] = set()
        self._seq = 0

    def _check(self, op: str, collection: str) -> None:
        if (op, collection) in self.fail_on:
            raise RecordStoreError(f"{op} {collection} failed", status_code=503)

    def rows(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        return [r for r in self.data.get(collection, []) if _matches(r, filters)]

    def writes_to(self, collection: str) -> List[Tuple[str, str, Dict[str, Any]]]:
        return [w for w in self.writes if w[1] == collection]

    async def get(self, collection: str, filters: Mapping[str, Any], fields: Sequence[str] | None = None):
        self._check("get", collection)
        out = []
        for r in self.data.get(collection, []):
            if _matches(r, filters):
                out.append({f: r.get(f) for f in fields} if fields else dict(r))
        return out

    async def insert(self, collection: str, record: Mapping[str, Any]) -> None:
        self._check("insert", collection)
        self._seq += 1
        row = dict(record)
        row.setdefault("id", f"{collection}-{self._seq}")
        self.data.setdefault(collection, []).append(row)
        self.writes.append(("insert", collection, dict(record)))

    async def patch(self, collection: str, filters: Mapping[str, Any], fields: Mapping[str, Any]) -> None:
        self._check("patch", collection)
        for r in self.data.get(collection, []):
            if _matches(r, filters):
                r.update(dict(fields))
        self.writes.append(("patch", collection, {"filters": dict(filters), "fields": dict(fields)}))

    async def aclose(self) -> None:
        return None


class FakeSender:
    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def send(self, *, template_key: str, to: str, user_id: str, variables: Dict[str, str]) -> bool:
        if self.fail:
            raise RuntimeError("email api down")
        self.sent.append({"template_key": template_key, "to": to, "user_id": user_id, "variables": dict(variables)})
        return True


def make_settings(**overrides: Any) -> Settings:
    base: Dict[str, Any] = {
        "ENVIRONMENT": "development",
        "STRIPE_WEBHOOK_SECRET": "",
        "SITE_URL": "https://market.example",
        "INTERNAL_SECRET": "internal",
        "BILLING_ENFORCE_EVENT_ORDER": True,
    }
    base.update(overrides)
    return Settings(**base)


def vehicles(dealer_id: str, status: str, days: Sequence[int], prefix: str = "v") -> List[Dict[str, Any]]:
    return [
        {"id": f"{prefix}{d}", "dealer_id": dealer_id, "status": status, "created_at": f"2025-01-{d:02d}T10:00:00Z"}
        for d in days
    ]


def event(event_type: str, obj: Dict[str, Any], *, event_id: str = "evt_1", created: int | None = 1_760_000_000) -> Dict[str, Any]:
    out: Dict[str, Any] = {"id": event_id, "type": event_type, "data": {"object": obj}}
    if created is not None:
        out["created"] = created
    return out


@pytest.fixture()
def config() -> Settings:
    return make_settings()


@pytest.fixture()
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture()
def store() -> FakeRecordStore:
    return FakeRecordStore(
        {
            "users": [
                {"id": "U1", "email": "dealer@example.com", "raw_user_meta_data": {"display_name": "Camiones Ruiz"}},
            ],
            "dealers": [{"id": "D1", "user_id": "U1"}],
        }
    )


@pytest.fixture()
def reconciler(store: FakeRecordStore, sender: FakeSender, config: Settings) -> WebhookReconciler:
    return WebhookReconciler(store, sender, config)
