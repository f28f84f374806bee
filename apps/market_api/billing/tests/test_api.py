from __future__ import annotations

import importlib
import json

from fastapi import FastAPI
from fastapi.testclient import TestClient

from apps.market_api.billing import router as billing_router
from apps.market_api.billing.reconciler import WebhookReconciler
from apps.market_api.billing.router import get_reconciler

from .conftest import FakeRecordStore, FakeSender, event, make_settings, vehicles
from .test_webhook import SECRET, sign


def _make_app(store: FakeRecordStore, sender: FakeSender | None = None):
    app = FastAPI()
    app.include_router(billing_router)
    reconciler = WebhookReconciler(store, sender or FakeSender(), make_settings())
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    return app


def _store() -> FakeRecordStore:
    return FakeRecordStore(
        {
            "users": [{"id": "U1", "email": "dealer@example.com", "raw_user_meta_data": None}],
            "dealers": [{"id": "D1", "user_id": "U1"}],
            "subscriptions": [
                {"id": "S1", "user_id": "U1", "plan": "basic", "status": "active", "stripe_subscription_id": "sub_1"}
            ],
            "vehicles": vehicles("D1", "published", [1, 2, 3, 4, 5]),
        }
    )


def _body(ev) -> bytes:
    return json.dumps(ev).encode("utf-8")


def test_webhook_processes_signed_event(monkeypatch):
    r = importlib.import_module("apps.market_api.billing.router")
    monkeypatch.setattr(r.settings, "STRIPE_WEBHOOK_SECRET", SECRET)
    store = _store()
    client = TestClient(_make_app(store))

    payload = _body(event("customer.subscription.deleted", {"id": "sub_1"}))
    res = client.post("/stripe/webhook", content=payload, headers={"Stripe-Signature": sign(payload)})

    assert res.status_code == 200
    body = res.json()
    assert body["received"] is True
    assert body["event"] == "customer.subscription.deleted"
    assert body["vehiclesPaused"] == 2
    assert body["idempotent"] is False


def test_webhook_rejects_bad_signature_without_writes(monkeypatch):
    r = importlib.import_module("apps.market_api.billing.router")
    monkeypatch.setattr(r.settings, "STRIPE_WEBHOOK_SECRET", SECRET)
    store = _store()
    client = TestClient(_make_app(store))

    payload = _body(event("customer.subscription.deleted", {"id": "sub_1"}))
    res = client.post("/stripe/webhook", content=payload, headers={"Stripe-Signature": sign(payload, secret="whsec_x")})
    assert res.status_code == 400

    res2 = client.post("/stripe/webhook", content=payload)
    assert res2.status_code == 400
    assert store.writes == []


def test_webhook_fails_closed_in_production_without_secret(monkeypatch):
    r = importlib.import_module("apps.market_api.billing.router")
    monkeypatch.setattr(r.settings, "STRIPE_WEBHOOK_SECRET", "")
    monkeypatch.setattr(r.settings, "ENVIRONMENT", "production")
    store = _store()
    client = TestClient(_make_app(store))

    for ev in (
        event("customer.subscription.deleted", {"id": "sub_1"}),
        event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"}),
    ):
        res = client.post("/stripe/webhook", content=_body(ev))
        assert res.status_code == 500

    assert store.writes == []


def test_webhook_unsigned_allowed_in_development(monkeypatch):
    r = importlib.import_module("apps.market_api.billing.router")
    monkeypatch.setattr(r.settings, "STRIPE_WEBHOOK_SECRET", "")
    monkeypatch.setattr(r.settings, "ENVIRONMENT", "development")
    client = TestClient(_make_app(_store()))

    res = client.post("/stripe/webhook", content=_body(event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"})))
    assert res.status_code == 200
    assert res.json()["event"] == "invoice.payment_failed"


def test_webhook_missing_body(monkeypatch):
    r = importlib.import_module("apps.market_api.billing.router")
    monkeypatch.setattr(r.settings, "STRIPE_WEBHOOK_SECRET", "")
    monkeypatch.setattr(r.settings, "ENVIRONMENT", "development")
    client = TestClient(_make_app(_store()))

    res = client.post("/stripe/webhook", content=b"")
    assert res.status_code == 400


def test_webhook_store_failure_returns_500_for_redelivery(monkeypatch):
    r = importlib.import_module("apps.market_api.billing.router")
    monkeypatch.setattr(r.settings, "STRIPE_WEBHOOK_SECRET", "")
    monkeypatch.setattr(r.settings, "ENVIRONMENT", "development")
    store = _store()
    store.fail_on.add(("patch", "subscriptions"))
    client = TestClient(_make_app(store))

    res = client.post("/stripe/webhook", content=_body(event("customer.subscription.deleted", {"id": "sub_1"})))
    assert res.status_code == 500
    assert store.rows("vehicles", status="paused") == []


def test_webhook_acknowledges_even_when_email_fails(monkeypatch):
    r = importlib.import_module("apps.market_api.billing.router")
    monkeypatch.setattr(r.settings, "STRIPE_WEBHOOK_SECRET", "")
    monkeypatch.setattr(r.settings, "ENVIRONMENT", "development")
    client = TestClient(_make_app(_store(), FakeSender(fail=True)))

    res = client.post("/stripe/webhook", content=_body(event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1", "attempt_count": 3})))
    assert res.status_code == 200
    assert res.json()["notified"] is False


def test_expiry_run_requires_internal_secret(monkeypatch):
    r = importlib.import_module("apps.market_api.billing.router")
    monkeypatch.setattr(r.settings, "INTERNAL_SECRET", "cron-secret")
    client = TestClient(_make_app(_store()))

    assert client.post("/billing/expiry/run").status_code == 401
    assert client.post("/billing/expiry/run", headers={"X-Internal-Secret": "nope"}).status_code == 401

    res = client.post("/billing/expiry/run", headers={"X-Internal-Secret": "cron-secret"})
    assert res.status_code == 200
    assert res.json() == {
        "ok": True,
        "notified_30d": 0,
        "notified_7d": 0,
        "expired": 0,
        "vehicles_paused": 0,
        "failed": 0,
    }


def test_health_and_routes_mounted():
    from apps.market_api.main import app

    reconciler = WebhookReconciler(_store(), FakeSender(), make_settings())
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    try:
        client = TestClient(app)
        res = client.get("/health")
        assert res.status_code == 200
        assert res.json()["status"] == "ok"
        # Mounted routes answer with something other than 404 even when the request is rejected.
        assert client.post("/stripe/webhook", content=b"").status_code != 404
        assert client.post("/billing/expiry/run").status_code != 404
        assert client.post("/billing/nope").status_code == 404
    finally:
        app.dependency_overrides.clear()
