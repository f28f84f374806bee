import hashlib
import hmac
import json
import time

import pytest

from apps.market_api.billing.webhook import WebhookConfigError, WebhookVerificationError, construct_event

from .conftest import make_settings


SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = SECRET, timestamp: int | None = None) -> str:
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def _payload(event_type: str = "invoice.payment_failed") -> bytes:
    return json.dumps({"id": "evt_1", "type": event_type, "data": {"object": {"id": "in_1"}}}).encode("utf-8")


def test_missing_body_rejected():
    with pytest.raises(WebhookVerificationError):
        construct_event(b"", None, config=make_settings())
    with pytest.raises(WebhookVerificationError):
        construct_event(None, "t=1,v1=x", config=make_settings(STRIPE_WEBHOOK_SECRET=SECRET))


def test_production_without_secret_is_config_error():
    with pytest.raises(WebhookConfigError):
        construct_event(_payload(), None, config=make_settings(ENVIRONMENT="production"))


def test_development_without_secret_parses_unsigned(caplog):
    event = construct_event(_payload(), None, config=make_settings(ENVIRONMENT="development"))
    assert event["type"] == "invoice.payment_failed"
    assert "without signature verification" in caplog.text


def test_missing_signature_rejected_when_secret_set():
    with pytest.raises(WebhookVerificationError, match="Missing stripe-signature"):
        construct_event(_payload(), None, config=make_settings(STRIPE_WEBHOOK_SECRET=SECRET))


def test_invalid_signature_rejected():
    payload = _payload()
    with pytest.raises(WebhookVerificationError, match="verification failed"):
        construct_event(payload, sign(payload, secret="whsec_other"), config=make_settings(STRIPE_WEBHOOK_SECRET=SECRET))


def test_tampered_body_rejected():
    payload = _payload()
    header = sign(payload)
    with pytest.raises(WebhookVerificationError):
        construct_event(_payload("invoice.payment_succeeded"), header, config=make_settings(STRIPE_WEBHOOK_SECRET=SECRET))


def test_expired_timestamp_rejected():
    payload = _payload()
    old = int(time.time()) - 3600
    with pytest.raises(WebhookVerificationError):
        construct_event(payload, sign(payload, timestamp=old), config=make_settings(STRIPE_WEBHOOK_SECRET=SECRET))


def test_valid_signature_accepted_in_production():
    payload = _payload()
    config = make_settings(STRIPE_WEBHOOK_SECRET=SECRET, ENVIRONMENT="production")
    event = construct_event(payload, sign(payload), config=config)
    assert event["id"] == "evt_1"


def test_payload_without_type_rejected():
    with pytest.raises(WebhookVerificationError):
        construct_event(b'{"id": "evt_1"}', None, config=make_settings())
    with pytest.raises(WebhookVerificationError):
        construct_event(b"not json", None, config=make_settings())
