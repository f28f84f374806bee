from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import stripe

from ..settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class WebhookConfigError(RuntimeError):
    pass


class WebhookVerificationError(ValueError):
    pass


def construct_event(payload: Optional[bytes], signature: Optional[str], *, config: Settings | None = None) -> Dict[str, Any]:
    """Authenticate and decode a raw Stripe webhook body.

    Fail-closed: with a secret configured, a missing or bad signature is rejected.
    Without one, production refuses to run and other environments parse unsigned.
    """
    config = config or default_settings
    if not payload:
        raise WebhookVerificationError("Missing request body")

    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WebhookVerificationError("Request body is not valid UTF-8") from e

    secret = (config.STRIPE_WEBHOOK_SECRET or "").strip()
    if not secret:
        if config.is_production:
            raise WebhookConfigError("Stripe webhook secret not configured")
        logger.warning("STRIPE_WEBHOOK_SECRET not set - processing webhook without signature verification")
    else:
        if not signature:
            raise WebhookVerificationError("Missing stripe-signature header")
        try:
            stripe.WebhookSignature.verify_header(text, signature, secret, config.STRIPE_WEBHOOK_TOLERANCE_SECONDS)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Webhook signature verification failed: {e}") from e

    try:
        event = json.loads(text)
    except ValueError as e:
        raise WebhookVerificationError("Invalid webhook payload") from e
    if not isinstance(event, dict) or not str(event.get("type") or "").strip():
        raise WebhookVerificationError("Webhook payload has no event type")
    return event
