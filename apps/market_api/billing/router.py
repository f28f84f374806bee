from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from ..notify import EmailApiSender
from ..settings import settings
from .expiry import expire_lapsed_subscriptions
from .reconciler import WebhookReconciler
from .store import RecordStoreError, build_record_store
from .webhook import WebhookConfigError, WebhookVerificationError, construct_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["Billing"])


_RECONCILER: Optional[WebhookReconciler] = None


def get_reconciler() -> WebhookReconciler:
    global _RECONCILER
    if _RECONCILER is None:
        _RECONCILER = WebhookReconciler(build_record_store(settings), EmailApiSender(), settings)
    return _RECONCILER


async def close_reconciler() -> None:
    global _RECONCILER
    if _RECONCILER is not None:
        await _RECONCILER.store.aclose()
        _RECONCILER = None


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    # Signature verification needs the exact bytes, so the body is read raw.
    payload = await request.body()
    try:
        event = construct_event(payload, stripe_signature, config=settings)
    except WebhookConfigError as e:
        logger.error("Webhook rejected: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
    except WebhookVerificationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        receipt = await reconciler.handle(event)
    except RecordStoreError as e:
        # Unprocessed; Stripe redelivers and the routines are idempotent.
        logger.error("Billing state update failed for event %s: %s", event.get("id"), e)
        raise HTTPException(status_code=500, detail="Billing state update failed")
    return receipt.model_dump(by_alias=True)


@router.post("/billing/expiry/run")
async def billing_run_expiry(
    internal_secret: str | None = Header(default=None, alias="X-Internal-Secret"),
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    if not settings.INTERNAL_SECRET or (internal_secret or "") != settings.INTERNAL_SECRET:
        raise HTTPException(status_code=401, detail="Invalid internal secret")
    try:
        result = await expire_lapsed_subscriptions(reconciler.store, reconciler.sender, config=settings)
    except RecordStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"ok": True, **result.model_dump()}
