from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from ..notify import NotificationSender
from ..settings import Settings, settings as default_settings
from ..utils import to_isoformat, utcnow
from .models import (
    Collection,
    EventType,
    NotificationTemplate,
    PaymentStatus,
    PaymentType,
    SubscriptionStatus,
    WebhookReceipt,
    event_object,
)
from .service import (
    add_purchased_credits,
    best_effort,
    checkout_already_processed,
    credits_already_granted,
    create_auto_invoice,
    get_subscription,
    get_subscription_user_info,
    get_user_contact,
    invoice_already_recorded,
    pause_excess_vehicles,
    primary,
    reactivate_paused_vehicles,
    send_notification,
    subscription_already_canceled,
)
from .state import (
    FREE_LISTING_CAP,
    compute_expiry,
    grace_period_days,
    invoice_event_may_set,
    parse_status,
    plan_cap,
)
from .store import RecordStore

logger = logging.getLogger(__name__)


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _invoice_period_end(invoice: Dict[str, Any]) -> Any:
    lines = (invoice.get("lines") or {}).get("data") if isinstance(invoice.get("lines"), dict) else None
    if lines and isinstance(lines[0], dict):
        period = lines[0].get("period") or {}
        if isinstance(period, dict) and period.get("end"):
            return period["end"]
    return invoice.get("period_end")


class WebhookReconciler:
    """Applies Stripe billing events to subscription, payment, vehicle and invoice records.

    Every routine checks its idempotency key before writing. Subscription and
    payment writes go through ``primary`` and propagate failures so the
    processor redelivers; invoices, vehicle visibility and emails go through
    ``best_effort``.
    """

    def __init__(self, store: RecordStore, sender: NotificationSender, config: Settings | None = None):
        self.store = store
        self.sender = sender
        self.config = config or default_settings
        self._routines: Dict[str, Callable[[Dict[str, Any]], Awaitable[WebhookReceipt]]] = {
            EventType.CHECKOUT_COMPLETED.value: self.checkout_completed,
            EventType.INVOICE_PAID.value: self.invoice_paid,
            EventType.INVOICE_FAILED.value: self.invoice_failed,
            EventType.SUBSCRIPTION_DELETED.value: self.subscription_canceled,
        }

    async def handle(self, event: Dict[str, Any]) -> WebhookReceipt:
        event_type = str(event.get("type") or "")
        logger.info("Stripe event received id=%s type=%s", event.get("id"), event_type)
        routine = self._routines.get(event_type)
        if routine is None:
            return WebhookReceipt(event=event_type)
        return await routine(event)

    def _is_stale(self, sub: Optional[Dict[str, Any]], event: Dict[str, Any]) -> bool:
        if not self.config.BILLING_ENFORCE_EVENT_ORDER or not sub:
            return False
        last = _int(sub.get("last_event_at"))
        created = _int(event.get("created"))
        return bool(last and created and created < last)

    async def _auto_invoice(self, **kwargs: Any) -> bool:
        return await create_auto_invoice(
            self.store,
            currency=self.config.BILLING_CURRENCY,
            vat_percent=self.config.BILLING_VAT_PERCENT,
            **kwargs,
        )

    # checkout.session.completed

    async def checkout_completed(self, event: Dict[str, Any]) -> WebhookReceipt:
        session = event_object(event)
        event_type = EventType.CHECKOUT_COMPLETED.value
        session_id = str(session.get("id") or "")
        metadata = session.get("metadata") or {}

        if session_id and await primary(checkout_already_processed(self.store, session_id)):
            return WebhookReceipt(event=event_type, idempotent=True)

        user_id = str(metadata.get("user_id") or "")
        if not user_id:
            logger.warning("Checkout %s has no user_id metadata; ignoring", session_id)
            return WebhookReceipt(event=event_type)

        if metadata.get("type") == PaymentType.CREDITS.value:
            return await self._credits_purchased(event, session, user_id)

        plan = str(metadata.get("plan") or "")
        if not plan:
            logger.warning("Checkout %s has no plan metadata; ignoring", session_id)
            return WebhookReceipt(event=event_type)
        return await self._subscription_purchased(event, session, user_id, plan)

    async def _credits_purchased(self, event: Dict[str, Any], session: Dict[str, Any], user_id: str) -> WebhookReceipt:
        receipt = WebhookReceipt(event=EventType.CHECKOUT_COMPLETED.value)
        session_id = str(session.get("id") or "")
        metadata = session.get("metadata") or {}
        credits = _int(metadata.get("credits"))

        # The succeeded payment row is the replay key, so it is written last.
        if credits > 0 and not await primary(credits_already_granted(self.store, session_id)):
            balance = await primary(add_purchased_credits(
                self.store,
                user_id=user_id,
                credits=credits,
                reference=session_id,
                description=f"Credit pack {metadata.get('pack_slug') or metadata.get('pack_id') or ''}".strip(),
            ))
            logger.info("Credited %s credits to user %s (balance %s)", credits, user_id, balance)

        await primary(self.store.patch(
            Collection.PAYMENTS.value,
            {"stripe_checkout_session_id": session_id},
            {"status": PaymentStatus.SUCCEEDED.value},
        ))

        amount = _int(session.get("amount_total"))
        if amount:
            receipt.invoice_created = bool(await best_effort("credits auto-invoice", self._auto_invoice(
                user_id=user_id,
                stripe_invoice_id=session.get("invoice") or session_id,
                amount_cents=amount,
                service_type=PaymentType.CREDITS.value,
            )))
        return receipt

    async def _subscription_purchased(
        self, event: Dict[str, Any], session: Dict[str, Any], user_id: str, plan: str
    ) -> WebhookReceipt:
        receipt = WebhookReceipt(event=EventType.CHECKOUT_COMPLETED.value)
        session_id = str(session.get("id") or "")
        metadata = session.get("metadata") or {}
        subscription_id = session.get("subscription")
        now = utcnow()
        expires_at = compute_expiry(now=now, interval=metadata.get("interval"), interval_count=metadata.get("interval_count"))

        fields: Dict[str, Any] = {
            "plan": plan,
            "status": SubscriptionStatus.ACTIVE.value,
            "stripe_subscription_id": subscription_id,
            "stripe_customer_id": session.get("customer"),
            "started_at": to_isoformat(now),
            "expires_at": to_isoformat(expires_at),
        }
        if event.get("created"):
            fields["last_event_at"] = _int(event.get("created"))

        existing = await primary(self.store.get(Collection.SUBSCRIPTIONS.value, {"user_id": user_id}, ["id"]))
        if existing:
            await primary(self.store.patch(Collection.SUBSCRIPTIONS.value, {"user_id": user_id}, fields))
        else:
            await primary(self.store.insert(Collection.SUBSCRIPTIONS.value, {"user_id": user_id, **fields}))

        payment_fields: Dict[str, Any] = {"status": PaymentStatus.SUCCEEDED.value}
        if session.get("payment_intent"):
            payment_fields["stripe_payment_intent_id"] = session.get("payment_intent")
        await primary(self.store.patch(
            Collection.PAYMENTS.value,
            {"stripe_checkout_session_id": session_id},
            payment_fields,
        ))

        if session.get("payment_status") == "no_payment_required":
            await best_effort("trial flag", self.store.patch(
                Collection.SUBSCRIPTIONS.value, {"user_id": user_id}, {"has_had_trial": True}
            ))

        reactivated = await best_effort(
            "vehicle reactivation", reactivate_paused_vehicles(self.store, user_id, plan_cap(plan), now)
        )
        receipt.vehicles_reactivated = reactivated or 0

        amount = _int(session.get("amount_total"))
        if amount:
            receipt.invoice_created = bool(await best_effort("subscription auto-invoice", self._auto_invoice(
                user_id=user_id,
                stripe_invoice_id=session.get("invoice") or subscription_id,
                amount_cents=amount,
                service_type=PaymentType.SUBSCRIPTION.value,
            )))

        logger.info("Subscription %s active for user %s (plan %s)", subscription_id, user_id, plan)
        return receipt

    # invoice.payment_succeeded

    async def invoice_paid(self, event: Dict[str, Any]) -> WebhookReceipt:
        invoice = event_object(event)
        receipt = WebhookReceipt(event=EventType.INVOICE_PAID.value)
        invoice_id = str(invoice.get("id") or "")
        subscription_id = invoice.get("subscription")

        # A failed row for the same invoice is an earlier attempt, not this event.
        if invoice_id and await primary(invoice_already_recorded(self.store, invoice_id, PaymentStatus.SUCCEEDED)):
            receipt.idempotent = True
            return receipt
        if not subscription_id:
            return receipt

        sub = await primary(get_subscription(self.store, subscription_id))
        now = utcnow()
        current = parse_status((sub or {}).get("status"))
        # Staleness only gates the status change; the captured payment is always recorded.
        if self._is_stale(sub, event):
            logger.info("Stale %s for subscription %s; leaving status unchanged", invoice_id, subscription_id)
            receipt.stale = True
        elif invoice_event_may_set(current, SubscriptionStatus.ACTIVE):
            fields: Dict[str, Any] = {
                "status": SubscriptionStatus.ACTIVE.value,
                "expires_at": to_isoformat(compute_expiry(now=now, period_end=_invoice_period_end(invoice))),
            }
            if event.get("created"):
                fields["last_event_at"] = _int(event.get("created"))
            await primary(self.store.patch(
                Collection.SUBSCRIPTIONS.value, {"stripe_subscription_id": subscription_id}, fields
            ))
        else:
            logger.warning("Not reactivating %s subscription %s on renewal", current.value, subscription_id)

        amount = _int(invoice.get("amount_paid"))
        await primary(self.store.insert(Collection.PAYMENTS.value, {
            "user_id": (sub or {}).get("user_id"),
            "type": PaymentType.SUBSCRIPTION.value,
            "status": PaymentStatus.SUCCEEDED.value,
            "amount_cents": amount,
            "currency": self.config.BILLING_CURRENCY,
            "stripe_customer_id": invoice.get("customer"),
            "stripe_subscription_id": subscription_id,
            "stripe_payment_intent_id": invoice.get("payment_intent"),
            "metadata": {"event": EventType.INVOICE_PAID.value, "event_invoice_id": invoice_id},
        }))

        if amount:
            receipt.invoice_created = bool(await best_effort(
                "renewal auto-invoice", self._renewal_invoice(subscription_id, invoice_id, amount)
            ))
        return receipt

    async def _renewal_invoice(self, subscription_id: str, invoice_id: str, amount: int) -> bool:
        sub = await get_subscription(self.store, subscription_id)
        user_id = str((sub or {}).get("user_id") or "")
        if not user_id:
            return False
        return await self._auto_invoice(
            user_id=user_id,
            stripe_invoice_id=invoice_id or None,
            amount_cents=amount,
            service_type=PaymentType.SUBSCRIPTION.value,
        )

    # invoice.payment_failed

    async def invoice_failed(self, event: Dict[str, Any]) -> WebhookReceipt:
        invoice = event_object(event)
        receipt = WebhookReceipt(event=EventType.INVOICE_FAILED.value)
        invoice_id = str(invoice.get("id") or "")
        subscription_id = invoice.get("subscription")

        if invoice_id and await primary(invoice_already_recorded(self.store, invoice_id, PaymentStatus.FAILED)):
            receipt.idempotent = True
            return receipt
        if not subscription_id:
            return receipt

        sub = await primary(get_subscription(self.store, subscription_id))
        current = parse_status((sub or {}).get("status"))
        may_set = False
        if self._is_stale(sub, event):
            logger.info("Stale %s for subscription %s; leaving status unchanged", invoice_id, subscription_id)
            receipt.stale = True
        else:
            may_set = invoice_event_may_set(current, SubscriptionStatus.PAST_DUE)
            if may_set:
                fields: Dict[str, Any] = {"status": SubscriptionStatus.PAST_DUE.value}
                if event.get("created"):
                    fields["last_event_at"] = _int(event.get("created"))
                await primary(self.store.patch(
                    Collection.SUBSCRIPTIONS.value, {"stripe_subscription_id": subscription_id}, fields
                ))
            else:
                logger.warning("Not marking %s subscription %s past_due", current.value, subscription_id)

        await primary(self.store.insert(Collection.PAYMENTS.value, {
            "user_id": (sub or {}).get("user_id"),
            "type": PaymentType.SUBSCRIPTION.value,
            "status": PaymentStatus.FAILED.value,
            "amount_cents": _int(invoice.get("amount_due")),
            "currency": self.config.BILLING_CURRENCY,
            "stripe_customer_id": invoice.get("customer"),
            "stripe_subscription_id": subscription_id,
            "metadata": {"event": EventType.INVOICE_FAILED.value, "event_invoice_id": invoice_id},
        }))

        if not may_set:
            return receipt

        info = await best_effort("dunning user lookup", get_subscription_user_info(self.store, subscription_id))
        if info:
            sent = await best_effort("dunning email", send_notification(
                self.sender,
                info,
                NotificationTemplate.PAYMENT_FAILED.value,
                {
                    "name": info.name,
                    "plan": info.plan,
                    "updateCardUrl": self.config.site_link(self.config.UPDATE_CARD_PATH),
                    "gracePeriodDays": str(grace_period_days(invoice.get("attempt_count"))),
                },
            ))
            receipt.notified = bool(sent)
        return receipt

    # customer.subscription.deleted

    async def subscription_canceled(self, event: Dict[str, Any]) -> WebhookReceipt:
        subscription = event_object(event)
        receipt = WebhookReceipt(event=EventType.SUBSCRIPTION_DELETED.value)
        subscription_id = str(subscription.get("id") or "")
        if not subscription_id:
            return receipt

        if await primary(subscription_already_canceled(self.store, subscription_id)):
            receipt.idempotent = True
            return receipt

        # Resolve before the downgrade so the notice names the plan being lost.
        sub = await best_effort("cancellation subscription lookup", get_subscription(self.store, subscription_id))
        user_id = str((sub or {}).get("user_id") or "")
        info = None
        if user_id:
            info = await best_effort(
                "cancellation user lookup", get_user_contact(self.store, user_id, str(sub.get("plan") or "basic"))
            )

        fields: Dict[str, Any] = {"status": SubscriptionStatus.CANCELED.value, "plan": "free"}
        if event.get("created"):
            fields["last_event_at"] = _int(event.get("created"))
        await primary(self.store.patch(
            Collection.SUBSCRIPTIONS.value, {"stripe_subscription_id": subscription_id}, fields
        ))

        if user_id:
            paused = await best_effort(
                "vehicle pause", pause_excess_vehicles(self.store, user_id, FREE_LISTING_CAP, utcnow())
            )
            receipt.vehicles_paused = paused or 0

        if info:
            sent = await best_effort("cancellation email", send_notification(
                self.sender,
                info,
                NotificationTemplate.SUBSCRIPTION_CANCELLED.value,
                {
                    "name": info.name,
                    "plan": info.plan,
                    "resubscribeUrl": self.config.site_link(self.config.RESUBSCRIBE_PATH),
                },
            ))
            receipt.notified = bool(sent)

        logger.info("Subscription %s canceled; %s vehicles paused", subscription_id, receipt.vehicles_paused)
        return receipt
