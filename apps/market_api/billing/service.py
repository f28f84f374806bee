from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

from ..notify import NotificationSender
from ..utils import parse_any_date, to_isoformat, utcnow
from .models import (
    Collection,
    PaymentStatus,
    SubscriptionStatus,
    SubscriptionUserInfo,
    VehicleStatus,
)
from .state import compute_tax_cents, select_vehicles_to_pause, select_vehicles_to_reactivate
from .store import RecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Two error policies, kept as separate helpers so call sites read differently.

async def primary(step: Awaitable[T]) -> T:
    """Await a state-defining store call. Failures propagate to the caller."""
    return await step


async def best_effort(label: str, step: Awaitable[T]) -> Optional[T]:
    """Await a side effect; log and discard any failure."""
    try:
        return await step
    except Exception:
        logger.warning("Best-effort step failed: %s", label, exc_info=True)
        return None


# Idempotency lookups

async def checkout_already_processed(store: RecordStore, session_id: str) -> bool:
    rows = await store.get(
        Collection.PAYMENTS.value,
        {"stripe_checkout_session_id": session_id, "status": PaymentStatus.SUCCEEDED.value},
        ["id"],
    )
    return bool(rows)


async def invoice_already_recorded(store: RecordStore, invoice_id: str, status: PaymentStatus | None = None) -> bool:
    filters: Dict[str, Any] = {"metadata.event_invoice_id": invoice_id}
    if status is not None:
        filters["status"] = status.value
    rows = await store.get(Collection.PAYMENTS.value, filters, ["id"])
    return bool(rows)


async def credits_already_granted(store: RecordStore, reference: str) -> bool:
    rows = await store.get(Collection.CREDIT_TRANSACTIONS.value, {"reference": reference}, ["id"])
    return bool(rows)


async def subscription_already_canceled(store: RecordStore, stripe_subscription_id: str) -> bool:
    rows = await store.get(
        Collection.SUBSCRIPTIONS.value,
        {"stripe_subscription_id": stripe_subscription_id, "status": SubscriptionStatus.CANCELED.value},
        ["id"],
    )
    return bool(rows)


# Lookups

async def get_subscription(store: RecordStore, stripe_subscription_id: str) -> Optional[Dict[str, Any]]:
    rows = await store.get(
        Collection.SUBSCRIPTIONS.value,
        {"stripe_subscription_id": stripe_subscription_id},
        ["id", "user_id", "plan", "status", "last_event_at"],
    )
    return rows[0] if rows else None


async def get_user_contact(store: RecordStore, user_id: str, plan: str) -> Optional[SubscriptionUserInfo]:
    rows = await store.get(Collection.USERS.value, {"id": user_id}, ["email", "raw_user_meta_data"])
    email = str((rows[0].get("email") if rows else "") or "").strip()
    if not email:
        return None
    meta = rows[0].get("raw_user_meta_data") or {}
    if not isinstance(meta, dict):
        meta = {}
    name = meta.get("display_name") or meta.get("full_name") or email.split("@")[0]
    return SubscriptionUserInfo(user_id=user_id, email=email, name=str(name), plan=plan or "basic")


async def get_subscription_user_info(store: RecordStore, stripe_subscription_id: str) -> Optional[SubscriptionUserInfo]:
    sub = await get_subscription(store, stripe_subscription_id)
    user_id = str((sub or {}).get("user_id") or "")
    if not user_id:
        return None
    return await get_user_contact(store, user_id, str(sub.get("plan") or "basic"))


async def find_dealer_ids(store: RecordStore, user_id: str) -> List[str]:
    rows = await store.get(Collection.DEALERS.value, {"user_id": user_id}, ["id"])
    return [str(r["id"]) for r in rows if r.get("id")]


# Side effects

async def create_auto_invoice(
    store: RecordStore,
    *,
    user_id: str,
    stripe_invoice_id: Optional[str],
    amount_cents: int,
    service_type: str = "subscription",
    currency: str = "eur",
    vat_percent: int = 21,
) -> bool:
    dealer_ids = await find_dealer_ids(store, user_id)
    await store.insert(
        Collection.INVOICES.value,
        {
            "user_id": user_id,
            "dealer_id": dealer_ids[0] if dealer_ids else None,
            "stripe_invoice_id": stripe_invoice_id,
            "service_type": service_type,
            "amount_cents": int(amount_cents),
            "tax_cents": compute_tax_cents(amount_cents, vat_percent),
            "currency": currency,
            "status": "paid",
        },
    )
    return True


async def _dealer_vehicles(store: RecordStore, dealer_id: str, status: VehicleStatus) -> List[Dict[str, Any]]:
    return await store.get(
        Collection.VEHICLES.value,
        {"dealer_id": dealer_id, "status": status.value},
        ["id", "status", "created_at"],
    )


async def _set_vehicle_status(
    store: RecordStore, vehicles: List[Dict[str, Any]], status: VehicleStatus, now: datetime
) -> int:
    changed = 0
    for vehicle in vehicles:
        try:
            await store.patch(
                Collection.VEHICLES.value,
                {"id": vehicle["id"]},
                {"status": status.value, "updated_at": to_isoformat(now)},
            )
            changed += 1
        except Exception as exc:
            logger.warning("Failed to set vehicle %s to %s: %s", vehicle.get("id"), status.value, exc)
    return changed


async def pause_excess_vehicles(store: RecordStore, user_id: str, cap: Optional[int], now: datetime | None = None) -> int:
    """Pause the newest published vehicles of each of the user's dealers beyond ``cap``."""
    now = now or utcnow()
    paused = 0
    for dealer_id in await find_dealer_ids(store, user_id):
        published = await _dealer_vehicles(store, dealer_id, VehicleStatus.PUBLISHED)
        to_pause = select_vehicles_to_pause(published, cap)
        if to_pause:
            paused += await _set_vehicle_status(store, to_pause, VehicleStatus.PAUSED, now)
    return paused


async def reactivate_paused_vehicles(store: RecordStore, user_id: str, cap: Optional[int], now: datetime | None = None) -> int:
    """Republish paused vehicles, oldest first, into the free slots under ``cap``."""
    now = now or utcnow()
    reactivated = 0
    for dealer_id in await find_dealer_ids(store, user_id):
        paused = await _dealer_vehicles(store, dealer_id, VehicleStatus.PAUSED)
        if not paused:
            continue
        published = await _dealer_vehicles(store, dealer_id, VehicleStatus.PUBLISHED)
        to_publish = select_vehicles_to_reactivate(published, paused, cap)
        if to_publish:
            reactivated += await _set_vehicle_status(store, to_publish, VehicleStatus.PUBLISHED, now)
    return reactivated


async def add_purchased_credits(
    store: RecordStore,
    *,
    user_id: str,
    credits: int,
    reference: str,
    description: str = "",
) -> int:
    """Increase the user's credit balance and log the transaction. Returns the new balance."""
    rows = await store.get(Collection.USER_CREDITS.value, {"user_id": user_id}, ["balance", "total_purchased"])
    if rows:
        balance = int(rows[0].get("balance") or 0) + int(credits)
        total = int(rows[0].get("total_purchased") or 0) + int(credits)
        await store.patch(
            Collection.USER_CREDITS.value,
            {"user_id": user_id},
            {"balance": balance, "total_purchased": total},
        )
    else:
        balance = int(credits)
        await store.insert(
            Collection.USER_CREDITS.value,
            {"user_id": user_id, "balance": balance, "total_purchased": int(credits)},
        )

    await store.insert(
        Collection.CREDIT_TRANSACTIONS.value,
        {
            "user_id": user_id,
            "type": "purchase",
            "credits": int(credits),
            "balance_after": balance,
            "description": description or f"Purchased {int(credits)} credits",
            "reference": reference,
        },
    )
    return balance


async def send_notification(
    sender: NotificationSender,
    info: SubscriptionUserInfo,
    template_key: str,
    variables: Dict[str, str],
) -> bool:
    return await sender.send(template_key=template_key, to=info.email, user_id=info.user_id, variables=variables)


async def reminder_already_sent(store: RecordStore, email: str, template_key: str, since: datetime) -> bool:
    """Whether ``template_key`` went to ``email`` after ``since``, per the email API's log."""
    rows = await store.get(
        Collection.EMAIL_LOGS.value,
        {"recipient_email": email, "template_key": template_key},
        ["id", "created_at"],
    )
    for row in rows:
        sent_at = parse_any_date(row.get("created_at"))
        if sent_at and sent_at > since:
            return True
    return False


async def keep_founding_badge(store: RecordStore, user_id: str, now: datetime | None = None) -> int:
    """Downgraded founding dealers keep the founding badge for good."""
    now = now or utcnow()
    dealer_ids = await find_dealer_ids(store, user_id)
    for dealer_id in dealer_ids:
        await store.patch(
            Collection.DEALERS.value,
            {"id": dealer_id},
            {"badge": "founding", "subscription_type": "free", "updated_at": to_isoformat(now)},
        )
    return len(dealer_ids)
