from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..utils import add_months, parse_any_date, utcnow
from .models import Plan, SubscriptionStatus


class SubscriptionStateError(ValueError):
    pass


# None means unbounded.
PLAN_LISTING_CAPS: Dict[Plan, Optional[int]] = {
    Plan.FREE: 3,
    Plan.BASIC: 20,
    Plan.PREMIUM: None,
    Plan.FOUNDING: None,
}

FREE_LISTING_CAP = PLAN_LISTING_CAPS[Plan.FREE]


def plan_cap(plan: Any) -> Optional[int]:
    try:
        return PLAN_LISTING_CAPS[Plan(str(plan or "").strip().lower())]
    except ValueError:
        return FREE_LISTING_CAP


def can_transition(current: Optional[SubscriptionStatus], new: SubscriptionStatus) -> bool:
    allowed: dict[Optional[SubscriptionStatus], set[SubscriptionStatus]] = {
        None: {SubscriptionStatus.ACTIVE},
        SubscriptionStatus.ACTIVE: {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED},
        SubscriptionStatus.PAST_DUE: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED},
        # Only a fresh checkout brings a terminal subscription back.
        SubscriptionStatus.CANCELED: {SubscriptionStatus.ACTIVE},
        SubscriptionStatus.EXPIRED: {SubscriptionStatus.ACTIVE},
    }
    return new in allowed.get(current, set())


def assert_transition(current: Optional[SubscriptionStatus], new: SubscriptionStatus) -> None:
    if current == new:
        return
    if not can_transition(current, new):
        label = current.value if current else "none"
        raise SubscriptionStateError(f"Invalid subscription transition: {label} -> {new.value}")


TERMINAL_STATUSES = {SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED}


def invoice_event_may_set(current: Optional[SubscriptionStatus], new: SubscriptionStatus) -> bool:
    """Whether a recurring invoice event may move a subscription to ``new``.

    Invoice events never resurrect a canceled or expired subscription.
    """
    if current is None:
        return True
    if current in TERMINAL_STATUSES:
        return False
    return current == new or can_transition(current, new)


def parse_status(value: Any) -> Optional[SubscriptionStatus]:
    try:
        return SubscriptionStatus(str(value or "").strip().lower())
    except ValueError:
        return None


def _created_key(vehicle: Dict[str, Any]) -> datetime:
    return parse_any_date(vehicle.get("created_at")) or datetime.max


def oldest_first(vehicles: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # sorted() is stable: equal timestamps keep store order.
    return sorted(vehicles, key=_created_key)


def select_vehicles_to_pause(published: Iterable[Dict[str, Any]], cap: Optional[int]) -> List[Dict[str, Any]]:
    """Published vehicles beyond ``cap``; the oldest ``cap`` stay published."""
    if cap is None:
        return []
    return oldest_first(published)[max(0, int(cap)):]


def select_vehicles_to_reactivate(
    published: Iterable[Dict[str, Any]],
    paused: Iterable[Dict[str, Any]],
    cap: Optional[int],
) -> List[Dict[str, Any]]:
    """Paused vehicles to republish, oldest first, up to the free slots under ``cap``."""
    ordered = oldest_first(paused)
    if cap is None:
        return ordered
    slots = int(cap) - len(list(published))
    if slots <= 0:
        return []
    return ordered[:slots]


def grace_period_days(attempt_count: Any) -> int:
    try:
        attempts = int(attempt_count or 1)
    except (TypeError, ValueError):
        attempts = 1
    if attempts <= 1:
        return 14
    if attempts == 2:
        return 7
    return 3


def compute_tax_cents(amount_cents: int, vat_percent: int = 21) -> int:
    """VAT portion of a tax-inclusive amount, in minor units."""
    return int(round(int(amount_cents) * vat_percent / (100 + vat_percent)))


def compute_expiry(
    *,
    now: Optional[datetime] = None,
    interval: Optional[str] = None,
    interval_count: Any = 1,
    period_end: Any = None,
) -> datetime:
    """Subscription expiry from processor interval data, one month by default."""
    now = now or utcnow()
    end = parse_any_date(period_end)
    if end and end > now:
        return end
    try:
        count = max(1, int(interval_count or 1))
    except (TypeError, ValueError):
        count = 1
    unit = str(interval or "").strip().lower()
    if unit == "year":
        return add_months(now, 12 * count)
    if unit == "month":
        return add_months(now, count)
    return add_months(now, 1)
