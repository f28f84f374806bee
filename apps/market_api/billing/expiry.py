from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict

from ..notify import NotificationSender
from ..settings import Settings, settings as default_settings
from ..utils import parse_any_date, utcnow
from .models import Collection, ExpirySweepResult, NotificationTemplate, Plan, SubscriptionStatus
from .service import (
    best_effort,
    get_user_contact,
    keep_founding_badge,
    pause_excess_vehicles,
    reminder_already_sent,
    send_notification,
)
from .state import FREE_LISTING_CAP, assert_transition, parse_status
from .store import RecordStore

logger = logging.getLogger(__name__)

REMINDER_30D_DAYS = 30
REMINDER_7D_DAYS = 7


async def _remind(
    store: RecordStore,
    sender: NotificationSender,
    info: Any,
    template: NotificationTemplate,
    window_days: int,
    now: datetime,
    variables: Dict[str, str],
) -> bool:
    since = now - timedelta(days=window_days)
    # A failed log lookup counts as not sent.
    if await best_effort(f"{template.value} log lookup", reminder_already_sent(store, info.email, template.value, since)):
        return False
    sent = await best_effort(f"{template.value} email", send_notification(sender, info, template.value, variables))
    return bool(sent)


async def expire_lapsed_subscriptions(
    store: RecordStore,
    sender: NotificationSender,
    *,
    now: datetime | None = None,
    config: Settings | None = None,
    limit: int = 200,
) -> ExpirySweepResult:
    """Walk active founding subscriptions through reminders and expiry.

    - 30 days before ``expires_at`` (and more than 7 out): one
      ``founding_expiring_30d`` reminder.
    - 7 days before: one ``founding_expiring_7d`` reminder.
    - On or after: the subscription becomes ``expired``/``free``, the dealer
      keeps the founding badge, published vehicles beyond the free cap are
      paused and ``founding_expired`` is sent.

    Reminders are deduplicated against the email API's ``email_logs``.
    A failure on one subscription does not stop the sweep.
    """
    config = config or default_settings
    now = now or utcnow()
    result = ExpirySweepResult()
    upgrade_url = config.site_link(config.UPDATE_CARD_PATH)

    rows = await store.get(
        Collection.SUBSCRIPTIONS.value,
        {"plan": Plan.FOUNDING.value, "status": SubscriptionStatus.ACTIVE.value},
        ["id", "user_id", "plan", "status", "expires_at"],
    )
    for row in rows[:limit]:
        expires_at = parse_any_date(row.get("expires_at"))
        if not expires_at:
            continue
        user_id = str(row.get("user_id") or "")
        days_left = (expires_at - now).total_seconds() / 86400

        if days_left > 0:
            if days_left > REMINDER_30D_DAYS or not user_id:
                continue
            info = await best_effort("reminder user lookup", get_user_contact(store, user_id, Plan.FOUNDING.value))
            if not info:
                continue
            variables = {
                "dealerName": info.name,
                "expiresAt": expires_at.strftime("%d/%m/%Y"),
                "upgradeUrl": upgrade_url,
            }
            if days_left > REMINDER_7D_DAYS:
                if await _remind(store, sender, info, NotificationTemplate.FOUNDING_EXPIRING_30D, REMINDER_30D_DAYS, now, variables):
                    result.notified_30d += 1
            elif await _remind(
                store,
                sender,
                info,
                NotificationTemplate.FOUNDING_EXPIRING_7D,
                REMINDER_7D_DAYS,
                now,
                {**variables, "daysLeft": str(math.ceil(days_left))},
            ):
                result.notified_7d += 1
            continue

        try:
            assert_transition(parse_status(row.get("status")), SubscriptionStatus.EXPIRED)
            await store.patch(
                Collection.SUBSCRIPTIONS.value,
                {"id": row["id"]},
                {"status": SubscriptionStatus.EXPIRED.value, "plan": Plan.FREE.value},
            )
        except Exception:
            logger.exception("Failed to expire subscription %s", row.get("id"))
            result.failed += 1
            continue
        result.expired += 1
        if not user_id:
            continue

        await best_effort("founding badge", keep_founding_badge(store, user_id, now))

        paused = await best_effort("expiry vehicle pause", pause_excess_vehicles(store, user_id, FREE_LISTING_CAP, now))
        result.vehicles_paused += paused or 0

        info = await best_effort("expiry user lookup", get_user_contact(store, user_id, Plan.FOUNDING.value))
        if info:
            await best_effort("expiry email", send_notification(
                sender,
                info,
                NotificationTemplate.FOUNDING_EXPIRED.value,
                {"dealerName": info.name, "upgradeUrl": upgrade_url},
            ))

    logger.info(
        "Expiry sweep: %s 30d reminders, %s 7d reminders, %s expired, %s vehicles paused, %s failed",
        result.notified_30d,
        result.notified_7d,
        result.expired,
        result.vehicles_paused,
        result.failed,
    )
    return result
