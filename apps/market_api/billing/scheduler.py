from __future__ import annotations

import asyncio
import logging

from ..notify import EmailApiSender
from ..scheduler import SchedulerWrapper
from ..settings import settings
from .expiry import expire_lapsed_subscriptions
from .models import ExpirySweepResult
from .store import build_record_store

logger = logging.getLogger(__name__)


async def _sweep_once() -> ExpirySweepResult:
    store = build_record_store(settings)
    try:
        return await expire_lapsed_subscriptions(store, EmailApiSender(), config=settings)
    finally:
        await store.aclose()


def run_expiry_sweep_job() -> None:
    # Runs on an APScheduler worker thread, which has no event loop of its own.
    try:
        asyncio.run(_sweep_once())
    except Exception:
        logger.exception("Subscription expiry sweep failed")


def init_billing_scheduler(scheduler: SchedulerWrapper) -> None:
    if not settings.ENABLE_EXPIRY_SWEEP:
        return
    scheduler.add_interval_job(run_expiry_sweep_job, minutes=settings.EXPIRY_SWEEP_MINUTES, id="subscription_expiry_sweep")
