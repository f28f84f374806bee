from __future__ import annotations

# File: apps/market_api/main.py
import logging

from fastapi import FastAPI

from .settings import settings
from .scheduler import SchedulerWrapper
from .billing import router as billing_router, init_billing_scheduler
from .billing.router import close_reconciler

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Marketplace Billing API")

scheduler = SchedulerWrapper()


@app.get("/health")
async def health():
    return {"status": "ok", "environment": settings.ENVIRONMENT}


app.include_router(billing_router)


@app.on_event("startup")
def _startup():
    scheduler.start()
    init_billing_scheduler(scheduler)
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set (environment=%s)", settings.ENVIRONMENT)


@app.on_event("shutdown")
async def _shutdown():
    scheduler.shutdown()
    await close_reconciler()
