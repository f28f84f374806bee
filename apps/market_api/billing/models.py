from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class Plan(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    FOUNDING = "founding"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class PaymentType(str, Enum):
    SUBSCRIPTION = "subscription"
    CREDITS = "credits"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class VehicleStatus(str, Enum):
    PUBLISHED = "published"
    PAUSED = "paused"


class EventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAID = "invoice.payment_succeeded"
    INVOICE_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class Collection(str, Enum):
    SUBSCRIPTIONS = "subscriptions"
    PAYMENTS = "payments"
    VEHICLES = "vehicles"
    DEALERS = "dealers"
    USERS = "users"
    INVOICES = "invoices"
    CREDIT_TRANSACTIONS = "credit_transactions"
    USER_CREDITS = "user_credits"
    EMAIL_LOGS = "email_logs"


class NotificationTemplate(str, Enum):
    PAYMENT_FAILED = "dealer_payment_failed"
    SUBSCRIPTION_CANCELLED = "dealer_subscription_cancelled"
    FOUNDING_EXPIRING_30D = "founding_expiring_30d"
    FOUNDING_EXPIRING_7D = "founding_expiring_7d"
    FOUNDING_EXPIRED = "founding_expired"


class SubscriptionUserInfo(BaseModel):
    user_id: str
    email: str
    name: str
    plan: str


class WebhookReceipt(BaseModel):
    """Acknowledgment returned to the payment processor.

    Counters are local to one invocation.
    """

    model_config = ConfigDict(populate_by_name=True)

    received: bool = True
    event: Optional[str] = None
    idempotent: bool = False
    # Event older than the last one applied to the subscription; status left unchanged.
    stale: bool = False

    vehicles_paused: int = Field(default=0, alias="vehiclesPaused")
    vehicles_reactivated: int = Field(default=0, alias="vehiclesReactivated")
    invoice_created: bool = Field(default=False, alias="invoiceCreated")
    notified: bool = False


class ExpirySweepResult(BaseModel):
    notified_30d: int = 0
    notified_7d: int = 0
    expired: int = 0
    vehicles_paused: int = 0
    failed: int = 0


def event_object(event: Dict[str, Any]) -> Dict[str, Any]:
    data = event.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    return obj if isinstance(obj, dict) else {}
