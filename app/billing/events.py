"""
Typed view over verified Stripe webhook payloads.

The ingress decodes every event into exactly one of the dataclasses below;
the reconciliation engine never sees a raw payload. Field extraction accepts
both the classic API shape and the 2025+ one (billing periods on subscription
items, invoice subscription under ``parent.subscription_details``).
"""
import calendar
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Union

import stripe

from .errors import SignatureError


def to_dt(ts) -> Optional[datetime]:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc) if ts else None


def _id_of(value) -> Optional[str]:
    # Expandable fields arrive either as an id string or as the expanded object
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _minor_to_major(amount) -> Optional[Decimal]:
    if amount is None:
        return None
    return (Decimal(int(amount)) / Decimal(100)).quantize(Decimal("0.01"))


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Provider subscription state, normalised."""
    id: str
    customer_id: Optional[str]
    status: Optional[str]
    price_id: Optional[str]
    plan_id_hint: Optional[int]
    user_id_hint: Optional[int]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    canceled_at: Optional[datetime]
    trial_start: Optional[datetime]
    trial_end: Optional[datetime]

    @classmethod
    def from_stripe(cls, obj: Dict[str, Any]) -> "SubscriptionSnapshot":
        metadata = obj.get("metadata") or {}
        items = (obj.get("items") or {}).get("data") or []
        # First item drives price/period for simple one-price subs
        first = items[0] if items else {}
        price = first.get("price") or {}
        price_meta = price.get("metadata") or {}

        period_start = obj.get("current_period_start") or first.get("current_period_start")
        period_end = obj.get("current_period_end") or first.get("current_period_end")

        return cls(
            id=obj.get("id"),
            customer_id=_id_of(obj.get("customer")),
            status=obj.get("status"),
            price_id=price.get("id"),
            plan_id_hint=_int_or_none(metadata.get("plan_id") or price_meta.get("plan_id")),
            user_id_hint=_int_or_none(metadata.get("user_id")),
            current_period_start=to_dt(period_start),
            current_period_end=to_dt(period_end),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            canceled_at=to_dt(obj.get("canceled_at") or obj.get("ended_at")),
            trial_start=to_dt(obj.get("trial_start")),
            trial_end=to_dt(obj.get("trial_end")),
        )


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    session_id: str
    mode: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    user_id_hint: Optional[int]
    plan_id_hint: Optional[int]
    amount_total: Optional[Decimal]
    currency: Optional[str]


@dataclass(frozen=True)
class InvoicePaid:
    event_id: str
    invoice_id: str
    subscription_id: Optional[str]
    customer_id: Optional[str]
    amount_paid: Optional[Decimal]
    currency: Optional[str]
    period_end: Optional[datetime]


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    invoice_id: str
    subscription_id: Optional[str]
    customer_id: Optional[str]
    invoice_status: Optional[str]
    amount_due: Optional[Decimal]
    currency: Optional[str]
    attempt_count: int


@dataclass(frozen=True)
class SubscriptionChanged:
    event_id: Optional[str]
    created: bool
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class TrialWillEnd:
    event_id: str
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class IgnoredEvent:
    event_id: str
    type: str
    reason: str = "unhandled_type"


BillingEvent = Union[
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionDeleted,
    TrialWillEnd,
    IgnoredEvent,
]


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub = _id_of(invoice.get("subscription"))
    if sub:
        return sub
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _id_of(details.get("subscription"))


def _checkout(event_id: str, obj: Dict[str, Any]) -> CheckoutCompleted:
    metadata = obj.get("metadata") or {}
    return CheckoutCompleted(
        event_id=event_id,
        session_id=obj.get("id"),
        mode=obj.get("mode"),
        customer_id=_id_of(obj.get("customer")),
        subscription_id=_id_of(obj.get("subscription")),
        user_id_hint=_int_or_none(metadata.get("user_id") or obj.get("client_reference_id")),
        plan_id_hint=_int_or_none(metadata.get("plan_id")),
        amount_total=_minor_to_major(obj.get("amount_total")),
        currency=obj.get("currency"),
    )


def _invoice_paid(event_id: str, obj: Dict[str, Any]) -> InvoicePaid:
    return InvoicePaid(
        event_id=event_id,
        invoice_id=obj.get("id"),
        subscription_id=_invoice_subscription_id(obj),
        customer_id=_id_of(obj.get("customer")),
        amount_paid=_minor_to_major(obj.get("amount_paid")),
        currency=obj.get("currency"),
        period_end=to_dt(obj.get("period_end")),
    )


def _invoice_failed(event_id: str, obj: Dict[str, Any]) -> InvoicePaymentFailed:
    return InvoicePaymentFailed(
        event_id=event_id,
        invoice_id=obj.get("id"),
        subscription_id=_invoice_subscription_id(obj),
        customer_id=_id_of(obj.get("customer")),
        invoice_status=obj.get("status"),
        amount_due=_minor_to_major(obj.get("amount_due")),
        currency=obj.get("currency"),
        attempt_count=int(obj.get("attempt_count") or 0),
    )


def decode_event(event: Dict[str, Any]) -> BillingEvent:
    """Map a verified Stripe event dict onto its typed variant."""
    event_id = event.get("id")
    ev_type = event.get("type") or ""
    obj = (event.get("data") or {}).get("object") or {}

    if ev_type == "checkout.session.completed":
        return _checkout(event_id, obj)
    if ev_type in ("invoice.payment_succeeded", "invoice.paid"):
        return _invoice_paid(event_id, obj)
    if ev_type == "invoice.payment_failed":
        return _invoice_failed(event_id, obj)
    if ev_type in ("customer.subscription.created", "customer.subscription.updated"):
        return SubscriptionChanged(
            event_id=event_id,
            created=ev_type.endswith(".created"),
            subscription=SubscriptionSnapshot.from_stripe(obj),
        )
    if ev_type == "customer.subscription.deleted":
        return SubscriptionDeleted(event_id=event_id, subscription=SubscriptionSnapshot.from_stripe(obj))
    if ev_type == "customer.subscription.trial_will_end":
        return TrialWillEnd(event_id=event_id, subscription=SubscriptionSnapshot.from_stripe(obj))
    return IgnoredEvent(event_id=event_id, type=ev_type)


def add_months(dt: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 -> Feb 28/29)."""
    month_index = dt.month - 1 + months
    year, month = dt.year + month_index // 12, month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def verify_signature(raw_body: bytes, sig_header: str, secret: str) -> Dict[str, Any]:
    """Check the Stripe-Signature header; returns the parsed body or raises SignatureError."""
    try:
        stripe.Webhook.construct_event(payload=raw_body.decode("utf-8"), sig_header=sig_header, secret=secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        raise SignatureError(type(e).__name__) from e
    return json.loads(raw_body.decode("utf-8"))
