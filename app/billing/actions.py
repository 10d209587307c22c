"""
User-initiated subscription flows (cancel, reactivate, plan change, checkout, portal).

The Stripe call always goes first. Local state is only written once the
provider has accepted the change, so a failed call leaves the database as it
was and surfaces as BillingProviderError.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import current_app

from app.models import LIVE_STATUSES, SUBSCRIPTION_STATUSES, TERMINAL_STATUSES, Subscription
from app.services.billing import StripeGateway
from . import event_log, store
from .errors import BillingStateError
from .events import SubscriptionSnapshot, to_dt


def _log(event: str, **fields) -> None:
    current_app.logger.info(json.dumps({"event": event, **fields}, default=str))


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _free_status() -> Dict[str, Any]:
    return {
        "plan": None,
        "status": "free",
        "is_active": False,
        "cancel_at_period_end": False,
        "current_period_start": None,
        "current_period_end": None,
        "canceled_at": None,
        "trial_start": None,
        "trial_end": None,
        "stripe_subscription_id": None,
    }


def _status_of(sub: Subscription) -> Dict[str, Any]:
    return {
        "plan": sub.plan.to_dict() if sub.plan else None,
        "status": sub.status,
        "is_active": sub.is_active,
        "cancel_at_period_end": bool(sub.cancel_at_period_end),
        "current_period_start": _iso(sub.current_period_start),
        "current_period_end": _iso(sub.current_period_end),
        "canceled_at": _iso(sub.canceled_at),
        "trial_start": _iso(sub.trial_start),
        "trial_end": _iso(sub.trial_end),
        "stripe_subscription_id": sub.stripe_subscription_id,
    }


def subscription_status(user_id: int) -> Dict[str, Any]:
    """Current plan/status for a user; the free shape when they never subscribed."""
    sub = store.find_subscription_for_user(user_id)
    if sub is None:
        return _free_status()
    return _status_of(sub)


def cancel(user_id: int, gateway: StripeGateway, *, immediate: bool = False) -> Dict[str, Any]:
    sub = store.find_subscription_for_user(user_id)
    if sub is None or sub.status not in LIVE_STATUSES:
        raise BillingStateError("No active subscription to cancel")
    if not immediate and sub.cancel_at_period_end:
        raise BillingStateError("Subscription is already set to cancel at period end", status_code=409)

    ext_id, plan_id, status = sub.stripe_subscription_id, sub.plan_id, sub.status

    store.close_read_transaction()
    if immediate:
        remote = gateway.cancel_subscription(ext_id)
        canceled_at = to_dt(remote.get("canceled_at")) or datetime.now(timezone.utc)
        with store.unit_of_work():
            store.update_subscription(ext_id, status="canceled", canceled_at=canceled_at, cancel_at_period_end=False)
            store.mirror_user(user_id, status="canceled")
            event_log.append(
                user_id=user_id,
                event_type="subscription_canceled_immediately",
                plan_id=plan_id,
                status="canceled",
                stripe_subscription_id=ext_id,
                payload={"canceled_at": _iso(canceled_at)},
            )
    else:
        remote = SubscriptionSnapshot.from_stripe(gateway.set_cancel_at_period_end(ext_id, True))
        with store.unit_of_work():
            store.update_subscription(ext_id, cancel_at_period_end=True)
            event_log.append(
                user_id=user_id,
                event_type="subscription_canceled_at_period_end",
                plan_id=plan_id,
                status=status,
                stripe_subscription_id=ext_id,
                payload={"current_period_end": _iso(remote.current_period_end)},
            )

    _log("subscription_cancel_requested", user_id=user_id, subscription_id=ext_id, immediate=immediate)
    return subscription_status(user_id)


def reactivate(user_id: int, gateway: StripeGateway) -> Dict[str, Any]:
    """
    Undo a pending cancellation, or start a fresh provider subscription on the
    same plan when the old one is already terminated at Stripe.
    """
    sub = store.find_subscription_for_user(user_id)
    if sub is None:
        raise BillingStateError("No subscription to reactivate")
    if sub.status != "canceled" and not sub.cancel_at_period_end:
        raise BillingStateError("Subscription is already active", status_code=409)

    ext_id = sub.stripe_subscription_id
    plan_id = sub.plan_id
    price_id = sub.plan.stripe_price_id if sub.plan else None
    customer_id = sub.stripe_customer_id
    if not customer_id:
        user = store.find_user(user_id)
        customer_id = user.stripe_customer_id if user else None

    store.close_read_transaction()
    remote = SubscriptionSnapshot.from_stripe(gateway.retrieve_subscription(ext_id))
    # Terminated at Stripe: reactivation needs a new subscription
    created = remote.status in TERMINAL_STATUSES

    if created:
        if not price_id or not customer_id:
            raise BillingStateError("Plan is no longer available for purchase")
        remote = SubscriptionSnapshot.from_stripe(gateway.create_subscription(
            customer_id=customer_id,
            price_id=price_id,
            metadata={"user_id": str(user_id), "plan_id": str(plan_id), "replaces": ext_id},
        ))
    else:
        remote = SubscriptionSnapshot.from_stripe(gateway.set_cancel_at_period_end(ext_id, False))

    status = remote.status if remote.status in SUBSCRIPTION_STATUSES else "active"
    new_ext_id = remote.id or ext_id
    with store.unit_of_work():
        store.upsert_subscription(
            user_id=user_id,
            stripe_subscription_id=new_ext_id,
            status=status,
            plan_id=plan_id,
            stripe_customer_id=remote.customer_id or customer_id,
            current_period_start=remote.current_period_start,
            current_period_end=remote.current_period_end,
            cancel_at_period_end=False,
            canceled_at=None,
            replace_live=created,
        )
        store.mirror_user(user_id, status=status, plan_id=plan_id)
        event_log.append(
            user_id=user_id,
            event_type="subscription_reactivated",
            plan_id=plan_id,
            status=status,
            stripe_subscription_id=new_ext_id,
            payload={"new_subscription_created": created, "previous_subscription_id": ext_id},
        )

    _log("subscription_reactivated", user_id=user_id, subscription_id=new_ext_id, new_subscription_created=created)
    return subscription_status(user_id)


def change_plan(user_id: int, new_plan_id: int, gateway: StripeGateway) -> Dict[str, Any]:
    """
    Move a live subscription onto another catalog plan. Stripe swaps the item
    price with prorations; the mirror follows once that succeeds.
    """
    sub = store.find_subscription_for_user(user_id)
    if sub is None or sub.status not in LIVE_STATUSES:
        raise BillingStateError("No active subscription to change")
    plan = store.find_plan(new_plan_id)
    if plan is None or not plan.is_active:
        raise BillingStateError("Plan not found", status_code=404)
    if plan.id == sub.plan_id:
        raise BillingStateError("Already subscribed to this plan")
    if not plan.stripe_price_id:
        raise BillingStateError("Plan is not available for online purchase")

    ext_id, old_plan_id, current_status = sub.stripe_subscription_id, sub.plan_id, sub.status
    new_plan_id, price_id = plan.id, plan.stripe_price_id

    store.close_read_transaction()
    remote = SubscriptionSnapshot.from_stripe(gateway.change_price(
        ext_id,
        price_id=price_id,
        metadata={"user_id": str(user_id), "plan_id": str(new_plan_id)},
    ))

    status = remote.status if remote.status in SUBSCRIPTION_STATUSES else current_status
    period = {
        name: value
        for name, value in (("current_period_start", remote.current_period_start),
                            ("current_period_end", remote.current_period_end))
        if value is not None
    }
    with store.unit_of_work():
        store.update_subscription(ext_id, status=status, plan_id=new_plan_id, **period)
        store.mirror_user(user_id, status=status, plan_id=new_plan_id)
        event_log.append(
            user_id=user_id,
            event_type="subscription_plan_changed",
            plan_id=new_plan_id,
            status=status,
            stripe_subscription_id=ext_id,
            payload={"previous_plan_id": old_plan_id, "price_id": price_id},
        )

    _log("subscription_plan_changed", user_id=user_id, subscription_id=ext_id,
         from_plan_id=old_plan_id, to_plan_id=new_plan_id)
    return subscription_status(user_id)


def start_checkout(user_id: int, plan_id: int, gateway: StripeGateway) -> Dict[str, Any]:
    """Create a Stripe Checkout Session for ``plan_id``; returns ``{session_id, url}``."""
    plan = store.find_plan(plan_id)
    if plan is None or not plan.is_active:
        raise BillingStateError("Plan not found", status_code=404)
    if not plan.stripe_price_id:
        raise BillingStateError("Plan is not available for online purchase")

    sub = store.find_subscription_for_user(user_id)
    if sub is not None and sub.status in LIVE_STATUSES:
        # past_due is settled through the billing portal, not a second subscription
        raise BillingStateError("Subscription already active", status_code=409)

    user = store.find_user(user_id)
    if user is None:
        raise BillingStateError("User not found", status_code=404)
    email, name, customer_id = user.email, user.name, user.stripe_customer_id
    price_id, trial_days, plan_id = plan.stripe_price_id, plan.trial_days, plan.id
    status = sub.status if sub is not None else None

    store.close_read_transaction()
    if not customer_id:
        customer_id = gateway.create_customer(email=email, name=name, user_id=user_id)
        with store.unit_of_work():
            store.mirror_user(user_id, customer_id=customer_id)

    session = gateway.create_checkout_session(
        price_id=price_id,
        customer_id=customer_id,
        user_id=user_id,
        plan_id=plan_id,
        trial_days=trial_days,
    )
    with store.unit_of_work():
        event_log.append(
            user_id=user_id,
            event_type="checkout_session_created",
            plan_id=plan_id,
            status=status,
            payload={"checkout_session_id": session.get("id"), "price_id": price_id},
        )

    _log("checkout_session_created", user_id=user_id, plan_id=plan_id, session_id=session.get("id"))
    return {"session_id": session.get("id"), "url": session.get("url")}


def open_portal(user_id: int, gateway: StripeGateway) -> Dict[str, Any]:
    user = store.find_user(user_id)
    if user is None or not user.stripe_customer_id:
        raise BillingStateError("No billing profile for this account", status_code=404)
    customer_id, plan_id, status = user.stripe_customer_id, user.subscription_plan_id, user.subscription_status

    store.close_read_transaction()
    session = gateway.create_portal_session(customer_id=customer_id)
    if not session.get("url"):
        raise BillingStateError("Could not create portal session", status_code=502)

    with store.unit_of_work():
        event_log.append(
            user_id=user_id,
            event_type="billing_portal_accessed",
            plan_id=plan_id,
            status=status,
            payload={"portal_session_id": session.get("id")},
        )
    return {"url": session["url"]}
