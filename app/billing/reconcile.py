"""
Stripe → local subscription reconciliation.

Every handler follows the same shape:

1. resolve the local anchor (user or subscription mirror); unresolved → no-op
2. resolve the plan (metadata plan id, else catalog lookup by Stripe price)
3. fetch authoritative provider state *before* opening the local transaction
4. apply mirror upsert + user mirror + audit row + delivery stamp in one
   ``unit_of_work``; any failure rolls all of it back and propagates

Handlers are safe to re-run: state writes are overwrites, never increments.
"""
import json
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Type

from flask import current_app

from app.models import SUBSCRIPTION_STATUSES
from app.services.billing import StripeGateway
from . import event_log, store
from .errors import BillingProviderError, ResolutionError
from .events import (
    BillingEvent,
    CheckoutCompleted,
    IgnoredEvent,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    TrialWillEnd,
    add_months,
)

APPLIED = "applied"
IGNORED = "ignored"
UNRESOLVED = "unresolved"

# Invoice-level outcomes never downgrade on a single retryable decline
_RECOVERABLE_ON_PAYMENT = frozenset({"past_due", "unpaid"})


def _log(event: str, **fields) -> None:
    current_app.logger.info(json.dumps({"event": event, **fields}, default=str))


def _warn(event: str, **fields) -> None:
    current_app.logger.warning(json.dumps({"event": event, **fields}, default=str))


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


class ReconciliationEngine:
    """Applies typed Stripe events to local users/subscriptions."""

    def __init__(self, gateway: StripeGateway, *, fallback_period_months: int = 1,
                 on_trial_will_end: Optional[Callable[[int, SubscriptionSnapshot], None]] = None):
        self.gateway = gateway
        self.fallback_period_months = fallback_period_months
        self.on_trial_will_end = on_trial_will_end
        self._handlers: Dict[Type, Callable[[BillingEvent], str]] = {
            CheckoutCompleted: self.checkout_completed,
            InvoicePaid: self.invoice_paid,
            InvoicePaymentFailed: self.invoice_payment_failed,
            SubscriptionChanged: self.subscription_changed,
            SubscriptionDeleted: self.subscription_deleted,
            TrialWillEnd: self.trial_will_end,
        }

    @classmethod
    def from_app(cls, gateway: StripeGateway) -> "ReconciliationEngine":
        from app.services.email import send_trial_ending_email

        cfg = current_app.config
        return cls(
            gateway,
            fallback_period_months=int(cfg.get("BILLING_FALLBACK_PERIOD_MONTHS") or 1),
            on_trial_will_end=send_trial_ending_email if cfg.get("BILLING_TRIAL_EMAILS", True) else None,
        )

    def apply(self, event: BillingEvent) -> str:
        """
        Returns APPLIED, IGNORED or UNRESOLVED. Infrastructure and provider
        errors propagate so the delivery is retried.
        """
        handler = self._handlers.get(type(event))
        if handler is None:
            _log("stripe_event_ignored", event_id=event.event_id, type=getattr(event, "type", None))
            self._close_without_change(event.event_id, notes="ignored")
            return IGNORED
        try:
            return handler(event)
        except ResolutionError as e:
            _warn("stripe_event_unresolved", event_id=event.event_id,
                  kind=type(event).__name__, reason=e.reason, **e.context)
            # Left unstamped so a manual resend can apply once the data exists
            event_log.note_delivery(event.event_id, f"unresolved:{e.reason}")
            return UNRESOLVED

    def _close_without_change(self, stripe_event_id: str, *, notes: str) -> None:
        with store.unit_of_work():
            event_log.mark_processed(stripe_event_id, notes=notes)

    # ----- provider lookups (outside any local transaction) -----

    def _fetch_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        store.close_read_transaction()
        return SubscriptionSnapshot.from_stripe(self.gateway.retrieve_subscription(subscription_id))

    # ----- handlers -----

    def checkout_completed(self, ev: CheckoutCompleted) -> str:
        if ev.mode and ev.mode != "subscription":
            raise ResolutionError("not_a_subscription_checkout", session_id=ev.session_id, mode=ev.mode)
        if not ev.subscription_id:
            raise ResolutionError("missing_subscription_id", session_id=ev.session_id)

        user = store.find_user(ev.user_id_hint) or store.find_user_by_customer(ev.customer_id)
        if user is None:
            raise ResolutionError("user_not_found", user_id=ev.user_id_hint, customer_id=ev.customer_id)
        user_id = user.id

        snapshot: Optional[SubscriptionSnapshot] = None
        try:
            snapshot = self._fetch_subscription(ev.subscription_id)
        except BillingProviderError as e:
            # Degraded mode: mirror the checkout with a default period
            _warn("stripe_subscription_fetch_failed", event_id=ev.event_id,
                  subscription_id=ev.subscription_id, error=str(e))

        now = datetime.now(timezone.utc)
        if snapshot is not None and snapshot.current_period_end:
            period_start, period_end = snapshot.current_period_start or now, snapshot.current_period_end
        else:
            period_start, period_end = now, add_months(now, self.fallback_period_months)

        with store.unit_of_work(ev.event_id):
            plan_id = store.resolve_plan(ev.plan_id_hint or (snapshot and snapshot.plan_id_hint),
                                         snapshot.price_id if snapshot else None).id
            customer_id = ev.customer_id or (snapshot.customer_id if snapshot else None)
            store.upsert_subscription(
                user_id=user_id,
                stripe_subscription_id=ev.subscription_id,
                status="active",
                plan_id=plan_id,
                stripe_customer_id=customer_id,
                current_period_start=period_start,
                current_period_end=period_end,
                cancel_at_period_end=bool(snapshot and snapshot.cancel_at_period_end),
                canceled_at=None,
                trial_start=snapshot.trial_start if snapshot else None,
                trial_end=snapshot.trial_end if snapshot else None,
            )
            store.mirror_user(user_id, status="active", plan_id=plan_id, customer_id=customer_id)
            event_log.append(
                user_id=user_id,
                event_type="checkout_completed",
                plan_id=plan_id,
                status="active",
                stripe_subscription_id=ev.subscription_id,
                stripe_event_id=ev.event_id,
                amount=ev.amount_total,
                currency=ev.currency,
                payload={
                    "checkout_session_id": ev.session_id,
                    "customer_id": customer_id,
                    "current_period_end": _iso(period_end),
                    "degraded": snapshot is None,
                },
            )

        _log("subscription_checkout_completed", user_id=user_id, plan_id=plan_id,
             subscription_id=ev.subscription_id)
        return APPLIED

    def invoice_paid(self, ev: InvoicePaid) -> str:
        if not ev.subscription_id:
            raise ResolutionError("invoice_without_subscription", invoice_id=ev.invoice_id)
        # This event presumes prior creation; it never creates a mirror row
        if store.find_subscription(ev.subscription_id) is None:
            raise ResolutionError("subscription_not_found", subscription_id=ev.subscription_id)

        snapshot = self._fetch_subscription(ev.subscription_id)

        with store.unit_of_work(ev.event_id):
            sub = store.find_subscription(ev.subscription_id)
            if sub is None:
                raise ResolutionError("subscription_not_found", subscription_id=ev.subscription_id)
            user_id, previous = sub.user_id, sub.status
            status = "active" if previous in _RECOVERABLE_ON_PAYMENT else previous
            period_end = snapshot.current_period_end or ev.period_end or sub.current_period_end
            store.update_subscription(
                ev.subscription_id,
                status=status,
                current_period_start=snapshot.current_period_start or sub.current_period_start,
                current_period_end=period_end,
            )
            store.mirror_user(user_id, status=status)
            event_log.append(
                user_id=user_id,
                event_type="payment_succeeded",
                plan_id=sub.plan_id,
                status=status,
                stripe_subscription_id=ev.subscription_id,
                stripe_event_id=ev.event_id,
                amount=ev.amount_paid,
                currency=ev.currency,
                payload={
                    "invoice_id": ev.invoice_id,
                    "previous_status": previous,
                    "current_period_end": _iso(period_end),
                },
            )

        _log("subscription_payment_succeeded", user_id=user_id, subscription_id=ev.subscription_id,
             status=status)
        return APPLIED

    def invoice_payment_failed(self, ev: InvoicePaymentFailed) -> str:
        if not ev.subscription_id:
            raise ResolutionError("invoice_without_subscription", invoice_id=ev.invoice_id)

        with store.unit_of_work(ev.event_id):
            sub = store.find_subscription(ev.subscription_id)
            if sub is None:
                raise ResolutionError("subscription_not_found", subscription_id=ev.subscription_id)
            user_id, previous = sub.user_id, sub.status
            # Stripe retries declines internally; only an explicit past_due invoice flips state
            status = "past_due" if ev.invoice_status == "past_due" else previous
            if status != previous:
                store.update_subscription(ev.subscription_id, status=status)
                store.mirror_user(user_id, status=status)
            event_log.append(
                user_id=user_id,
                event_type="payment_failed",
                plan_id=sub.plan_id,
                status=status,
                stripe_subscription_id=ev.subscription_id,
                stripe_event_id=ev.event_id,
                amount=ev.amount_due,
                currency=ev.currency,
                payload={
                    "invoice_id": ev.invoice_id,
                    "invoice_status": ev.invoice_status,
                    "attempt_count": ev.attempt_count,
                    "previous_status": previous,
                },
            )

        _log("subscription_payment_failed", user_id=user_id, subscription_id=ev.subscription_id,
             invoice_status=ev.invoice_status, status=status)
        return APPLIED

    def subscription_changed(self, ev: SubscriptionChanged) -> str:
        snap = ev.subscription
        if snap.status not in SUBSCRIPTION_STATUSES:
            raise ResolutionError("unknown_status", subscription_id=snap.id, status=snap.status)

        with store.unit_of_work(ev.event_id):
            existing = store.find_subscription(snap.id)
            if existing is not None:
                user_id = existing.user_id
                try:
                    plan_id = store.resolve_plan(snap.plan_id_hint, snap.price_id).id
                except ResolutionError:
                    # Keep the mirrored plan rather than dropping the update
                    plan_id = existing.plan_id
                event_type = "subscription_updated"
            else:
                # Update-before-create: treat as creation
                user = store.find_user_by_customer(snap.customer_id) or store.find_user(snap.user_id_hint)
                if user is None:
                    raise ResolutionError("user_not_found", customer_id=snap.customer_id,
                                          user_id=snap.user_id_hint)
                user_id = user.id
                plan_id = store.resolve_plan(snap.plan_id_hint, snap.price_id).id
                event_type = "subscription_created"

            store.upsert_subscription(
                user_id=user_id,
                stripe_subscription_id=snap.id,
                status=snap.status,
                plan_id=plan_id,
                stripe_customer_id=snap.customer_id,
                current_period_start=snap.current_period_start,
                current_period_end=snap.current_period_end,
                cancel_at_period_end=snap.cancel_at_period_end,
                canceled_at=snap.canceled_at,
                trial_start=snap.trial_start,
                trial_end=snap.trial_end,
            )
            store.mirror_user(user_id, status=snap.status, plan_id=plan_id, customer_id=snap.customer_id)
            event_log.append(
                user_id=user_id,
                event_type=event_type,
                plan_id=plan_id,
                status=snap.status,
                stripe_subscription_id=snap.id,
                stripe_event_id=ev.event_id,
                payload={
                    "cancel_at_period_end": snap.cancel_at_period_end,
                    "current_period_end": _iso(snap.current_period_end),
                    "price_id": snap.price_id,
                },
            )

        _log("subscription_synced", user_id=user_id, subscription_id=snap.id,
             status=snap.status, kind=event_type)
        return APPLIED

    def subscription_deleted(self, ev: SubscriptionDeleted) -> str:
        snap = ev.subscription
        canceled_at = snap.canceled_at or datetime.now(timezone.utc)

        with store.unit_of_work(ev.event_id):
            sub = store.find_subscription(snap.id)
            if sub is None:
                raise ResolutionError("subscription_not_found", subscription_id=snap.id)
            store.update_subscription(
                snap.id,
                status="canceled",
                canceled_at=canceled_at,
                cancel_at_period_end=False,
            )
            store.mirror_user(sub.user_id, status="canceled")
            event_log.append(
                user_id=sub.user_id,
                event_type="subscription_canceled",
                plan_id=sub.plan_id,
                status="canceled",
                stripe_subscription_id=snap.id,
                stripe_event_id=ev.event_id,
                payload={"canceled_at": _iso(canceled_at)},
            )
            user_id = sub.user_id

        _log("subscription_canceled", user_id=user_id, subscription_id=snap.id)
        return APPLIED

    def trial_will_end(self, ev: TrialWillEnd) -> str:
        snap = ev.subscription
        with store.unit_of_work(ev.event_id):
            sub = store.find_subscription(snap.id)
            if sub is None:
                raise ResolutionError("subscription_not_found", subscription_id=snap.id)
            event_log.append(
                user_id=sub.user_id,
                event_type="trial_will_end",
                plan_id=sub.plan_id,
                status=sub.status,
                stripe_subscription_id=snap.id,
                stripe_event_id=ev.event_id,
                payload={"trial_end": _iso(snap.trial_end)},
            )
            user_id = sub.user_id

        _log("subscription_trial_will_end", user_id=user_id, subscription_id=snap.id,
             trial_end=_iso(snap.trial_end))
        if self.on_trial_will_end is not None:
            # Notification only; the audit row is already committed
            try:
                self.on_trial_will_end(user_id, snap)
            except Exception:
                current_app.logger.exception("billing.trial_will_end.notify_failed")
        return APPLIED
