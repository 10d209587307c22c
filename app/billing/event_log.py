"""
Append-only subscription history and the Stripe delivery ledger.

``append`` only adds to the caller's session and flushes; committing is the
caller's job, so an audit row and the state change it records always land
(or roll back) together.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models import BillingEventLog, SubscriptionEvent


def append(
    *,
    user_id: int,
    event_type: str,
    plan_id: Optional[int] = None,
    status: Optional[str] = None,
    stripe_subscription_id: Optional[str] = None,
    stripe_event_id: Optional[str] = None,
    amount: Optional[Decimal] = None,
    currency: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> SubscriptionEvent:
    entry = SubscriptionEvent(
        user_id=user_id,
        event_type=event_type,
        plan_id=plan_id,
        status=status,
        stripe_subscription_id=stripe_subscription_id,
        stripe_event_id=stripe_event_id,
        amount=amount,
        currency=currency,
        payload=payload or {},
        created_at=datetime.now(timezone.utc),
    )
    db.session.add(entry)
    # Surface constraint violations inside the caller's transaction
    db.session.flush()
    return entry


def _ranged(query, since: Optional[datetime], until: Optional[datetime], limit: Optional[int]):
    if since is not None:
        query = query.filter(SubscriptionEvent.created_at >= since)
    if until is not None:
        query = query.filter(SubscriptionEvent.created_at < until)
    query = query.order_by(SubscriptionEvent.created_at.desc(), SubscriptionEvent.id.desc())
    if limit:
        query = query.limit(limit)
    return query.all()


def events_for_user(user_id: int, *, since: Optional[datetime] = None, until: Optional[datetime] = None,
                    event_type: Optional[str] = None, limit: Optional[int] = 100) -> List[SubscriptionEvent]:
    q = SubscriptionEvent.query.filter(SubscriptionEvent.user_id == user_id)
    if event_type:
        q = q.filter(SubscriptionEvent.event_type == event_type)
    return _ranged(q, since, until, limit)


def events_by_type(event_type: str, *, since: Optional[datetime] = None, until: Optional[datetime] = None,
                   limit: Optional[int] = 100) -> List[SubscriptionEvent]:
    q = SubscriptionEvent.query.filter(SubscriptionEvent.event_type == event_type)
    return _ranged(q, since, until, limit)


# ----- Stripe delivery ledger -----

def record_delivery(*, stripe_event_id: str, event_type: str, payload: Dict[str, Any],
                    signature_valid: bool = True) -> BillingEventLog:
    """Insert (or fetch, on redelivery) the ledger row for a delivery id and commit."""
    log = BillingEventLog.query.filter_by(stripe_event_id=stripe_event_id).first()
    if log is None:
        log = BillingEventLog(
            stripe_event_id=stripe_event_id,
            type=event_type,
            signature_valid=signature_valid,
            payload=payload,
            retries=0,
            created_at=datetime.now(timezone.utc),
        )
        db.session.add(log)
    else:
        log.retries = (log.retries or 0) + 1
    try:
        db.session.commit()
    except IntegrityError:
        # Concurrent first delivery won the insert
        db.session.rollback()
        log = BillingEventLog.query.filter_by(stripe_event_id=stripe_event_id).one()
    return log


def is_processed(log: BillingEventLog) -> bool:
    return log.processed_at is not None


def mark_processed(stripe_event_id: str, *, notes: Optional[str] = None) -> None:
    """Stamp the delivery as processed within the current (uncommitted) transaction."""
    values: Dict[str, Any] = {"processed_at": datetime.now(timezone.utc)}
    if notes:
        values["notes"] = notes[:255]
    db.session.execute(
        update(BillingEventLog.__table__)
        .where(BillingEventLog.stripe_event_id == stripe_event_id)
        .values(**values)
    )


def mark_failed(stripe_event_id: str, error: BaseException) -> None:
    db.session.rollback()
    db.session.execute(
        update(BillingEventLog.__table__)
        .where(BillingEventLog.stripe_event_id == stripe_event_id)
        .values(notes=f"handler_error:{type(error).__name__}"[:255])
    )
    db.session.commit()


def note_delivery(stripe_event_id: str, notes: str) -> None:
    """Annotate a delivery without marking it processed."""
    db.session.rollback()
    db.session.execute(
        update(BillingEventLog.__table__)
        .where(BillingEventLog.stripe_event_id == stripe_event_id)
        .values(notes=notes[:255])
    )
    db.session.commit()
