"""
Local persistence primitives for the billing engine.

All subscription writes are single statements keyed on
``stripe_subscription_id`` so concurrent deliveries of the same event can't
interleave a read and a write. Nothing here commits except ``unit_of_work``.
"""
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.extensions import db
from app.models import LIVE_STATUSES, TERMINAL_STATUSES, Subscription, SubscriptionPlan, User
from . import event_log
from .errors import ResolutionError

_UNSET = object()

# Columns an upsert may overwrite; user_id is fixed once a row exists
_MUTABLE_COLUMNS = (
    "plan_id",
    "stripe_customer_id",
    "status",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "canceled_at",
    "trial_start",
    "trial_end",
)


@contextmanager
def unit_of_work(stripe_event_id: Optional[str] = None) -> Iterator[Session]:
    """
    One local transaction. Commits on clean exit (stamping the Stripe delivery
    as processed when given), rolls back everything on any exception.
    """
    session = db.session
    try:
        yield session
        if stripe_event_id:
            event_log.mark_processed(stripe_event_id)
        session.commit()
    except Exception:
        session.rollback()
        raise


def close_read_transaction() -> None:
    """End the implicit read transaction before a network call."""
    db.session.commit()


# ----- lookups -----

def find_user(user_id: Optional[int]) -> Optional[User]:
    if not user_id:
        return None
    return db.session.get(User, int(user_id), populate_existing=True)


def find_user_by_customer(customer_id: Optional[str]) -> Optional[User]:
    if not customer_id:
        return None
    return User.query.filter_by(stripe_customer_id=customer_id).first()


def find_subscription(stripe_subscription_id: Optional[str]) -> Optional[Subscription]:
    if not stripe_subscription_id:
        return None
    return (
        Subscription.query.filter_by(stripe_subscription_id=stripe_subscription_id)
        .execution_options(populate_existing=True)
        .first()
    )


def find_subscription_for_user(user_id: int) -> Optional[Subscription]:
    return (
        Subscription.query.filter_by(user_id=user_id)
        .execution_options(populate_existing=True)
        .first()
    )


def find_plan(plan_id: Optional[int]) -> Optional[SubscriptionPlan]:
    if not plan_id:
        return None
    return db.session.get(SubscriptionPlan, int(plan_id))


def find_plan_by_price(price_id: Optional[str]) -> Optional[SubscriptionPlan]:
    if not price_id:
        return None
    return SubscriptionPlan.query.filter_by(stripe_price_id=price_id).first()


def resolve_plan(plan_id_hint: Optional[int], price_id: Optional[str]) -> SubscriptionPlan:
    """
    Explicit plan id from metadata wins; otherwise the catalog lookup by
    Stripe price. Never returns a dangling reference.
    """
    plan = find_plan(plan_id_hint)
    if plan is not None:
        return plan
    plan = find_plan_by_price(price_id)
    if plan is not None:
        return plan
    raise ResolutionError("plan_not_found", plan_id=plan_id_hint, price_id=price_id)


# ----- writes -----

def _insert_for_dialect():
    dialect = db.session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Subscription upsert not supported on dialect {dialect!r}")
    return insert


def upsert_subscription(*, user_id: int, stripe_subscription_id: str, status: str,
                        replace_live: bool = False, **values: Any) -> None:
    """
    Insert-or-update the user's mirror keyed by ``stripe_subscription_id``.

    A user keeps at most one mirror row. If their row carries a different
    external id (new checkout after termination, reactivation), it is
    re-pointed to the new id first, in the same transaction. A terminal
    subscription never takes over the row, and a live row is only replaced
    when ``replace_live`` is set (the provider confirmed the old one ended).
    Raises ResolutionError("superseded_subscription") otherwise.
    """
    unknown = set(values) - set(_MUTABLE_COLUMNS)
    if unknown:
        raise TypeError(f"Unknown subscription columns: {sorted(unknown)}")

    session = db.session
    table = Subscription.__table__
    current = session.execute(
        select(table.c.stripe_subscription_id, table.c.status).where(table.c.user_id == user_id)
    ).first()
    if current is not None and current.stripe_subscription_id != stripe_subscription_id:
        if status in TERMINAL_STATUSES or (current.status in LIVE_STATUSES and not replace_live):
            raise ResolutionError(
                "superseded_subscription",
                user_id=user_id,
                subscription_id=stripe_subscription_id,
                current_subscription_id=current.stripe_subscription_id,
                current_status=current.status,
            )
        session.execute(
            update(table)
            .where(table.c.user_id == user_id)
            .values(stripe_subscription_id=stripe_subscription_id, updated_at=func.now())
        )

    row: Dict[str, Any] = {
        "user_id": user_id,
        "stripe_subscription_id": stripe_subscription_id,
        "status": status,
        **values,
    }
    insert = _insert_for_dialect()
    stmt = insert(Subscription.__table__).values(**row)
    overwrite = {name: stmt.excluded[name] for name in ("status", *values)}
    overwrite["updated_at"] = func.now()
    session.execute(
        stmt.on_conflict_do_update(index_elements=["stripe_subscription_id"], set_=overwrite)
    )


def update_subscription(stripe_subscription_id: str, **values: Any) -> int:
    """Overwrite fields on an existing mirror row; returns rows matched."""
    unknown = set(values) - set(_MUTABLE_COLUMNS)
    if unknown:
        raise TypeError(f"Unknown subscription columns: {sorted(unknown)}")
    result = db.session.execute(
        update(Subscription.__table__)
        .where(Subscription.stripe_subscription_id == stripe_subscription_id)
        .values(updated_at=func.now(), **values)
    )
    return result.rowcount


def mirror_user(user_id: int, *, status: Any = _UNSET, plan_id: Any = _UNSET,
                customer_id: Optional[str] = None) -> None:
    """Copy subscription status/plan onto the user's denormalized columns."""
    values: Dict[str, Any] = {"updated_at": func.now()}
    if status is not _UNSET:
        values["subscription_status"] = status
    if plan_id is not _UNSET:
        values["subscription_plan_id"] = plan_id
    if customer_id:
        values["stripe_customer_id"] = customer_id
    db.session.execute(update(User.__table__).where(User.id == user_id).values(**values))
