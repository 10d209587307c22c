import json
from decimal import Decimal, InvalidOperation

import click
from flask.cli import with_appcontext

from app.extensions import db
from app.models import SubscriptionPlan
from app.billing import event_log
from app.billing.errors import BillingProviderError, ResolutionError
from app.billing.events import SubscriptionChanged, SubscriptionSnapshot
from app.billing.reconcile import ReconciliationEngine
from app.services.billing import get_gateway


@click.group()
def billing():
    """Subscription ops."""


@billing.command("seed-plan")
@click.option("--name", required=True)
@click.option("--price", required=True, help="Major units, e.g. 29.00")
@click.option("--currency", default="usd", show_default=True)
@click.option("--cycle", "billing_cycle", default="monthly", show_default=True)
@click.option("--stripe-price-id", default=None)
@click.option("--stripe-product-id", default=None)
@click.option("--trial-days", type=int, default=None)
@click.option("--feature", "features", multiple=True, help="Repeatable")
@click.option("--description", default=None)
@with_appcontext
def seed_plan(name, price, currency, billing_cycle, stripe_price_id, stripe_product_id,
              trial_days, features, description):
    """Create a plan, or update the one already bound to --stripe-price-id."""
    try:
        amount = Decimal(price).quantize(Decimal("0.01"))
    except InvalidOperation:
        raise click.ClickException(f"Invalid price: {price!r}")

    plan = None
    if stripe_price_id:
        plan = db.session.query(SubscriptionPlan).filter_by(stripe_price_id=stripe_price_id).one_or_none()
    created = plan is None
    if created:
        plan = SubscriptionPlan(stripe_price_id=stripe_price_id)
        db.session.add(plan)

    plan.name = name
    plan.description = description
    plan.price = amount
    plan.currency = currency.lower()
    plan.billing_cycle = billing_cycle
    plan.stripe_product_id = stripe_product_id
    plan.trial_days = trial_days
    plan.features = list(features)
    plan.is_active = True
    db.session.commit()

    click.echo(f"Plan {'created' if created else 'updated'} id={plan.id} name={plan.name} "
               f"stripe_price_id={plan.stripe_price_id}")


@billing.command("sync")
@click.argument("stripe_subscription_id")
@with_appcontext
def sync(stripe_subscription_id):
    """Pull one subscription from Stripe and overwrite the local mirror."""
    engine = ReconciliationEngine(get_gateway())
    try:
        snapshot = SubscriptionSnapshot.from_stripe(engine.gateway.retrieve_subscription(stripe_subscription_id))
        engine.subscription_changed(SubscriptionChanged(event_id=None, created=False, subscription=snapshot))
    except BillingProviderError as e:
        raise click.ClickException(str(e))
    except ResolutionError as e:
        raise click.ClickException(f"Could not reconcile: {e.reason} {json.dumps(e.context, default=str)}")

    click.echo(f"Synced {stripe_subscription_id} status={snapshot.status} "
               f"period_end={snapshot.current_period_end.isoformat() if snapshot.current_period_end else None}")


@billing.command("events")
@click.option("--user-id", type=int, default=None)
@click.option("--type", "event_type", default=None)
@click.option("--limit", type=int, default=20, show_default=True)
@with_appcontext
def events(user_id, event_type, limit):
    """Tail the subscription event log."""
    if user_id is None and not event_type:
        raise click.UsageError("Pass --user-id and/or --type")
    if user_id is not None:
        rows = event_log.events_for_user(user_id, event_type=event_type, limit=limit)
    else:
        rows = event_log.events_by_type(event_type, limit=limit)
    for row in rows:
        click.echo(json.dumps(row.to_dict(), default=str))


def register_cli(app):
    app.cli.add_command(billing)
