import pytest

from app.extensions import db
from app.billing import actions
from app.billing.errors import BillingProviderError, BillingStateError
from app.models import Subscription, SubscriptionEvent, SubscriptionPlan, User
from conftest import PERIOD_END, PERIOD_START, stripe_subscription


def _subscribe(seed, gateway, status="active", cancel_at_period_end=False, remote_status=None):
    db.session.add(Subscription(
        user_id=seed["user_id"], plan_id=seed["plan_id"], stripe_subscription_id="sub_1",
        stripe_customer_id="cus_1", status=status, cancel_at_period_end=cancel_at_period_end,
        current_period_start=PERIOD_START, current_period_end=PERIOD_END,
    ))
    user = db.session.get(User, seed["user_id"])
    user.subscription_status = status
    user.subscription_plan_id = seed["plan_id"]
    db.session.commit()
    gateway.subscriptions["sub_1"] = stripe_subscription(status=remote_status or status,
                                                         cancel_at_period_end=cancel_at_period_end)


def test_status_for_user_without_subscription_is_free(app, seed):
    with app.app_context():
        data = actions.subscription_status(seed["user_id"])
        assert data["status"] == "free"
        assert data["plan"] is None
        assert data["is_active"] is False


def test_status_reports_plan_and_period(app, seed, gateway):
    with app.app_context():
        _subscribe(seed, gateway, status="trialing")
        data = actions.subscription_status(seed["user_id"])
        assert data["status"] == "trialing"
        assert data["is_active"] is True
        assert data["plan"]["name"] == "Pro"
        assert data["current_period_end"].startswith("2026-02-01")


def test_cancel_immediately(app, seed, gateway):
    with app.app_context():
        _subscribe(seed, gateway)
        data = actions.cancel(seed["user_id"], gateway, immediate=True)

        assert data["status"] == "canceled"
        assert data["canceled_at"] is not None
        assert ("subscriptions.cancel", {"subscription_id": "sub_1"}) in gateway.calls
        assert db.session.get(User, seed["user_id"]).subscription_status == "canceled"
        assert SubscriptionEvent.query.filter_by(event_type="subscription_canceled_immediately").count() == 1


def test_cancel_at_period_end_keeps_status(app, seed, gateway):
    with app.app_context():
        _subscribe(seed, gateway)
        data = actions.cancel(seed["user_id"], gateway)

        assert data["status"] == "active"
        assert data["cancel_at_period_end"] is True
        assert gateway.subscriptions["sub_1"]["cancel_at_period_end"] is True
        (ev,) = SubscriptionEvent.query.filter_by(event_type="subscription_canceled_at_period_end").all()
        assert ev.status == "active"


def test_cancel_provider_failure_leaves_local_state_untouched(app, seed, gateway):
    gateway.fail.add("subscriptions.cancel")
    with app.app_context():
        _subscribe(seed, gateway)
        with pytest.raises(BillingProviderError):
            actions.cancel(seed["user_id"], gateway, immediate=True)

        sub = Subscription.query.filter_by(stripe_subscription_id="sub_1").one()
        assert sub.status == "active"
        assert sub.canceled_at is None
        assert db.session.get(User, seed["user_id"]).subscription_status == "active"
        assert SubscriptionEvent.query.count() == 0


def test_cancel_without_live_subscription_is_rejected(app, seed, gateway):
    with app.app_context():
        with pytest.raises(BillingStateError) as exc:
            actions.cancel(seed["user_id"], gateway)
        assert exc.value.status_code == 400

        _subscribe(seed, gateway, status="canceled")
        with pytest.raises(BillingStateError):
            actions.cancel(seed["user_id"], gateway, immediate=True)
        assert gateway.calls == []


def test_reactivate_pending_cancellation_clears_flag(app, seed, gateway):
    with app.app_context():
        _subscribe(seed, gateway, cancel_at_period_end=True)
        data = actions.reactivate(seed["user_id"], gateway)

        assert data["cancel_at_period_end"] is False
        assert data["status"] == "active"
        assert data["stripe_subscription_id"] == "sub_1"
        assert gateway.subscriptions["sub_1"]["cancel_at_period_end"] is False
        (ev,) = SubscriptionEvent.query.filter_by(event_type="subscription_reactivated").all()
        assert ev.payload["new_subscription_created"] is False


def test_reactivate_terminated_subscription_creates_a_new_one(app, seed, gateway):
    with app.app_context():
        _subscribe(seed, gateway, status="canceled")
        data = actions.reactivate(seed["user_id"], gateway)

        new_id = data["stripe_subscription_id"]
        assert new_id != "sub_1"
        assert data["status"] == "active"
        assert Subscription.query.count() == 1

        create_calls = [kw for op, kw in gateway.calls if op == "subscriptions.create"]
        assert create_calls[0]["customer_id"] == "cus_1"
        assert create_calls[0]["price_id"] == "price_pro"

        user = db.session.get(User, seed["user_id"])
        assert user.subscription_status == "active"
        (ev,) = SubscriptionEvent.query.filter_by(event_type="subscription_reactivated").all()
        assert ev.payload["new_subscription_created"] is True
        assert ev.stripe_subscription_id == new_id


def test_reactivate_conflicts_when_already_active(app, seed, gateway):
    with app.app_context():
        _subscribe(seed, gateway)
        with pytest.raises(BillingStateError) as exc:
            actions.reactivate(seed["user_id"], gateway)
        assert exc.value.status_code == 409


def test_checkout_creates_customer_on_first_use(app, gateway):
    with app.app_context():
        plan = SubscriptionPlan(name="Pro", price=29, stripe_price_id="price_pro", trial_days=7, features=[])
        user = User(email="new@example.test", name="New")
        db.session.add_all([plan, user])
        db.session.commit()
        plan_id, user_id = plan.id, user.id

        data = actions.start_checkout(user_id, plan_id, gateway)
        assert data["url"].startswith("https://checkout.stripe.test/")

        user = db.session.get(User, user_id)
        assert user.stripe_customer_id.startswith("cus_new")
        session_kwargs = [kw for op, kw in gateway.calls if op == "checkout.sessions.create"][0]
        assert session_kwargs["customer_id"] == user.stripe_customer_id
        assert session_kwargs["plan_id"] == plan_id
        assert session_kwargs["trial_days"] == 7
        assert SubscriptionEvent.query.filter_by(event_type="checkout_session_created").count() == 1


def test_checkout_rejections(app, seed, gateway):
    with app.app_context():
        with pytest.raises(BillingStateError) as exc:
            actions.start_checkout(seed["user_id"], 9999, gateway)
        assert exc.value.status_code == 404

        free = SubscriptionPlan(name="Free", price=0, features=[])
        db.session.add(free)
        db.session.commit()
        with pytest.raises(BillingStateError) as exc:
            actions.start_checkout(seed["user_id"], free.id, gateway)
        assert exc.value.status_code == 400

        _subscribe(seed, gateway)
        with pytest.raises(BillingStateError) as exc:
            actions.start_checkout(seed["user_id"], seed["plan_id"], gateway)
        assert exc.value.status_code == 409
        assert gateway.calls == []


def test_portal_requires_customer_and_logs_access(app, seed, gateway):
    with app.app_context():
        data = actions.open_portal(seed["user_id"], gateway)
        assert data["url"].startswith("https://billing.stripe.test/")
        assert SubscriptionEvent.query.filter_by(event_type="billing_portal_accessed").count() == 1

        stranger = User(email="nobody@example.test")
        db.session.add(stranger)
        db.session.commit()
        with pytest.raises(BillingStateError) as exc:
            actions.open_portal(stranger.id, gateway)
        assert exc.value.status_code == 404


@pytest.mark.parametrize("failing_call, status, pending", [
    ("subscriptions.retrieve", "canceled", False),
    ("subscriptions.create", "canceled", False),
    ("subscriptions.update", "active", True),
])
def test_reactivate_provider_failure_leaves_local_state_untouched(app, seed, gateway, failing_call, status, pending):
    gateway.fail.add(failing_call)
    with app.app_context():
        _subscribe(seed, gateway, status=status, cancel_at_period_end=pending)
        with pytest.raises(BillingProviderError):
            actions.reactivate(seed["user_id"], gateway)

        (sub,) = Subscription.query.all()
        assert sub.stripe_subscription_id == "sub_1"
        assert sub.status == status
        assert sub.cancel_at_period_end is pending
        assert db.session.get(User, seed["user_id"]).subscription_status == status
        assert SubscriptionEvent.query.filter_by(event_type="subscription_reactivated").count() == 0


def _team_plan():
    team = SubscriptionPlan(name="Team", price=79, stripe_price_id="price_team", features=["seats"])
    db.session.add(team)
    db.session.commit()
    return team.id


def test_change_plan_swaps_price_then_updates_mirror(app, seed, gateway):
    with app.app_context():
        _subscribe(seed, gateway)
        team_id = _team_plan()
        data = actions.change_plan(seed["user_id"], team_id, gateway)

        assert data["plan"]["id"] == team_id
        assert data["status"] == "active"
        assert gateway.subscriptions["sub_1"]["items"]["data"][0]["price"]["id"] == "price_team"
        update_calls = [kw for op, kw in gateway.calls if op == "subscriptions.update"]
        assert update_calls[0]["price_id"] == "price_team"

        assert db.session.get(User, seed["user_id"]).subscription_plan_id == team_id
        (ev,) = SubscriptionEvent.query.filter_by(event_type="subscription_plan_changed").all()
        assert ev.plan_id == team_id
        assert ev.payload["previous_plan_id"] == seed["plan_id"]


def test_change_plan_rejections(app, seed, gateway):
    with app.app_context():
        team_id = _team_plan()
        with pytest.raises(BillingStateError) as exc:
            actions.change_plan(seed["user_id"], team_id, gateway)
        assert exc.value.status_code == 400

        _subscribe(seed, gateway)
        with pytest.raises(BillingStateError) as exc:
            actions.change_plan(seed["user_id"], seed["plan_id"], gateway)
        assert exc.value.status_code == 400

        with pytest.raises(BillingStateError) as exc:
            actions.change_plan(seed["user_id"], 9999, gateway)
        assert exc.value.status_code == 404
        assert gateway.calls == []


def test_change_plan_provider_failure_keeps_old_plan(app, seed, gateway):
    gateway.fail.add("subscriptions.update")
    with app.app_context():
        _subscribe(seed, gateway)
        team_id = _team_plan()
        with pytest.raises(BillingProviderError):
            actions.change_plan(seed["user_id"], team_id, gateway)

        assert Subscription.query.one().plan_id == seed["plan_id"]
        assert db.session.get(User, seed["user_id"]).subscription_plan_id == seed["plan_id"]
        assert SubscriptionEvent.query.count() == 0


def test_checkout_conflicts_while_past_due(app, seed, gateway):
    with app.app_context():
        _subscribe(seed, gateway, status="past_due")
        with pytest.raises(BillingStateError) as exc:
            actions.start_checkout(seed["user_id"], seed["plan_id"], gateway)
        assert exc.value.status_code == 409
        assert gateway.calls == []
