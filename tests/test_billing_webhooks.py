import json

from app.extensions import db
from app.billing import event_log
from app.models import BillingEventLog, Subscription, SubscriptionEvent, User
from conftest import NEXT_PERIOD_END, PERIOD_END, PERIOD_START, make_event, naive, sign, stripe_subscription


def _seed_active_subscription(app, seed, status="active"):
    with app.app_context():
        db.session.add(Subscription(
            user_id=seed["user_id"], plan_id=seed["plan_id"], stripe_subscription_id="sub_1",
            stripe_customer_id="cus_1", status=status,
            current_period_start=PERIOD_START, current_period_end=PERIOD_END,
        ))
        user = db.session.get(User, seed["user_id"])
        user.subscription_status = status
        user.subscription_plan_id = seed["plan_id"]
        db.session.commit()


def test_webhook_checkout_session_completed_creates_subscription(app, seed, gateway, post_event):
    gateway.subscriptions["sub_1"] = stripe_subscription()
    event = make_event("checkout.session.completed", {
        "id": "cs_1", "mode": "subscription", "customer": "cus_1", "subscription": "sub_1",
        "metadata": {"user_id": str(seed["user_id"]), "plan_id": str(seed["plan_id"])},
        "amount_total": 2900, "currency": "usd",
    })

    resp = post_event(event)
    assert resp.status_code == 200
    assert resp.get_json()["outcome"] == "applied"

    with app.app_context():
        sub = Subscription.query.filter_by(user_id=seed["user_id"]).one()
        assert sub.status == "active"
        assert sub.stripe_subscription_id == "sub_1"
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_1").one()
        assert log.signature_valid is True
        assert log.processed_at is not None


def test_webhook_rejects_bad_signature(app, seed, client):
    body = json.dumps(make_event("invoice.paid", {"id": "in_1", "subscription": "sub_1"}))
    resp = client.post("/webhooks/stripe", data=body,
                       headers={"Stripe-Signature": sign(body, secret="whsec_wrong")})
    assert resp.status_code == 400

    with app.app_context():
        (log,) = BillingEventLog.query.all()
        assert log.signature_valid is False
        assert log.stripe_event_id.startswith("invalid:")
        assert SubscriptionEvent.query.count() == 0


def test_webhook_rejects_missing_signature(client):
    body = json.dumps(make_event("invoice.paid", {"id": "in_1"}))
    resp = client.post("/webhooks/stripe", data=body)
    assert resp.status_code == 400


def test_webhook_without_secret_is_a_server_error(app, post_event):
    app.config["STRIPE_WEBHOOK_SECRET"] = None
    try:
        resp = post_event(make_event("invoice.paid", {"id": "in_1"}))
        assert resp.status_code == 500
    finally:
        app.config["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"


def test_webhook_malformed_event_is_rejected(client):
    body = json.dumps({"type": "invoice.paid", "data": {"object": {}}})
    resp = client.post("/webhooks/stripe", data=body, headers={"Stripe-Signature": sign(body)})
    assert resp.status_code == 400


def test_unknown_event_type_is_acknowledged_without_changes(app, seed, post_event):
    resp = post_event(make_event("customer.updated", {"id": "cus_1"}, ev_id="evt_ignored"))
    assert resp.status_code == 200
    assert resp.get_json()["outcome"] == "ignored"

    with app.app_context():
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_ignored").one()
        assert log.processed_at is not None
        assert log.notes == "ignored"
        assert Subscription.query.count() == 0


def test_duplicate_invoice_delivery_records_one_payment(app, seed, gateway, post_event):
    _seed_active_subscription(app, seed, status="past_due")
    gateway.subscriptions["sub_1"] = stripe_subscription(start=PERIOD_END, end=NEXT_PERIOD_END)
    event = make_event("invoice.payment_succeeded", {
        "id": "in_1", "subscription": "sub_1", "amount_paid": 2900, "currency": "usd",
    }, ev_id="evt_invoice")

    first = post_event(event)
    second = post_event(event)
    assert first.status_code == 200 and second.status_code == 200
    assert second.get_json()["duplicate"] is True

    with app.app_context():
        assert SubscriptionEvent.query.filter_by(event_type="payment_succeeded").count() == 1
        sub = Subscription.query.filter_by(stripe_subscription_id="sub_1").one()
        assert sub.status == "active"
        assert sub.current_period_end == naive(NEXT_PERIOD_END)
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_invoice").one()
        assert log.retries == 1


def test_handler_error_returns_500_and_state_is_untouched(app, seed, gateway, post_event, monkeypatch):
    _seed_active_subscription(app, seed)

    def _boom(**kwargs):
        raise RuntimeError("db hiccup")

    monkeypatch.setattr(event_log, "append", _boom)
    event = make_event("customer.subscription.deleted", stripe_subscription(status="canceled"), ev_id="evt_del")

    resp = post_event(event)
    assert resp.status_code == 500

    with app.app_context():
        sub = Subscription.query.filter_by(stripe_subscription_id="sub_1").one()
        assert sub.status == "active"
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_del").one()
        assert log.processed_at is None
        assert log.notes == "handler_error:RuntimeError"

    # Stripe's retry succeeds once the fault clears
    monkeypatch.undo()
    resp = post_event(event)
    assert resp.status_code == 200
    with app.app_context():
        assert Subscription.query.filter_by(stripe_subscription_id="sub_1").one().status == "canceled"


def test_unresolved_event_is_acknowledged_but_left_open(app, seed, post_event):
    resp = post_event(make_event("invoice.paid", {"id": "in_9", "subscription": "sub_missing"}, ev_id="evt_orphan"))
    assert resp.status_code == 200
    assert resp.get_json()["outcome"] == "unresolved"

    with app.app_context():
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_orphan").one()
        assert log.processed_at is None
        assert log.notes == "unresolved:subscription_not_found"
