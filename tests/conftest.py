import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone

import pytest
from app import create_app
from app.extensions import db
from app.billing.errors import BillingProviderError
from app.models import SubscriptionPlan, User

WEBHOOK_SECRET = "whsec_test_secret"


def ts(dt: datetime) -> int:
    return int(dt.timestamp())


def naive(dt: datetime) -> datetime:
    # SQLite hands back naive UTC datetimes
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


PERIOD_START = datetime(2026, 1, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 2, 1, tzinfo=timezone.utc)
NEXT_PERIOD_END = datetime(2026, 3, 1, tzinfo=timezone.utc)


def stripe_subscription(sub_id="sub_1", customer="cus_1", status="active", price_id="price_pro",
                        start=PERIOD_START, end=PERIOD_END, cancel_at_period_end=False,
                        metadata=None, **extra):
    """Stripe-shaped subscription dict (classic API: periods at the top level)."""
    obj = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": ts(start) if start else None,
        "current_period_end": ts(end) if end else None,
        "cancel_at_period_end": cancel_at_period_end,
        "canceled_at": None,
        "trial_start": None,
        "trial_end": None,
        "metadata": metadata or {},
        "items": {"data": [{"id": f"si_{sub_id}", "quantity": 1, "price": {"id": price_id, "product": "prod_pro", "metadata": {}}}]},
    }
    obj.update(extra)
    return obj


def make_event(ev_type, obj, ev_id="evt_1"):
    return {"id": ev_id, "object": "event", "type": ev_type, "data": {"object": obj}}


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    mac = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={mac}"


class FakeGateway:
    """In-memory stand-in for StripeGateway; returns Stripe-shaped dicts."""

    def __init__(self):
        self.subscriptions = {}
        self.calls = []
        self.fail = set()
        self._seq = 0

    def _call(self, operation, **kwargs):
        self.calls.append((operation, kwargs))
        if operation in self.fail:
            raise BillingProviderError(operation, RuntimeError("stripe unavailable"))

    def _next(self, prefix):
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def retrieve_subscription(self, subscription_id):
        self._call("subscriptions.retrieve", subscription_id=subscription_id)
        return dict(self.subscriptions[subscription_id])

    def cancel_subscription(self, subscription_id):
        self._call("subscriptions.cancel", subscription_id=subscription_id)
        sub = self.subscriptions[subscription_id]
        sub.update(status="canceled", canceled_at=int(time.time()))
        return dict(sub)

    def set_cancel_at_period_end(self, subscription_id, flag):
        self._call("subscriptions.update", subscription_id=subscription_id, cancel_at_period_end=flag)
        sub = self.subscriptions[subscription_id]
        sub["cancel_at_period_end"] = bool(flag)
        return dict(sub)

    def create_subscription(self, *, customer_id, price_id, metadata):
        self._call("subscriptions.create", customer_id=customer_id, price_id=price_id, metadata=metadata)
        now = datetime.now(timezone.utc)
        sub = stripe_subscription(self._next("sub_new"), customer=customer_id, price_id=price_id,
                                  start=now, end=now + timedelta(days=30), metadata=metadata)
        self.subscriptions[sub["id"]] = sub
        return dict(sub)

    def change_price(self, subscription_id, *, price_id, metadata):
        self._call("subscriptions.update", subscription_id=subscription_id, price_id=price_id, metadata=metadata)
        sub = self.subscriptions[subscription_id]
        sub["items"]["data"][0]["price"] = {"id": price_id, "product": "prod_pro", "metadata": {}}
        sub["metadata"] = dict(metadata)
        return dict(sub)

    def create_customer(self, *, email, name, user_id):
        self._call("customers.create", email=email, name=name, user_id=user_id)
        return self._next("cus_new")

    def create_checkout_session(self, **kwargs):
        self._call("checkout.sessions.create", **kwargs)
        session_id = self._next("cs_test")
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def create_portal_session(self, *, customer_id):
        self._call("billing_portal.sessions.create", customer_id=customer_id)
        session_id = self._next("bps_test")
        return {"id": session_id, "url": f"https://billing.stripe.test/{session_id}"}


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        SQLALCHEMY_DATABASE_URI="sqlite:///:memory:",
        MAIL_SUPPRESS_SEND=True,
        APP_BASE_URL="http://example.test",
        WTF_CSRF_ENABLED=False,
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        BILLING_TRIAL_EMAILS=False,
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def gateway(app):
    fake = FakeGateway()
    app.extensions["billing_gateway"] = fake
    yield fake


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


@pytest.fixture()
def seed(app):
    """One Pro plan bound to price_pro and one user who is already a Stripe customer."""
    with app.app_context():
        plan = SubscriptionPlan(name="Pro", price=29, currency="usd", billing_cycle="monthly",
                                stripe_price_id="price_pro", trial_days=14, features=["menus", "orders"])
        user = User(email="owner@example.test", name="Owner", stripe_customer_id="cus_1")
        db.session.add_all([plan, user])
        db.session.commit()
        return {"plan_id": plan.id, "user_id": user.id}


@pytest.fixture()
def post_event(client):
    def _post(event, secret=WEBHOOK_SECRET):
        body = json.dumps(event)
        return client.post(
            "/webhooks/stripe",
            data=body,
            headers={"Stripe-Signature": sign(body, secret), "Content-Type": "application/json"},
        )
    return _post


def login(client, user_id):
    with client.session_transaction() as sess:
        sess["_user_id"] = str(user_id)
        sess["_fresh"] = True
