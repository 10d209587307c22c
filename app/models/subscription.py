from sqlalchemy import false, func, text, UniqueConstraint
from app.extensions import db

# Stripe's subscription status vocabulary, mirrored verbatim
SUBSCRIPTION_STATUSES = (
    "active",
    "past_due",
    "canceled",
    "unpaid",
    "incomplete",
    "incomplete_expired",
    "trialing",
    "paused",
)
ACTIVE_STATUSES = frozenset({"active", "trialing"})
# Still billing the customer; a replacement subscription must not displace these
LIVE_STATUSES = frozenset({"active", "trialing", "past_due"})
# Provider states that never resume
TERMINAL_STATUSES = frozenset({"canceled", "incomplete_expired"})

class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plans.id", ondelete="SET NULL"), nullable=True, index=True)

    stripe_subscription_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    stripe_customer_id = db.Column(db.String(64), nullable=True, index=True)

    status = db.Column(db.String(32), nullable=False, index=True, server_default=text("'incomplete'"))
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False, server_default=false())
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_start = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_end = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    plan = db.relationship("SubscriptionPlan", lazy="joined")

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_subscriptions_user_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} user_id={self.user_id} status={self.status!r} stripe_subscription_id={self.stripe_subscription_id!r}>"
