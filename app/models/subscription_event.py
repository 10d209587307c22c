from sqlalchemy import func
from app.extensions import db
from .columns import JSONType

class SubscriptionEvent(db.Model):
    """Append-only subscription history. Rows are never updated or deleted."""
    __tablename__ = "subscription_events"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plans.id", ondelete="SET NULL"), nullable=True)
    status = db.Column(db.String(32), nullable=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=True, index=True)

    # Provider event that produced this row (NULL for user-initiated actions)
    stripe_event_id = db.Column(db.String(255), nullable=True, unique=True)

    amount = db.Column(db.Numeric(12, 2), nullable=True)
    currency = db.Column(db.String(3), nullable=True)
    payload = db.Column(JSONType, nullable=False, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "plan_id": self.plan_id,
            "status": self.status,
            "stripe_subscription_id": self.stripe_subscription_id,
            "amount": float(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "payload": self.payload or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<SubscriptionEvent id={self.id} user_id={self.user_id} event_type={self.event_type!r}>"
