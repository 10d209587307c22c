from sqlalchemy import func, text
from app.extensions import db
from .columns import JSONType

class SubscriptionPlan(db.Model):
    """Plan catalog row. Owned by admin CRUD; the billing engine only reads it."""
    __tablename__ = "subscription_plans"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Numeric(10, 2), nullable=False, server_default=text("0"))
    currency = db.Column(db.String(3), nullable=False, server_default=text("'usd'"))
    billing_cycle = db.Column(db.String(32), nullable=False, server_default=text("'monthly'"))

    stripe_price_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    stripe_product_id = db.Column(db.String(64), nullable=True, index=True)

    trial_days = db.Column(db.Integer, nullable=True)
    features = db.Column(JSONType, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": float(self.price) if self.price is not None else None,
            "currency": self.currency,
            "billing_cycle": self.billing_cycle,
            "trial_days": self.trial_days,
            "features": list(self.features or []),
        }

    def __repr__(self) -> str:
        return f"<SubscriptionPlan id={self.id} name={self.name!r} stripe_price_id={self.stripe_price_id!r}>"
