from flask_login import UserMixin
from sqlalchemy import func
from app.extensions import db, login_manager

class User(db.Model, UserMixin):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False)  # case-insensitive unique via index (migration)
    name = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Subscription mirror, written only by the billing engine
    stripe_customer_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    subscription_status = db.Column(db.String(32), nullable=True, index=True)
    subscription_plan_id = db.Column(
        db.Integer, db.ForeignKey("subscription_plans.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    subscription_plan = db.relationship("SubscriptionPlan", lazy="joined")

    def get_id(self) -> str:
        return str(self.id)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} subscription_status={self.subscription_status!r}>"

@login_manager.user_loader
def load_user(user_id: str):
    try:
        return db.session.get(User, int(user_id))
    except Exception:
        return None
