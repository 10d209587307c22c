from functools import wraps
from typing import Callable
from flask import jsonify
from flask_login import current_user
from app.models import ACTIVE_STATUSES


def has_active_subscription(user) -> bool:
    """Reads the user's denormalized mirror; the billing engine keeps it current."""
    return bool(user is not None and getattr(user, "subscription_status", None) in ACTIVE_STATUSES)


def require_active_subscription(fn: Callable):
    """
    Gate a view on a paid subscription.
    Allowed: active, trialing. Everything else (past_due, canceled, no sub) gets a JSON 403.
    """
    @wraps(fn)
    def _wrap(*args, **kwargs):
        if not getattr(current_user, "is_authenticated", False):
            return jsonify({"error": "unauthorized", "code": 401}), 401
        if not has_active_subscription(current_user):
            return jsonify({"error": "subscription_required", "code": 403}), 403
        return fn(*args, **kwargs)
    return _wrap
