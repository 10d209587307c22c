from flask import Blueprint, request, current_app, jsonify
from flask_login import login_required, current_user
from flask_wtf.csrf import generate_csrf
from app.extensions import csrf, limiter
from app.billing import actions, event_log
from app.billing.errors import BillingProviderError, BillingStateError
from app.services.billing import get_gateway

billing_bp = Blueprint("billing", __name__)


@billing_bp.errorhandler(BillingStateError)
def _state_error(e):
    return jsonify({"error": str(e), "code": e.status_code}), e.status_code


@billing_bp.errorhandler(BillingProviderError)
def _provider_error(e):
    current_app.logger.exception(
        "billing.provider_call_failed",
        extra={"operation": e.operation, "user_id": getattr(current_user, "id", None)},
    )
    user_msg = getattr(e.original, "user_message", None) or "Payment provider unavailable, please try again"
    return jsonify({"error": user_msg, "code": 502}), 502


@csrf.exempt
@billing_bp.get("/api/csrf")
def csrf_token():
    """Token for the JSON POSTs below; send it back as ``X-CSRFToken``."""
    token = generate_csrf()
    resp = jsonify({"csrf_token": token})
    resp.headers["Cache-Control"] = "no-store"
    return resp


@billing_bp.get("/api/status")
@login_required
def status():
    return jsonify(actions.subscription_status(current_user.id))


@billing_bp.post("/api/checkout")
@limiter.limit("10/minute")
@login_required
def checkout():
    data = request.get_json(silent=True) or {}
    try:
        plan_id = int(data.get("plan_id"))
    except (TypeError, ValueError):
        return jsonify({"error": "plan_id is required", "code": 400}), 400

    payload = actions.start_checkout(current_user.id, plan_id, get_gateway())
    if not payload.get("url"):
        return jsonify({"error": "Could not create checkout session", "code": 502}), 502
    return jsonify(payload)


@billing_bp.post("/api/cancel")
@limiter.limit("10/minute")
@login_required
def cancel():
    data = request.get_json(silent=True) or {}
    immediate = bool(data.get("immediate", False))
    return jsonify(actions.cancel(current_user.id, get_gateway(), immediate=immediate))


@billing_bp.post("/api/reactivate")
@limiter.limit("10/minute")
@login_required
def reactivate():
    return jsonify(actions.reactivate(current_user.id, get_gateway()))


@billing_bp.post("/api/change-plan")
@limiter.limit("10/minute")
@login_required
def change_plan():
    data = request.get_json(silent=True) or {}
    try:
        plan_id = int(data.get("plan_id"))
    except (TypeError, ValueError):
        return jsonify({"error": "plan_id is required", "code": 400}), 400
    return jsonify(actions.change_plan(current_user.id, plan_id, get_gateway()))


@billing_bp.post("/api/portal")
@limiter.limit("10/minute")
@login_required
def portal():
    return jsonify(actions.open_portal(current_user.id, get_gateway()))


@billing_bp.get("/api/events")
@login_required
def events():
    """The caller's own subscription history, newest first."""
    limit = max(1, min(request.args.get("limit", default=50, type=int), 200))
    rows = event_log.events_for_user(
        current_user.id,
        event_type=(request.args.get("type") or None),
        limit=limit,
    )
    return jsonify({"events": [row.to_dict() for row in rows]})


# Stripe Checkout redirect targets
@billing_bp.get("/success")
@login_required
def success():
    return jsonify({"ok": True, "session_id": request.args.get("session_id"),
                    "subscription": actions.subscription_status(current_user.id)})


@billing_bp.get("/cancelled")
@login_required
def cancelled():
    return jsonify({"ok": True, "cancelled": True})
