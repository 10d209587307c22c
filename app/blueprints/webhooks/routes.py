import hashlib
import json
from flask import request, jsonify, current_app
from . import bp
from app.extensions import csrf, limiter
from app.billing import event_log
from app.billing.errors import SignatureError
from app.billing.events import decode_event, verify_signature
from app.billing.reconcile import ReconciliationEngine
from app.services.billing import get_gateway


def _log_request(level: str = "info", **fields):
    getattr(current_app.logger, level)(json.dumps({"event": "stripe_webhook", **fields}, default=str))


# ----- Stripe Webhook (subscriptions lifecycle) -----
@csrf.exempt
@limiter.exempt
@bp.post("/stripe")
def stripe_webhook():
    """
    Stripe → /webhooks/stripe
    Verifies signature, records the delivery, reconciles local subscription state.
    200: processed, duplicate or no-op. 400: rejected. 500: failed, Stripe retries.
    """
    # 1) Verify signature
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        _log_request("error", outcome="webhook_secret_missing")
        return jsonify({"error": "webhook_not_configured"}), 500

    raw_bytes = request.get_data(cache=False, as_text=False)
    sig_header = request.headers.get("Stripe-Signature", "")

    try:
        payload = verify_signature(raw_bytes, sig_header, secret)
    except SignatureError as e:
        # Log invalid attempts with a deterministic synthetic id (no payload trust)
        digest = hashlib.sha256(raw_bytes).hexdigest()[:32]
        event_log.record_delivery(
            stripe_event_id=f"invalid:{digest}",
            event_type="signature_invalid",
            payload={},
            signature_valid=False,
        )
        _log_request("warning", signature_valid=False, outcome="rejected", error=str(e))
        return jsonify({"error": "invalid_signature"}), 400

    # 2) Shape check; the signed body is the source of truth
    ev_id = payload.get("id") if isinstance(payload, dict) else None
    ev_type = payload.get("type") if isinstance(payload, dict) else None
    if not ev_id or not ev_type:
        _log_request("warning", signature_valid=True, outcome="malformed")
        return jsonify({"error": "malformed_event"}), 400

    # 3) Delivery ledger + idempotency guard
    log = event_log.record_delivery(stripe_event_id=ev_id, event_type=ev_type, payload=payload)
    retries = log.retries
    if event_log.is_processed(log):
        _log_request(event_id=ev_id, type=ev_type, signature_valid=True, outcome="duplicate")
        return jsonify({"ok": True, "duplicate": True}), 200

    # 4) Reconcile
    try:
        engine = ReconciliationEngine.from_app(get_gateway())
        outcome = engine.apply(decode_event(payload))
    except Exception as e:
        current_app.logger.exception("stripe_webhook_handler_error")
        event_log.mark_failed(ev_id, e)
        _log_request("error", event_id=ev_id, type=ev_type, signature_valid=True,
                     outcome="failed", error=type(e).__name__, retries=retries)
        return jsonify({"error": "processing_failed"}), 500

    _log_request(event_id=ev_id, type=ev_type, signature_valid=True, outcome=outcome, retries=retries)
    return jsonify({"ok": True, "outcome": outcome}), 200
