from typing import Optional, Dict, Any
from urllib.parse import urljoin
from flask import current_app, render_template
from flask_mail import Message
from app.extensions import mail
import json
import time


def _log_structured(event: str, level: str = "info", **fields):
    """
    Minimal structured log: one JSON object per line.
    (No PII beyond recipient email; keep values simple.)
    """
    payload = {"event": event, **fields}
    getattr(current_app.logger, level)(json.dumps(payload, default=str))


def absolute_url(path: str) -> str:
    base = current_app.config["APP_BASE_URL"].rstrip("/") + "/"
    path = path.lstrip("/")
    return urljoin(base, path)


def send_email(to_email: str, subject: str, template: str, context: Optional[Dict[str, Any]] = None) -> bool:
    """
    template: basename under templates/email/ without extension (e.g., 'trial_ending')
    Renders both HTML and plaintext. Returns True when handed to the mail server.
    """
    context = context or {}
    msg = Message(recipients=[to_email], subject=subject)
    msg.body = render_template(f"email/{template}.txt", **context)
    msg.html = render_template(f"email/{template}.html", **context)

    start = time.perf_counter()
    try:
        mail.send(msg)
    except Exception as ex:
        _log_structured(
            "mail_send",
            level="warning",
            template=template,
            to=to_email.lower(),
            outcome="smtp_error",
            latency_ms=int((time.perf_counter() - start) * 1000),
            smtp_error=str(ex),
        )
        return False

    _log_structured(
        "mail_send",
        template=template,
        to=to_email.lower(),
        subject=subject,
        outcome="sent",
        latency_ms=int((time.perf_counter() - start) * 1000),
    )
    return True


def send_trial_ending_email(user_id: int, snapshot) -> bool:
    """Heads-up sent on customer.subscription.trial_will_end."""
    from app.billing import store

    user = store.find_user(user_id)
    if user is None or not user.email:
        return False

    plan = user.subscription_plan
    trial_end = getattr(snapshot, "trial_end", None)
    cfg = current_app.config
    ctx = {
        "product_name": cfg.get("SITE_NAME"),
        "user_name": user.name or user.email,
        "plan_name": plan.name if plan else None,
        "trial_end": trial_end.strftime("%B %d, %Y") if trial_end else None,
        "action_url": absolute_url("billing"),
        "support_email": cfg.get("SUPPORT_EMAIL"),
    }
    return send_email(
        to_email=user.email,
        subject=f"Your {cfg.get('SITE_NAME')} trial ends soon",
        template="trial_ending",
        context=ctx,
    )
