from flask_talisman import Talisman


def init_security(app):
    """
    Production/staging security headers.
    Every response here is JSON or a redirect to Stripe, so the CSP denies
    everything and only the Checkout/Portal hosts are allowed as form targets.
    """
    csp = {
        "default-src": ["'none'"],
        "frame-ancestors": ["'none'"],
        "base-uri": ["'none'"],
        "form-action": ["'self'", "https://checkout.stripe.com", "https://billing.stripe.com"],
    }

    Talisman(
        app,
        content_security_policy=csp,
        force_https=True,
        strict_transport_security=True,
        session_cookie_secure=True,
        frame_options="DENY",
        referrer_policy="no-referrer",
    )
