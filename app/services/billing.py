from typing import Dict, Any, Optional
from urllib.parse import urljoin
from flask import current_app
import stripe
from stripe import StripeClient
import hashlib, json

from app.billing.errors import BillingProviderError

EXTENSION_KEY = "billing_gateway"


def as_dict(obj) -> Dict[str, Any]:
    """Stripe objects may need converting to plain dicts."""
    if obj is None:
        return {}
    for attr in ("to_dict_recursive", "to_dict"):
        fn = getattr(obj, attr, None)
        if callable(fn):
            return fn()
    return dict(obj)


def make_idempotency_key(*parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return "checkout:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]

def _params_hash(d: Dict[str, Any]) -> str:
    # Stable across runs if params identical; changes when you change fields
    return hashlib.sha256(json.dumps(d, sort_keys=True, separators=(",", ":")).encode("utf-8")).hexdigest()[:16]


class StripeGateway:
    """
    Thin, injectable wrapper over StripeClient.

    Every call is bounded by ``timeout`` and ``max_network_retries``; any
    ``stripe.StripeError`` is re-raised as BillingProviderError. Return values
    are plain dicts so callers never depend on SDK object types.
    """

    def __init__(self, secret_key: Optional[str], *, base_url: str = "", timeout: float = 10.0,
                 max_network_retries: int = 2, enable_tax: bool = False):
        self._secret_key = secret_key
        self._base_url = (base_url or "").rstrip("/") + "/"
        self._timeout = timeout
        self._max_network_retries = max_network_retries
        self._enable_tax = enable_tax
        self._client: Optional[StripeClient] = None

    @classmethod
    def from_config(cls, config) -> "StripeGateway":
        return cls(
            config.get("STRIPE_SECRET_KEY"),
            base_url=config.get("APP_BASE_URL") or "",
            timeout=float(config.get("STRIPE_TIMEOUT_SECONDS") or 10),
            max_network_retries=int(config.get("STRIPE_MAX_NETWORK_RETRIES") or 0),
            enable_tax=bool(config.get("ENABLE_STRIPE_TAX")),
        )

    @property
    def client(self) -> StripeClient:
        if self._client is None:
            if not self._secret_key:
                raise RuntimeError("STRIPE_SECRET_KEY is not configured")
            self._client = StripeClient(
                self._secret_key,
                http_client=stripe.RequestsClient(timeout=self._timeout),
                max_network_retries=self._max_network_retries,
            )
        return self._client

    def _absolute_url(self, path: str) -> str:
        return urljoin(self._base_url, path.lstrip("/"))

    def _call(self, operation: str, fn, *args, **kwargs) -> Dict[str, Any]:
        try:
            return as_dict(fn(*args, **kwargs))
        except stripe.StripeError as e:
            raise BillingProviderError(operation, e) from e

    # --- subscriptions ---

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._call("subscriptions.retrieve", self.client.subscriptions.retrieve, subscription_id)

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._call("subscriptions.cancel", self.client.subscriptions.cancel, subscription_id)

    def set_cancel_at_period_end(self, subscription_id: str, flag: bool) -> Dict[str, Any]:
        return self._call(
            "subscriptions.update",
            self.client.subscriptions.update,
            subscription_id,
            params={"cancel_at_period_end": bool(flag)},
        )

    def create_subscription(self, *, customer_id: str, price_id: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        params = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": metadata,
        }
        idem = make_idempotency_key("subscription", customer_id, price_id, _params_hash(params))
        return self._call(
            "subscriptions.create",
            self.client.subscriptions.create,
            params=params,
            options={"idempotency_key": idem},
        )

    def change_price(self, subscription_id: str, *, price_id: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        """Swap the subscription's single item onto ``price_id``, prorating the difference."""
        current = self.retrieve_subscription(subscription_id)
        items = (current.get("items") or {}).get("data") or []
        if not items:
            raise BillingProviderError("subscriptions.update", ValueError("subscription has no items"))
        params = {
            "items": [{"id": items[0]["id"], "price": price_id}],
            "proration_behavior": "create_prorations",
            "metadata": metadata,
        }
        idem = make_idempotency_key("plan_change", subscription_id, price_id, _params_hash(params))
        return self._call(
            "subscriptions.update",
            self.client.subscriptions.update,
            subscription_id,
            params=params,
            options={"idempotency_key": idem},
        )

    # --- customers / sessions ---

    def create_customer(self, *, email: str, name: Optional[str], user_id: int) -> str:
        params: Dict[str, Any] = {"email": email, "metadata": {"user_id": str(user_id)}}
        if name:
            params["name"] = name
        customer = self._call("customers.create", self.client.customers.create, params=params)
        return customer["id"]

    def create_checkout_session(self, *, price_id: str, customer_id: str, user_id: int, plan_id: int,
                                trial_days: Optional[int] = None) -> Dict[str, Any]:
        """
        Create a Stripe Checkout Session for a subscription to the given Price.
        Returns: {"id": <session_id>, "url": <redirect_url or None>}
        """
        metadata = {"user_id": str(user_id), "plan_id": str(plan_id)}
        subscription_data: Dict[str, Any] = {"metadata": dict(metadata)}
        if trial_days:
            subscription_data["trial_period_days"] = int(trial_days)

        params: Dict[str, Any] = {
            "mode": "subscription",
            "customer": customer_id,
            "client_reference_id": str(user_id),
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": self._absolute_url("billing/success?session_id={CHECKOUT_SESSION_ID}"),
            "cancel_url": self._absolute_url("billing/cancelled"),
            "automatic_tax": {"enabled": self._enable_tax},
            "allow_promotion_codes": True,
            "billing_address_collection": "required",
            # Webhook context
            "metadata": metadata,
            "subscription_data": subscription_data,
        }
        # Param-aware idempotency: new key whenever Checkout params change
        idem = make_idempotency_key("checkout", "v1", user_id, plan_id, price_id, _params_hash(params))
        session = self._call(
            "checkout.sessions.create",
            self.client.checkout.sessions.create,
            params=params,
            options={"idempotency_key": idem},
        )
        return {"id": session.get("id"), "url": session.get("url")}

    def create_portal_session(self, *, customer_id: str) -> Dict[str, Any]:
        """Create a Stripe Customer Portal session for an existing Customer."""
        params = {
            "customer": customer_id,
            "return_url": self._absolute_url("billing"),
        }
        session = self._call("billing_portal.sessions.create", self.client.billing_portal.sessions.create, params=params)
        return {"id": session.get("id"), "url": session.get("url")}


def init_gateway(app) -> None:
    app.extensions[EXTENSION_KEY] = StripeGateway.from_config(app.config)
    if not app.config.get("STRIPE_SECRET_KEY"):
        app.logger.warning("Stripe secret key missing; billing features will not work")


def get_gateway() -> StripeGateway:
    gateway = current_app.extensions.get(EXTENSION_KEY)
    if gateway is None:
        gateway = StripeGateway.from_config(current_app.config)
        current_app.extensions[EXTENSION_KEY] = gateway
    return gateway
