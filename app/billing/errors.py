class BillingError(Exception):
    """Base class for billing/subscription failures."""


class SignatureError(BillingError):
    """Webhook payload failed Stripe signature verification."""


class ResolutionError(BillingError):
    """The local anchor (user/subscription) or plan for an event could not be found.

    Not retryable: the engine logs it and acknowledges the event; a later
    lifecycle event is expected to heal the local state.
    """

    def __init__(self, reason: str, **context):
        super().__init__(reason)
        self.reason = reason
        self.context = context


class BillingStateError(BillingError):
    """A user-initiated action isn't allowed in the subscription's current state."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class BillingProviderError(BillingError):
    """A Stripe API call failed; local state was left untouched."""

    def __init__(self, operation: str, original: Exception):
        super().__init__(f"{operation} failed: {getattr(original, 'user_message', None) or original}")
        self.operation = operation
        self.original = original
