"""Payment client — all Stripe API calls.

Responsible for:
- Creating hosted Checkout Sessions for an order
- Retrieving completed sessions (authoritative shipping + payment intent)
- Verifying webhook signatures

Network calls go through the client's own CircuitBreaker and carry an
explicit timeout. Stripe SDK errors are translated into the provider error
taxonomy so callers never inspect Stripe exception classes.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal

import stripe

from app.services.circuit_breaker import CircuitBreaker
from app.services.provider_errors import PermanentProviderError, TransientProviderError

logger = logging.getLogger(__name__)

PROVIDER = "stripe"

_TRANSIENT_ERRORS = (
    stripe.error.APIConnectionError,
    stripe.error.RateLimitError,
    stripe.error.APIError,
)


def to_minor_units(amount):
    """Convert a decimal major-unit amount (19.99) to minor units (1999)."""
    cents = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def build_line_items(items, currency="usd"):
    """Map OrderItems to Checkout line items with minor-unit prices."""
    return [
        {
            "price_data": {
                "currency": currency,
                "product_data": {"name": item.display_name},
                "unit_amount": to_minor_units(item.unit_price),
            },
            "quantity": item.quantity,
        }
        for item in items
    ]


def extract_shipping(session):
    """Pull the shipping address out of a Checkout Session.

    Newer Stripe API versions moved shipping_details under
    collected_information; this checks both locations.

    Returns a dict of Order shipping fields, or None.
    """
    details = session.get("shipping_details")
    if not details:
        collected = session.get("collected_information") or {}
        details = collected.get("shipping_details")
    if not details or not details.get("address"):
        return None

    address = details["address"]
    return {
        "shipping_name": details.get("name"),
        "shipping_address1": address.get("line1"),
        "shipping_address2": address.get("line2"),
        "shipping_city": address.get("city"),
        "shipping_state": address.get("state"),
        "shipping_zip": address.get("postal_code"),
        "shipping_country": address.get("country"),
    }


def extract_customer(session):
    """Pull customer email/name/phone out of a Checkout Session."""
    details = session.get("customer_details") or {}
    return {
        "customer_email": details.get("email") or session.get("customer_email"),
        "customer_name": details.get("name"),
        "customer_phone": details.get("phone"),
    }


def extract_payment_intent_id(session):
    """payment_intent is an ID string, or an object when expanded."""
    intent = session.get("payment_intent")
    if isinstance(intent, str) or intent is None:
        return intent
    return intent.get("id")


class PaymentClient:
    """Stripe client, bound to the app via init_app()."""

    def __init__(self, app=None):
        self.api_key = None
        self.webhook_secret = None
        self.success_url = None
        self.cancel_url = None
        self.allowed_countries = []
        self.timeout = 10.0
        self.breaker = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.api_key = app.config.get("STRIPE_SECRET_KEY")
        self.webhook_secret = app.config.get("STRIPE_WEBHOOK_SECRET")
        base_url = app.config.get("APP_BASE_URL", "")
        self.success_url = app.config.get("CHECKOUT_SUCCESS_URL") or f"{base_url}/checkout/success"
        self.cancel_url = app.config.get("CHECKOUT_CANCEL_URL") or f"{base_url}/checkout/cancel"
        self.allowed_countries = app.config.get("SHIPPING_ALLOWED_COUNTRIES", [])
        self.timeout = app.config.get("STRIPE_REQUEST_TIMEOUT", 10.0)
        self.breaker = CircuitBreaker(
            PROVIDER,
            max_failures=app.config.get("BREAKER_MAX_FAILURES", 5),
            reset_timeout=app.config.get("BREAKER_RESET_TIMEOUT", 60),
            half_open_max_requests=app.config.get("BREAKER_HALF_OPEN_MAX_REQUESTS", 1),
        )

        stripe.api_key = self.api_key
        # Retries belong to the retry worker, not the SDK.
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)

        app.extensions["payment_client"] = self

    # ──────────────────────────────────────────────
    # Checkout Sessions
    # ──────────────────────────────────────────────

    def create_payment_session(self, order_id, line_items, shipping_rules=None,
                               customer_email=None):
        """Create a hosted Checkout Session for an order.

        Args:
            line_items:     Checkout line items (see build_line_items).
            shipping_rules: Optional dict with "allowed_countries" and/or
                            "shipping_rates" (Stripe shipping rate IDs).

        Returns the session ID.
        """
        shipping_rules = shipping_rules or {}
        params = {
            "mode": "payment",
            "line_items": line_items,
            "success_url": f"{self.success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": self.cancel_url,
            "client_reference_id": order_id,
            "metadata": {"order_id": order_id},
            "payment_intent_data": {"metadata": {"order_id": order_id}},
            "shipping_address_collection": {
                "allowed_countries": shipping_rules.get(
                    "allowed_countries", self.allowed_countries
                ),
            },
            "phone_number_collection": {"enabled": True},
        }
        if shipping_rules.get("shipping_rates"):
            params["shipping_options"] = [
                {"shipping_rate": rate} for rate in shipping_rules["shipping_rates"]
            ]
        if customer_email:
            params["customer_email"] = customer_email
        else:
            params["customer_creation"] = "always"

        session = self._call(stripe.checkout.Session.create, **params)
        logger.info(f"Checkout session {session['id']} created for order {order_id}")
        return session["id"]

    def get_payment_session(self, session_id):
        """Retrieve a session with payment intent and line items expanded."""
        return self._call(
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["payment_intent", "line_items"],
        )

    # ──────────────────────────────────────────────
    # Webhooks
    # ──────────────────────────────────────────────

    def verify_webhook(self, payload, sig_header):
        """Verify the Stripe-Signature header and construct the event.

        Local HMAC check, no network — not breaker-protected.
        Raises stripe.error.SignatureVerificationError on a bad signature
        and ValueError on an undecodable payload.
        """
        return stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)

    # ──────────────────────────────────────────────
    # Transport
    # ──────────────────────────────────────────────

    def _call(self, fn, *args, **kwargs):
        return self.breaker.execute(self._invoke, fn, *args, **kwargs)

    def _invoke(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except _TRANSIENT_ERRORS as e:
            raise TransientProviderError(
                f"Stripe unavailable: {e}",
                provider=PROVIDER,
                status_code=getattr(e, "http_status", None),
                detail=str(e),
            ) from e
        except stripe.error.StripeError as e:
            raise PermanentProviderError(
                f"Stripe rejected request: {e}",
                provider=PROVIDER,
                status_code=getattr(e, "http_status", None),
                detail=str(e),
            ) from e
