"""Fulfillment client — all Printful API calls.

Responsible for:
- Submitting paid orders as Printful draft orders
- Confirming drafts so Printful picks them for production
- Fetching the store catalog (to look up sync variant IDs)
- Registering the webhook URL (path-secret authenticated)

Every request goes through the client's own CircuitBreaker. A non-2xx
status, an undecodable body or a transport error is a breaker failure and
surfaces as a typed ProviderError. Nothing here retries; that is the
retry worker's job.
"""

import logging

import requests

from app.services.circuit_breaker import CircuitBreaker
from app.services.provider_errors import PermanentProviderError, TransientProviderError

logger = logging.getLogger(__name__)

PROVIDER = "printful"

# Events the bridge consumes; see app/services/fulfillment_webhook_service.py
WEBHOOK_EVENT_TYPES = ["package_shipped", "order_failed", "order_updated"]


class FulfillmentClient:
    """Printful REST client, bound to the app via init_app()."""

    def __init__(self, app=None):
        self.api_key = None
        self.base_url = None
        self.timeout = 15.0
        self.breaker = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.api_key = app.config.get("PRINTFUL_API_KEY")
        self.base_url = (app.config.get("PRINTFUL_API_URL") or "").rstrip("/")
        self.timeout = app.config.get("PRINTFUL_REQUEST_TIMEOUT", 15.0)
        self.breaker = CircuitBreaker(
            PROVIDER,
            max_failures=app.config.get("BREAKER_MAX_FAILURES", 5),
            reset_timeout=app.config.get("BREAKER_RESET_TIMEOUT", 60),
            half_open_max_requests=app.config.get("BREAKER_HALF_OPEN_MAX_REQUESTS", 1),
        )
        app.extensions["fulfillment_client"] = self

    # ──────────────────────────────────────────────
    # Orders
    # ──────────────────────────────────────────────

    def build_order_request(self, order, items):
        """Map an Order + OrderItems to a Printful order body.

        Raises PermanentProviderError (without any network call) when an
        item has no sync variant ID: Printful can't ship what it can't
        identify, and retrying won't fix it.
        """
        missing = [item.display_name for item in items if not item.fulfillment_variant_id]
        if missing:
            raise PermanentProviderError(
                f"Items missing fulfillment variant id: {', '.join(missing)}",
                provider=PROVIDER,
            )
        if not items:
            raise PermanentProviderError("Order has no items", provider=PROVIDER)
        malformed = [
            f"{item.display_name} ({item.fulfillment_variant_id})"
            for item in items
            if not str(item.fulfillment_variant_id).strip().isdigit()
        ]
        if malformed:
            raise PermanentProviderError(
                f"Fulfillment variant ids must be numeric: {', '.join(malformed)}",
                provider=PROVIDER,
            )

        recipient = {
            "name": order.shipping_name,
            "address1": order.shipping_address1,
            "city": order.shipping_city,
            "country_code": order.shipping_country,
            "zip": order.shipping_zip,
        }
        optional = {
            "address2": order.shipping_address2,
            "state_code": order.shipping_state,
            "email": order.customer_email,
            "phone": order.customer_phone,
        }
        recipient.update({k: v for k, v in optional.items() if v})

        return {
            "external_id": order.id,
            "recipient": recipient,
            "items": [
                {
                    "sync_variant_id": int(item.fulfillment_variant_id),
                    "quantity": item.quantity,
                }
                for item in items
            ],
        }

    def submit_fulfillment_order(self, order, items):
        """Create a draft order. Returns Printful's order ID as a string."""
        body = self.build_order_request(order, items)
        external_id = self.breaker.execute(self._create_draft, body)
        logger.info(f"Printful draft order {external_id} created for order {order.id}")
        return external_id

    def _create_draft(self, body):
        # Runs inside the breaker so a malformed envelope counts as a failure.
        result = self._send("POST", "/orders", json=body)
        external_id = result.get("id") if isinstance(result, dict) else None
        if external_id is None:
            raise TransientProviderError(
                "Printful order response missing result.id",
                provider=PROVIDER,
                detail=str(result)[:2000],
            )
        return str(external_id)

    def confirm_fulfillment_order(self, external_order_id):
        """Confirm a draft order so Printful picks it for production."""
        self._request("POST", f"/orders/{external_order_id}/confirm")
        logger.info(f"Printful order {external_order_id} confirmed")
        return True

    # ──────────────────────────────────────────────
    # Catalog
    # ──────────────────────────────────────────────

    def get_products(self):
        """List store (sync) products."""
        return self._request("GET", "/store/products") or []

    def get_product(self, product_id):
        """Fetch one store product with its sync variants."""
        return self._request("GET", f"/store/products/{product_id}")

    # ──────────────────────────────────────────────
    # Webhook configuration
    # ──────────────────────────────────────────────

    def setup_webhook(self, url, event_types=None):
        return self._request(
            "POST",
            "/webhooks",
            json={"url": url, "types": event_types or WEBHOOK_EVENT_TYPES},
        )

    def get_webhook(self):
        return self._request("GET", "/webhooks")

    def disable_webhook(self):
        return self._request("DELETE", "/webhooks")

    # ──────────────────────────────────────────────
    # Transport
    # ──────────────────────────────────────────────

    def _request(self, method, path, json=None):
        """Issue one authenticated request through the breaker.

        Returns the envelope's `result`.
        """
        return self.breaker.execute(self._send, method, path, json)

    def _send(self, method, path, json=None):
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            resp = requests.request(
                method, url, headers=headers, json=json, timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            raise TransientProviderError(
                f"Printful {method} {path} timed out", provider=PROVIDER, detail=str(e)
            ) from e
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(
                f"Printful {method} {path} failed: {e}", provider=PROVIDER, detail=str(e)
            ) from e

        if not 200 <= resp.status_code < 300:
            raise _error_from_response(method, path, resp)

        try:
            envelope = resp.json()
        except ValueError as e:
            raise TransientProviderError(
                f"Printful {method} {path} returned undecodable body",
                provider=PROVIDER,
                status_code=resp.status_code,
                detail=resp.text[:2000],
            ) from e

        code = envelope.get("code", resp.status_code) if isinstance(envelope, dict) else None
        if not isinstance(code, int) or not 200 <= code < 300:
            raise TransientProviderError(
                f"Printful {method} {path} returned code {code}",
                provider=PROVIDER,
                status_code=resp.status_code,
                detail=resp.text[:2000],
            )

        return envelope.get("result")


def _error_from_response(method, path, resp):
    """Classify a non-2xx Printful response."""
    message = resp.text[:500]
    try:
        body = resp.json()
        error = body.get("error") or {}
        if isinstance(error, dict) and error.get("message"):
            message = error["message"]
        elif isinstance(body.get("result"), str):
            message = body["result"]
    except (ValueError, AttributeError):
        pass

    text = f"Printful {method} {path} returned {resp.status_code}: {message}"
    if resp.status_code >= 500 or resp.status_code in (408, 429):
        cls = TransientProviderError
    else:
        cls = PermanentProviderError
    return cls(text, provider=PROVIDER, status_code=resp.status_code, detail=resp.text[:2000])
