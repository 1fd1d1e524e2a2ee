"""Webhooks blueprint — /webhooks/*

Receives notifications from the payment provider (Stripe) and the
fulfillment provider (Printful). Both must get a fast answer: the providers
retry on non-2xx or timeout.

Route Map:
  POST /webhooks/payment                 — Stripe, Stripe-Signature header
  POST /webhooks/payment/<token>         — Stripe, URL-embedded shared secret
  POST /webhooks/fulfillment/<token>     — Printful, path-embedded secret

Responses: 200 on ingestion (duplicates and no-ops included), 401 on a bad
signature or token, 400 on a malformed payload.
"""

import hmac
import json
import logging

import stripe
from flask import Blueprint, current_app, jsonify, request

from app.extensions import payment_client
from app.services.fulfillment_webhook_service import (
    InvalidPayload,
    handle_fulfillment_event,
    parse_payload,
)
from app.services.payment_webhook_service import handle_payment_event

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


def _token_matches(token, expected):
    if not expected or not token:
        return False
    return hmac.compare_digest(token.encode(), expected.encode())


def _well_formed(event):
    """An event needs an id, a type and a data.object mapping."""
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        return False
    data = event.get("data")
    return isinstance(data, dict) and isinstance(data.get("object"), dict)


def _respond(success, message):
    if success:
        return jsonify({"status": message}), 200
    logger.error(f"Webhook processing failed: {message}")
    return jsonify({"error": "processing_failed"}), 500


@webhooks_bp.route("/payment", methods=["POST"])
def payment_webhook():
    """Receive a signed Stripe event.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET
    3. Pass to handle_payment_event (idempotent via payment_webhook_events)
    4. Return 200 to acknowledge receipt
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Payment webhook received without Stripe-Signature header")
        return jsonify({"error": "Missing signature"}), 401

    try:
        event = payment_client.verify_webhook(payload, sig_header)
    except stripe.error.SignatureVerificationError as e:
        logger.warning(f"Payment webhook signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 401
    except ValueError as e:
        logger.warning(f"Payment webhook payload malformed: {e}")
        return jsonify({"error": "Invalid payload"}), 400

    if not _well_formed(event):
        return jsonify({"error": "Invalid payload"}), 400

    return _respond(*handle_payment_event(event, payload))


@webhooks_bp.route("/payment/<token>", methods=["POST"])
def payment_webhook_token(token):
    """Receive a Stripe event authenticated by a URL-embedded secret."""
    if not _token_matches(token, current_app.config.get("PAYMENT_WEBHOOK_URL_SECRET")):
        logger.warning("Invalid payment webhook token received")
        return jsonify({"error": "Invalid token"}), 401

    payload = request.get_data(as_text=True)
    try:
        event = json.loads(payload)
    except ValueError:
        return jsonify({"error": "Invalid payload"}), 400

    if not _well_formed(event):
        return jsonify({"error": "Invalid payload"}), 400

    return _respond(*handle_payment_event(event, payload))


@webhooks_bp.route("/fulfillment/<token>", methods=["POST"])
def fulfillment_webhook(token):
    """Receive a Printful event. Printful signs nothing; the path token is the auth."""
    expected = current_app.config.get("PRINTFUL_WEBHOOK_SECRET")
    if not expected:
        logger.warning("PRINTFUL_WEBHOOK_SECRET not configured - rejecting webhook")
        return jsonify({"error": "Webhook not configured"}), 401
    if not _token_matches(token, expected):
        logger.warning("Invalid Printful webhook token received")
        return jsonify({"error": "Invalid token"}), 401

    raw_body = request.get_data(as_text=True)
    try:
        payload = parse_payload(raw_body)
    except InvalidPayload as e:
        logger.warning(f"Malformed Printful webhook: {e}")
        return jsonify({"error": "Invalid payload"}), 400

    return _respond(*handle_fulfillment_event(payload, raw_body))
