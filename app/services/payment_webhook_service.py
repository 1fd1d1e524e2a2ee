"""Payment webhook service — Stripe event ingestion.

Responsible for:
- Recording every event by its Stripe event ID before processing it
  (the UNIQUE constraint on payment_webhook_events.event_id is the
  idempotency boundary)
- Dispatching to event-specific handlers
- Moving paid orders into fulfillment with one synchronous submission
  attempt; failures fall back to the retryable `paid` state
- Emailing the customer an order confirmation, and an admin when a
  payment fails, is canceled or its checkout expires

Handlers never raise provider errors into the webhook response: every
failure path ends in a stored order state plus an audit row.
"""

import json
import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy.exc import IntegrityError

from app.extensions import db, fulfillment_client, payment_client
from app.models.order import Order, OrderStatus
from app.models.webhook_event import PaymentWebhookEvent
from app.services import order_service
from app.services.payment_client import (
    extract_customer,
    extract_payment_intent_id,
    extract_shipping,
)
from app.services.provider_errors import ProviderError

logger = logging.getLogger(__name__)


def _record_event(event, raw_payload):
    """Insert the event row. Returns (row, is_duplicate).

    A unique-constraint hit on an already processed event means Stripe
    redelivered it. A hit on an unprocessed row means an earlier attempt
    died mid-way; that one is handed back for reprocessing (transitions
    are guarded, so replaying is safe).
    """
    row = PaymentWebhookEvent(
        event_id=event["id"],
        event_type=event["type"],
        payload=raw_payload if isinstance(raw_payload, str) else json.dumps(raw_payload),
    )
    db.session.add(row)
    try:
        db.session.commit()
        return row, False
    except IntegrityError:
        db.session.rollback()

    existing = PaymentWebhookEvent.query.filter_by(event_id=event["id"]).first()
    if existing is None or existing.processed:
        return existing, True

    logger.warning(f"Event {event['id']} was recorded but never finished, reprocessing")
    return existing, False


def handle_payment_event(event, raw_payload=""):
    """Process a verified Stripe event.

    Returns (success: bool, message: str).
    """
    event_id = event["id"]
    event_type = event["type"]

    row, duplicate = _record_event(event, raw_payload)
    if duplicate:
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return True, "already_processed"

    handlers = {
        "checkout.session.completed": _handle_checkout_completed,
        "checkout.session.async_payment_succeeded": _handle_checkout_completed,
        "checkout.session.async_payment_failed": _handle_checkout_payment_failed,
        "checkout.session.expired": _handle_checkout_expired,
        "payment_intent.payment_failed": _handle_payment_intent_failed,
        "payment_intent.canceled": _handle_payment_intent_canceled,
    }

    handler = handlers.get(event_type)
    if handler:
        try:
            handler(event)
        except Exception as e:
            logger.error(f"Error handling {event_type} ({event_id}): {e}", exc_info=True)
            db.session.rollback()
            return False, str(e)
    else:
        logger.info(f"Unhandled payment event type: {event_type}")

    row.processed = True
    row.processed_at = datetime.now(timezone.utc)
    db.session.commit()

    return True, "processed"


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _order_id_from_session(session):
    metadata = session.get("metadata") or {}
    return metadata.get("order_id") or session.get("client_reference_id")


def _handle_checkout_completed(event):
    """Handle checkout.session.completed / async_payment_succeeded.

    Re-fetches the session for the authoritative shipping address rather
    than trusting the raw payload. If the payment provider is unavailable
    the signed payload is used instead: the payment is already confirmed
    and fulfillment shouldn't wait on a read.
    """
    session = event["data"]["object"]
    session_id = session.get("id")

    if event["type"] == "checkout.session.completed" and session.get("payment_status") != "paid":
        logger.info(
            f"Checkout session {session_id} completed with payment_status="
            f"{session.get('payment_status')}; waiting for async payment result"
        )
        return

    order_id = _order_id_from_session(session)
    if not order_id:
        logger.warning(f"Checkout session {session_id} has no order_id metadata")
        return

    order = db.session.get(Order, order_id)
    if order is None:
        logger.warning(f"Checkout session {session_id} references unknown order {order_id}")
        return

    details = session
    try:
        details = payment_client.get_payment_session(session_id)
    except ProviderError as e:
        logger.warning(
            f"Could not fetch session {session_id} ({e}); using webhook payload"
        )

    newly_paid = order_service.mark_paid(
        order_id,
        payment_session_id=session_id,
        payment_intent_id=extract_payment_intent_id(details),
        shipping=extract_shipping(details),
        customer=extract_customer(details),
    )
    if newly_paid:
        _send_order_confirmation(order_id)

    # Covers both a fresh transition and a replay of an event whose first
    # processing stopped after mark_paid.
    order = order_service.get_order(order_id)
    if order.status != OrderStatus.PAID:
        logger.info(f"Order {order_id} is {order.status}; no submission needed")
        return

    outcome = order_service.submit_order(order_id, fulfillment_client)
    logger.info(f"Order {order_id} synchronous submission: {outcome}")


def _handle_checkout_payment_failed(event):
    session = event["data"]["object"]
    order_id = _order_id_from_session(session)
    if not order_id:
        logger.warning(f"async_payment_failed for session {session.get('id')} without order_id")
        return
    order_service.mark_payment_failed(order_id, reason="Asynchronous payment failed")


def _order_id_from_intent(intent):
    order_id = (intent.get("metadata") or {}).get("order_id")
    if not order_id:
        order = order_service.get_order_by_payment_intent(intent.get("id"))
        order_id = order.id if order else None
    return order_id


def _handle_payment_intent_failed(event):
    intent = event["data"]["object"]
    error = intent.get("last_payment_error") or {}
    reason = error.get("message") or "Payment failed"
    order_id = _order_id_from_intent(intent)

    logger.warning(f"PaymentIntent {intent.get('id')} failed: {reason}")
    if order_id:
        order_service.mark_payment_failed(order_id, reason=reason)

    _alert_payment_problem(
        f"Payment failed - order {order_id or 'unknown'}",
        order_id,
        [f"PaymentIntent:    {intent.get('id')}", f"Reason:           {reason}"],
    )


def _handle_checkout_expired(event):
    session = event["data"]["object"]
    order_id = _order_id_from_session(session)
    logger.info(f"Checkout session {session.get('id')} expired (order {order_id})")

    _alert_payment_problem(
        f"Checkout expired - order {order_id or 'unknown'}",
        order_id,
        [f"Checkout session: {session.get('id')}"],
    )


def _handle_payment_intent_canceled(event):
    intent = event["data"]["object"]
    reason = intent.get("cancellation_reason") or "-"
    order_id = _order_id_from_intent(intent)
    logger.info(f"PaymentIntent {intent.get('id')} canceled (reason: {reason})")

    _alert_payment_problem(
        f"Payment canceled - order {order_id or 'unknown'}",
        order_id,
        [f"PaymentIntent:    {intent.get('id')}", f"Reason:           {reason}"],
    )


# ──────────────────────────────────────────────
# Notifications
# ──────────────────────────────────────────────

def _alert_payment_problem(subject, order_id, details):
    from app.services.email_service import send_admin_alert

    order = db.session.get(Order, order_id) if order_id else None
    send_admin_alert(
        subject=f"ALERT: {subject}",
        lines=[
            "A checkout did not turn into a payment. Nothing was sent for",
            "fulfillment; follow up with the customer if needed.",
            "",
            f"Order:            {order_id or '-'}",
            f"Order status:     {order.status if order else '-'}",
            f"Customer:         {(order.customer_email if order else None) or '-'}",
            *details,
        ],
    )


def _send_order_confirmation(order_id):
    """Tell the customer their payment went through."""
    from app.services.email_service import send_email

    order = order_service.get_order(order_id)
    if not order.customer_email:
        logger.info(f"Order {order_id} has no customer email, confirmation not sent")
        return

    store = current_app.config.get("STORE_NAME", "Our store")
    currency = (order.currency or "").upper()
    lines = [
        f"Hi {order.customer_name or 'there'},",
        "",
        f"Thanks for your order with {store}. Your payment was received and",
        "we're getting it ready. We'll email you again when it ships.",
        "",
        f"Order: {order.id}",
        "",
    ]
    for item in order_service.get_order_items(order_id):
        lines.append(f"  {item.quantity} x {item.display_name}  {item.line_price} {currency}")
    lines += ["", f"Total: {order.total_amount} {currency}"]

    send_email(
        to=order.customer_email,
        subject=f"{store}: order confirmed",
        lines=lines,
    )
