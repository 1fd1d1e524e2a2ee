"""Fulfillment webhook service — Printful event ingestion.

Printful offers no payload signature and no reliable event ID, so:

- the blueprint authenticates with a secret path token;
- every delivery is stored (fulfillment_webhook_events) for audit;
- a delivery whose provider order id + event type was already processed
  within FULFILLMENT_WEBHOOK_DEDUP_WINDOW is flagged as a duplicate;
- state changes go through guarded transitions, so replays and
  out-of-order deliveries converge on the same final state.

Payload shapes seen in the wild put the order at the top level
(`order`) or under `data.order`, and tracking either on the order or
under `data.shipment`. Both are accepted.
"""

import json
import logging
from datetime import datetime, timedelta, timezone

from flask import current_app

from app.extensions import db
from app.models.order import Order
from app.models.webhook_event import FulfillmentWebhookEvent
from app.services import order_service

logger = logging.getLogger(__name__)

SHIPMENT_EVENTS = ("shipment_created", "package_shipped")


class InvalidPayload(ValueError):
    pass


def parse_payload(raw_body):
    """Decode and sanity-check a webhook body. Raises InvalidPayload."""
    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError) as e:
        raise InvalidPayload(f"Body is not valid JSON: {e}") from e

    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        raise InvalidPayload("Payload must be an object with a string 'type'")
    if payload.get("data") is not None and not isinstance(payload["data"], dict):
        raise InvalidPayload("'data' must be an object")
    return payload


def _order_section(payload):
    data = payload.get("data") or {}
    order = payload.get("order") or data.get("order") or {}
    return order if isinstance(order, dict) else {}


def _shipment_section(payload):
    data = payload.get("data") or {}
    shipment = data.get("shipment") or payload.get("shipment") or {}
    return shipment if isinstance(shipment, dict) else {}


def _provider_order_id(payload):
    order_id = _order_section(payload).get("id")
    return str(order_id) if order_id is not None else None


def _find_order(payload):
    """Look up the local order: provider order id first, then external_id."""
    order = order_service.get_order_by_fulfillment_id(_provider_order_id(payload))
    if order is None:
        external_id = _order_section(payload).get("external_id")
        if external_id:
            order = db.session.get(Order, str(external_id))
    return order


def _is_recent_duplicate(event_type, provider_order_id, exclude_id):
    if not provider_order_id:
        return False
    window = current_app.config.get("FULFILLMENT_WEBHOOK_DEDUP_WINDOW", 600)
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=window)
    return (
        FulfillmentWebhookEvent.query
        .filter(FulfillmentWebhookEvent.id != exclude_id)
        .filter_by(
            event_type=event_type,
            provider_order_id=provider_order_id,
            processed=True,
        )
        .filter(FulfillmentWebhookEvent.created_at >= cutoff)
        .first()
    ) is not None


def handle_fulfillment_event(payload, raw_body=""):
    """Store and process a Printful webhook payload.

    Returns (success: bool, message: str).
    """
    event_type = payload["type"]
    provider_order_id = _provider_order_id(payload)
    order = _find_order(payload)

    # --- Log unconditionally (audit) ---
    event = FulfillmentWebhookEvent(
        event_type=event_type,
        provider_order_id=provider_order_id,
        order_id=order.id if order else None,
        payload=raw_body or json.dumps(payload),
    )
    db.session.add(event)
    db.session.commit()

    if _is_recent_duplicate(event_type, provider_order_id, event.id):
        event.duplicate = True
        db.session.commit()
        logger.info(
            f"Duplicate Printful {event_type} for order {provider_order_id}, skipping"
        )
        return True, "already_processed"

    handlers = {
        "order_updated": _handle_order_updated,
        "shipment_created": _handle_shipment_created,
        "package_shipped": _handle_shipment_created,
        "order_failed": _handle_order_failed,
    }

    handler = handlers.get(event_type)
    if handler is None:
        logger.info(f"Unhandled Printful event: {event_type}")
        return True, "ignored"

    if order is None:
        # Not ours, or the submission hasn't stored the provider id yet.
        logger.warning(
            f"Printful {event_type}: no order for provider order {provider_order_id}"
        )
        return True, "order_not_found"

    try:
        handler(order, payload)
    except Exception as e:
        logger.error(f"Error handling Printful {event_type}: {e}", exc_info=True)
        db.session.rollback()
        return False, str(e)

    event.processed = True
    db.session.commit()
    return True, "processed"


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _handle_order_updated(order, payload):
    """Informational: Printful-side status changes are logged only."""
    status = _order_section(payload).get("status")
    logger.info(f"Printful order {order.fulfillment_order_id} updated (status={status})")


def _handle_shipment_created(order, payload):
    """submitted/confirmed -> fulfilled, storing tracking details.

    A shipment for an order that is already fulfilled (repeat delivery) or
    terminal changes nothing.
    """
    order_data = _order_section(payload)
    shipment = _shipment_section(payload)

    tracking_number = shipment.get("tracking_number") or order_data.get("tracking_number")
    tracking_url = shipment.get("tracking_url") or order_data.get("tracking_url")
    carrier = shipment.get("carrier") or shipment.get("service")

    if order_service.mark_fulfilled(order, tracking_number, tracking_url, carrier):
        logger.info(f"Order {order.id} shipped, tracking {tracking_number}")
        _send_shipping_notification(order.id)


def _send_shipping_notification(order_id):
    from app.services.email_service import send_email

    order = order_service.get_order(order_id)
    if not order.customer_email:
        logger.info(f"Order {order_id} has no customer email, shipping notice not sent")
        return

    store = current_app.config.get("STORE_NAME", "Our store")
    send_email(
        to=order.customer_email,
        subject=f"{store}: your order has shipped",
        lines=[
            f"Hi {order.customer_name or 'there'},",
            "",
            f"Good news: your {store} order is on its way.",
            "",
            f"Order:            {order.id}",
            f"Carrier:          {order.tracking_carrier or '-'}",
            f"Tracking number:  {order.tracking_number or '-'}",
            f"Track it here:    {order.tracking_url or '-'}",
        ],
    )


def _handle_order_failed(order, payload):
    """Any non-terminal state -> fulfillment_failed, then alert an admin."""
    data = payload.get("data") or {}
    reason = data.get("reason") or _order_section(payload).get("error") or "Printful reported order failure"

    if not order_service.mark_fulfillment_failed(order, reason=reason):
        return

    from app.services.email_service import send_admin_alert

    send_admin_alert(
        subject=f"ALERT: fulfillment order failed - order {order.id}",
        lines=[
            "Printful reported a failed order. The customer has paid;",
            "check the Printful dashboard and refund or resubmit as needed.",
            "",
            f"Order:            {order.id}",
            f"Printful order:   {order.fulfillment_order_id or '-'}",
            f"Customer:         {order.customer_email or '-'}",
            f"Reason:           {reason}",
        ],
    )
