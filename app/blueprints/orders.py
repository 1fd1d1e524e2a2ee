"""Orders API blueprint — /api/v1/orders/*

Thin helpers for the storefront checkout flow. Cart, catalog and order
creation live in the storefront; these routes only open the hosted
checkout for an existing order and report its fulfillment status.

Route Map:
  POST /api/v1/orders/<order_id>/checkout  — open a Stripe Checkout session
  GET  /api/v1/orders/<order_id>           — status, tracking, fulfillment id
"""

import logging

from flask import Blueprint, jsonify, request

from app.extensions import limiter, payment_client
from app.models.order import OrderStatus
from app.services import order_service
from app.services.payment_client import build_line_items
from app.services.provider_errors import PermanentProviderError, ProviderError

orders_bp = Blueprint("orders", __name__, url_prefix="/api/v1/orders")

logger = logging.getLogger(__name__)

CHECKOUT_STATES = (OrderStatus.CREATED, OrderStatus.AWAITING_PAYMENT)


@orders_bp.route("/<order_id>/checkout", methods=["POST"])
@limiter.limit("20 per minute")
def checkout(order_id):
    """Open a hosted checkout session for an unpaid order.

    Optional JSON body: { "shipping_rates": ["shr_..."], "allowed_countries": ["US"] }

    Returns: { session_id } or { error }
    """
    try:
        order = order_service.get_order(order_id)
    except order_service.OrderNotFound:
        return jsonify(error="Order not found."), 404

    if order.status not in CHECKOUT_STATES:
        return jsonify(error=f"Order is {order.status}; checkout not allowed."), 409

    data = request.get_json(silent=True) or {}
    shipping_rules = {
        key: data[key] for key in ("shipping_rates", "allowed_countries") if data.get(key)
    }

    items = order_service.get_order_items(order_id)
    try:
        session_id = payment_client.create_payment_session(
            order_id,
            build_line_items(items, order.currency),
            shipping_rules=shipping_rules,
            customer_email=order.customer_email,
        )
    except PermanentProviderError as e:
        logger.error(f"Checkout for order {order_id} rejected by Stripe: {e}")
        return jsonify(error="Payment provider rejected the request."), 502
    except ProviderError as e:
        # Transient failure or open breaker: the storefront may try again.
        logger.warning(f"Checkout for order {order_id} unavailable: {e}")
        return jsonify(error="Payment provider unavailable, try again shortly."), 503

    if order.status == OrderStatus.CREATED:
        order_service.mark_awaiting_payment(order_id, session_id)
    else:
        # A fresh session replaces an abandoned one.
        order_service.transition(
            order_id,
            OrderStatus.AWAITING_PAYMENT,
            (OrderStatus.AWAITING_PAYMENT,),
            payment_session_id=session_id,
        )

    return jsonify(session_id=session_id), 200


@orders_bp.route("/<order_id>", methods=["GET"])
def order_status(order_id):
    try:
        order = order_service.get_order(order_id)
    except order_service.OrderNotFound:
        return jsonify(error="Order not found."), 404
    return jsonify(order.to_dict()), 200
