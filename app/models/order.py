"""Order models.

- Order: one customer purchase. `status` is owned by the order service
  (app/services/order_service.py); nothing else writes it.
- OrderItem: immutable order line. Carries the provider-side variant id
  needed to build a fulfillment order line.
"""

import uuid
from datetime import datetime, timezone

from app.extensions import db


def _utcnow():
    return datetime.now(timezone.utc)


class OrderStatus:
    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FULFILLED = "fulfilled"
    FULFILLMENT_FAILED = "fulfillment_failed"
    PAYMENT_FAILED = "payment_failed"

    ALL = [
        CREATED,
        AWAITING_PAYMENT,
        PAID,
        SUBMITTING,
        SUBMITTED,
        CONFIRMED,
        FULFILLED,
        FULFILLMENT_FAILED,
        PAYMENT_FAILED,
    ]
    TERMINAL = (FULFILLED, FULFILLMENT_FAILED, PAYMENT_FAILED)
    NON_TERMINAL = (CREATED, AWAITING_PAYMENT, PAID, SUBMITTING, SUBMITTED, CONFIRMED)


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_email = db.Column(db.String(255), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(50), nullable=True)

    total_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="usd")

    # --- Shipping ---
    shipping_name = db.Column(db.String(255), nullable=True)
    shipping_address1 = db.Column(db.String(255), nullable=True)
    shipping_address2 = db.Column(db.String(255), nullable=True)
    shipping_city = db.Column(db.String(255), nullable=True)
    shipping_state = db.Column(db.String(50), nullable=True)
    shipping_zip = db.Column(db.String(20), nullable=True)
    shipping_country = db.Column(db.String(2), nullable=True)

    # --- Payment provider ---
    payment_session_id = db.Column(db.String(255), nullable=True, index=True)
    payment_intent_id = db.Column(db.String(255), nullable=True, index=True)

    # --- Fulfillment provider ---
    fulfillment_order_id = db.Column(
        db.String(64), nullable=True, unique=True
    )  # set once, never overwritten
    tracking_number = db.Column(db.String(255), nullable=True)
    tracking_url = db.Column(db.String(1024), nullable=True)
    tracking_carrier = db.Column(db.String(100), nullable=True)

    status = db.Column(
        db.String(50), nullable=False, default=OrderStatus.CREATED, index=True
    )  # see OrderStatus
    submission_retry_count = db.Column(db.Integer, nullable=False, default=0)
    submission_claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    requires_manual_review = db.Column(db.Boolean, nullable=False, default=False)
    failure_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    # --- Relationships ---
    items = db.relationship(
        "OrderItem", back_populates="order", order_by="OrderItem.created_at"
    )
    submission_failures = db.relationship(
        "SubmissionFailure",
        back_populates="order",
        order_by="SubmissionFailure.attempt_number",
    )

    @property
    def is_terminal(self):
        return self.status in OrderStatus.TERMINAL

    def to_dict(self):
        return {
            "id": self.id,
            "status": self.status,
            "total_amount": str(self.total_amount),
            "currency": self.currency,
            "fulfillment_order_id": self.fulfillment_order_id,
            "tracking_number": self.tracking_number,
            "tracking_url": self.tracking_url,
            "tracking_carrier": self.tracking_carrier,
            "submission_retry_count": self.submission_retry_count,
            "requires_manual_review": self.requires_manual_review,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Order {self.id} ({self.status})>"


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True
    )
    product_id = db.Column(db.String(36), nullable=True)  # catalog reference
    variant_id = db.Column(db.String(36), nullable=True)  # catalog reference
    product_name = db.Column(db.String(255), nullable=False)
    variant_name = db.Column(db.String(255), nullable=False, default="")
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(10, 2), nullable=False)
    line_price = db.Column(db.Numeric(10, 2), nullable=False)
    fulfillment_variant_id = db.Column(
        db.String(64), nullable=True
    )  # Printful sync_variant_id
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    # --- Relationships ---
    order = db.relationship("Order", back_populates="items")

    @property
    def display_name(self):
        if self.variant_name:
            return f"{self.product_name} - {self.variant_name}"
        return self.product_name

    def __repr__(self):
        return f"<OrderItem {self.display_name} x{self.quantity}>"
