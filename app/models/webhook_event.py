"""Webhook event models (idempotency + audit tables).

PaymentWebhookEvent: every Stripe event is recorded by its event ID before
it is processed. The UNIQUE constraint on event_id is what makes ingestion
idempotent — a redelivered event fails the insert and is acknowledged
without touching any order.

FulfillmentWebhookEvent: Printful sends no reliable event ID, so every
delivery is stored for audit and deduplication happens in the handler
(provider order id + event type + recency).
"""

import uuid
from datetime import datetime, timezone

from app.extensions import db


def _utcnow():
    return datetime.now(timezone.utc)


class PaymentWebhookEvent(db.Model):
    __tablename__ = "payment_webhook_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "checkout.session.completed"
    payload = db.Column(db.Text, nullable=False)
    processed = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<PaymentWebhookEvent {self.event_id} ({self.event_type})>"


class FulfillmentWebhookEvent(db.Model):
    __tablename__ = "fulfillment_webhook_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "shipment_created"
    provider_order_id = db.Column(db.String(64), nullable=True, index=True)
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=True
    )
    payload = db.Column(db.Text, nullable=False)
    processed = db.Column(db.Boolean, nullable=False, default=False)
    duplicate = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def __repr__(self):
        return f"<FulfillmentWebhookEvent {self.event_type} order={self.provider_order_id}>"
