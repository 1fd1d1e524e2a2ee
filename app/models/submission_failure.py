"""Submission failure model (append-only audit).

One row per genuine, attempted-and-failed fulfillment submission. Breaker
rejections never produce a row. The retry worker derives its backoff from
the latest row; ops alerting reads `retryable` to tell outages apart from
orders that need correcting by hand.
"""

import uuid
from datetime import datetime, timezone

from app.extensions import db


class SubmissionFailure(db.Model):
    __tablename__ = "submission_failures"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True
    )
    attempt_number = db.Column(db.Integer, nullable=False)
    error_message = db.Column(db.Text, nullable=False)
    error_detail = db.Column(db.Text, nullable=True)  # raw provider response
    retryable = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    # --- Relationships ---
    order = db.relationship("Order", back_populates="submission_failures")

    def __repr__(self):
        return f"<SubmissionFailure order={self.order_id} attempt={self.attempt_number}>"
