# Models package — import all models here so Alembic can discover them.

from app.models.order import Order, OrderItem  # noqa: F401
from app.models.submission_failure import SubmissionFailure  # noqa: F401
from app.models.webhook_event import (  # noqa: F401
    FulfillmentWebhookEvent,
    PaymentWebhookEvent,
)
