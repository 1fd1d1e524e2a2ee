"""
Deferred extension instances.

Created here, bound to the app in create_app() via init_app().

The provider clients follow the same pattern: each owns exactly one
CircuitBreaker, built once when the client is bound to the app and shared
by every request handler and background task in the process.
"""

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from app.services.fulfillment_client import FulfillmentClient
from app.services.payment_client import PaymentClient

db = SQLAlchemy()
migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],  # No global limit — we apply per-route
    storage_uri="memory://",
)

payment_client = PaymentClient()
fulfillment_client = FulfillmentClient()
