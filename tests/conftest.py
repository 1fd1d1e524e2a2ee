"""Shared test fixtures for the fulfillment bridge test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, fake provider keys)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- make_order: factory for orders with items, in any status
- printful_response: builder for fake `requests` responses in Printful's envelope
"""

from unittest.mock import MagicMock

import pytest

from app import create_app
from app.extensions import db as _db, fulfillment_client, payment_client
from app.models.order import Order, OrderStatus
from app.services import order_service


SHIPPING = {
    "shipping_name": "Jane Doe",
    "shipping_address1": "1 Main St",
    "shipping_city": "Springfield",
    "shipping_state": "IL",
    "shipping_zip": "62701",
    "shipping_country": "US",
}


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture(autouse=True)
def reset_breakers():
    """Provider clients are process-wide; don't leak breaker state between tests."""
    payment_client.breaker.reset()
    fulfillment_client.breaker.reset()
    yield
    payment_client.breaker.reset()
    fulfillment_client.breaker.reset()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def make_order(db_session):
    """Create an order with one item, then force it into `status`.

    Returns the order ID (plain string, safe across session expiry).
    """

    def _make(status=OrderStatus.CREATED, variant_id="4011", quantity=2,
              unit_price="12.50", **fields):
        order = order_service.create_order(
            customer_email="jane@example.com",
            items=[{
                "product_name": "Logo Tee",
                "variant_name": "M / Black",
                "quantity": quantity,
                "unit_price": unit_price,
                "fulfillment_variant_id": variant_id,
            }],
            shipping=SHIPPING,
        )
        order_id = order.id
        values = {"status": status}
        values.update(fields)
        Order.query.filter_by(id=order_id).update(values, synchronize_session=False)
        db_session.commit()
        return order_id

    return _make


@pytest.fixture
def printful_response():
    """Build a fake requests.Response carrying a Printful envelope."""

    def _build(status_code=200, result=None, code=None, body=None):
        resp = MagicMock()
        resp.status_code = status_code
        if body is None:
            body = {"code": code if code is not None else status_code, "result": result}
        resp.json.return_value = body
        resp.text = str(body)
        return resp

    return _build
