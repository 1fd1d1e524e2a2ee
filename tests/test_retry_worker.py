"""Tests for the fulfillment retry worker.

Covers:
- End-to-end: checkout completed while Printful is down, retry pass
  submits, shipment webhook fulfills, repeat shipment is a no-op
- Breaker open: orders left untouched, retry counts unchanged
- Retry bound and manual review exclusion
- Exponential backoff gating
- Stale `submitting` claims released
- Dry run, auto-confirm of unconfirmed drafts, crash isolation
- CLI commands
"""

import json
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from app.extensions import db, fulfillment_client
from app.models.order import Order, OrderStatus
from app.models.submission_failure import SubmissionFailure
from app.services import order_service
from app.services.circuit_breaker import CircuitState
from app.services.provider_errors import PermanentProviderError, TransientProviderError
from app.services.retry_worker import run_forever, run_retry_pass

CONSTRUCT_EVENT = "app.services.payment_client.stripe.Webhook.construct_event"
SESSION_RETRIEVE = "app.services.payment_client.stripe.checkout.Session.retrieve"
PRINTFUL_REQUEST = "app.services.fulfillment_client.requests.request"
ALERT = "app.services.email_service.send_admin_alert"


def _reload(order_id):
    return db.session.get(Order, order_id, populate_existing=True)


def _checkout_event(order_id):
    session = {
        "id": "cs_o1",
        "payment_status": "paid",
        "metadata": {"order_id": order_id},
        "payment_intent": "pi_o1",
        "shipping_details": {
            "name": "Jane Doe",
            "address": {"line1": "1 Main St", "city": "Springfield",
                        "postal_code": "62701", "country": "US"},
        },
    }
    return {"id": "evt_o1", "type": "checkout.session.completed",
            "data": {"object": session}}, session


def _boom():
    raise RuntimeError("connection refused")


def _fail_client(error=None):
    client = MagicMock()
    client.submit_fulfillment_order.side_effect = error or TransientProviderError("boom")
    return client


class TestEndToEnd:

    @patch(PRINTFUL_REQUEST)
    @patch(SESSION_RETRIEVE)
    @patch(CONSTRUCT_EVENT)
    def test_outage_retry_then_shipment(self, mock_construct, mock_retrieve, mock_request,
                                        client, make_order, printful_response):
        order_id = make_order(status=OrderStatus.AWAITING_PAYMENT)
        event, session = _checkout_event(order_id)
        mock_construct.return_value = event
        mock_retrieve.return_value = session

        # 1. Payment completes while Printful returns 500.
        mock_request.return_value = printful_response(
            status_code=500, body={"code": 500, "error": {"message": "Internal error"}}
        )
        resp = client.post("/webhooks/payment", data="{}",
                           headers={"Stripe-Signature": "sig"})
        assert resp.status_code == 200

        order = _reload(order_id)
        assert order.status == OrderStatus.PAID
        assert order.submission_retry_count == 1
        assert SubmissionFailure.query.filter_by(order_id=order_id).count() == 1

        # 2. Printful recovers; the retry pass submits.
        mock_request.return_value = printful_response(result={"id": "D1"})
        summary = run_retry_pass(fulfillment_client)

        assert summary[order_service.SUBMITTED] == 1
        order = _reload(order_id)
        assert order.status == OrderStatus.SUBMITTED
        assert order.fulfillment_order_id == "D1"

        # 3. Shipment webhook.
        shipment = {
            "type": "package_shipped",
            "data": {"shipment": {"tracking_number": "TRK123", "carrier": "UPS"},
                     "order": {"id": "D1"}},
        }
        resp = client.post("/webhooks/fulfillment/pf-hook-token", data=json.dumps(shipment))
        assert resp.status_code == 200
        order = _reload(order_id)
        assert order.status == OrderStatus.FULFILLED
        assert order.tracking_number == "TRK123"
        updated_at = order.updated_at

        # 4. Repeat delivery changes nothing.
        resp = client.post("/webhooks/fulfillment/pf-hook-token", data=json.dumps(shipment))
        assert resp.status_code == 200
        order = _reload(order_id)
        assert order.status == OrderStatus.FULFILLED
        assert order.tracking_number == "TRK123"
        assert order.updated_at == updated_at


class TestBreakerOpen:

    @patch(PRINTFUL_REQUEST)
    def test_open_breaker_leaves_orders_alone(self, mock_request, make_order):
        order_ids = [make_order(status=OrderStatus.PAID) for _ in range(2)]
        for _ in range(fulfillment_client.breaker.max_failures):
            with pytest.raises(RuntimeError):
                fulfillment_client.breaker.execute(_boom)
        assert fulfillment_client.breaker.state is CircuitState.OPEN

        summary = run_retry_pass(fulfillment_client)

        assert summary[order_service.DEFERRED] == 2
        mock_request.assert_not_called()
        for order_id in order_ids:
            order = _reload(order_id)
            assert order.status == OrderStatus.PAID
            assert order.submission_retry_count == 0
        assert SubmissionFailure.query.count() == 0


class TestSelection:

    def test_skips_orders_at_retry_bound(self, app, make_order):
        order_id = make_order(
            status=OrderStatus.PAID,
            submission_retry_count=app.config["FULFILLMENT_MAX_RETRIES"],
        )
        client = MagicMock()

        run_retry_pass(client)

        client.submit_fulfillment_order.assert_not_called()
        assert _reload(order_id).status == OrderStatus.PAID

    def test_skips_flagged_orders(self, make_order):
        make_order(status=OrderStatus.PAID, requires_manual_review=True)
        client = MagicMock()

        run_retry_pass(client)
        client.submit_fulfillment_order.assert_not_called()

    def test_skips_other_states(self, make_order):
        for status in (OrderStatus.AWAITING_PAYMENT, OrderStatus.SUBMITTED,
                       OrderStatus.FULFILLED, OrderStatus.PAYMENT_FAILED):
            make_order(status=status)
        client = MagicMock()

        run_retry_pass(client)
        client.submit_fulfillment_order.assert_not_called()

    @patch(ALERT)
    def test_permanent_error_not_retried(self, mock_alert, make_order):
        order_id = make_order(status=OrderStatus.PAID)
        client = _fail_client(PermanentProviderError("bad address"))

        run_retry_pass(client)
        run_retry_pass(client)

        assert client.submit_fulfillment_order.call_count == 1
        assert _reload(order_id).requires_manual_review is True

    @patch(ALERT)
    def test_gives_up_at_max_retries(self, mock_alert, app, make_order):
        order_id = make_order(status=OrderStatus.PAID)
        client = _fail_client()

        for _ in range(app.config["FULFILLMENT_MAX_RETRIES"] + 2):
            run_retry_pass(client)

        order = _reload(order_id)
        assert client.submit_fulfillment_order.call_count == app.config["FULFILLMENT_MAX_RETRIES"]
        assert order.status == OrderStatus.PAID
        assert order.requires_manual_review is True
        mock_alert.assert_called_once()


class TestBackoff:

    def test_backoff_seconds(self):
        assert order_service.backoff_seconds(0, 60, 3600) == 0
        assert order_service.backoff_seconds(1, 60, 3600) == 60
        assert order_service.backoff_seconds(3, 60, 3600) == 240
        assert order_service.backoff_seconds(10, 60, 3600) == 3600

    def test_waits_for_backoff(self, app, make_order):
        order_id = make_order(status=OrderStatus.PAID)
        client = _fail_client()
        run_retry_pass(client)
        assert client.submit_fulfillment_order.call_count == 1

        config = {"FULFILLMENT_RETRY_BACKOFF_SECONDS": 60}
        now = datetime.now(timezone.utc)
        with patch.dict(app.config, config):
            run_retry_pass(client, now=now + timedelta(seconds=30))
            assert client.submit_fulfillment_order.call_count == 1

            run_retry_pass(client, now=now + timedelta(seconds=61))
            assert client.submit_fulfillment_order.call_count == 2

        assert _reload(order_id).submission_retry_count == 2


class TestStaleClaims:

    def test_stale_claim_released_and_retried(self, make_order):
        claimed_at = datetime.now(timezone.utc) - timedelta(hours=1)
        order_id = make_order(status=OrderStatus.SUBMITTING, submission_claimed_at=claimed_at)
        client = MagicMock()
        client.submit_fulfillment_order.return_value = "D3"

        summary = run_retry_pass(client)

        assert summary["released"] == 1
        assert summary[order_service.SUBMITTED] == 1
        assert _reload(order_id).fulfillment_order_id == "D3"

    def test_fresh_claim_left_alone(self, make_order):
        order_id = make_order(
            status=OrderStatus.SUBMITTING, submission_claimed_at=datetime.now(timezone.utc)
        )
        client = MagicMock()

        summary = run_retry_pass(client)

        assert summary["released"] == 0
        client.submit_fulfillment_order.assert_not_called()
        assert _reload(order_id).status == OrderStatus.SUBMITTING


class TestPassBehaviour:

    def test_dry_run_calls_nothing(self, make_order):
        order_id = make_order(status=OrderStatus.PAID)
        client = MagicMock()

        summary = run_retry_pass(client, dry_run=True)

        assert summary[order_service.SKIPPED] == 1
        client.submit_fulfillment_order.assert_not_called()
        assert _reload(order_id).status == OrderStatus.PAID

    @patch(ALERT)
    def test_one_crash_does_not_stop_the_pass(self, mock_alert, make_order):
        first = make_order(status=OrderStatus.PAID)
        second = make_order(status=OrderStatus.PAID)
        client = MagicMock()
        client.submit_fulfillment_order.side_effect = [RuntimeError("bug"), "D2"]

        summary = run_retry_pass(client)

        assert summary[order_service.FAILED] == 1
        assert summary[order_service.SUBMITTED] == 1
        assert summary["errors"] == 0
        orders = [_reload(first), _reload(second)]
        assert {o.status for o in orders} == {OrderStatus.PAID, OrderStatus.SUBMITTED}
        crashed = next(o for o in orders if o.status == OrderStatus.PAID)
        assert crashed.submission_claimed_at is None
        assert crashed.requires_manual_review is True
        assert SubmissionFailure.query.filter_by(order_id=crashed.id).count() == 1
        mock_alert.assert_called_once()

    def test_auto_confirm_retries_unconfirmed_drafts(self, app, make_order):
        order_id = make_order(status=OrderStatus.SUBMITTED, fulfillment_order_id="D4")
        client = MagicMock()

        with patch.dict(app.config, {"FULFILLMENT_AUTO_CONFIRM": True}):
            summary = run_retry_pass(client)

        assert summary["confirmed"] == 1
        client.confirm_fulfillment_order.assert_called_once_with("D4")
        assert _reload(order_id).status == OrderStatus.CONFIRMED

    def test_run_forever_stops(self, app):
        stop = threading.Event()
        client = MagicMock()

        with patch("app.services.retry_worker.run_retry_pass") as mock_pass:
            mock_pass.side_effect = lambda c: stop.set()
            run_forever(app, client, interval=1, stop_event=stop)

        mock_pass.assert_called_once_with(client)


class TestCli:

    @patch(PRINTFUL_REQUEST)
    def test_retry_fulfillment_command(self, mock_request, app, make_order, printful_response):
        order_id = make_order(status=OrderStatus.PAID)
        mock_request.return_value = printful_response(result={"id": "D8"})

        result = app.test_cli_runner().invoke(args=["retry-fulfillment"])

        assert result.exit_code == 0
        assert "Retry pass complete" in result.output
        assert _reload(order_id).fulfillment_order_id == "D8"

    def test_reset_fulfillment_retries(self, app, make_order):
        order_id = make_order(
            status=OrderStatus.PAID, submission_retry_count=5, requires_manual_review=True
        )

        result = app.test_cli_runner().invoke(args=["reset-fulfillment-retries", order_id])

        assert result.exit_code == 0
        order = _reload(order_id)
        assert order.submission_retry_count == 0
        assert order.requires_manual_review is False

    def test_reset_rejects_submitted_order(self, app, make_order):
        order_id = make_order(status=OrderStatus.SUBMITTED, fulfillment_order_id="D1")

        result = app.test_cli_runner().invoke(args=["reset-fulfillment-retries", order_id])
        assert result.exit_code != 0

    @patch(PRINTFUL_REQUEST)
    def test_confirm_fulfillment(self, mock_request, app, make_order, printful_response):
        order_id = make_order(status=OrderStatus.SUBMITTED, fulfillment_order_id="D1")
        mock_request.return_value = printful_response(result={"id": "D1"})

        result = app.test_cli_runner().invoke(args=["confirm-fulfillment", order_id])

        assert result.exit_code == 0
        assert _reload(order_id).status == OrderStatus.CONFIRMED

    @patch(PRINTFUL_REQUEST)
    def test_fulfillment_webhook_setup(self, mock_request, app, printful_response):
        mock_request.return_value = printful_response(result={"url": "x"})

        result = app.test_cli_runner().invoke(args=["fulfillment-webhook", "setup"])

        assert result.exit_code == 0
        body = mock_request.call_args[1]["json"]
        assert body["url"] == "http://localhost:5000/webhooks/fulfillment/pf-hook-token"
