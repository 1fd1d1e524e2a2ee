"""Tests for the Printful client.

Covers:
- Order body mapping (external_id, recipient, sync variant items)
- Missing or non-numeric variant -> PermanentProviderError without a network call
- Error classification (timeout, 5xx, 429, 4xx, bad envelope)
- Breaker integration: failures open it, rejections skip the network
- Confirm, catalog and webhook configuration endpoints
"""

from unittest.mock import patch

import pytest
import requests

from app.extensions import fulfillment_client
from app.services import order_service
from app.services.circuit_breaker import CircuitState
from app.services.provider_errors import (
    CircuitOpenError,
    PermanentProviderError,
    TransientProviderError,
)

REQUEST = "app.services.fulfillment_client.requests.request"


def _load(order_id):
    return order_service.get_order(order_id), order_service.get_order_items(order_id)


class TestBuildOrderRequest:

    def test_maps_order_and_items(self, make_order):
        order, items = _load(make_order(status="paid"))

        body = fulfillment_client.build_order_request(order, items)

        assert body["external_id"] == order.id
        assert body["items"] == [{"sync_variant_id": 4011, "quantity": 2}]
        recipient = body["recipient"]
        assert recipient["name"] == "Jane Doe"
        assert recipient["country_code"] == "US"
        assert recipient["state_code"] == "IL"
        assert recipient["email"] == "jane@example.com"
        assert "address2" not in recipient

    @patch(REQUEST)
    def test_missing_variant_is_permanent_and_offline(self, mock_request, make_order):
        order, items = _load(make_order(status="paid", variant_id=None))

        with pytest.raises(PermanentProviderError):
            fulfillment_client.submit_fulfillment_order(order, items)

        mock_request.assert_not_called()
        assert fulfillment_client.breaker.failures == 0

    @patch(REQUEST)
    def test_non_numeric_variant_is_permanent_and_offline(self, mock_request, make_order):
        order, items = _load(make_order(status="paid", variant_id="sv-abc"))

        with pytest.raises(PermanentProviderError, match="sv-abc"):
            fulfillment_client.submit_fulfillment_order(order, items)

        mock_request.assert_not_called()
        assert fulfillment_client.breaker.failures == 0


class TestSubmit:

    @patch(REQUEST)
    def test_returns_external_id(self, mock_request, make_order, printful_response):
        mock_request.return_value = printful_response(result={"id": 98765, "status": "draft"})
        order, items = _load(make_order(status="paid"))

        assert fulfillment_client.submit_fulfillment_order(order, items) == "98765"

        method, url = mock_request.call_args[0]
        assert method == "POST"
        assert url == "https://printful.test/orders"
        kwargs = mock_request.call_args[1]
        assert kwargs["headers"]["Authorization"] == "Bearer pf_test_fake"
        assert kwargs["timeout"] == fulfillment_client.timeout
        assert kwargs["json"]["external_id"] == order.id

    @patch(REQUEST)
    def test_timeout_is_transient(self, mock_request, make_order):
        mock_request.side_effect = requests.exceptions.Timeout("read timed out")
        order, items = _load(make_order(status="paid"))

        with pytest.raises(TransientProviderError):
            fulfillment_client.submit_fulfillment_order(order, items)
        assert fulfillment_client.breaker.failures == 1

    @pytest.mark.parametrize("status", [500, 502, 429, 408])
    @patch(REQUEST)
    def test_retryable_statuses_are_transient(self, mock_request, status, make_order,
                                              printful_response):
        mock_request.return_value = printful_response(
            status_code=status, body={"code": status, "error": {"message": "try later"}}
        )
        order, items = _load(make_order(status="paid"))

        with pytest.raises(TransientProviderError) as exc:
            fulfillment_client.submit_fulfillment_order(order, items)
        assert exc.value.status_code == status

    @patch(REQUEST)
    def test_bad_request_is_permanent(self, mock_request, make_order, printful_response):
        mock_request.return_value = printful_response(
            status_code=400,
            body={"code": 400, "result": "Recipient: invalid address", "error": {}},
        )
        order, items = _load(make_order(status="paid"))

        with pytest.raises(PermanentProviderError) as exc:
            fulfillment_client.submit_fulfillment_order(order, items)
        assert "invalid address" in str(exc.value)
        assert exc.value.retryable is False

    @patch(REQUEST)
    def test_missing_result_id_counts_as_failure(self, mock_request, make_order,
                                                 printful_response):
        mock_request.return_value = printful_response(result={})
        order, items = _load(make_order(status="paid"))

        with pytest.raises(TransientProviderError):
            fulfillment_client.submit_fulfillment_order(order, items)
        assert fulfillment_client.breaker.failures == 1

    @patch(REQUEST)
    def test_envelope_error_code_is_transient(self, mock_request, make_order,
                                              printful_response):
        mock_request.return_value = printful_response(status_code=200, code=500, result=None)
        order, items = _load(make_order(status="paid"))

        with pytest.raises(TransientProviderError):
            fulfillment_client.submit_fulfillment_order(order, items)


class TestBreakerIntegration:

    @patch(REQUEST)
    def test_open_breaker_skips_network(self, mock_request, app, make_order):
        mock_request.side_effect = requests.exceptions.ConnectionError("refused")
        order, items = _load(make_order(status="paid"))

        for _ in range(app.config["BREAKER_MAX_FAILURES"]):
            with pytest.raises(TransientProviderError):
                fulfillment_client.submit_fulfillment_order(order, items)
        assert fulfillment_client.breaker.state is CircuitState.OPEN

        mock_request.reset_mock()
        with pytest.raises(CircuitOpenError):
            fulfillment_client.submit_fulfillment_order(order, items)
        mock_request.assert_not_called()


class TestOtherEndpoints:

    @patch(REQUEST)
    def test_confirm(self, mock_request, printful_response):
        mock_request.return_value = printful_response(result={"id": 1, "status": "pending"})

        assert fulfillment_client.confirm_fulfillment_order("98765") is True
        assert mock_request.call_args[0] == ("POST", "https://printful.test/orders/98765/confirm")

    @patch(REQUEST)
    def test_get_products(self, mock_request, printful_response):
        mock_request.return_value = printful_response(result=[{"id": 1, "name": "Logo Tee"}])

        assert fulfillment_client.get_products() == [{"id": 1, "name": "Logo Tee"}]
        assert mock_request.call_args[0] == ("GET", "https://printful.test/store/products")

    @patch(REQUEST)
    def test_setup_webhook_defaults_event_types(self, mock_request, printful_response):
        mock_request.return_value = printful_response(result={"url": "https://x/hook"})

        fulfillment_client.setup_webhook("https://x/hook")

        body = mock_request.call_args[1]["json"]
        assert body["url"] == "https://x/hook"
        assert "package_shipped" in body["types"]
        assert "order_failed" in body["types"]

    @patch(REQUEST)
    def test_disable_webhook(self, mock_request, printful_response):
        mock_request.return_value = printful_response(result={})

        fulfillment_client.disable_webhook()
        assert mock_request.call_args[0] == ("DELETE", "https://printful.test/webhooks")
