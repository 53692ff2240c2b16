"""Tests for the StripeGateway implementation."""

import pytest
from unittest.mock import MagicMock, patch
import stripe

from payments_mirror.connectors import PaymentSucceeded, StripeGateway
from payments_mirror.connectors.stripe_connector import map_payment_status, map_refund_status
from payments_mirror.errors import (
    InvalidAmountError,
    ProviderRequestError,
    RefundRejectedError,
    SignatureInvalidError,
)
from payments_mirror.mode import ModeContext, ModeName


def payment_intent(**overrides):
    values = {
        "id": "pi_123",
        "object": "payment_intent",
        "amount": 150,
        "currency": "gbp",
        "status": "requires_payment_method",
        "client_secret": "pi_123_secret_abc",
        "livemode": False,
        "description": "Order 42",
        "receipt_email": None,
        "metadata": {"customer_email": "buyer@example.com"},
        "last_payment_error": None,
        "latest_charge": None,
        "created": 1700000000,
    }
    values.update(overrides)
    return stripe.PaymentIntent.construct_from(values, "sk_test_123")


def refund_object(**overrides):
    values = {
        "id": "re_123",
        "object": "refund",
        "amount": 50,
        "currency": "GBP",
        "status": "succeeded",
        "payment_intent": "pi_123",
        "reason": "requested_by_customer",
        "metadata": {"notes": "damaged"},
        "created": 1700000100,
    }
    values.update(overrides)
    return stripe.Refund.construct_from(values, "sk_test_123")


@pytest.fixture
def gateway(test_credentials):
    return StripeGateway(ModeContext(name=ModeName.TEST, credentials=test_credentials))


@pytest.fixture
def live_gateway(live_credentials):
    return StripeGateway(ModeContext(name=ModeName.LIVE, credentials=live_credentials))


class TestStatusMapping:
    """Tests for provider status translation."""

    @pytest.mark.parametrize("status,expected", [
        ("requires_payment_method", "requires_payment_method"),
        ("requires_confirmation", "requires_payment_method"),
        ("requires_action", "requires_action"),
        ("processing", "processing"),
        ("requires_capture", "processing"),
        ("succeeded", "succeeded"),
        ("canceled", "canceled"),
    ])
    def test_payment_status(self, status, expected):
        assert map_payment_status(payment_intent(status=status)) == expected

    def test_failed_attempt_reported_as_failed(self):
        pi = payment_intent(last_payment_error={"code": "card_declined"})

        assert map_payment_status(pi) == "failed"

    @pytest.mark.parametrize("status,expected", [
        ("pending", "processing"),
        (None, "processing"),
        ("requires_action", "processing"),
        ("succeeded", "succeeded"),
        ("failed", "failed"),
        ("canceled", "canceled"),
    ])
    def test_refund_status(self, status, expected):
        assert map_refund_status(status) == expected


class TestStripeGatewayCreatePaymentIntent:
    """Tests for StripeGateway.create_payment_intent."""

    def test_create_success(self, gateway, test_credentials):
        with patch("stripe.PaymentIntent.create", return_value=payment_intent()) as mock_create:
            created = gateway.create_payment_intent(150, "GBP", "Order 42", "buyer@example.com")

        assert created.external_id == "pi_123"
        assert created.client_secret == "pi_123_secret_abc"
        assert created.status == "requires_payment_method"
        call_kwargs = mock_create.call_args.kwargs
        assert call_kwargs["api_key"] == test_credentials.secret_key
        assert call_kwargs["amount"] == 150
        assert call_kwargs["currency"] == "gbp"
        assert call_kwargs["receipt_email"] == "buyer@example.com"
        assert call_kwargs["automatic_payment_methods"] == {"enabled": True}

    def test_secret_key_follows_mode(self, live_gateway, live_credentials):
        """Test that each request carries the key of the gateway's own mode."""
        with patch("stripe.PaymentIntent.create", return_value=payment_intent(livemode=True)) as mock_create:
            live_gateway.create_payment_intent(150, "gbp")

        assert mock_create.call_args.kwargs["api_key"] == live_credentials.secret_key
        assert "receipt_email" not in mock_create.call_args.kwargs
        assert stripe.api_key != live_credentials.secret_key

    @pytest.mark.parametrize("amount", [1.5, "150", None])
    def test_non_integer_amount_never_reaches_provider(self, gateway, amount):
        with patch("stripe.PaymentIntent.create") as mock_create:
            with pytest.raises(InvalidAmountError):
                gateway.create_payment_intent(amount, "gbp")

        mock_create.assert_not_called()

    def test_invalid_request_error(self, gateway):
        error = stripe.InvalidRequestError("Amount must be at least 30 pence", "amount", code="amount_too_small")
        with patch("stripe.PaymentIntent.create", side_effect=error):
            with pytest.raises(ProviderRequestError) as exc_info:
                gateway.create_payment_intent(10, "gbp")

        assert exc_info.value.code == "amount_too_small"
        assert "30 pence" in exc_info.value.message

    def test_connection_error(self, gateway):
        error = stripe.APIConnectionError("Network unreachable")
        with patch("stripe.PaymentIntent.create", side_effect=error):
            with pytest.raises(ProviderRequestError) as exc_info:
                gateway.create_payment_intent(150, "gbp")

        assert exc_info.value.code == "APIConnectionError"

    def test_authentication_error(self, gateway):
        error = stripe.AuthenticationError("Invalid API Key provided")
        with patch("stripe.PaymentIntent.create", side_effect=error):
            with pytest.raises(ProviderRequestError) as exc_info:
                gateway.create_payment_intent(150, "gbp")

        assert exc_info.value.code == "AuthenticationError"


class TestStripeGatewayRetrievePaymentIntent:
    """Tests for StripeGateway.retrieve_payment_intent."""

    def test_snapshot_of_succeeded_intent(self, gateway):
        pi = payment_intent(
            status="succeeded",
            latest_charge={
                "id": "ch_1",
                "object": "charge",
                "payment_method_details": {"card": {"last4": "4242", "brand": "visa"}},
                "balance_transaction": {"id": "txn_1", "object": "balance_transaction", "fee": 22},
            },
        )
        with patch("stripe.PaymentIntent.retrieve", return_value=pi) as mock_retrieve:
            snapshot = gateway.retrieve_payment_intent("pi_123")

        assert snapshot.status == "succeeded"
        assert snapshot.amount_minor_units == 150
        assert snapshot.card_last4 == "4242"
        assert snapshot.payment_method_brand == "visa"
        assert snapshot.fee_minor_units == 22
        assert snapshot.customer_email == "buyer@example.com"
        assert snapshot.livemode is False
        assert snapshot.created_at is not None
        assert mock_retrieve.call_args.kwargs["expand"] == ["latest_charge.balance_transaction"]

    def test_unexpanded_charge(self, gateway):
        """Test that an unexpanded charge id yields no card details."""
        pi = payment_intent(status="processing", latest_charge="ch_1", receipt_email="r@example.com")
        with patch("stripe.PaymentIntent.retrieve", return_value=pi):
            snapshot = gateway.retrieve_payment_intent("pi_123")

        assert snapshot.status == "processing"
        assert snapshot.card_last4 is None
        assert snapshot.fee_minor_units is None
        assert snapshot.customer_email == "r@example.com"

    def test_missing_intent(self, gateway):
        error = stripe.InvalidRequestError("No such payment_intent: 'pi_x'", "intent", code="resource_missing", http_status=404)
        with patch("stripe.PaymentIntent.retrieve", side_effect=error):
            with pytest.raises(ProviderRequestError) as exc_info:
                gateway.retrieve_payment_intent("pi_x")

        assert exc_info.value.code == "resource_missing"
        assert exc_info.value.http_status == 404


class TestStripeGatewayRefunds:
    """Tests for StripeGateway refund operations."""

    def test_partial_refund(self, gateway):
        with patch("stripe.Refund.create", return_value=refund_object()) as mock_create:
            snapshot = gateway.create_refund("pi_123", 50, "requested_by_customer", "damaged")

        assert snapshot.external_refund_id == "re_123"
        assert snapshot.external_payment_id == "pi_123"
        assert snapshot.amount_minor_units == 50
        assert snapshot.currency == "gbp"
        assert snapshot.notes == "damaged"
        call_kwargs = mock_create.call_args.kwargs
        assert call_kwargs["amount"] == 50
        assert call_kwargs["payment_intent"] == "pi_123"
        assert call_kwargs["reason"] == "requested_by_customer"

    def test_full_refund_omits_amount(self, gateway):
        with patch("stripe.Refund.create", return_value=refund_object(amount=150, status="pending")) as mock_create:
            snapshot = gateway.create_refund("pi_123", None, "duplicate")

        assert "amount" not in mock_create.call_args.kwargs
        assert snapshot.status == "processing"

    @pytest.mark.parametrize("code", ["charge_already_refunded", "amount_too_large", "charge_disputed"])
    def test_provider_rejection(self, gateway, code):
        error = stripe.InvalidRequestError("Charge ch_1 has already been refunded.", None, code=code)
        with patch("stripe.Refund.create", side_effect=error):
            with pytest.raises(RefundRejectedError) as exc_info:
                gateway.create_refund("pi_123", 50, "requested_by_customer")

        assert exc_info.value.code == code

    def test_other_refund_error(self, gateway):
        error = stripe.RateLimitError("Too many requests")
        with patch("stripe.Refund.create", side_effect=error):
            with pytest.raises(ProviderRequestError):
                gateway.create_refund("pi_123", 50, "requested_by_customer")

    def test_refund_mode_from_gateway(self, live_gateway):
        with patch("stripe.Refund.retrieve", return_value=refund_object(reason=None)):
            snapshot = live_gateway.retrieve_refund("re_123")

        assert snapshot.livemode is True
        assert snapshot.reason == "requested_by_customer"

    def test_expanded_payment_intent(self, gateway):
        refund = refund_object(payment_intent={"id": "pi_999", "object": "payment_intent"})
        with patch("stripe.Refund.retrieve", return_value=refund):
            snapshot = gateway.retrieve_refund("re_123")

        assert snapshot.external_payment_id == "pi_999"


class TestStripeGatewayListing:
    """Tests for lazy listings."""

    def test_list_payment_intents_is_lazy(self, gateway):
        page = MagicMock()
        page.auto_paging_iter.return_value = iter([payment_intent(id="pi_1"), payment_intent(id="pi_2")])
        with patch("stripe.PaymentIntent.list", return_value=page) as mock_list:
            listing = gateway.list_payment_intents(page_size=500)
            mock_list.assert_not_called()
            ids = [snapshot.external_id for snapshot in listing]

        assert ids == ["pi_1", "pi_2"]
        assert mock_list.call_args.kwargs["limit"] == 100

    def test_list_refunds(self, gateway):
        page = MagicMock()
        page.auto_paging_iter.return_value = iter([refund_object(id="re_1"), refund_object(id="re_2")])
        with patch("stripe.Refund.list", return_value=page) as mock_list:
            ids = [snapshot.external_refund_id for snapshot in gateway.list_refunds(page_size=10)]

        assert ids == ["re_1", "re_2"]
        assert mock_list.call_args.kwargs["limit"] == 10

    def test_listing_error_mid_iteration(self, gateway):
        def pages():
            yield payment_intent(id="pi_1")
            raise stripe.APIConnectionError("Connection reset")

        page = MagicMock()
        page.auto_paging_iter.return_value = pages()
        with patch("stripe.PaymentIntent.list", return_value=page):
            listing = gateway.list_payment_intents()
            assert next(listing).external_id == "pi_1"
            with pytest.raises(ProviderRequestError):
                next(listing)


class TestStripeGatewayNotifications:
    """Tests for verify_and_parse_notification."""

    def test_valid_notification(self, gateway, sign, simulator):
        body = simulator.build_event_body("payment_intent.succeeded", {"id": "pi_123"}, event_id="evt_1")

        event = gateway.verify_and_parse_notification(body.encode(), sign(body, "whsec_x"), "whsec_x")

        assert isinstance(event, PaymentSucceeded)
        assert event.payment_intent_id == "pi_123"

    def test_wrong_secret(self, gateway, sign, simulator):
        body = simulator.build_event_body("payment_intent.succeeded", {"id": "pi_123"})

        with pytest.raises(SignatureInvalidError):
            gateway.verify_and_parse_notification(body.encode(), sign(body, "whsec_x"), "whsec_y")


class TestHealthCheck:
    def test_health_check(self, gateway):
        assert gateway.health_check() == {"ok": True, "mode": "test"}
