"""Tests for payment link creation and SMS delivery."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock, patch

import httpx

from dental_booking.services.notifications import (
    ClickSendSms,
    PaymentNotifier,
    StripePaymentLinks,
    payment_sms_body,
    to_cents,
)


def _mock_response(data: dict, status_code: int = 200) -> MagicMock:
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = data
    mock.text = str(data)
    return mock


class TestHelpers:
    def test_to_cents_rounds_half_up(self):
        assert to_cents(Decimal("192.50")) == 19250
        assert to_cents(Decimal("0.005")) == 1
        assert to_cents(Decimal("395")) == 39500

    def test_sms_body_defaults_name(self):
        body = payment_sms_body("", "https://pay.example/x")
        assert body.startswith("Hi Client, thank you for booking")
        assert body.endswith("https://pay.example/x")


class TestStripePaymentLinks:
    def test_creates_price_then_link(self):
        links = StripePaymentLinks(api_key="sk_test", product_id="prod_1")

        with patch.object(
            links._client, "post",
            side_effect=[_mock_response({"id": "price_1"}), _mock_response({"url": "https://buy.stripe.com/x"})],
        ) as mock_post:
            url = links.create_link(Decimal("395"))

        assert url == "https://buy.stripe.com/x"
        price_call, link_call = mock_post.call_args_list
        assert price_call[0][0] == "/prices"
        assert price_call[1]["data"] == {"product": "prod_1", "unit_amount": "39500", "currency": "eur"}
        assert link_call[0][0] == "/payment_links"
        assert link_call[1]["data"]["line_items[0][price]"] == "price_1"

    def test_unconfigured_returns_none(self):
        links = StripePaymentLinks(api_key="", product_id="")
        with patch.object(links._client, "post") as mock_post:
            assert links.create_link(Decimal("10")) is None
            mock_post.assert_not_called()

    def test_zero_amount_returns_none(self):
        links = StripePaymentLinks(api_key="sk_test", product_id="prod_1")
        with patch.object(links._client, "post") as mock_post:
            assert links.create_link(Decimal("0")) is None
            mock_post.assert_not_called()

    def test_transport_error_returns_none(self):
        links = StripePaymentLinks(api_key="sk_test", product_id="prod_1")
        with patch.object(links._client, "post", side_effect=httpx.ConnectError("refused")):
            assert links.create_link(Decimal("10")) is None

    def test_missing_price_id_returns_none(self):
        links = StripePaymentLinks(api_key="sk_test", product_id="prod_1")
        with patch.object(links._client, "post", return_value=_mock_response({})):
            assert links.create_link(Decimal("10")) is None


class TestClickSendSms:
    def test_sends_message(self):
        sms = ClickSendSms(username="user", api_key="key", sender="Clinic")

        with patch.object(sms._client, "post", return_value=_mock_response({"response_code": "SUCCESS"})) as mock_post:
            assert sms.send("+353870000000", "hello") is True

        message = mock_post.call_args[1]["json"]["messages"][0]
        assert message == {"from": "Clinic", "body": "hello", "to": "+353870000000", "shorten_urls": True}

    def test_non_200_is_a_failure(self):
        sms = ClickSendSms(username="user", api_key="key", sender="Clinic")
        with patch.object(sms._client, "post", return_value=_mock_response({}, 202)):
            assert sms.send("+353870000000", "hello") is False

    def test_transport_error_is_a_failure(self):
        sms = ClickSendSms(username="user", api_key="key", sender="Clinic")
        with patch.object(sms._client, "post", side_effect=httpx.ReadTimeout("slow")):
            assert sms.send("+353870000000", "hello") is False

    def test_missing_number_or_credentials(self):
        sms = ClickSendSms(username="user", api_key="key", sender="Clinic")
        assert sms.send("", "hello") is False
        assert ClickSendSms(username="", api_key="", sender="").send("+1", "hello") is False


class TestPaymentNotifier:
    def test_link_then_sms(self):
        links, sms = MagicMock(), MagicMock()
        links.create_link.return_value = "https://buy.stripe.com/x"
        sms.send.return_value = True

        url, sent = PaymentNotifier(links, sms).notify(Decimal("395"), "+353870000000", "Jane")

        assert (url, sent) == ("https://buy.stripe.com/x", True)
        to, body = sms.send.call_args[0]
        assert to == "+353870000000"
        assert "Hi Jane" in body and "https://buy.stripe.com/x" in body

    def test_no_link_skips_sms(self):
        links, sms = MagicMock(), MagicMock()
        links.create_link.return_value = None

        assert PaymentNotifier(links, sms).notify(Decimal("10"), "+1", "Jane") == (None, False)
        sms.send.assert_not_called()
