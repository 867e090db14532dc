"""Payment link (Stripe) and SMS (ClickSend) delivery.

Both are best effort.  Nothing here raises to the caller: an unconfigured
provider, a transport error or an error status is logged, recorded as a
metric failure, and reported as ``None`` / ``False``.  A booking is never
rolled back because a notification could not be sent.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal

import httpx

from dental_booking.config import (
    CLICKSEND_API_KEY,
    CLICKSEND_FROM,
    CLICKSEND_USERNAME,
    PRACTICE_NAME,
    STRIPE_API_KEY,
    STRIPE_PRODUCT_ID,
)
from dental_booking.services.metrics import metrics

logger = logging.getLogger(__name__)

STRIPE_BASE_URL = "https://api.stripe.com/v1"
CLICKSEND_SMS_URL = "https://rest.clicksend.com/v3/sms/send"
REQUEST_TIMEOUT_SECONDS = 10.0


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def payment_sms_body(patient_name: str, payment_url: str) -> str:
    name = patient_name or "Client"
    return (
        f"Hi {name}, thank you for booking your appointment with {PRACTICE_NAME}. "
        f"Kindly pay on the link below to confirm your appointment: {payment_url}"
    )


class StripePaymentLinks:
    """Creates a one-off price for the amount, then a payment link for it."""

    def __init__(
        self,
        api_key: str | None = None,
        product_id: str | None = None,
        *,
        base_url: str = STRIPE_BASE_URL,
    ):
        self._api_key = STRIPE_API_KEY if api_key is None else api_key
        self._product_id = STRIPE_PRODUCT_ID if product_id is None else product_id
        self._client = httpx.Client(
            base_url=base_url,
            auth=(self._api_key, ""),
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._product_id)

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, data: dict[str, str]) -> dict:
        with metrics.track("stripe", f"POST {path}"):
            response = self._client.post(path, data=data)
            response.raise_for_status()
            return response.json()

    def create_link(self, amount: Decimal, currency: str = "eur") -> str | None:
        """Return a payment link URL for *amount*, or ``None`` on any failure."""
        if not self.configured:
            logger.warning("Stripe is not configured; no payment link created")
            return None
        if amount <= 0:
            return None

        try:
            price = self._post(
                "/prices",
                {
                    "product": self._product_id,
                    "unit_amount": str(to_cents(amount)),
                    "currency": currency,
                },
            )
            logger.info("Stripe: created price %s for %s %s", price.get("id"), amount, currency)
            link = self._post(
                "/payment_links",
                {
                    "line_items[0][price]": price["id"],
                    "line_items[0][quantity]": "1",
                },
            )
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.error("Stripe: could not create payment link for %s: %s", amount, exc)
            return None

        url = link.get("url")
        logger.info("Stripe: payment link %s", url)
        return url


class ClickSendSms:
    def __init__(
        self,
        username: str | None = None,
        api_key: str | None = None,
        sender: str | None = None,
        *,
        url: str = CLICKSEND_SMS_URL,
    ):
        self._username = CLICKSEND_USERNAME if username is None else username
        self._api_key = CLICKSEND_API_KEY if api_key is None else api_key
        self._sender = CLICKSEND_FROM if sender is None else sender
        self._url = url
        self._client = httpx.Client(
            auth=(self._username, self._api_key),
            headers={"Content-Type": "application/json"},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self._username and self._api_key)

    def close(self) -> None:
        self._client.close()

    def send(self, to: str, body: str) -> bool:
        """Send one SMS.  Returns ``True`` only on an HTTP 200 from ClickSend."""
        if not self.configured:
            logger.warning("ClickSend is not configured; SMS to %s not sent", to)
            return False
        if not to:
            logger.warning("ClickSend: no destination number, SMS not sent")
            return False

        payload = {
            "messages": [
                {"from": self._sender, "body": body, "to": to, "shorten_urls": True},
            ],
        }
        try:
            with metrics.track("clicksend", "POST /sms/send"):
                response = self._client.post(self._url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("ClickSend: SMS to %s failed: %s", to, exc)
            return False

        if response.status_code != 200:
            logger.error(
                "ClickSend: unexpected status %d sending to %s: %s",
                response.status_code, to, response.text,
            )
            return False
        logger.info("ClickSend: SMS sent to %s", to)
        return True


class PaymentNotifier:
    """Payment link followed by an SMS carrying it."""

    def __init__(self, links: StripePaymentLinks, sms: ClickSendSms):
        self._links = links
        self._sms = sms

    def notify(self, amount: Decimal, phone: str, patient_name: str) -> tuple[str | None, bool]:
        """Return ``(payment_url, sms_sent)``."""
        logger.info("Payment flow: %s for %s (%s)", amount, patient_name, phone)
        url = self._links.create_link(amount)
        if not url:
            logger.error("Payment flow: no payment link for %s, SMS skipped", patient_name)
            return None, False
        return url, self._sms.send(phone, payment_sms_body(patient_name, url))

    def close(self) -> None:
        self._links.close()
        self._sms.close()
