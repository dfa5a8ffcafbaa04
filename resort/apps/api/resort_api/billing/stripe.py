"""Stripe REST API client (customers, payment intents).

Stripe API Reference:
- Customers: https://docs.stripe.com/api/customers
- PaymentIntents: https://docs.stripe.com/api/payment_intents

Requests are form-encoded; nested fields use bracket keys
(metadata[user_id], automatic_payment_methods[enabled]).
"""

import logging
import os
from typing import Optional

import httpx

from resort_api.config.env import get_payment_currency, get_stripe_secret_key

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.stripe.com"


class StripeClient:
    """Stripe API client.

    Environment Variables:
    - STRIPE_SECRET_KEY: secret API key (sk_test_* / sk_live_*)
    - STRIPE_API_BASE: override API origin (stripe-mock in CI)
    - PAYMENT_CURRENCY: ISO currency for payment intents (default usd)
    """

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None):
        self.secret_key = secret_key or get_stripe_secret_key()
        self.base_url = (base_url or os.getenv("STRIPE_API_BASE", DEFAULT_BASE_URL)).rstrip("/")
        self.currency = get_payment_currency()

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def find_customer_by_email(self, email: str) -> Optional[dict]:
        """Return the first customer with this email, or None.

        Raises:
            httpx.HTTPError: If the request fails
        """
        url = f"{self.base_url}/v1/customers"

        async with httpx.AsyncClient() as client:
            response = await client.get(
                url,
                headers=self._headers(),
                params={"email": email, "limit": 1},
                timeout=30.0,
            )
            response.raise_for_status()

            data = response.json().get("data") or []
            return data[0] if data else None

    async def create_customer(self, *, email: str, user_id: str) -> dict:
        """Create a customer tagged with our user id.

        Raises:
            httpx.HTTPError: If the request fails
        """
        url = f"{self.base_url}/v1/customers"
        form = {"email": email, "metadata[user_id]": user_id}

        async with httpx.AsyncClient() as client:
            response = await client.post(url, headers=self._headers(), data=form, timeout=30.0)
            response.raise_for_status()

            result = response.json()
            logger.info(
                "STRIPE_CUSTOMER_CREATED",
                extra={"customer_id": result.get("id")},
            )
            return result

    async def get_or_create_customer(self, *, email: str, user_id: str) -> str:
        """Read-then-create by email. Not transactional; duplicates are tolerated."""
        existing = await self.find_customer_by_email(email)
        if existing:
            return existing["id"]
        created = await self.create_customer(email=email, user_id=user_id)
        return created["id"]

    async def create_payment_intent(
        self,
        *,
        amount: int,
        customer_id: str,
        metadata: dict[str, str],
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """Create a payment intent for amount (cents).

        Args:
            amount: Charge amount in the smallest currency unit
            customer_id: Stripe customer id
            metadata: Routing data echoed back on webhooks
            description: Statement description (optional)
            idempotency_key: Stripe Idempotency-Key (optional)

        Returns:
            PaymentIntent object (id, client_secret, status, ...)

        Raises:
            httpx.HTTPError: If the request fails
        """
        url = f"{self.base_url}/v1/payment_intents"

        form: dict[str, str | int] = {
            "amount": amount,
            "currency": self.currency,
            "customer": customer_id,
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = value
        if description:
            form["description"] = description

        async with httpx.AsyncClient() as client:
            response = await client.post(
                url,
                headers=self._headers(idempotency_key),
                data=form,
                timeout=30.0,
            )
            response.raise_for_status()

            result = response.json()
            logger.info(
                "STRIPE_PAYMENT_INTENT_CREATED",
                extra={
                    "stripe_payment_intent_id": result.get("id"),
                    "amount": amount,
                    "purpose": metadata.get("purpose"),
                },
            )
            return result

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict:
        """Get a payment intent (used to recover metadata for refunds).

        Raises:
            httpx.HTTPError: If the request fails
        """
        url = f"{self.base_url}/v1/payment_intents/{payment_intent_id}"

        async with httpx.AsyncClient() as client:
            response = await client.get(url, headers=self._headers(), timeout=30.0)
            response.raise_for_status()

            return response.json()


# Global client instance (singleton)
_stripe_client: Optional[StripeClient] = None


def get_stripe_client() -> StripeClient:
    """Get global Stripe client instance (singleton).

    Raises:
        ValueError: If STRIPE_SECRET_KEY is not set
    """
    global _stripe_client
    if _stripe_client is None:
        _stripe_client = StripeClient()
    return _stripe_client
