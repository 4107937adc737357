"""
Payment processor (Stripe).

The rest of the app only needs one thing from it: turn an amount into a
client secret the frontend can confirm a card payment with.
"""

import logging

import stripe

from errors import DependencyError

logger = logging.getLogger(__name__)


class StripeGateway:
    def __init__(self, api_key: str, currency: str = "usd"):
        self.api_key = api_key
        self.currency = currency

    def create_intent(self, amount: int) -> str:
        """Create a PaymentIntent for `amount` (smallest currency unit)."""
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=self.currency,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.exception("Stripe payment intent failed")
            raise DependencyError("Failed to create payment intent.", details=str(e))
        return intent.client_secret
