import logging

import stripe
from fastapi import Request

import config
from errors import UpstreamFailure

logger = logging.getLogger(__name__)


class StripeGateway:
    """Creates Stripe payment intents; the client confirms them with the secret."""

    def __init__(self, api_key: str, currency: str = "usd", timeout: int = 10):
        self.currency = currency
        self.client = None
        if api_key:
            self.client = stripe.StripeClient(
                api_key,
                max_network_retries=0,
                http_client=stripe.new_default_http_client(timeout=timeout),
            )

    def create_intent(self, amount) -> str:
        if self.client is None:
            raise UpstreamFailure("Payment gateway not configured", status_code=503)
        # Stripe expects the amount in the smallest currency unit
        intent = self.client.payment_intents.create(
            params={
                "amount": int(round(float(amount) * 100)),
                "currency": self.currency,
                "payment_method_types": ["card"],
            }
        )
        logger.info("Payment intent %s created for %s %s", intent.id, amount, self.currency)
        return intent.client_secret


def build_gateway() -> StripeGateway:
    return StripeGateway(config.STRIPE_SECRET_KEY, config.STRIPE_CURRENCY, config.GATEWAY_TIMEOUT_SECONDS)


def get_gateway(request: Request) -> StripeGateway:
    return request.app.state.gateway
