import hmac
from typing import Any, Dict, NamedTuple, Optional

import stripe
import structlog

from visa_intake.config import get_settings
from visa_intake.errors import GatewayError

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


class RemoteOrder(NamedTuple):
    reference: str
    client_credentials: Dict[str, Any]


class Verification(NamedTuple):
    verified: bool
    payment_reference: Optional[str] = None
    reason: str = ""


class StripeGateway:
    def __init__(
        self,
        secret_key: str,
        publishable_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: float = 8.0,
    ):
        self.secret_key = secret_key
        self.publishable_key = publishable_key
        self.webhook_secret = webhook_secret

        # retries belong to the payment coordinator, not the SDK
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            return func(*args, api_key=self.secret_key, **kwargs)
        except TRANSIENT_ERRORS as e:
            logger.warning("gateway_transient_error", operation=operation, error=str(e))
            raise GatewayError(f"{operation} failed: {e}", transient=True) from e
        except stripe.StripeError as e:
            logger.error("gateway_error", operation=operation, error=str(e))
            raise GatewayError(f"{operation} failed: {e}", transient=False) from e

    def create_remote_order(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> RemoteOrder:
        intent = self._call(
            "create_remote_order",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        credentials = {"client_secret": intent.client_secret}
        if self.publishable_key:
            credentials["publishable_key"] = self.publishable_key
        return RemoteOrder(reference=intent.id, client_credentials=credentials)

    def verify_completion(
        self,
        reference: str,
        client_signature: str,
        amount: int,
        currency: str,
    ) -> Verification:
        """
        Check a client's completion report against the gateway's own record.

        The client-reported token only selects the order; the verdict comes
        from the PaymentIntent fetched server side.
        """
        intent = self._call("verify_completion", stripe.PaymentIntent.retrieve, reference)

        if intent.id != reference:
            return Verification(False, reason="reference mismatch")
        if not client_signature or not hmac.compare_digest(
            str(getattr(intent, "client_secret", "") or ""), str(client_signature)
        ):
            return Verification(False, reason="signature mismatch")
        if intent.status != "succeeded":
            return Verification(False, reason=f"payment status is {intent.status}")
        if intent.amount != amount or str(intent.currency).lower() != currency.lower():
            return Verification(False, reason="amount or currency mismatch")

        return Verification(True, payment_reference=getattr(intent, "latest_charge", None) or intent.id)

    def cancel_remote_order(self, reference: str) -> None:
        self._call("cancel_remote_order", stripe.PaymentIntent.cancel, reference)

    def construct_event(self, payload: bytes, signature: str):
        """Verify a webhook delivery. Raises ValueError or stripe.SignatureVerificationError."""
        if not signature or not self.webhook_secret:
            raise stripe.SignatureVerificationError("Missing webhook signature or secret", signature)
        return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)


def get_gateway() -> Optional[StripeGateway]:
    settings = get_settings()
    if not settings.gateway_configured:
        return None
    return StripeGateway(
        secret_key=settings.stripe_secret_key,
        publishable_key=settings.stripe_publishable_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout=settings.gateway_timeout_seconds,
    )
