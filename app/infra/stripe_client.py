from __future__ import annotations

from typing import Any

from app.settings import settings


class StripeClient:
    def __init__(
        self,
        *,
        secret_key: str | None,
        stripe_sdk: Any | None = None,
    ) -> None:
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key

    def _authorize(self) -> None:
        if not self.secret_key:
            raise ValueError("Stripe secret key not configured")
        self.stripe.api_key = self.secret_key

    def create_payment_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        description: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        self._authorize()
        payload: dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency,
            "description": description,
            "metadata": metadata or {},
            "automatic_payment_methods": {"enabled": True},
        }
        if idempotency_key:
            payload["idempotency_key"] = idempotency_key
        return self.stripe.PaymentIntent.create(**payload)

    def create_refund(
        self,
        *,
        payment_intent: str,
        amount_minor: int,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        self._authorize()
        payload: dict[str, Any] = {
            "payment_intent": payment_intent,
            "amount": amount_minor,
            "metadata": metadata or {},
        }
        if idempotency_key:
            payload["idempotency_key"] = idempotency_key
        return self.stripe.Refund.create(**payload)


def resolve_client(app_state: Any) -> StripeClient:
    client = getattr(app_state, "stripe_client", None)
    if client is None:
        client = StripeClient(secret_key=settings.stripe_secret_key)
        app_state.stripe_client = client
    return client
