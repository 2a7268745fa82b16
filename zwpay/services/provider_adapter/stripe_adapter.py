"""Stripe implementation of the provider adapter contract.

Uses the official SDK's async methods over its httpx client, so a fired deadline
cancels the in-flight HTTP request instead of leaving it running in a thread.
"""

import json
from typing import Any, Mapping

import stripe

from zwpay.common.errors import AssociationError, InvalidRequestError, InvalidSignatureError, ProviderError
from zwpay.common.logging import logger
from zwpay.services.payments.schemas import PaymentEvent, PaymentIntentRequest, PaymentIntentResponse
from zwpay.services.provider_adapter.base import (
    INTENT_EVENT_TYPES,
    ProviderAdapter,
    build_intent_event,
    get_header,
    normalize_status,
)


SIGNATURE_HEADER = "Stripe-Signature"


def _reason(exc: stripe.StripeError) -> str:
    return getattr(exc, "user_message", None) or str(exc) or type(exc).__name__


def _object_id(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


def _to_response(
    intent: Any, payment_method_id: str | None = None, payment_method_type: str | None = None
) -> PaymentIntentResponse:
    provider_status = getattr(intent, "status", None)
    return PaymentIntentResponse(
        id=intent.id,
        amount=intent.amount,
        currency=intent.currency,
        status=normalize_status(provider_status),
        client_secret=getattr(intent, "client_secret", None),
        payment_method_id=payment_method_id,
        payment_method_type=payment_method_type,
        provider_status=provider_status,
    )


class StripeAdapter(ProviderAdapter):
    """PaymentIntents, PaymentMethods and Customers over the Stripe API."""

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        tolerance_seconds: int = 300,
        client: Any = None,
    ) -> None:
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self.client = client or stripe.StripeClient(api_key, http_client=stripe.HTTPXClient())

    def identify(self) -> str:
        return "stripe"

    async def create_intent(self, req: PaymentIntentRequest) -> PaymentIntentResponse:
        params: dict[str, Any] = {"amount": req.amount, "currency": req.currency}
        if req.metadata:
            params["metadata"] = req.metadata
        try:
            intent = await self.client.payment_intents.create_async(params=params)
        except stripe.StripeError as exc:
            raise ProviderError(f"Payment creation failed #acpi0: {_reason(exc)}", code="acpi0") from exc
        return _to_response(intent)

    async def get_intent(self, intent_id: str) -> PaymentIntentResponse:
        try:
            intent = await self.client.payment_intents.retrieve_async(intent_id)
        except stripe.StripeError as exc:
            raise ProviderError(f"Collecting payment details failed #agpi0: {_reason(exc)}", code="agpi0") from exc
        return _to_response(intent, _object_id(getattr(intent, "payment_method", None)))

    async def cancel_intent(self, intent_id: str) -> PaymentIntentResponse:
        try:
            intent = await self.client.payment_intents.cancel_async(intent_id)
        except stripe.StripeError as exc:
            raise ProviderError(f"Payment cancellation failed #acni0: {_reason(exc)}", code="acni0") from exc
        return _to_response(intent)

    async def charge(self, req: PaymentIntentRequest) -> PaymentIntentResponse:
        if not req.token:
            raise InvalidRequestError("token is required for a direct charge")

        try:
            payment_method = await self.client.payment_methods.retrieve_async(req.token)
        except stripe.StripeError as exc:
            raise ProviderError(f"Direct charge failed #acc0: {_reason(exc)}", code="acc0", step="lookup") from exc

        customer_id = _object_id(getattr(payment_method, "customer", None))
        if customer_id is None:
            try:
                customer = await self.client.customers.create_async(
                    params={"metadata": {"customer_id": req.customer_id}}
                )
            except stripe.StripeError as exc:
                raise AssociationError(
                    f"Direct charge failed #acc1: {_reason(exc)}", code="acc1", step="create_customer"
                ) from exc
            try:
                await self.client.payment_methods.attach_async(req.token, params={"customer": customer.id})
            except stripe.StripeError as exc:
                raise AssociationError(
                    f"Direct charge failed #acc2: {_reason(exc)}", code="acc2", step="attach"
                ) from exc
            customer_id = customer.id
            logger.info("stripe_payment_method_attached customer=%s", customer_id)

        try:
            intent = await self.client.payment_intents.create_async(
                params={
                    "amount": req.amount,
                    "currency": req.currency,
                    "customer": customer_id,
                    "payment_method": req.token,
                    "confirm": True,
                    "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
                }
            )
        except stripe.StripeError as exc:
            raise ProviderError(f"Direct charge failed #acc3: {_reason(exc)}", code="acc3", step="charge") from exc
        return _to_response(
            intent,
            _object_id(getattr(intent, "payment_method", None)) or req.token,
            getattr(payment_method, "type", None),
        )

    async def parse_webhook(self, raw: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        sig_header = get_header(headers, SIGNATURE_HEADER)
        if not sig_header:
            raise InvalidSignatureError("missing stripe-signature header")
        try:
            stripe.WebhookSignature.verify_header(
                raw.decode("utf-8"), sig_header, self.webhook_secret, self.tolerance_seconds
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise InvalidSignatureError("invalid webhook signature") from exc

        try:
            envelope = json.loads(raw)
            event_type = envelope["type"]
            intent = envelope["data"]["object"] if event_type in INTENT_EVENT_TYPES else {}
        except (ValueError, KeyError, TypeError) as exc:
            raise InvalidRequestError("failed to parse event data") from exc
        return build_intent_event(event_type, intent, raw)
