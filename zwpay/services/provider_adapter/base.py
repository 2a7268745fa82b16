"""Capability interface every external payment provider adapter implements.

Also holds the webhook normalization shared by adapters whose providers use the
`payment_intent.*` event envelope.
"""

from abc import ABC, abstractmethod
from typing import Any, Mapping

from pydantic import ValidationError

from zwpay.common import state_machine
from zwpay.common.errors import InvalidRequestError
from zwpay.services.payments.schemas import (
    IntentPayload,
    OpaquePayload,
    PaymentEvent,
    PaymentIntentRequest,
    PaymentIntentResponse,
)


PAYMENT_SUCCEEDED = "payment_succeeded"
PAYMENT_FAILED = "payment_failed"
PAYMENT_CANCELED = "payment_canceled"

INTENT_EVENT_TYPES = {
    "payment_intent.succeeded": PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": PAYMENT_FAILED,
    "payment_intent.canceled": PAYMENT_CANCELED,
}

# Provider-side intent statuses that are not terminal stay `pending` locally.
_PROVIDER_STATUS = {
    "succeeded": state_machine.SUCCEEDED,
    "canceled": state_machine.CANCELED,
}


def normalize_status(provider_status: str | None) -> str:
    return _PROVIDER_STATUS.get(provider_status or "", state_machine.PENDING)


def get_header(headers: Mapping[str, str], key: str) -> str:
    """Case-insensitive single-value header lookup; empty string when absent."""

    wanted = key.lower()
    for name, value in headers.items():
        if name.lower() == wanted and value:
            return value
    return ""


def _object_id(value: Any) -> str | None:
    # Expandable fields arrive either as an id string or as the full object.
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def build_intent_event(event_type: str, intent: Mapping[str, Any], raw: bytes) -> PaymentEvent:
    """Normalize one decoded `payment_intent.*` envelope into a PaymentEvent."""

    try:
        return _normalize(event_type, intent, raw)
    except (ValidationError, AttributeError, TypeError) as exc:
        raise InvalidRequestError("failed to parse event data") from exc


def _normalize(event_type: str, intent: Mapping[str, Any], raw: bytes) -> PaymentEvent:
    normalized = INTENT_EVENT_TYPES.get(event_type)
    if normalized is None:
        return PaymentEvent(type=event_type, payload=OpaquePayload(event_type=event_type, raw=raw))
    if not isinstance(intent, Mapping) or not intent.get("id"):
        raise InvalidRequestError("failed to parse event data")

    # Failed attempts may only reference the method through `last_payment_error`.
    payment_method_id = _object_id(intent.get("payment_method"))
    if payment_method_id is None:
        last_error = intent.get("last_payment_error") or {}
        payment_method_id = _object_id(last_error.get("payment_method"))

    provider_status = intent.get("status")
    return PaymentEvent(
        type=normalized,
        payment_intent=intent["id"],
        payment_method=payment_method_id,
        payload=IntentPayload(
            id=intent["id"],
            amount=intent.get("amount") or 0,
            currency=intent.get("currency") or "",
            status=normalize_status(provider_status),
            provider_status=provider_status,
        ),
    )


class ProviderAdapter(ABC):
    """One external provider's protocol behind the orchestrator's contract.

    Every operation may be cancelled by the caller's deadline; adapters must not
    swallow provider rejections and raise `ProviderError` with a stable code instead.
    """

    @abstractmethod
    def identify(self) -> str:
        """Canonical provider identifier, used as the registry key."""

    @abstractmethod
    async def create_intent(self, req: PaymentIntentRequest) -> PaymentIntentResponse:
        """Reserve a charge of `req.amount` / `req.currency`."""

    @abstractmethod
    async def charge(self, req: PaymentIntentRequest) -> PaymentIntentResponse:
        """Directly charge the payment method referenced by `req.token`.

        Associates the method with a new provider customer first when needed. That
        association is not rolled back if the final charge fails; association
        failures raise `AssociationError`, charge failures plain `ProviderError`.
        """

    @abstractmethod
    async def get_intent(self, intent_id: str) -> PaymentIntentResponse:
        """Current provider-side state of a previously created intent."""

    @abstractmethod
    async def cancel_intent(self, intent_id: str) -> PaymentIntentResponse:
        """Cancel an unconfirmed intent (used for orphan compensation)."""

    @abstractmethod
    async def parse_webhook(self, raw: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        """Verify the authenticity header, then decode and normalize the event.

        Raises `InvalidSignatureError` when the header is absent or does not verify.
        """
