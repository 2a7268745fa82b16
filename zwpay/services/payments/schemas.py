"""API and record schemas shared by the orchestrator, adapters and repositories."""

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class PaymentIntentRequest(BaseModel):
    """Provider-agnostic intent/charge payload accepted from callers."""

    amount: int = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    customer_id: str = Field(min_length=1)
    token: str | None = None
    # Tri-state: absent means "caller did not say", persisted as False.
    remember_me: bool | None = None
    metadata: dict[str, str] | None = None
    payment_method: str | None = None


class PaymentInfoRequest(BaseModel):
    """Body form of `GET /payments/{provider}/intent`."""

    id: str = Field(min_length=1)


class PaymentIntentResponse(BaseModel):
    """Normalized intent/charge response returned to callers."""

    id: str
    amount: int
    currency: str
    status: str
    client_secret: str | None = None
    payment_method_id: str | None = None
    payment_method_type: str | None = None
    provider_status: str | None = None


class PaymentMethodResponse(BaseModel):
    """Public view of one remembered payment method."""

    client_id: str
    payment_method_id: str
    payment_provider: str
    payment_method_type: str | None = None
    payment_method_status: str | None = None


class IntentPayload(BaseModel):
    """Payload of a recognized intent event."""

    kind: Literal["intent"] = "intent"
    id: str
    amount: int
    currency: str
    status: str
    provider_status: str | None = None


class OpaquePayload(BaseModel):
    """Payload of an event subtype the adapter does not normalize."""

    kind: Literal["opaque"] = "opaque"
    event_type: str
    raw: bytes


EventPayload = Annotated[IntentPayload | OpaquePayload, Field(discriminator="kind")]


class PaymentEvent(BaseModel):
    """Normalized provider webhook notification."""

    type: str
    payment_intent: str | None = None
    payment_method: str | None = None
    payload: EventPayload


class PaymentRecord(BaseModel):
    """Record shape shared by the transaction and payment-method repositories.

    Every field is optional; each repository decides which ones are required and
    maps them onto its own columns.
    """

    id: str | None = None
    internal_reference: str | None = None
    amount: int | None = None
    currency: str | None = None
    payment_intent_id: str | None = None
    tx_status: str | None = None
    customer_id: str | None = None
    payment_method_id: str | None = None
    payment_provider: str | None = None
    payment_method_type: str | None = None
    payment_method_status: str | None = None
    save_payment_method: bool | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    metadata: dict[str, Any] | None = None
