"""In-process provider simulation for local development and tests.

Outcomes are driven by the request rather than chance:
- customer ids starting with `force-decline` are declined,
- customer ids starting with `force-timeout` hang until the caller's deadline fires,
- tokens starting with `pm_fail_attach` fail while associating the method.

Webhooks are signed with Stripe's `t=<unix>,v1=<hmac-sha256>` scheme, carried in
`X-Sandbox-Signature`, and verified by the Stripe SDK.
"""

import asyncio
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Mapping
from uuid import uuid4

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


SIGNATURE_HEADER = "X-Sandbox-Signature"

# Provider-side status an intent ends in after each webhook type.
EVENT_INTENT_STATUS = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "requires_payment_method",
    "payment_intent.canceled": "canceled",
}


def sign_payload(raw: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a signature header value for `raw`.

    The Stripe SDK only verifies, so signing follows its scheme here.
    """

    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + raw, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def verify_signature(raw: bytes, header: str, secret: str, tolerance_seconds: int) -> None:
    """Raise `InvalidSignatureError` unless `header` signs `raw` recently enough."""

    try:
        stripe.WebhookSignature.verify_header(raw.decode("utf-8"), header, secret, tolerance_seconds)
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        raise InvalidSignatureError("invalid webhook signature") from exc


def _to_response(intent: dict[str, Any]) -> PaymentIntentResponse:
    return PaymentIntentResponse(
        id=intent["id"],
        amount=intent["amount"],
        currency=intent["currency"],
        status=normalize_status(intent["status"]),
        client_secret=intent.get("client_secret"),
        payment_method_id=intent.get("payment_method"),
        payment_method_type=intent.get("payment_method_type"),
        provider_status=intent["status"],
    )


class SandboxAdapter(ProviderAdapter):
    """Deterministic stand-in for an external provider."""

    def __init__(self, webhook_secret: str, tolerance_seconds: int = 300, hang_seconds: float = 30.0) -> None:
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self.hang_seconds = hang_seconds
        self._intents: dict[str, dict[str, Any]] = {}
        self._attachments: dict[str, str] = {}

    def identify(self) -> str:
        return "sandbox"

    async def _simulate(self, customer_id: str, code: str, step: str | None = None) -> None:
        lowered = customer_id.lower()
        if lowered.startswith("force-timeout"):
            await asyncio.sleep(self.hang_seconds)
        if lowered.startswith("force-decline"):
            raise ProviderError(f"Payment declined #{code}", code=code, step=step)

    async def create_intent(self, req: PaymentIntentRequest) -> PaymentIntentResponse:
        await self._simulate(req.customer_id, "spci0")
        intent_id = f"pi_sandbox_{uuid4().hex[:24]}"
        intent = {
            "id": intent_id,
            "amount": req.amount,
            "currency": req.currency.lower(),
            "status": "requires_payment_method",
            "client_secret": f"{intent_id}_secret_{secrets.token_hex(12)}",
            "payment_method": req.payment_method,
        }
        self._intents[intent_id] = intent
        return _to_response(intent)

    async def charge(self, req: PaymentIntentRequest) -> PaymentIntentResponse:
        if not req.token:
            raise InvalidRequestError("token is required for a direct charge")
        customer = self._attachments.get(req.token)
        if customer is None:
            if req.token.startswith("pm_fail_attach"):
                raise AssociationError("Direct charge failed #scc2", code="scc2", step="attach")
            customer = f"cus_sandbox_{uuid4().hex[:14]}"
            self._attachments[req.token] = customer
            logger.info("sandbox_payment_method_attached customer=%s", customer)

        await self._simulate(req.customer_id, "scc3", step="charge")
        intent_id = f"pi_sandbox_{uuid4().hex[:24]}"
        intent = {
            "id": intent_id,
            "amount": req.amount,
            "currency": req.currency.lower(),
            "status": "succeeded",
            "payment_method": req.token,
            "payment_method_type": "card",
            "customer": customer,
        }
        self._intents[intent_id] = intent
        return _to_response(intent)

    async def get_intent(self, intent_id: str) -> PaymentIntentResponse:
        intent = self._intents.get(intent_id)
        if intent is None:
            raise ProviderError("Collecting payment details failed #sgpi0", code="sgpi0")
        return _to_response(intent)

    async def cancel_intent(self, intent_id: str) -> PaymentIntentResponse:
        intent = self._intents.get(intent_id)
        if intent is None or intent["status"] == "succeeded":
            raise ProviderError("Payment cancellation failed #scni0", code="scni0")
        intent["status"] = "canceled"
        return _to_response(intent)

    def build_webhook(
        self, event_type: str, intent_id: str, payment_method: str | None = None
    ) -> tuple[bytes, dict[str, str]]:
        """Advance a stored intent as the provider would and return a signed delivery."""

        intent = self._intents.setdefault(
            intent_id,
            {"id": intent_id, "amount": 0, "currency": "usd", "status": "requires_payment_method"},
        )
        if event_type in EVENT_INTENT_STATUS:
            intent["status"] = EVENT_INTENT_STATUS[event_type]
        if payment_method is not None:
            intent["payment_method"] = payment_method
        envelope = {
            "id": f"evt_sandbox_{uuid4().hex[:24]}",
            "type": event_type,
            "data": {"object": {key: value for key, value in intent.items() if key != "client_secret"}},
        }
        raw = json.dumps(envelope).encode("utf-8")
        return raw, {SIGNATURE_HEADER: sign_payload(raw, self.webhook_secret)}

    async def parse_webhook(self, raw: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        sig_header = get_header(headers, SIGNATURE_HEADER)
        if not sig_header:
            raise InvalidSignatureError("missing x-sandbox-signature header")
        verify_signature(raw, sig_header, self.webhook_secret, self.tolerance_seconds)

        try:
            envelope = json.loads(raw)
            event_type = envelope["type"]
            intent = envelope["data"]["object"] if event_type in INTENT_EVENT_TYPES else {}
        except (ValueError, KeyError, TypeError) as exc:
            raise InvalidRequestError("failed to parse event data") from exc
        return build_intent_event(event_type, intent, raw)
