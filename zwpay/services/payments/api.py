"""HTTP routes for payment intents, direct charges, webhooks and saved methods."""

import json

from fastapi import APIRouter, HTTPException, Request

from zwpay.common.config import settings
from zwpay.common.deadline import bounded
from zwpay.common.errors import PaymentError
from zwpay.services.payments.schemas import (
    PaymentEvent,
    PaymentInfoRequest,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PaymentMethodResponse,
)
from zwpay.services.payments.service import PaymentService


router = APIRouter()


def _service(request: Request) -> PaymentService:
    return request.app.state.payment_service


def _bad_request(exc: PaymentError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


@router.get("/payments/health")
def payments_health():
    return {"status": "OK"}


@router.get("/payments/methods/{customer_id}", response_model=list[PaymentMethodResponse])
def get_payment_methods(customer_id: str, request: Request):
    """List the payment methods remembered for one customer."""

    with bounded(settings.request_timeout_seconds):
        try:
            return _service(request).get_user_payment_methods(customer_id)
        except PaymentError as exc:
            raise _bad_request(exc) from exc


@router.post("/payments/{provider}/intent", response_model=PaymentIntentResponse)
async def create_payment_intent(provider: str, req: PaymentIntentRequest, request: Request):
    """Create a provider intent and record it as `pending`."""

    with bounded(settings.request_timeout_seconds):
        try:
            return await _service(request).create_payment_intent(provider, req)
        except PaymentError as exc:
            raise _bad_request(exc) from exc


@router.post("/payments/{provider}/charge", response_model=PaymentIntentResponse)
async def charge(provider: str, req: PaymentIntentRequest, request: Request):
    """Charge a tokenized payment method directly."""

    with bounded(settings.charge_request_timeout_seconds):
        try:
            return await _service(request).charge_client(provider, req)
        except PaymentError as exc:
            raise _bad_request(exc) from exc


@router.get("/payments/{provider}/intent", response_model=PaymentIntentResponse)
async def get_payment_intent(provider: str, request: Request, id: str | None = None):
    """Fetch an intent by `?id=` or by a JSON body `{"id": ...}`."""

    if not id:
        body = await request.body()
        try:
            id = PaymentInfoRequest.model_validate(json.loads(body or b"{}")).id
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="payment intent id is required") from exc

    with bounded(settings.request_timeout_seconds):
        try:
            return await _service(request).get_payment_intent(provider, id)
        except PaymentError as exc:
            raise _bad_request(exc) from exc


@router.post("/webhooks/{provider}", response_model=PaymentEvent)
async def webhook(provider: str, request: Request):
    """Verify a provider notification and reconcile the matching transaction."""

    raw = await request.body()
    with bounded(settings.request_timeout_seconds):
        try:
            return await _service(request).parse_webhook(provider, raw, dict(request.headers))
        except PaymentError as exc:
            raise _bad_request(exc) from exc
