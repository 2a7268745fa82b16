"""End-to-end orchestration against the sandbox provider and SQLite storage."""

import asyncio
import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from zwpay.common.errors import (
    DeadlineExceededError,
    InvalidRequestError,
    InvalidSignatureError,
    NotConfiguredError,
    ProviderError,
    ReconciliationError,
    StorageError,
)
from zwpay.services.payments.models import PaymentMethod, Transaction
from zwpay.services.payments.repository import PaymentMethodRepository
from zwpay.services.payments.schemas import PaymentIntentRequest
from zwpay.services.provider_adapter.sandbox import SIGNATURE_HEADER, sign_payload


def _request(**overrides) -> PaymentIntentRequest:
    values = {"amount": 1000, "currency": "usd", "customer_id": "cust_1"}
    values.update(overrides)
    return PaymentIntentRequest(**values)


def test_create_intent_records_pending(service, transactions):
    """A new intent is returned to the caller and stored as pending."""

    response = asyncio.run(service.create_payment_intent("sandbox", _request(metadata={"order": "o-1"})))
    assert response.amount == 1000
    assert response.currency == "usd"
    assert response.status == "pending"
    assert response.client_secret

    stored = transactions.find_by_payment_intent(response.id)
    assert stored.tx_status == "pending"
    assert stored.customer_id == "cust_1"
    assert stored.save_payment_method is False
    assert stored.metadata == {"order": "o-1"}


def test_unknown_provider_is_not_configured(service, count_rows):
    with pytest.raises(NotConfiguredError):
        asyncio.run(service.create_payment_intent("paypal", _request()))
    assert count_rows(Transaction) == 0


def test_declined_intent_writes_nothing(service, count_rows):
    """Provider rejections carry their stable code and leave storage untouched."""

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(service.create_payment_intent("sandbox", _request(customer_id="force-decline-1")))
    assert exc_info.value.code == "spci0"
    assert count_rows(Transaction) == 0


def test_provider_timeout_surfaces_as_deadline(service, count_rows):
    """A hanging provider call is cut off by the per-operation budget."""

    with pytest.raises(DeadlineExceededError):
        asyncio.run(service.create_payment_intent("sandbox", _request(customer_id="force-timeout-1")))
    assert count_rows(Transaction) == 0


def test_failed_persist_cancels_orphaned_intent(service, sandbox, transactions, monkeypatch):
    """When the local write fails, the fresh provider intent is canceled and the error re-raised."""

    def broken_create(record):
        raise StorageError("transaction create failed: disk full")

    monkeypatch.setattr(transactions, "create", broken_create)
    with pytest.raises(StorageError, match="disk full"):
        asyncio.run(service.create_payment_intent("sandbox", _request()))
    assert [intent["status"] for intent in sandbox._intents.values()] == ["canceled"]


def test_failed_persist_without_compensation_leaves_intent(service, sandbox, transactions, monkeypatch):
    def broken_create(record):
        raise StorageError("transaction create failed")

    monkeypatch.setattr(transactions, "create", broken_create)
    monkeypatch.setattr(service.config, "compensate_orphaned_intents", False)
    with pytest.raises(StorageError):
        asyncio.run(service.create_payment_intent("sandbox", _request()))
    assert [intent["status"] for intent in sandbox._intents.values()] == ["requires_payment_method"]


def test_charge_remembers_payment_method(service, transactions, count_rows):
    """A confirmed charge is stored as succeeded and the method saved once."""

    response = asyncio.run(service.charge_client("sandbox", _request(token="pm_card_visa", remember_me=True)))
    assert response.status == "succeeded"
    assert response.payment_method_id == "pm_card_visa"
    assert transactions.find_by_payment_intent(response.id).tx_status == "succeeded"

    asyncio.run(service.charge_client("sandbox", _request(token="pm_card_visa", remember_me=True)))
    assert count_rows(Transaction) == 2
    assert count_rows(PaymentMethod) == 1

    methods = service.get_user_payment_methods("cust_1")
    assert [(m.payment_method_id, m.payment_provider, m.payment_method_type) for m in methods] == [
        ("pm_card_visa", "sandbox", "card")
    ]


def test_charge_without_remember_saves_nothing(service, count_rows):
    asyncio.run(service.charge_client("sandbox", _request(token="pm_card_visa")))
    assert count_rows(PaymentMethod) == 0


def test_charge_association_failure(service, count_rows):
    """A failed method attachment is reported before any charge is attempted."""

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(service.charge_client("sandbox", _request(token="pm_fail_attach_1")))
    assert exc_info.value.code == "scc2"
    assert exc_info.value.step == "attach"
    assert count_rows(Transaction) == 0


def test_succeeded_webhook_reconciles_and_saves_method(service, sandbox, transactions, count_rows):
    """A verified success event moves the transaction and saves the method when asked to."""

    intent = asyncio.run(service.create_payment_intent("sandbox", _request(remember_me=True)))
    raw, headers = sandbox.build_webhook("payment_intent.succeeded", intent.id, payment_method="pm_123")

    event = asyncio.run(service.parse_webhook("sandbox", raw, headers))
    assert event.type == "payment_succeeded"
    assert event.payment_intent == intent.id
    assert event.payment_method == "pm_123"
    assert transactions.find_by_payment_intent(intent.id).tx_status == "succeeded"
    assert count_rows(PaymentMethod) == 1


def test_replayed_webhook_is_idempotent(service, sandbox, transactions, count_rows):
    """Redelivering the same success event changes nothing the second time."""

    intent = asyncio.run(service.create_payment_intent("sandbox", _request(remember_me=True)))
    raw, headers = sandbox.build_webhook("payment_intent.succeeded", intent.id, payment_method="pm_123")

    asyncio.run(service.parse_webhook("sandbox", raw, headers))
    asyncio.run(service.parse_webhook("sandbox", raw, headers))
    assert transactions.find_by_payment_intent(intent.id).tx_status == "succeeded"
    assert count_rows(PaymentMethod) == 1


def test_failed_webhook_marks_failed(service, sandbox, transactions, count_rows):
    intent = asyncio.run(service.create_payment_intent("sandbox", _request(remember_me=True)))
    raw, headers = sandbox.build_webhook("payment_intent.payment_failed", intent.id, payment_method="pm_123")

    event = asyncio.run(service.parse_webhook("sandbox", raw, headers))
    assert event.type == "payment_failed"
    assert transactions.find_by_payment_intent(intent.id).tx_status == "failed"
    assert count_rows(PaymentMethod) == 0


def test_stale_event_does_not_regress_terminal_status(service, sandbox, transactions):
    """A late failure notice cannot undo a success that was already applied."""

    intent = asyncio.run(service.create_payment_intent("sandbox", _request()))
    succeeded = sandbox.build_webhook("payment_intent.succeeded", intent.id)
    asyncio.run(service.parse_webhook("sandbox", *succeeded))
    failed = sandbox.build_webhook("payment_intent.payment_failed", intent.id)
    asyncio.run(service.parse_webhook("sandbox", *failed))
    assert transactions.find_by_payment_intent(intent.id).tx_status == "succeeded"


def test_webhook_for_unknown_intent(service, sandbox, transactions):
    """Events for intents we never recorded are reported, and no row changes."""

    intent = asyncio.run(service.create_payment_intent("sandbox", _request()))
    raw, headers = sandbox.build_webhook("payment_intent.succeeded", "pi_unknown")
    with pytest.raises(ReconciliationError):
        asyncio.run(service.parse_webhook("sandbox", raw, headers))
    assert transactions.find_by_payment_intent(intent.id).tx_status == "pending"


def test_tampered_or_unsigned_webhook_rejected(service, sandbox, transactions):
    intent = asyncio.run(service.create_payment_intent("sandbox", _request()))
    raw, headers = sandbox.build_webhook("payment_intent.succeeded", intent.id)

    with pytest.raises(InvalidSignatureError):
        asyncio.run(service.parse_webhook("sandbox", raw.replace(b"succeeded", b"canceled"), headers))
    with pytest.raises(InvalidSignatureError):
        asyncio.run(service.parse_webhook("sandbox", raw, {}))
    assert transactions.find_by_payment_intent(intent.id).tx_status == "pending"


def test_stale_sandbox_signature_rejected(service, sandbox, transactions):
    """Sandbox deliveries are held to the same timestamp tolerance as Stripe's."""

    intent = asyncio.run(service.create_payment_intent("sandbox", _request()))
    raw, _ = sandbox.build_webhook("payment_intent.succeeded", intent.id)
    stale = {SIGNATURE_HEADER: sign_payload(raw, sandbox.webhook_secret, timestamp=int(time.time()) - 3600)}
    with pytest.raises(InvalidSignatureError):
        asyncio.run(service.parse_webhook("sandbox", raw, stale))
    assert transactions.find_by_payment_intent(intent.id).tx_status == "pending"

def test_unhandled_event_type_passes_through(service, sandbox):
    """Verified events we do not act on are returned with their raw payload."""

    raw, headers = sandbox.build_webhook("charge.refunded", "pi_anything")
    event = asyncio.run(service.parse_webhook("sandbox", raw, headers))
    assert event.type == "charge.refunded"
    assert event.payment_intent is None
    assert event.payload.kind == "opaque"
    assert event.payload.raw == raw


def test_get_intent_reads_provider_state(service):
    intent = asyncio.run(service.create_payment_intent("sandbox", _request()))
    fetched = asyncio.run(service.get_payment_intent("sandbox", intent.id))
    assert fetched.id == intent.id
    assert fetched.provider_status == "requires_payment_method"
    with pytest.raises(ProviderError):
        asyncio.run(service.get_payment_intent("sandbox", "pi_missing"))


def test_reconcile_pending_applies_missed_webhooks(service, sandbox, transactions):
    """Intents that settled upstream without a delivered webhook are caught by polling."""

    settled = asyncio.run(service.create_payment_intent("sandbox", _request()))
    waiting = asyncio.run(service.create_payment_intent("sandbox", _request()))
    sandbox._intents[settled.id]["status"] = "succeeded"

    since = datetime.now(timezone.utc) - timedelta(hours=1)
    applied = asyncio.run(service.reconcile_pending("sandbox", since))
    assert applied == {settled.id: "succeeded"}
    assert transactions.find_by_payment_intent(settled.id).tx_status == "succeeded"
    assert transactions.find_by_payment_intent(waiting.id).tx_status == "pending"


def test_racing_saves_of_same_method_leave_one_row(service, count_rows, monkeypatch):
    """Two charges that both see no saved method still produce a single row."""

    monkeypatch.setattr(PaymentMethodRepository, "find_payment_method", lambda self, customer_id, pm_id: None)
    for _ in range(2):
        asyncio.run(service.charge_client("sandbox", _request(token="pm_card_visa", remember_me=True)))
    assert count_rows(Transaction) == 2
    assert count_rows(PaymentMethod) == 1


@pytest.mark.parametrize(
    "intent",
    [
        {"id": "pi_1", "amount": "abc"},
        {"id": "pi_1", "payment_method": 5},
        {"id": "pi_1", "last_payment_error": "card_declined"},
        {"id": 42},
    ],
)
def test_undecodable_intent_event_is_invalid_request(service, sandbox, intent):
    """Correctly signed events with malformed intent fields are rejected as bad input."""

    raw = json.dumps({"type": "payment_intent.succeeded", "data": {"object": intent}}).encode("utf-8")
    headers = {SIGNATURE_HEADER: sign_payload(raw, sandbox.webhook_secret)}
    with pytest.raises(InvalidRequestError, match="failed to parse event data"):
        asyncio.run(service.parse_webhook("sandbox", raw, headers))
