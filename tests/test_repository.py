"""Persistence contract for the transaction and payment-method repositories."""

from datetime import datetime, timedelta, timezone

import pytest

from zwpay.common.errors import (
    FiltersRequiredError,
    InvalidColumnError,
    InvalidRequestError,
    NoMatchError,
    NotFoundError,
    StorageError,
)
from zwpay.services.payments.models import PaymentMethod, Transaction
from zwpay.services.payments.schemas import PaymentRecord


def _transaction(**overrides) -> PaymentRecord:
    values = {
        "amount": 1000,
        "currency": "usd",
        "customer_id": "cust_1",
        "tx_status": "pending",
        "payment_intent_id": "pi_1",
    }
    values.update(overrides)
    return PaymentRecord(**values)


def test_create_and_find_by_payment_intent(transactions):
    """Optional fields are stored only when set and read back unchanged."""

    transactions.create(_transaction(metadata={"order": "o-1"}, save_payment_method=True))
    found = transactions.find_by_payment_intent("pi_1")
    assert found.amount == 1000
    assert found.tx_status == "pending"
    assert found.save_payment_method is True
    assert found.metadata == {"order": "o-1"}
    assert found.id


def test_save_payment_method_defaults_false(transactions):
    """An unspecified remember flag is stored as False."""

    transactions.create(_transaction())
    assert transactions.find_by_payment_intent("pi_1").save_payment_method is False


def test_create_requires_core_fields(transactions, count_rows):
    """A record missing a required field is rejected before touching storage."""

    with pytest.raises(InvalidRequestError):
        transactions.create(_transaction(amount=None))
    assert count_rows(Transaction) == 0


def test_find_missing_is_not_found(transactions):
    """Single-row lookups with no match raise rather than returning empty records."""

    with pytest.raises(NotFoundError):
        transactions.find_by_payment_intent("pi_missing")
    with pytest.raises(NotFoundError):
        transactions.find_by_id("00000000-0000-0000-0000-000000000000")


def test_find_by_column_rejects_unknown_columns(transactions):
    """Column names come from an allow-list; injection attempts never reach SQL."""

    transactions.create(_transaction())
    for column in ("tx_status; DROP TABLE transactions", "metadata", "1=1 OR customer_id"):
        with pytest.raises(InvalidColumnError):
            transactions.find_by_column(column, "x")
    assert len(transactions.find_by_column("customer_id", "cust_1")) == 1


def test_find_by_status_since(transactions):
    """Pending rows are listed for reconciliation; terminal rows are not."""

    transactions.create(_transaction())
    transactions.create(_transaction(payment_intent_id="pi_2", tx_status="succeeded"))
    since = datetime.now(timezone.utc) - timedelta(hours=1)
    pending = transactions.find_by_status("pending", since)
    assert [record.payment_intent_id for record in pending] == ["pi_1"]


def test_update_status_requires_filters(transactions):
    """An unfiltered status update is refused."""

    with pytest.raises(FiltersRequiredError):
        transactions.update_status("succeeded", {})


def test_update_status_rejects_unknown_filter(transactions):
    with pytest.raises(InvalidColumnError):
        transactions.update_status("succeeded", {"status OR 1=1": "pending"})


def test_update_status_no_match(transactions):
    """Zero affected rows is reported as an error, not silently accepted."""

    transactions.create(_transaction())
    with pytest.raises(NoMatchError):
        transactions.update_status("succeeded", {"payment_intent_id": "pi_1", "tx_status": "failed"})
    assert transactions.update_status("succeeded", {"payment_intent_id": "pi_1", "tx_status": "pending"}) == 1
    assert transactions.find_by_payment_intent("pi_1").tx_status == "succeeded"


def test_duplicate_payment_intent_is_storage_error(transactions):
    """The unique payment intent constraint surfaces as a typed storage error."""

    transactions.create(_transaction())
    with pytest.raises(StorageError):
        transactions.create(_transaction())


def test_with_transaction_rolls_back_on_error(transactions, count_rows):
    """Every write inside a failed unit is discarded."""

    def work(scoped):
        scoped.create(_transaction())
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        transactions.with_transaction(work)
    assert count_rows(Transaction) == 0


def test_with_transaction_commits(transactions, count_rows):
    def work(scoped):
        scoped.create(_transaction())
        scoped.create(_transaction(payment_intent_id="pi_2"))
        return "done"

    assert transactions.with_transaction(work) == "done"
    assert count_rows(Transaction) == 2


def test_create_if_absent_writes_once(payment_methods, count_rows):
    """Repeated saves of the same (customer, method) pair leave exactly one row."""

    record = PaymentRecord(
        customer_id="cust_1",
        payment_method_id="pm_1",
        payment_provider="sandbox",
        payment_method_type="card",
        payment_method_status="active",
    )
    assert payment_methods.create_if_absent(record) is True
    assert payment_methods.create_if_absent(record) is False
    assert count_rows(PaymentMethod) == 1

    found = payment_methods.find_payment_method("cust_1", "pm_1")
    assert found.payment_provider == "sandbox"
    assert found.payment_method_type == "card"
    assert payment_methods.find_payment_method("cust_2", "pm_1") is None
