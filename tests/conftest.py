"""Shared fixtures: in-memory SQLite storage, registries and a sandbox-backed service."""

import os

# Settings are read at import time; point them at SQLite before any zwpay import.
os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///./zwpay-test.db")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from zwpay.common.config import CommonSettings
from zwpay.common.db import Base
from zwpay.services.payments.registry import (
    PAYMENT_METHOD_REPO,
    TRANSACTION_REPO,
    ProviderRegistry,
    RepositoryRegistry,
)
from zwpay.services.payments.repository import PaymentMethodRepository, TransactionRepository
from zwpay.services.payments.service import PaymentService
from zwpay.services.provider_adapter.sandbox import SandboxAdapter


WEBHOOK_SECRET = "whsec_test_sandbox"


@pytest.fixture
def session_factory():
    """Fresh schema per test on a single shared in-memory connection."""

    engine = create_engine(
        "sqlite+pysqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def transactions(session_factory):
    return TransactionRepository(session_factory)


@pytest.fixture
def payment_methods(session_factory):
    return PaymentMethodRepository(session_factory)


@pytest.fixture
def sandbox():
    return SandboxAdapter(WEBHOOK_SECRET, tolerance_seconds=300, hang_seconds=5.0)


@pytest.fixture
def test_settings():
    return CommonSettings(
        postgres_dsn="sqlite+pysqlite://",
        intent_timeout_seconds=1.0,
        get_intent_timeout_seconds=1.0,
        charge_timeout_seconds=1.0,
        webhook_timeout_seconds=1.0,
        compensation_timeout_seconds=0.5,
        compensate_orphaned_intents=True,
    )


@pytest.fixture
def service(sandbox, transactions, payment_methods, test_settings):
    providers = ProviderRegistry()
    providers.register(sandbox.identify(), sandbox)
    providers.freeze()
    repositories = RepositoryRegistry()
    repositories.register(TRANSACTION_REPO, transactions)
    repositories.register(PAYMENT_METHOD_REPO, payment_methods)
    repositories.freeze()
    return PaymentService(providers, repositories, test_settings)


@pytest.fixture
def count_rows(session_factory):
    """Row counter for one mapped model."""

    def count(model) -> int:
        with session_factory() as db:
            return db.query(model).count()

    return count
