"""Payment orchestration.

Composes a resolved provider adapter with the transaction and payment-method
repositories for each use case, bounds every provider call with a deadline, and
reconciles local transaction state after provider responses and webhooks.
"""

from contextlib import contextmanager
from datetime import datetime
from time import perf_counter
from typing import Awaitable, Iterator, Mapping, TypeVar

from zwpay.common import state_machine
from zwpay.common.config import CommonSettings, settings as default_settings
from zwpay.common.deadline import Deadline, bounded
from zwpay.common.errors import NoMatchError, NotFoundError, PaymentError, ReconciliationError
from zwpay.common.logging import bound_provider, logger, payment_intent_ctx
from zwpay.common.metrics import (
    orphaned_intents_total,
    payment_failure_total,
    payment_methods_saved_total,
    payment_requests_total,
    provider_call_seconds,
    reconciliation_failures_total,
    stale_transitions_skipped_total,
    webhook_events_total,
)
from zwpay.common.tracing import provider_span
from zwpay.services.payments.registry import (
    PAYMENT_METHOD_REPO,
    TRANSACTION_REPO,
    ProviderRegistry,
    RepositoryRegistry,
)
from zwpay.services.payments.repository import BaseRepository, PaymentMethodRepository
from zwpay.services.payments.schemas import (
    PaymentEvent,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PaymentMethodResponse,
    PaymentRecord,
)
from zwpay.services.provider_adapter.base import (
    PAYMENT_CANCELED,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    ProviderAdapter,
)


T = TypeVar("T")

PAYMENT_METHOD_ACTIVE = "active"

EVENT_STATUS = {
    PAYMENT_SUCCEEDED: state_machine.SUCCEEDED,
    PAYMENT_FAILED: state_machine.FAILED,
    PAYMENT_CANCELED: state_machine.CANCELED,
}


class PaymentService:
    """Owns the transaction lifecycle across provider, caller and database."""

    def __init__(
        self,
        providers: ProviderRegistry,
        repositories: RepositoryRegistry,
        config: CommonSettings | None = None,
    ) -> None:
        self.providers = providers
        self.repositories = repositories
        self.config = config or default_settings
        self.service_name = self.config.service_name

    @contextmanager
    def _track(self, operation: str, provider: str) -> Iterator[None]:
        payment_requests_total.labels(service=self.service_name, operation=operation, provider=provider).inc()
        with bound_provider(provider):
            try:
                yield
            except PaymentError as exc:
                payment_failure_total.labels(
                    service=self.service_name, operation=operation, error_code=exc.code
                ).inc()
                logger.warning("%s_failed provider=%s code=%s error=%s", operation, provider, exc.code, exc)
                raise

    async def _call_provider(
        self, deadline: Deadline, adapter: ProviderAdapter, operation: str, awaitable: Awaitable[T]
    ) -> T:
        provider = adapter.identify()
        start = perf_counter()
        with provider_span(provider, operation):
            try:
                return await deadline.run(awaitable, f"{provider} {operation}")
            finally:
                provider_call_seconds.labels(
                    service=self.service_name, provider=provider, operation=operation
                ).observe(max(0.0, perf_counter() - start))

    async def _handle_orphan(self, adapter: ProviderAdapter, intent_id: str, operation: str, compensate: bool) -> None:
        """Apply the compensation policy after a local write failed post-provider.

        Unconfirmed intents are canceled best-effort under their own budget;
        confirmed charges are only logged and counted for out-of-band reconciliation.
        """

        provider = adapter.identify()
        if compensate and self.config.compensate_orphaned_intents:
            try:
                await Deadline.after(self.config.compensation_timeout_seconds).run(
                    adapter.cancel_intent(intent_id), f"{provider} cancel_intent"
                )
                logger.warning("orphaned_intent_canceled payment_intent_id=%s operation=%s", intent_id, operation)
                return
            except PaymentError as exc:
                logger.error(
                    "orphaned_intent_cancel_failed payment_intent_id=%s operation=%s error=%s",
                    intent_id,
                    operation,
                    exc,
                )
        orphaned_intents_total.labels(service=self.service_name, provider=provider, operation=operation).inc()
        logger.error("orphaned_intent payment_intent_id=%s operation=%s", intent_id, operation)

    async def _persist(
        self,
        adapter: ProviderAdapter,
        transactions: BaseRepository,
        record: PaymentRecord,
        operation: str,
        compensate: bool,
    ) -> None:
        try:
            transactions.create(record)
        except PaymentError:
            await self._handle_orphan(adapter, record.payment_intent_id, operation, compensate)
            raise

    def _remember_payment_method(
        self,
        payment_methods: PaymentMethodRepository,
        customer_id: str,
        payment_method_id: str,
        provider: str,
        method_type: str | None = None,
    ) -> bool:
        """Store (customer, payment method) exactly once, even under concurrent callers."""

        record = PaymentRecord(
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            payment_provider=provider,
            payment_method_type=method_type,
            payment_method_status=PAYMENT_METHOD_ACTIVE,
        )

        def check_and_insert(scoped: PaymentMethodRepository) -> bool:
            if scoped.find_payment_method(customer_id, payment_method_id) is not None:
                return False
            return scoped.create_if_absent(record)

        created = payment_methods.with_transaction(check_and_insert)
        if created:
            payment_methods_saved_total.labels(service=self.service_name, provider=provider).inc()
            logger.info("payment_method_saved customer_id=%s payment_method_id=%s", customer_id, payment_method_id)
        else:
            logger.info(
                "payment_method_already_saved customer_id=%s payment_method_id=%s", customer_id, payment_method_id
            )
        return created

    def _apply_status(self, transactions: BaseRepository, provider: str, intent_id: str, target: str) -> PaymentRecord:
        """Move the transaction for `intent_id` from `pending` to `target`.

        The write is guarded on the status that was read, so a concurrent writer
        cannot be overwritten. Re-applying the current status is a no-op; events
        that would move a terminal transaction elsewhere are skipped.
        """

        try:
            transaction = transactions.find_by_payment_intent(intent_id)
        except NotFoundError as exc:
            reconciliation_failures_total.labels(service=self.service_name, provider=provider).inc()
            raise ReconciliationError(f"no transaction matches payment intent {intent_id}") from exc

        current = transaction.tx_status
        if current == target:
            logger.info("status_already_applied payment_intent_id=%s status=%s", intent_id, target)
            return transaction
        if not state_machine.can_transition(current, target):
            stale_transitions_skipped_total.labels(service=self.service_name, provider=provider).inc()
            logger.warning("stale_transition_skipped payment_intent_id=%s from=%s to=%s", intent_id, current, target)
            return transaction

        try:
            transactions.update_status(target, {"payment_intent_id": intent_id, "tx_status": current})
        except NoMatchError as exc:
            latest = transactions.find_by_payment_intent(intent_id)
            if latest.tx_status == target:
                return latest
            reconciliation_failures_total.labels(service=self.service_name, provider=provider).inc()
            raise ReconciliationError(
                f"transaction for payment intent {intent_id} changed concurrently to {latest.tx_status}"
            ) from exc
        logger.info("transaction_status_updated payment_intent_id=%s from=%s to=%s", intent_id, current, target)
        return transaction.model_copy(update={"tx_status": target})

    async def create_payment_intent(self, provider: str, req: PaymentIntentRequest) -> PaymentIntentResponse:
        """Reserve a charge upstream and record it locally as `pending`."""

        with self._track("create_intent", provider):
            adapter = self.providers.get(provider)
            transactions = self.repositories.get(TRANSACTION_REPO)
            with bounded(self.config.intent_timeout_seconds) as deadline:
                response = await self._call_provider(deadline, adapter, "create_intent", adapter.create_intent(req))
                payment_intent_ctx.set(response.id)
                record = PaymentRecord(
                    amount=response.amount,
                    currency=response.currency,
                    payment_intent_id=response.id,
                    tx_status=state_machine.PENDING,
                    customer_id=req.customer_id,
                    save_payment_method=bool(req.remember_me),
                    metadata=req.metadata,
                )
                await self._persist(adapter, transactions, record, "create_intent", compensate=True)
            logger.info(
                "payment_intent_created payment_intent_id=%s amount=%s currency=%s",
                response.id,
                response.amount,
                response.currency,
            )
            return response

    async def charge_client(self, provider: str, req: PaymentIntentRequest) -> PaymentIntentResponse:
        """Charge a payment method directly and record the confirmed transaction.

        Remembers the payment method for the customer when `remember_me` is set.
        """

        with self._track("charge", provider):
            adapter = self.providers.get(provider)
            transactions = self.repositories.get(TRANSACTION_REPO)
            payment_methods = self.repositories.get(PAYMENT_METHOD_REPO)
            with bounded(self.config.charge_timeout_seconds) as deadline:
                response = await self._call_provider(deadline, adapter, "charge", adapter.charge(req))
                payment_intent_ctx.set(response.id)
                record = PaymentRecord(
                    amount=response.amount,
                    currency=response.currency,
                    payment_intent_id=response.id,
                    # A confirmed charge normalizes to `succeeded`; anything still in flight stays pending.
                    tx_status=response.status,
                    customer_id=req.customer_id,
                    save_payment_method=bool(req.remember_me),
                    metadata=req.metadata,
                )
                await self._persist(adapter, transactions, record, "charge", compensate=False)
                if req.remember_me and response.payment_method_id:
                    self._remember_payment_method(
                        payment_methods,
                        req.customer_id,
                        response.payment_method_id,
                        adapter.identify(),
                        response.payment_method_type,
                    )
            logger.info("payment_charged payment_intent_id=%s status=%s", response.id, response.status)
            return response

    async def get_payment_intent(self, provider: str, intent_id: str) -> PaymentIntentResponse:
        """Current provider-side view of an intent; no local side effects."""

        with self._track("get_intent", provider):
            adapter = self.providers.get(provider)
            with bounded(self.config.get_intent_timeout_seconds) as deadline:
                return await self._call_provider(deadline, adapter, "get_intent", adapter.get_intent(intent_id))

    async def parse_webhook(self, provider: str, raw: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        """Verify, decode and reconcile one provider notification.

        Returns the normalized event for every verified delivery, including
        subtypes that need no local change.
        """

        with self._track("webhook", provider):
            adapter = self.providers.get(provider)
            transactions = self.repositories.get(TRANSACTION_REPO)
            payment_methods = self.repositories.get(PAYMENT_METHOD_REPO)
            with bounded(self.config.webhook_timeout_seconds) as deadline:
                event = await self._call_provider(
                    deadline, adapter, "parse_webhook", adapter.parse_webhook(raw, headers)
                )
                webhook_events_total.labels(service=self.service_name, provider=provider, event_type=event.type).inc()

                target = EVENT_STATUS.get(event.type)
                if target is None:
                    logger.info("webhook_event_passthrough event_type=%s", event.type)
                    return event

                payment_intent_ctx.set(event.payment_intent)
                transaction = self._apply_status(transactions, provider, event.payment_intent, target)
                if (
                    target == state_machine.SUCCEEDED
                    and transaction.tx_status == state_machine.SUCCEEDED
                    and transaction.save_payment_method
                    and event.payment_method
                ):
                    self._remember_payment_method(
                        payment_methods, transaction.customer_id, event.payment_method, provider
                    )
            return event

    def get_user_payment_methods(self, customer_id: str) -> list[PaymentMethodResponse]:
        """Every remembered payment method for `customer_id`, newest first."""

        with self._track("list_payment_methods", "none"):
            payment_methods = self.repositories.get(PAYMENT_METHOD_REPO)
            records = payment_methods.find_by_column("customer_id", customer_id)
            return [
                PaymentMethodResponse(
                    client_id=record.customer_id,
                    payment_method_id=record.payment_method_id,
                    payment_provider=record.payment_provider,
                    payment_method_type=record.payment_method_type,
                    payment_method_status=record.payment_method_status,
                )
                for record in records
            ]

    async def reconcile_pending(self, provider: str, since: datetime) -> dict[str, str]:
        """Poll the provider for local `pending` transactions created since `since`.

        Catches intents whose webhook never arrived. Returns the intents whose
        status changed, mapped to their new status. Intents the provider does not
        know are logged and skipped.
        """

        with self._track("reconcile_pending", provider):
            adapter = self.providers.get(provider)
            transactions = self.repositories.get(TRANSACTION_REPO)
            payment_methods = self.repositories.get(PAYMENT_METHOD_REPO)
            applied: dict[str, str] = {}
            for transaction in transactions.find_by_status(state_machine.PENDING, since):
                intent_id = transaction.payment_intent_id
                if not intent_id:
                    continue
                with bounded(self.config.get_intent_timeout_seconds) as deadline:
                    try:
                        response = await self._call_provider(
                            deadline, adapter, "get_intent", adapter.get_intent(intent_id)
                        )
                    except PaymentError as exc:
                        logger.warning("reconcile_poll_failed payment_intent_id=%s error=%s", intent_id, exc)
                        continue
                    if response.status not in state_machine.TERMINAL_STATES:
                        continue
                    updated = self._apply_status(transactions, provider, intent_id, response.status)
                    if updated.tx_status != response.status:
                        continue
                    applied[intent_id] = response.status
                    if (
                        response.status == state_machine.SUCCEEDED
                        and updated.save_payment_method
                        and response.payment_method_id
                    ):
                        self._remember_payment_method(
                            payment_methods,
                            updated.customer_id,
                            response.payment_method_id,
                            provider,
                            response.payment_method_type,
                        )
            logger.info("reconcile_pending_done provider=%s applied=%s", provider, len(applied))
            return applied
