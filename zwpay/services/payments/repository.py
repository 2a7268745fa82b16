"""Persistence contract shared by the transaction and payment-method tables.

Both repositories accept and return `PaymentRecord`. Column names used in SQL come
only from each repository's fixed field tables and lookup allow-list; caller
strings are never used as identifiers, and values are always bound parameters.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, TypeVar

from sqlalchemy import func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from zwpay.common.deadline import Deadline, current_deadline
from zwpay.common.errors import (
    DeadlineExceededError,
    FiltersRequiredError,
    InvalidColumnError,
    InvalidRequestError,
    NoMatchError,
    NotFoundError,
    StorageError,
    StorageUnavailableError,
)
from zwpay.services.payments.models import PaymentMethod, Transaction
from zwpay.services.payments.schemas import PaymentRecord


T = TypeVar("T")

# Postgres SQLSTATE for statements aborted by `statement_timeout`.
QUERY_CANCELED = "57014"


def _is_query_canceled(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == QUERY_CANCELED


class BaseRepository:
    """Create/find/update over one table behind the shared record contract."""

    model: Any = None
    entity = "record"
    # (record field, column) pairs; the only source of column names for writes.
    required_fields: tuple[tuple[str, str], ...] = ()
    optional_fields: tuple[tuple[str, str], ...] = ()
    lookup_columns: frozenset[str] = frozenset()
    status_column = ""
    id_column = ""

    def __init__(self, session_factory, db: Session | None = None) -> None:
        self.session_factory = session_factory
        self._db = db

    @property
    def table(self):
        return self.model.__table__

    def bind(self, db: Session) -> "BaseRepository":
        """Return a repository of the same kind scoped to an open session."""

        return type(self)(self.session_factory, db=db)

    def _apply_deadline(self, db: Session, deadline: Deadline | None) -> None:
        if deadline is None or db.get_bind().dialect.name != "postgresql":
            return
        # Transaction-local, so pooled connections do not keep the limit.
        timeout_ms = max(1, int(deadline.remaining() * 1000))
        db.execute(select(func.set_config("statement_timeout", str(timeout_ms), True)))

    @contextmanager
    def _unit(self, what: str) -> Iterator[Session]:
        """Yield a session for one unit of work, translating storage failures.

        Unbound repositories open a session and a transaction that commits on
        normal exit and rolls back on any exception.
        """

        deadline = current_deadline()
        if deadline is not None:
            deadline.check(f"{self.entity} {what}")
        try:
            if self._db is not None:
                self._apply_deadline(self._db, deadline)
                yield self._db
                return
            with self.session_factory() as db:
                with db.begin():
                    self._apply_deadline(db, deadline)
                    yield db
        except PoolTimeoutError as exc:
            raise StorageUnavailableError(f"connection pool exhausted during {self.entity} {what}") from exc
        except DBAPIError as exc:
            if _is_query_canceled(exc):
                raise DeadlineExceededError(f"{self.entity} {what} timed out") from exc
            raise StorageError(f"{self.entity} {what} failed: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"{self.entity} {what} failed: {exc}") from exc

    def _lookup_column(self, column: str):
        if not isinstance(column, str) or column not in self.lookup_columns:
            raise InvalidColumnError(f"invalid column name: {column!r}")
        return self.table.c[column]

    def _insert_values(self, record: PaymentRecord) -> dict[str, Any]:
        """Required columns always, optional columns only when set."""

        values: dict[str, Any] = {}
        for field, column in self.required_fields:
            value = getattr(record, field)
            if value is None or value == "":
                raise InvalidRequestError(f"{self.entity} {field} is required")
            values[column] = value
        for field, column in self.optional_fields:
            value = getattr(record, field)
            if value is None or value == "":
                continue
            values[column] = value
        for column in values:
            if column not in self.table.c:
                raise InvalidColumnError(f"invalid column name: {column!r}")
        return values

    def _to_record(self, row) -> PaymentRecord:
        fields = self.required_fields + self.optional_fields + (
            ("created_at", "created_at"),
            ("updated_at", "updated_at"),
        )
        return PaymentRecord(**{field: row[column] for field, column in fields if column in row})

    def _find_one(self, column: str, value: Any) -> PaymentRecord:
        column_obj = self._lookup_column(column)
        with self._unit(f"find_by_{column}") as db:
            row = (
                db.execute(
                    select(self.table)
                    .where(column_obj == value)
                    .order_by(self.table.c.created_at.desc())
                    .limit(1)
                )
                .mappings()
                .first()
            )
        if row is None:
            raise NotFoundError(f"{self.entity} not found for {column}={value}")
        return self._to_record(row)

    def create(self, record: PaymentRecord) -> None:
        values = self._insert_values(record)
        with self._unit("create") as db:
            db.execute(insert(self.table).values(values))

    def find_by_id(self, record_id: str) -> PaymentRecord:
        return self._find_one(self.id_column, record_id)

    def find_by_payment_intent(self, payment_intent_id: str) -> PaymentRecord:
        return self._find_one("payment_intent_id", payment_intent_id)

    def find_by_status(self, status: str, since: datetime) -> list[PaymentRecord]:
        """Rows in `status` created at or after `since`, newest first."""

        with self._unit("find_by_status") as db:
            rows = (
                db.execute(
                    select(self.table)
                    .where(self.table.c[self.status_column] == status, self.table.c.created_at >= since)
                    .order_by(self.table.c.created_at.desc())
                )
                .mappings()
                .all()
            )
        return [self._to_record(row) for row in rows]

    def find_by_column(self, column: str, value: Any) -> list[PaymentRecord]:
        """Rows where allow-listed `column` equals `value`, newest first."""

        column_obj = self._lookup_column(column)
        with self._unit(f"find_by_{column}") as db:
            rows = (
                db.execute(select(self.table).where(column_obj == value).order_by(self.table.c.created_at.desc()))
                .mappings()
                .all()
            )
        return [self._to_record(row) for row in rows]

    def update_status(self, status: str, filters: dict[str, Any]) -> int:
        """Set status on rows matching every equality filter; never unfiltered."""

        if not filters:
            raise FiltersRequiredError("at least one filter condition is required")
        conditions = [self._lookup_column(name) == value for name, value in filters.items()]
        with self._unit("update_status") as db:
            result = db.execute(
                update(self.table)
                .where(*conditions)
                .values({self.status_column: status, "updated_at": func.now()})
            )
            affected = result.rowcount
        if affected == 0:
            raise NoMatchError(f"no matching {self.entity} found")
        return affected

    def with_transaction(self, fn: Callable[["BaseRepository"], T]) -> T:
        """Run `fn(scoped_repo)` atomically: commit on return, roll back on any exception."""

        if self._db is not None:
            with self._db.begin_nested():
                return fn(self)
        with self._unit("with_transaction") as db:
            return fn(self.bind(db))


class TransactionRepository(BaseRepository):
    """Access to the `transactions` table."""

    model = Transaction
    entity = "transaction"
    required_fields = (
        ("amount", "amount"),
        ("currency", "currency"),
        ("customer_id", "customer_id"),
        ("tx_status", "tx_status"),
    )
    optional_fields = (
        ("id", "id"),
        ("internal_reference", "internal_reference"),
        ("payment_intent_id", "payment_intent_id"),
        ("save_payment_method", "save_payment_method"),
        ("metadata", "metadata"),
    )
    lookup_columns = frozenset(
        {
            "id",
            "internal_reference",
            "amount",
            "currency",
            "payment_intent_id",
            "tx_status",
            "customer_id",
            "save_payment_method",
            "created_at",
            "updated_at",
        }
    )
    status_column = "tx_status"
    id_column = "id"


class PaymentMethodRepository(BaseRepository):
    """Access to the `payment_methods` table."""

    model = PaymentMethod
    entity = "payment method"
    required_fields = (
        ("customer_id", "customer_id"),
        ("payment_method_id", "payment_method_id"),
        ("payment_provider", "pm_provider"),
    )
    optional_fields = (
        ("payment_method_type", "method_type"),
        ("payment_method_status", "pm_status"),
    )
    lookup_columns = frozenset(
        {"customer_id", "payment_method_id", "pm_provider", "method_type", "pm_status", "created_at", "updated_at"}
    )
    status_column = "pm_status"
    id_column = "payment_method_id"

    def find_payment_method(self, customer_id: str, payment_method_id: str) -> PaymentRecord | None:
        with self._unit("find_payment_method") as db:
            row = (
                db.execute(
                    select(self.table).where(
                        self.table.c.customer_id == customer_id,
                        self.table.c.payment_method_id == payment_method_id,
                    )
                )
                .mappings()
                .first()
            )
        return self._to_record(row) if row is not None else None

    def create_if_absent(self, record: PaymentRecord) -> bool:
        """Insert unless (customer_id, payment_method_id) exists; True when a row was written."""

        values = self._insert_values(record)
        with self._unit("create_if_absent") as db:
            dialect = db.get_bind().dialect.name
            if dialect == "postgresql":
                stmt = postgresql.insert(self.table)
            elif dialect == "sqlite":
                stmt = sqlite.insert(self.table)
            else:
                raise StorageError(f"conditional insert not supported on {dialect}")
            result = db.execute(
                stmt.values(values).on_conflict_do_nothing(index_elements=["customer_id", "payment_method_id"])
            )
            inserted = result.rowcount
        return inserted == 1
