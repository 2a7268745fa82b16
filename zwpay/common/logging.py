"""Structured JSON logging with request/provider context fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

from pythonjsonlogger.json import JsonFormatter

from zwpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
provider_ctx: ContextVar[str] = ContextVar("provider", default="")
payment_intent_ctx: ContextVar[str] = ContextVar("payment_intent_id", default="")

# SDK/transport loggers echo request lines we already cover with our own events.
NOISY_LOGGERS = ("stripe", "httpx", "httpcore")


class ContextFilter(logging.Filter):
    """Stamp every record with the service and the payment it concerns."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.provider = provider_ctx.get()
        record.payment_intent_id = payment_intent_ctx.get()
        return True


def configure_logging(level: str | None = None) -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(provider)s "
            "%(payment_intent_id)s %(message)s",
            rename_fields={"asctime": "ts", "levelname": "level"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def bound_provider(provider: str) -> Iterator[None]:
    """Attribute logs in the block to `provider`, restoring the previous value after."""

    provider_token = provider_ctx.set(provider)
    intent_token = payment_intent_ctx.set("")
    try:
        yield
    finally:
        payment_intent_ctx.reset(intent_token)
        provider_ctx.reset(provider_token)


logger = logging.getLogger("zwpay")
