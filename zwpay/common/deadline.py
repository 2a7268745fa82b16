"""Bounded-time contexts for provider and storage calls.

A `Deadline` lives in a ContextVar so that everything running under one request
(provider call, repository units of work) shares the same budget. Nested
`bounded()` blocks can only shrink the budget, never extend it.
"""

import asyncio
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Awaitable, Iterator, TypeVar

from zwpay.common.errors import DeadlineExceededError


T = TypeVar("T")


class Deadline:
    """Absolute monotonic expiry shared by one logical flow of control."""

    def __init__(self, expires_at: float) -> None:
        self.expires_at = expires_at

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self, what: str) -> None:
        """Raise before starting `what` when no budget is left."""

        if self.expired:
            raise DeadlineExceededError(f"deadline exceeded before {what}")

    async def run(self, awaitable: Awaitable[T], what: str) -> T:
        """Await `awaitable`, cancelling it when the deadline fires."""

        budget = self.remaining()
        if budget <= 0.0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise DeadlineExceededError(f"deadline exceeded before {what}")
        try:
            return await asyncio.wait_for(awaitable, timeout=budget)
        except asyncio.TimeoutError as exc:
            raise DeadlineExceededError(f"{what} timed out after {budget:.2f}s") from exc


deadline_ctx: ContextVar[Deadline | None] = ContextVar("deadline", default=None)


def current_deadline() -> Deadline | None:
    return deadline_ctx.get()


@contextmanager
def bounded(seconds: float) -> Iterator[Deadline]:
    """Run the block under `min(outer deadline, now + seconds)`."""

    outer = deadline_ctx.get()
    deadline = Deadline.after(seconds)
    if outer is not None and outer.expires_at < deadline.expires_at:
        deadline = outer
    token = deadline_ctx.set(deadline)
    try:
        yield deadline
    finally:
        deadline_ctx.reset(token)
