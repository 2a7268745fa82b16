"""Transaction status vocabulary and the transitions the orchestrator allows."""


PENDING = "pending"
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELED = "canceled"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {SUCCEEDED, FAILED, CANCELED},
    SUCCEEDED: set(),
    FAILED: set(),
    CANCELED: set(),
}

TERMINAL_STATES = frozenset({SUCCEEDED, FAILED, CANCELED})


def can_transition(current: str, new: str) -> bool:
    """Whether a transaction in `current` may move to `new`; terminal states never move."""

    return new in ALLOWED_TRANSITIONS.get(current, set())
