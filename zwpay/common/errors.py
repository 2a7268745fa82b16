"""Error taxonomy surfaced by the orchestration core.

Every error carries a short stable `code`; the HTTP layer turns any of them into
a 400 response with the message as detail. Nothing here is retried by the core.
"""


class PaymentError(Exception):
    """Base class for all caller-visible orchestration failures."""

    code = "payment_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class NotConfiguredError(PaymentError):
    """Unknown provider or repository key."""

    code = "not_configured"


class InvalidRequestError(PaymentError):
    """Malformed or incomplete request payload."""

    code = "invalid_request"


class ProviderError(PaymentError):
    """External provider rejected or errored.

    `code` is the stable short code of the call site (for example `acc3`), and
    `step` names the remote step that failed.
    """

    code = "provider_error"

    def __init__(self, message: str, code: str | None = None, step: str | None = None) -> None:
        super().__init__(message, code)
        self.step = step


class AssociationError(ProviderError):
    """Customer creation or payment-method attachment failed before any charge."""


class InvalidSignatureError(PaymentError):
    """Webhook authenticity header missing or not verifiable."""

    code = "invalid_signature"


class NotFoundError(PaymentError):
    """No stored record matched a single-row lookup."""

    code = "not_found"


class InvalidColumnError(PaymentError):
    """Column or filter name outside the repository allow-list."""

    code = "invalid_column"


class FiltersRequiredError(PaymentError):
    """Status update attempted without any filter."""

    code = "filters_required"


class NoMatchError(PaymentError):
    """Status update touched zero rows."""

    code = "no_match"


class ReconciliationError(PaymentError):
    """Provider event referenced an intent with no matching transaction."""

    code = "reconciliation_error"


class DeadlineExceededError(PaymentError):
    """Deadline exceeded on a provider or storage call."""

    code = "timeout"


class StorageError(PaymentError):
    """Database statement failed."""

    code = "storage_error"


class StorageUnavailableError(StorageError):
    """Transient storage failure such as connection-pool exhaustion."""

    code = "storage_unavailable"
