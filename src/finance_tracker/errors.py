"""Exception taxonomy shared by the server routes, the store and the client.

Each error carries the HTTP status it maps to and a short machine-readable
``code`` so the client can rebuild the same exception from a response body.
"""


class FinanceTrackerError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code}


class ValidationError(FinanceTrackerError):
    """Malformed or out-of-range input."""

    status_code = 400
    code = "validation"


class AuthError(FinanceTrackerError):
    """Missing, expired or invalid bearer token. 403 for a rejected token."""

    status_code = 401
    code = "auth"


class NotFoundError(FinanceTrackerError):
    status_code = 404
    code = "not_found"


class ConflictError(FinanceTrackerError):
    """Duplicate id; the caller must choose a new one."""

    status_code = 400
    code = "conflict"


class TransportError(FinanceTrackerError):
    """Network failure, timeout or server-side 5xx seen by the client."""

    status_code = 503
    code = "transport"


class SchedulerError(FinanceTrackerError):
    """Processing of a single recurrence rule failed. Retried on the next tick."""

    code = "scheduler"

    def __init__(self, rule_id: str, cause: BaseException) -> None:
        super().__init__(f"Recurring rule {rule_id} failed: {cause}")
        self.rule_id = rule_id
        self.cause = cause


class StoreUnavailable(FinanceTrackerError):
    """The record store could not be opened at startup."""

    status_code = 503
    code = "store_unavailable"


_ERRORS_BY_CODE: dict[str, type[FinanceTrackerError]] = {
    cls.code: cls
    for cls in (
        ValidationError,
        AuthError,
        NotFoundError,
        ConflictError,
        TransportError,
        StoreUnavailable,
    )
}


def error_for_code(code: str | None, status_code: int) -> type[FinanceTrackerError]:
    if code and code in _ERRORS_BY_CODE:
        return _ERRORS_BY_CODE[code]
    if status_code in (401, 403):
        return AuthError
    if status_code == 404:
        return NotFoundError
    if 400 <= status_code < 500:
        return ValidationError
    return TransportError
