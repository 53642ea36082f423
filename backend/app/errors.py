"""
Domain errors raised by the exchange services.

Services raise these instead of HTTPException; app.main maps them to JSON
responses. Every error is raised before (or rolls back) any state mutation.
"""


class ExchangeError(Exception):
    """Base class for user-visible failures."""

    status_code = 400
    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ExchangeError):
    """Malformed or missing input."""

    status_code = 400
    code = "validation_error"


class AuthorizationError(ExchangeError):
    """Caller lacks rights over the target entity (wrong owner, not admin, suspended)."""

    status_code = 403
    code = "forbidden"


class NotFoundError(ExchangeError):
    status_code = 404
    code = "not_found"


class StateConflictError(ExchangeError):
    """Requested transition is not valid from the entity's current state."""

    status_code = 409
    code = "state_conflict"


class InsufficientFunds(ExchangeError):
    """A debit would make a balance negative."""

    status_code = 402
    code = "insufficient_funds"

    def __init__(self, message: str, balance: int | None = None, required: int | None = None):
        super().__init__(message)
        self.balance = balance
        self.required = required
