from __future__ import annotations

from core.contracts import ErrorCode


class ConsentEngineError(Exception):
    """Base for failures the engine reports to its caller verbatim."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    http_status: int = 500
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(ConsentEngineError):
    code = ErrorCode.NOT_FOUND
    http_status = 404


class ContractValidationError(ConsentEngineError):
    code = ErrorCode.VALIDATION_ERROR
    http_status = 422


class ConflictError(ConsentEngineError):
    code = ErrorCode.CONFLICT
    http_status = 409

    def __init__(self, message: str, *, current_status: str | None = None) -> None:
        super().__init__(message)
        self.current_status = current_status


class StoreUnavailableError(ConsentEngineError):
    code = ErrorCode.STORE_UNAVAILABLE
    http_status = 503
    retryable = True


class RuleEvaluationError(Exception):
    """A rule condition could not be evaluated.

    Raised inside the condition evaluator only; the rule engine converts it
    into a warning and treats the rule as not matched.
    """

    def __init__(self, message: str, *, condition: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.condition = condition
