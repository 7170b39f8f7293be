from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Iterator

from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, OperationalError, ProgrammingError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from core.errors import ConsentEngineError, ContractValidationError, StoreUnavailableError
from core.logging_utils import log_structured_warning
from core.observability import METRIC_STORE_UNAVAILABLE, increment_metric, unexpected_exception_metric


class FailureClass(StrEnum):
    DB_UNAVAILABLE = "db.unavailable"
    DB_CONSTRAINT_VIOLATION = "db.constraint_violation"
    DB_DATA_REJECTED = "db.data_rejected"
    ENGINE_REJECTED = "engine.rejected"
    SERIALIZATION_FAILED = "serialization.failed"
    UNEXPECTED_EXCEPTION = "unexpected.exception"


@dataclass(frozen=True)
class FailurePolicy:
    failure_class: FailureClass
    http_status: int
    fail_closed: bool


def classify_failure(exc: Exception) -> FailureClass:
    if isinstance(exc, StoreUnavailableError):
        return FailureClass.DB_UNAVAILABLE
    if isinstance(exc, ConsentEngineError):
        return FailureClass.ENGINE_REJECTED
    if isinstance(exc, IntegrityError):
        return FailureClass.DB_CONSTRAINT_VIOLATION
    if isinstance(exc, DataError):
        return FailureClass.DB_DATA_REJECTED
    if isinstance(exc, ProgrammingError):
        return FailureClass.UNEXPECTED_EXCEPTION
    if isinstance(exc, (OperationalError, DBAPIError, PoolTimeoutError)):
        return FailureClass.DB_UNAVAILABLE

    lowered = str(exc).lower()
    if "serializ" in lowered or "json" in lowered:
        return FailureClass.SERIALIZATION_FAILED
    return FailureClass.UNEXPECTED_EXCEPTION


def failure_policy(exc: Exception) -> FailurePolicy:
    failure_class = classify_failure(exc)
    if failure_class == FailureClass.DB_UNAVAILABLE:
        return FailurePolicy(failure_class=failure_class, http_status=503, fail_closed=True)
    if failure_class == FailureClass.DB_CONSTRAINT_VIOLATION:
        return FailurePolicy(failure_class=failure_class, http_status=409, fail_closed=True)
    if failure_class == FailureClass.DB_DATA_REJECTED:
        return FailurePolicy(failure_class=failure_class, http_status=422, fail_closed=True)
    if failure_class == FailureClass.ENGINE_REJECTED:
        http_status = getattr(exc, "http_status", 500)
        return FailurePolicy(failure_class=failure_class, http_status=http_status, fail_closed=True)
    if failure_class == FailureClass.SERIALIZATION_FAILED:
        return FailurePolicy(failure_class=failure_class, http_status=422, fail_closed=True)
    return FailurePolicy(failure_class=failure_class, http_status=500, fail_closed=True)


@contextmanager
def store_guard(operation: str) -> Iterator[None]:
    """Surface connection loss and timeouts from a store call as StoreUnavailableError.

    Values the store refuses become a ContractValidationError; constraint
    violations and statement errors propagate unchanged.
    """
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        increment_metric(METRIC_STORE_UNAVAILABLE, reason=operation)
        raise StoreUnavailableError(f"Store unavailable during {operation}") from exc
    except DataError as exc:
        raise ContractValidationError(f"Value rejected by store during {operation}") from exc
    except DBAPIError as exc:
        if isinstance(exc, (IntegrityError, ProgrammingError)):
            raise
        increment_metric(METRIC_STORE_UNAVAILABLE, reason=operation)
        raise StoreUnavailableError(f"Store unavailable during {operation}") from exc


def failure_event_type(operation: str) -> str:
    return f"{operation}.failed"


def record_operation_failure(
    *,
    operation: str,
    exc: Exception,
    resource_type: str | None = None,
    resource_id: str | None = None,
    extra_payload: dict[str, Any] | None = None,
) -> None:
    """Failure telemetry emitted after rollback boundaries."""
    failure_class = classify_failure(exc)
    payload = dict(extra_payload or {})
    if failure_class == FailureClass.UNEXPECTED_EXCEPTION:
        unexpected_exception_metric(exc.__class__.__name__, request_id=payload.get("request_id"))
    log_structured_warning(
        failure_event_type(operation),
        operation=operation,
        failure_class=failure_class.value,
        error_class=exc.__class__.__name__,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=payload.get("request_id"),
        reason=payload.get("reason"),
    )
