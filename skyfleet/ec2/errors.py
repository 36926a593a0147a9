"""Translation of botocore errors into the skyfleet exception hierarchy.

AWS reports every failure as a ClientError carrying an error code. The
allocation engine needs to know three things about it: whether the
credentials are bad, whether an account limit was hit (and which one), and
whether repeating the call could help. ``translate_client_error`` answers
all three by returning the matching FleetError.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from functools import wraps

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from skyfleet.constants import (
    INSTANCE_LIMIT_EXCEEDED,
    INSUFFICIENT_INSTANCE_CAPACITY,
    MAX_SPOT_INSTANCE_COUNT_EXCEEDED,
)
from skyfleet.exceptions import (
    AllocationError,
    FleetError,
    InvalidCredentialsError,
    ProvisioningError,
    ResourceLimitExceeded,
    TransientProviderError,
)
from skyfleet.retry import error_code, error_message

log = logger.bind(component="aws-errors")

AUTHORIZATION_ERROR_CODES = frozenset({"AuthFailure", "UnauthorizedOperation"})

RESOURCE_LIMIT_ERROR_CODES = frozenset({
    INSTANCE_LIMIT_EXCEEDED,
    INSUFFICIENT_INSTANCE_CAPACITY,
    MAX_SPOT_INSTANCE_COUNT_EXCEEDED,
    "VolumeLimitExceeded",
    "VcpuLimitExceeded",
    "LimitExceeded",
})

UNRECOVERABLE_ERROR_CODES = frozenset({
    "OperationNotPermitted",
    "Unsupported",
    "InvalidParameterValue",
})

THROTTLING_ERROR_CODES = frozenset({"RequestLimitExceeded", "Throttling", "ThrottlingException"})


def _status_code(exc: ClientError) -> int:
    return exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)


def is_unrecoverable(exc: BaseException) -> bool:
    """True when repeating the same request cannot succeed."""
    if isinstance(exc, FleetError):
        return not isinstance(exc, TransientProviderError)
    if not isinstance(exc, ClientError):
        return False
    code = error_code(exc)
    if code in THROTTLING_ERROR_CODES:
        return False
    if code in AUTHORIZATION_ERROR_CODES | UNRECOVERABLE_ERROR_CODES:
        return True
    if exc.response.get("Error", {}).get("Type") == "Sender":
        return True
    return 400 <= _status_code(exc) < 500


def translate_client_error(exc: BaseException) -> FleetError:
    """Map a botocore (or unexpected) exception onto the FleetError hierarchy."""
    match exc:
        case FleetError():
            return exc
        case ClientError():
            code = error_code(exc)
            message = error_message(exc)
            if code in AUTHORIZATION_ERROR_CODES:
                return InvalidCredentialsError(message)
            if code in RESOURCE_LIMIT_ERROR_CODES:
                return ResourceLimitExceeded(code, message)
            if is_unrecoverable(exc):
                return ProvisioningError(f"{code}: {message}" if code else message)
            return TransientProviderError(f"{code}: {message}" if code else message)
        case BotoCoreError():
            return TransientProviderError(str(exc))
        case _:
            return ProvisioningError(f"Unexpected {type(exc).__name__}: {exc}")


def raise_if_unrecoverable(exc: BaseException) -> None:
    """Re-raise ``exc`` translated when it is unrecoverable; otherwise return."""
    if isinstance(exc, ClientError) and (
        error_code(exc) in AUTHORIZATION_ERROR_CODES
        or (is_unrecoverable(exc) and error_code(exc) not in RESOURCE_LIMIT_ERROR_CODES)
    ):
        raise translate_client_error(exc) from exc


def propagate_aws_errors[**P, R](fn: Callable[P, R]) -> Callable[P, R]:
    """Decorator translating botocore errors raised by ``fn`` into FleetErrors."""

    @wraps(fn)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return fn(*args, **kwargs)
        except FleetError:
            raise
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e) from e

    return wrapper


class ErrorCollector:
    """Attempt sibling operations once each and keep every failure.

    Example:
        errors = ErrorCollector()
        with errors.attempt("cancel spot requests"):
            cancel()
        with errors.attempt("terminate instances"):
            terminate()
        errors.raise_if_any("Problem cleaning up spot allocation")
    """

    def __init__(self) -> None:
        self.errors: list[BaseException] = []

    @contextmanager
    def attempt(self, description: str) -> Iterator[None]:
        try:
            yield
        except Exception as e:
            log.error("Problem trying to {what}: {err}", what=description, err=e)
            self.errors.append(e)

    def add(self, error: BaseException) -> None:
        self.errors.append(error)

    def __bool__(self) -> bool:
        return bool(self.errors)

    def raise_if_any(self, message: str, reasons: tuple[str, ...] = ()) -> None:
        if not self.errors and not reasons:
            return
        translated = [translate_client_error(e) for e in self.errors]
        if len(translated) == 1 and not reasons:
            if translated[0] is self.errors[0]:
                raise translated[0]
            raise translated[0] from self.errors[0]
        raise AllocationError(message, translated, reasons)
