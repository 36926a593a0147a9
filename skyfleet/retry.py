"""Bounded retry and polling primitives.

Every wait in skyfleet goes through this module. Deadlines are absolute
monotonic timestamps computed once, before the first attempt, so the total
time spent is bounded no matter how many attempts are made. The backoff is
fixed: the failures being waited out are EC2 read-after-write delays with a
roughly constant convergence time.

Example:
    from skyfleet.retry import deadline_in, retry_until

    volume = retry_until(
        lambda: ec2.describe_volumes(VolumeIds=[volume_id]),
        deadline_in(60),
    )

Three outcomes are kept apart:

- the operation succeeds, or fails with a non-retryable error that is
  re-raised unchanged;
- the deadline passes while the failures are still retryable, raising
  RetryDeadlineExceeded;
- a cancellation event is set, raising OperationCancelled.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from botocore.exceptions import ClientError
from loguru import logger
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    retry_if_result,
    stop_never,
    wait_fixed,
)
from tenacity.stop import stop_base

from skyfleet.constants import DEFAULT_RETRY_BACKOFF
from skyfleet.exceptions import OperationCancelled, RetryDeadlineExceeded

log = logger.bind(component="retry")

type RetryPredicate = Callable[[BaseException], bool]


# =============================================================================
# Deadlines
# =============================================================================


def now() -> float:
    return time.monotonic()


def deadline_in(seconds: float) -> float:
    """Absolute deadline ``seconds`` from now."""
    return now() + seconds


def expired(deadline: float | None) -> bool:
    return deadline is not None and now() >= deadline


def remaining(deadline: float) -> float:
    return max(0.0, deadline - now())


def sleep(seconds: float, cancel: threading.Event | None = None) -> None:
    """Sleep, raising OperationCancelled as soon as ``cancel`` is set."""
    if cancel is None:
        time.sleep(seconds)
        return
    if cancel.wait(seconds):
        raise OperationCancelled("Cancelled while waiting")


class stop_at(stop_base):
    """Stop once an absolute monotonic deadline has passed."""

    def __init__(self, deadline: float) -> None:
        self.deadline = deadline

    def __call__(self, retry_state: RetryCallState) -> bool:
        return now() >= self.deadline


# =============================================================================
# Predicates
# =============================================================================


def error_code(exc: BaseException) -> str:
    """AWS error code of a botocore ClientError, or ``""``."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return ""


def error_message(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Message", "") or str(exc)
    return str(exc) or type(exc).__name__


def is_not_found(exc: BaseException) -> bool:
    """Eventual-consistency errors: the resource exists but is not visible yet."""
    return error_code(exc).endswith(".NotFound")


def on_error_codes(*codes: str) -> RetryPredicate:
    """Create a predicate that retries on specific AWS error codes.

    Example:
        retry_until(call, deadline, retry_on=on_error_codes("RequestLimitExceeded"))
    """

    def predicate(exc: BaseException) -> bool:
        return error_code(exc) in codes

    return predicate


def any_of(*predicates: RetryPredicate) -> RetryPredicate:
    def combined(exc: BaseException) -> bool:
        return any(p(exc) for p in predicates)

    return combined


# =============================================================================
# Retry
# =============================================================================


def _check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Cancelled before attempt")


def retry_until[T](
    fn: Callable[[], T],
    deadline: float | None = None,
    *,
    backoff: float = DEFAULT_RETRY_BACKOFF,
    retry_on: RetryPredicate = is_not_found,
    cancel: threading.Event | None = None,
) -> T:
    """Call ``fn`` until it succeeds, fails for good, or the deadline passes.

    Args:
        fn: Operation to invoke. Exceptions accepted by ``retry_on`` trigger
            another attempt; anything else propagates unchanged.
        deadline: Absolute monotonic deadline (see ``deadline_in``). None
            means no deadline. A deadline already in the past allows exactly
            one attempt and no sleep.
        backoff: Fixed delay in seconds between attempts.
        retry_on: Predicate deciding which exceptions are retryable.
        cancel: Optional event; once set the loop raises OperationCancelled.

    Returns:
        Whatever ``fn`` returned on its successful attempt.

    Raises:
        RetryDeadlineExceeded: The deadline passed with ``fn`` still failing.
        OperationCancelled: ``cancel`` was set.
    """
    _check_cancelled(cancel)

    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        log.debug(
            "Attempt {n} failed with {err}, retrying in {delay}s",
            n=state.attempt_number, err=error_code(exc) or exc, delay=backoff,
        )

    retrying = Retrying(
        stop=stop_never if deadline is None else stop_at(deadline),
        wait=wait_fixed(backoff),
        retry=retry_if_exception(retry_on),
        sleep=lambda seconds: sleep(seconds, cancel),
        before_sleep=before_sleep,
    )
    try:
        return retrying(fn)
    except RetryError as e:
        last = e.last_attempt.exception()
        raise RetryDeadlineExceeded(e.last_attempt.attempt_number, last) from last


def poll_until(
    check: Callable[[], bool],
    deadline: float | None,
    *,
    interval: float,
    cancel: threading.Event | None = None,
) -> bool:
    """Run ``check`` every ``interval`` seconds until it returns True.

    Returns:
        True if ``check`` reported completion, False if the deadline passed
        first. ``check`` always runs at least once.
    """
    _check_cancelled(cancel)
    retrying = Retrying(
        stop=stop_never if deadline is None else stop_at(deadline),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda done: not done),
        sleep=lambda seconds: sleep(seconds, cancel),
    )
    try:
        return retrying(check)
    except RetryError:
        return False
