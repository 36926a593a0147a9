"""Custom exception hierarchy for skyfleet.

All skyfleet-specific exceptions inherit from FleetError, so callers can
catch every allocation failure with a single except clause. Cancellation is
the one exception: OperationCancelled derives from BaseException, like
asyncio.CancelledError, and never matches ``except FleetError`` or
``except Exception``.
"""

from __future__ import annotations

from collections.abc import Sequence


class FleetError(Exception):
    """Base exception for all skyfleet errors."""


class ConfigurationError(FleetError):
    """Raised for invalid configuration or inconsistent template fields."""


class InvariantViolation(FleetError):
    """Raised when a programming invariant is broken at runtime."""


class OwnershipError(FleetError):
    """Raised when a described instance lacks the ownership tag."""

    def __init__(self, resource_id: str, tag: str, kind: str = "instance") -> None:
        self.resource_id = resource_id
        self.tag = tag
        super().__init__(
            f"Any {kind} managed by skyfleet should have a {tag} tag ({resource_id} has none)"
        )


class ProvisioningError(FleetError):
    """Raised when provisioning fails and retrying the call will not help."""


class InvalidCredentialsError(ProvisioningError):
    """Raised when AWS rejects the caller's credentials or permissions."""


class ResourceLimitExceeded(ProvisioningError):
    """Raised when an account quota or capacity limit stops the allocation."""

    def __init__(self, code: str, message: str = "") -> None:
        self.code = code
        super().__init__(f"{code}: {message}" if message else code)


class AllocationError(ProvisioningError):
    """Raised when fewer than the minimum instances could be allocated.

    Carries every error collected while the group was being built and the
    EC2 state reasons of instances that terminated on their own.
    """

    def __init__(
        self,
        message: str,
        errors: Sequence[BaseException] = (),
        reasons: Sequence[str] = (),
    ) -> None:
        self.errors = tuple(errors)
        self.reasons = tuple(reasons)
        details = [str(e) for e in self.errors] + list(self.reasons)
        super().__init__(f"{message}: {'; '.join(details)}" if details else message)

    @property
    def codes(self) -> frozenset[str]:
        return frozenset(
            e.code for e in self.errors if isinstance(e, ResourceLimitExceeded)
        )


class TransientProviderError(FleetError):
    """Raised for provider failures that may succeed if the call is repeated."""


class TimeoutError(FleetError):  # noqa: A001
    """Raised when an operation exceeds its timeout."""


class RetryDeadlineExceeded(TimeoutError):
    """Raised when a retried operation is still failing at its deadline."""

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Deadline exceeded after {attempts} attempt(s): {last_error}")


class OperationCancelled(BaseException):
    """Raised when a cancellation request is observed inside a wait loop."""
