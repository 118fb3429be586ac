"""Exception taxonomy for provisioning runs.

Every failure a step can produce maps onto one ``ErrorKind``. Steps report
failures as ``StepResult`` values carrying a kind; ``StepResult.raise_for_failure``
turns one into the matching exception below when the pipeline has to abort.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Classification of a failed step."""

    TRANSPORT = "transport"
    LOCK_CONTENTION = "lock_contention"
    INSTALL_TIMEOUT = "install_timeout"
    VERIFICATION = "verification"
    BILLING_RESTRICTION = "billing_restriction"
    GENERIC = "generic"


class ClawforgeError(Exception):
    """Base exception for all clawforge errors."""

    kind: ErrorKind = ErrorKind.GENERIC

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransportError(ClawforgeError):
    """A single remote command failed at the network/transport level."""

    kind = ErrorKind.TRANSPORT


class LockContentionError(ClawforgeError):
    """The package manager is held by another process."""

    kind = ErrorKind.LOCK_CONTENTION


class InstallTimeoutError(ClawforgeError):
    """A background install exceeded every polling window."""

    kind = ErrorKind.INSTALL_TIMEOUT


class VerificationError(ClawforgeError):
    """An operation reported success but its artifact or process is absent."""

    kind = ErrorKind.VERIFICATION


class BillingRestrictionError(ClawforgeError):
    """The backend refused to create a resource for plan/billing reasons."""

    kind = ErrorKind.BILLING_RESTRICTION

    def __init__(self, instance_class: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Resource class {instance_class} requires a paid plan",
            details={"instance_class": instance_class},
        )
        self.instance_class = instance_class


class GenericStepFailure(ClawforgeError):
    """Any other step failure; the message is stored verbatim."""

    kind = ErrorKind.GENERIC


EXCEPTION_FOR_KIND: dict[ErrorKind, type[ClawforgeError]] = {
    ErrorKind.TRANSPORT: TransportError,
    ErrorKind.LOCK_CONTENTION: LockContentionError,
    ErrorKind.INSTALL_TIMEOUT: InstallTimeoutError,
    ErrorKind.VERIFICATION: VerificationError,
    ErrorKind.GENERIC: GenericStepFailure,
}


class RunCancelledError(ClawforgeError):
    """The run's cancel token fired."""


class RunInProgressError(ClawforgeError):
    """Another provisioning run holds the record's run marker."""

    def __init__(self, record_id: str, run_id: str | None) -> None:
        super().__init__(
            f"Provisioning already in progress for {record_id}",
            details={"record_id": record_id, "run_id": run_id},
        )


class RecordNotFoundError(ClawforgeError):
    """Raised when a provisioning record does not exist."""

    def __init__(self, record_id: str) -> None:
        super().__init__(
            f"Provisioning record not found: {record_id}", details={"record_id": record_id}
        )


class RecordStateError(ClawforgeError):
    """An update would violate the record's flag monotonicity."""


class ConfigurationError(ClawforgeError):
    """Required credentials or settings are missing."""


class ProviderError(ClawforgeError):
    """A compute backend API call failed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class RepositoryHostError(ClawforgeError):
    """The repository host API rejected a call."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, details={"status_code": status_code})
        self.status_code = status_code
