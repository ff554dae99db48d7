"""
Domain error taxonomy.

Every error raised across a service boundary derives from SignflowError
and carries a stable machine ``code`` alongside a human-readable message.
Messages are written by this service; they are never copied from remote
response bodies or stack traces.
"""

from __future__ import annotations


class SignflowError(RuntimeError):
    """Base class for errors surfaced to callers of the orchestrator."""

    code = "SIGNFLOW_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(SignflowError):
    """
    Raised when caller input is rejected.

    Never retried. Always raised before any external call or store write.
    """

    code = "VALIDATION_ERROR"


class InvalidToken(SignflowError):
    """
    Raised when a correlation token cannot be consumed.

    Missing, expired and already-consumed tokens are deliberately
    indistinguishable to the caller.
    """

    code = "INVALID_STATE"
    MESSAGE = "Invalid or expired state parameter"

    def __init__(self) -> None:
        super().__init__(self.MESSAGE)


class DependencyUnavailable(SignflowError):
    """Raised when a breaker is open or a remote call failed terminally."""

    code = "DEPENDENCY_UNAVAILABLE"

    def __init__(self, dependency: str, message: str | None = None) -> None:
        super().__init__(
            message or f"{dependency} is temporarily unavailable. Please try again later."
        )
        self.dependency = dependency


class TransactionConflict(SignflowError):
    """
    Raised when the hash-signing co-process reports a reused transaction id.

    Retryable: the caller must start over so a fresh transaction id is
    generated.
    """

    code = "TRANSACTION_CONFLICT"


class SecurityMismatch(SignflowError):
    """
    Raised when identity re-confirmation fails.

    The message is intentionally generic; details live only in the
    security-incident audit record.
    """

    code = "VERIFICATION_FAILED"

    def __init__(self) -> None:
        super().__init__("Verification failed")


class JobNotFound(SignflowError):
    """Raised when a job or record does not exist for the requesting owner."""

    code = "NOT_FOUND"


class IllegalTransition(SignflowError):
    """Raised when a status change would violate the job state machine."""

    code = "ILLEGAL_TRANSITION"


class SealRejected(SignflowError):
    """Raised when the seal service answers with a non-success result."""

    code = "ESEAL_REJECTED"


class PoolSaturated(SignflowError):
    """Raised when the completion pool has no queue slot and no spare worker."""

    code = "POOL_SATURATED"
