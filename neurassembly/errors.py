"""
Error taxonomy for neurassembly.

Errors carry a ``fatal`` class attribute: fatal errors abort an optimization
session (it ends in the FAILED state), non-fatal ones are absorbed into the
audit trail and the session continues.
"""


class NeurAssemblyError(Exception):
    """Base class for every error raised by the package."""

    fatal = False


class DecodeError(NeurAssemblyError):
    """Raised when raw bytes cannot be decoded into instructions."""

    fatal = True

    def __init__(self, offset: int, reason: str = "invalid encoding") -> None:
        self.offset = offset
        self.reason = reason
        super().__init__(f"InvalidEncoding@{offset:#x}: {reason}")


class EncodeError(NeurAssemblyError):
    """Raised when an instruction cannot be serialized back to bytes."""

    fatal = True


class UnsupportedArchitecture(NeurAssemblyError):
    fatal = True

    def __init__(self, arch: str) -> None:
        self.arch = arch
        super().__init__(f"Unsupported architecture: {arch!r}")


class IntegrityViolation(NeurAssemblyError):
    """Checkpoint, addressing or branch-target inconsistency."""

    fatal = True


class VerificationTimeout(NeurAssemblyError):
    """A single candidate's verification ran past its deadline."""


class UndefinedBehavior(NeurAssemblyError):
    """Execution read a value the architecture leaves undefined."""


class InferenceUnavailable(NeurAssemblyError):
    """The learned proposer could not be reached or failed to answer."""


class BudgetExceeded(NeurAssemblyError):
    """The iteration or time budget of a session was exhausted."""


class OperationCancelled(NeurAssemblyError):
    """Cooperative cancellation was requested while work was in flight."""


class SessionFailed(NeurAssemblyError):
    """A session aborted on a fatal error."""

    fatal = True

    def __init__(self, error: Exception, last_good_checkpoint=None) -> None:
        self.error = error
        self.last_good_checkpoint = last_good_checkpoint
        super().__init__(f"Session failed: {error}")


class SessionCancelled(NeurAssemblyError):
    """A session was cancelled by its caller."""

    def __init__(self, last_good_checkpoint=None) -> None:
        self.last_good_checkpoint = last_good_checkpoint
        super().__init__("Session cancelled")


class AssemblyError(NeurAssemblyError, ValueError):
    """Raised by the assembler on text it cannot parse or encode."""

    def __init__(self, message: str, line: int | None = None) -> None:
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)
