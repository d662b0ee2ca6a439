"""Custom exceptions for sandbox pool operations."""

from typing import Optional, Sequence


class SandboxException(Exception):
    """Base exception for sandbox operations."""

    code = "SANDBOX_ERROR"

    def __init__(self, message: str, sandbox_id: Optional[str] = None):
        self.message = message
        self.sandbox_id = sandbox_id
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ConfigurationError(SandboxException):
    """Raised when a required setting is missing."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str):
        super().__init__(message)


class SandboxRequestParamsError(SandboxException):
    """Raised when an execution request is missing required parameters."""

    code = "INVALID_REQUEST"

    def __init__(self, operation: str, reason: str):
        super().__init__(f"Invalid parameters for {operation}: {reason}")


class ResourceExhaustedError(SandboxException):
    """Raised when the pool is at capacity."""

    code = "RESOURCE_EXHAUSTED"

    def __init__(self, current: int, maximum: int):
        self.current = current
        self.maximum = maximum
        super().__init__(
            f"Sandbox resource limit exceeded ({current}/{maximum})"
        )


class QueueOverloadedError(SandboxException):
    """Raised when a bounded wait for a busy lock times out."""

    code = "QUEUE_OVERLOADED"

    def __init__(self, key: str, waited_seconds: float):
        self.key = key
        self.waited_seconds = waited_seconds
        super().__init__(
            f"Timed out after {waited_seconds:.1f}s waiting for lock {key}"
        )


class LockBusyError(SandboxException):
    """Raised by non-waiting lock holders when the lock is taken."""

    code = "LOCK_BUSY"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Lock {key} is held by another worker")


class _AggregatedAttemptsError(SandboxException):
    def __init__(
        self,
        reason: str,
        errors: Sequence[BaseException] = (),
        sandbox_id: Optional[str] = None,
    ):
        self.errors = list(errors)
        details = "; ".join(
            f"attempt {i + 1}: {err}" for i, err in enumerate(self.errors)
        )
        message = f"{reason} ({details})" if details else reason
        super().__init__(message, sandbox_id)


class SandboxCreationError(_AggregatedAttemptsError):
    """Raised when a sandbox cannot be created after all attempts."""

    code = "SANDBOX_CREATION_FAILED"


class SandboxConnectionError(_AggregatedAttemptsError):
    """Raised when reconnecting to a sandbox fails after all attempts."""

    code = "SANDBOX_CONNECTION_FAILED"


class SandboxMountError(SandboxException):
    """Raised when the drive cannot be mounted or unmounted."""

    code = "SANDBOX_MOUNT_FAILED"


class SandboxExecutionError(SandboxException):
    """Raised when a remote command or code execution fails at system level."""

    code = "SANDBOX_EXECUTION_FAILED"
    retryable = False


class SandboxTransientError(SandboxExecutionError):
    """Execution failed with a timeout, 502/503 or cancellation signature."""

    code = "SANDBOX_TRANSIENT_ERROR"
    retryable = True


class SandboxFileListError(SandboxException):
    """Raised when the working directory cannot be listed."""

    code = "SANDBOX_FILE_LIST_FAILED"


class SandboxPauseError(SandboxException):
    """Raised inside the pause retry loop; never leaves the wrapper."""

    code = "SANDBOX_PAUSE_FAILED"


class SandboxNotInitializedError(SandboxException):
    """Raised when a sandbox handle is used before it is initialized."""

    code = "SANDBOX_NOT_INITIALIZED"

    def __init__(self, message: str):
        super().__init__(message)
