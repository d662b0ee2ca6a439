"""Classification of provider failures and execution output."""

import asyncio
import re
from typing import Optional, Tuple

from sandbox_pool.models.payload import CodeExecutionResult

_SERVICE_UNAVAILABLE = re.compile(r"\b503\b|service unavailable", re.IGNORECASE)

_TRANSIENT = re.compile(
    r"\b50[234]\b|service unavailable|bad gateway|gateway timeout|timed? ?out|"
    r"timeout|cancel+ed|connection reset|temporarily unavailable",
    re.IGNORECASE,
)

# Signatures meaning the remote runtime itself is gone, not the user's code
_CRITICAL = re.compile(
    r"sandbox (\S+ )?(was )?not found|sandbox .*(is|has been) (killed|terminated|closed)|"
    r"sandbox timeout|port is not open",
    re.IGNORECASE,
)


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


def is_service_unavailable(error: BaseException) -> bool:
    """The provider rejected the call with a 'service unavailable' signal."""
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if status == 503:
        return True
    return bool(_SERVICE_UNAVAILABLE.search(_describe(error)))


def is_transient_error(error: BaseException) -> bool:
    """Timeouts, 502/503/504 and cancellations are expected to pass on retry."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return True
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if status in (502, 503, 504):
        return True
    return bool(_TRANSIENT.search(_describe(error)))


def check_critical_error(error: BaseException) -> Tuple[bool, str]:
    """Whether the failure means the sandbox is unusable and should be killed."""
    text = str(error)
    stderr = getattr(error, "stderr", None) or text
    return bool(_CRITICAL.search(text) or _CRITICAL.search(stderr)), stderr


def extract_error_message(result: Optional[CodeExecutionResult]) -> str:
    """Human readable error of a finished execution, empty when it succeeded."""
    if result is None:
        return ""
    if result.error_name or result.error_value:
        parts = [p for p in (result.error_name, result.error_value) if p]
        message = ": ".join(parts)
        if result.traceback:
            message = f"{message}\n{result.traceback}"
        return message
    if result.exit_code != 0:
        return result.stderr.strip() or f"Process exited with code {result.exit_code}"
    return ""
