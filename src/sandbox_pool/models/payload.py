"""Data models shared by the pool, the lifecycle wrapper and the service."""

import time
from enum import Enum
from typing import Any, List, Literal, Optional
from pydantic import BaseModel, Field


class SandboxState(str, Enum):
    """Lifecycle state of a sandbox as observed through its metadata."""

    CREATED = "created"
    RUNNING = "running"
    IDLE = "idle"
    PAUSED = "paused"
    DISCARDED = "discarded"
    KILLED = "killed"


class SandboxMetadata(BaseModel):
    """Persisted projection of a sandbox, the only cross-process view of it."""

    sandbox_id: str
    affinity_key: str
    uid: str = ""
    cwd: str
    template: Optional[str] = None
    created_at: float
    timeout_at: float
    idle_since: Optional[float] = None
    state: SandboxState = SandboxState.CREATED
    is_paused: bool = False
    last_paused_at: Optional[float] = None

    def remaining_seconds(self, now: Optional[float] = None) -> float:
        return self.timeout_at - (time.time() if now is None else now)

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.remaining_seconds(now) <= 0


class ExecutionContext(BaseModel):
    """Who is asking for a sandbox and where their drive lives."""

    affinity_key: str = Field(description="Owning session, usually the canvas id")
    uid: str = ""
    api_key: str = ""
    drive_path: str = Field(
        default="", description="Object storage prefix mounted as the working dir"
    )


class CodeExecuteParams(BaseModel):
    """Code to run inside a sandbox."""

    code: str
    language: str = "python"


class CommandOutput(BaseModel):
    """Outcome of a remote shell command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None


class CodeExecutionResult(BaseModel):
    """Raw outcome of a code execution; a non-zero exit is still a result."""

    exit_code: int
    text: str = ""
    stdout: str = ""
    stderr: str = ""
    error_name: Optional[str] = None
    error_value: Optional[str] = None
    traceback: Optional[str] = None


class ExecutionResult(BaseModel):
    """Result handed back by the execution service."""

    origin_result: CodeExecutionResult
    exit_code: int
    error: str = ""
    files: List[Any] = Field(default_factory=list)


class SandboxInfo(BaseModel):
    """Provider-reported state of a sandbox."""

    sandbox_id: str
    state: str
    end_at: Optional[float] = None


class PoolStats(BaseModel):
    """Pool introspection."""

    active: int
    max: int


class ExecuteRequest(BaseModel):
    """Request to execute code for a session."""

    params: CodeExecuteParams
    context: ExecutionContext


class ExecuteError(BaseModel):
    code: str
    message: str


class ExecuteResponse(BaseModel):
    """Response of the execution service; either data or one typed error."""

    status: Literal["success", "failed"]
    data: Optional[ExecutionResult] = None
    error: Optional[ExecuteError] = None
    retryable: bool = False
    execution_time_ms: int = 0
