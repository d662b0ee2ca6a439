from .payload import (
    CodeExecuteParams,
    CodeExecutionResult,
    CommandOutput,
    ExecuteError,
    ExecuteRequest,
    ExecuteResponse,
    ExecutionContext,
    ExecutionResult,
    PoolStats,
    SandboxInfo,
    SandboxMetadata,
    SandboxState,
)

__all__ = [
    "CodeExecuteParams",
    "CodeExecutionResult",
    "CommandOutput",
    "ExecuteError",
    "ExecuteRequest",
    "ExecuteResponse",
    "ExecutionContext",
    "ExecutionResult",
    "PoolStats",
    "SandboxInfo",
    "SandboxMetadata",
    "SandboxState",
]
