"""Shared pool of remote code-execution sandboxes."""

__version__ = "0.1.0"

from sandbox_pool.config import S3Config, SandboxPoolConfig
from sandbox_pool.lifecycle import SandboxPool, SandboxWrapper, build_pool
from sandbox_pool.service import SandboxExecutionService

__all__ = [
    "S3Config",
    "SandboxExecutionService",
    "SandboxPool",
    "SandboxPoolConfig",
    "SandboxWrapper",
    "build_pool",
]
