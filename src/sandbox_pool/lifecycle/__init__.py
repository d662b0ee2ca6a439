"""Lifecycle management of pooled sandboxes."""

from .auto_pause import AutoPauseScheduler, pause_job_id
from .lock import LockManager
from .pool import SandboxPool, build_pool
from .queue import SandboxQueueScheduler
from .storage import SandboxStorage
from .wrapper import SandboxWrapper, build_s3_mount_command

__all__ = [
    "AutoPauseScheduler",
    "LockManager",
    "SandboxPool",
    "SandboxQueueScheduler",
    "SandboxStorage",
    "SandboxWrapper",
    "build_pool",
    "build_s3_mount_command",
    "pause_job_id",
]
