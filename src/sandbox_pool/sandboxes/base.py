"""Base sandbox provider abstract class for the sandbox pool."""

from abc import ABC, abstractmethod
from typing import List, Optional

from sandbox_pool.config import SandboxPoolConfig
from sandbox_pool.models.payload import CodeExecutionResult, CommandOutput, SandboxInfo


class BaseSandbox(ABC):
    """Abstract handle to one remote sandbox.

    Implementations wrap a provider SDK and may raise any provider exception;
    classification happens in the lifecycle wrapper.
    """

    @property
    def sandbox_id(self) -> str:
        raise NotImplementedError

    @classmethod
    async def create(
        cls,
        config: SandboxPoolConfig,
        template: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> "BaseSandbox":
        """Create a new sandbox instance.

        Returns:
            Sandbox instance
        """
        raise NotImplementedError

    @classmethod
    async def connect(
        cls,
        sandbox_id: str,
        config: SandboxPoolConfig,
    ) -> "BaseSandbox":
        """Connect to an existing sandbox, resuming it when paused.

        Returns:
            Sandbox instance
        """
        raise NotImplementedError

    @abstractmethod
    async def pause(self) -> None:
        """Hibernate the sandbox; it can be resumed by connect."""
        pass

    @abstractmethod
    async def kill(self) -> None:
        """Destroy the sandbox."""
        pass

    @abstractmethod
    async def set_timeout(self, timeout_seconds: int) -> None:
        """Reset the remaining lifetime of the sandbox, counted from now."""
        pass

    @abstractmethod
    async def get_info(self) -> SandboxInfo:
        """Return provider-reported state, including when the sandbox expires."""
        pass

    @abstractmethod
    async def run_command(
        self, command: str, timeout_seconds: Optional[float] = None
    ) -> CommandOutput:
        """Run a shell command.

        A non-zero exit code is reported in the output, not raised.
        """
        pass

    @abstractmethod
    async def run_code(
        self,
        code: str,
        language: str,
        cwd: str,
        timeout_seconds: Optional[float] = None,
    ) -> CodeExecutionResult:
        """Run code in the sandbox interpreter."""
        pass

    @abstractmethod
    async def list_files(self, directory: str) -> List[str]:
        """List entry names of a directory."""
        pass
