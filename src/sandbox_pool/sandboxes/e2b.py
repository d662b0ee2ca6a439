import logging
from typing import Dict, List, Optional, Tuple

from e2b import CommandExitException
from e2b_code_interpreter import AsyncSandbox
from sandbox_pool.config import SandboxPoolConfig
from sandbox_pool.models.payload import CodeExecutionResult, CommandOutput, SandboxInfo
from sandbox_pool.sandboxes.base import BaseSandbox
from sandbox_pool.models.exceptions import SandboxNotInitializedError

logger = logging.getLogger(__name__)


class E2BSandbox(BaseSandbox):
    """E2B sandbox provider for managing remote code execution environments."""

    def __init__(self, sandbox: AsyncSandbox):
        super().__init__()
        self._sandbox = sandbox
        self._contexts: Dict[Tuple[str, str], object] = {}

    def _ensure_sandbox(self) -> AsyncSandbox:
        if not self._sandbox:
            raise SandboxNotInitializedError("E2B sandbox not initialized")
        return self._sandbox

    @property
    def sandbox_id(self) -> str:
        return self._ensure_sandbox().sandbox_id

    @classmethod
    async def create(
        cls,
        config: SandboxPoolConfig,
        template: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> "E2BSandbox":
        api_key = config.require_api_key()
        sandbox = await AsyncSandbox.create(
            template or config.e2b_template_id,
            timeout=timeout_seconds or config.sandbox_timeout_seconds,
            metadata=metadata,
            api_key=api_key,
        )
        return cls(sandbox)

    @classmethod
    async def connect(cls, sandbox_id: str, config: SandboxPoolConfig) -> "E2BSandbox":
        api_key = config.require_api_key()
        sandbox = await AsyncSandbox.connect(sandbox_id, api_key=api_key)
        return cls(sandbox)

    async def pause(self) -> None:
        await self._ensure_sandbox().beta_pause()

    async def kill(self) -> None:
        await self._ensure_sandbox().kill()

    async def set_timeout(self, timeout_seconds: int) -> None:
        await self._ensure_sandbox().set_timeout(timeout_seconds)

    async def get_info(self) -> SandboxInfo:
        info = await self._ensure_sandbox().get_info()
        state = getattr(info, "state", "running")
        return SandboxInfo(
            sandbox_id=info.sandbox_id,
            state=str(getattr(state, "value", state)),
            end_at=info.end_at.timestamp() if info.end_at else None,
        )

    async def run_command(
        self, command: str, timeout_seconds: Optional[float] = None
    ) -> CommandOutput:
        sandbox = self._ensure_sandbox()
        try:
            result = await sandbox.commands.run(command, timeout=timeout_seconds)
        except CommandExitException as e:
            # e2b raises on non-zero exit; callers expect the exit code instead
            return CommandOutput(
                exit_code=e.exit_code,
                stdout=e.stdout or "",
                stderr=e.stderr or "",
                error=e.error,
            )
        return CommandOutput(
            exit_code=result.exit_code,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            error=result.error,
        )

    async def _get_context(self, language: str, cwd: str):
        key = (language, cwd)
        if key not in self._contexts:
            self._contexts[key] = await self._ensure_sandbox().create_code_context(
                cwd=cwd, language=language
            )
        return self._contexts[key]

    async def run_code(
        self,
        code: str,
        language: str,
        cwd: str,
        timeout_seconds: Optional[float] = None,
    ) -> CodeExecutionResult:
        sandbox = self._ensure_sandbox()
        context = await self._get_context(language, cwd)
        execution = await sandbox.run_code(code, context=context, timeout=timeout_seconds)
        error = execution.error
        return CodeExecutionResult(
            exit_code=1 if error else 0,
            text=execution.text or "",
            stdout="".join(execution.logs.stdout),
            stderr="".join(execution.logs.stderr),
            error_name=error.name if error else None,
            error_value=error.value if error else None,
            traceback=error.traceback if error else None,
        )

    async def list_files(self, directory: str) -> List[str]:
        entries = await self._ensure_sandbox().files.list(directory)
        return [entry.name for entry in entries]
