"""Code execution on pooled sandboxes."""

import logging
import time
from typing import Any, Awaitable, Callable, List, Optional

from sandbox_pool.config import S3Config, SandboxPoolConfig
from sandbox_pool.lifecycle.lock import LockManager
from sandbox_pool.lifecycle.pool import SandboxPool
from sandbox_pool.lifecycle.wrapper import SandboxWrapper
from sandbox_pool.models.exceptions import (
    ConfigurationError,
    SandboxException,
    SandboxRequestParamsError,
)
from sandbox_pool.models.payload import (
    CodeExecuteParams,
    CodeExecutionResult,
    ExecuteError,
    ExecuteRequest,
    ExecuteResponse,
    ExecutionContext,
    ExecutionResult,
)
from sandbox_pool.utils.errors import check_critical_error, extract_error_message

logger = logging.getLogger(__name__)

# Registers files produced by an execution with the drive, returns their records
FileRegistrar = Callable[[ExecutionContext, List[str]], Awaitable[List[Any]]]


class SandboxExecutionService:
    """Runs code for a session on a sandbox borrowed from the pool.

    One execution per (uid, affinity key) at a time. The drive is mounted as
    the working directory so files written by the code land in object
    storage; new files are handed to the registrar.
    """

    def __init__(
        self,
        config: SandboxPoolConfig,
        pool: SandboxPool,
        lock: LockManager,
        s3_config: Optional[S3Config] = None,
        file_registrar: Optional[FileRegistrar] = None,
    ):
        self.config = config
        self.pool = pool
        self.lock = lock
        self.s3_config = s3_config
        self.file_registrar = file_registrar

    async def execute(self, request: ExecuteRequest) -> ExecuteResponse:
        """Execute a request, returning either a result or one typed error."""
        started = time.monotonic()
        try:
            context = request.context
            if not context.affinity_key:
                raise SandboxRequestParamsError("execute", "affinity_key is required")
            if not context.api_key:
                context = context.model_copy(
                    update={"api_key": self.config.require_api_key()}
                )

            result = await self.execute_code(request.params, context)
            return ExecuteResponse(
                status="success",
                data=result,
                execution_time_ms=self._elapsed_ms(started),
            )
        except SandboxException as e:
            logger.error(f"Sandbox execution failed: {e}")
            return ExecuteResponse(
                status="failed",
                error=ExecuteError(code=e.code, message=e.message),
                retryable=getattr(e, "retryable", False),
                execution_time_ms=self._elapsed_ms(started),
            )
        except Exception as e:
            logger.exception(f"Unexpected sandbox execution failure: {e}")
            return ExecuteResponse(
                status="failed",
                error=ExecuteError(code=SandboxException.code, message=str(e)),
                execution_time_ms=self._elapsed_ms(started),
            )

    async def execute_code(
        self, params: CodeExecuteParams, context: ExecutionContext
    ) -> ExecutionResult:
        if not context.affinity_key:
            raise SandboxRequestParamsError("execute_code", "affinity_key is required")
        if self.s3_config is None:
            raise ConfigurationError("Object storage is not configured for drive mounts")

        ttl = self._execution_lock_ttl()
        async with self.lock.hold(
            LockManager.execute_key(context.uid, context.affinity_key),
            ttl,
            wait_timeout_seconds=self.config.lock_wait_timeout_seconds,
        ):
            wrapper = await self.pool.acquire(context)
            try:
                async with self.lock.hold(
                    LockManager.sandbox_key(wrapper.sandbox_id),
                    ttl,
                    wait_timeout_seconds=self.config.lock_wait_timeout_seconds,
                ):
                    await wrapper.mount_drive(
                        context.drive_path, self.s3_config, allow_non_empty=True
                    )
                    try:
                        return await self._run_in_sandbox(wrapper, params, context)
                    finally:
                        await self._unmount_quietly(wrapper)
            finally:
                await self.pool.release(wrapper)

    async def _run_in_sandbox(
        self,
        wrapper: SandboxWrapper,
        params: CodeExecuteParams,
        context: ExecutionContext,
    ) -> ExecutionResult:
        previous_files = set(await wrapper.list_cwd_files())
        result = await self._execute_defense_critical_error(wrapper, params)
        files = await self._register_new_files(wrapper, context, previous_files)

        if result.exit_code != 0:
            logger.info(f"Code error (exit code {result.exit_code}) in sandbox {wrapper.sandbox_id}")
        return ExecutionResult(
            origin_result=result,
            exit_code=result.exit_code,
            error=extract_error_message(result),
            files=files,
        )

    async def _execute_defense_critical_error(
        self, wrapper: SandboxWrapper, params: CodeExecuteParams
    ) -> CodeExecutionResult:
        try:
            return await wrapper.execute_code(
                params, timeout_seconds=self.config.run_code_timeout_seconds
            )
        except SandboxException as e:
            is_critical, stderr = check_critical_error(e)
            if is_critical:
                logger.warning(
                    f"Critical sandbox error in {wrapper.sandbox_id}, killing sandbox: {stderr}"
                )
                try:
                    await wrapper.kill()
                except Exception as kill_error:
                    logger.warning(f"Failed to kill sandbox {wrapper.sandbox_id}: {kill_error}")
            raise

    async def _register_new_files(
        self,
        wrapper: SandboxWrapper,
        context: ExecutionContext,
        previous_files: set,
    ) -> List[Any]:
        try:
            current_files = await wrapper.list_cwd_files()
            new_files = [name for name in current_files if name not in previous_files]
            logger.info(f"New files in sandbox {wrapper.sandbox_id}: {new_files}")
            if not new_files or self.file_registrar is None:
                return []
            return await self.file_registrar(context, new_files)
        except Exception as e:
            logger.error(f"Failed to register files: {e}")
            return []

    async def _unmount_quietly(self, wrapper: SandboxWrapper) -> None:
        try:
            await wrapper.unmount_drive()
        except Exception as e:
            logger.warning(f"Failed to unmount drive in sandbox {wrapper.sandbox_id}: {e}")

    def _execution_lock_ttl(self) -> int:
        return int(self.config.run_code_timeout_seconds) + self.config.lock_ttl_seconds

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
