"""Lifecycle management of one live remote sandbox."""

import asyncio
import logging
import shlex
import time
import uuid
from typing import List, Optional, Type

from sandbox_pool.config import S3Config, SandboxPoolConfig
from sandbox_pool.models.exceptions import (
    ConfigurationError,
    SandboxConnectionError,
    SandboxCreationError,
    SandboxExecutionError,
    SandboxFileListError,
    SandboxMountError,
    SandboxPauseError,
    SandboxTransientError,
)
from sandbox_pool.models.payload import (
    CodeExecuteParams,
    CodeExecutionResult,
    CommandOutput,
    ExecutionContext,
    SandboxMetadata,
    SandboxState,
)
from sandbox_pool.sandboxes.base import BaseSandbox
from sandbox_pool.utils.errors import is_service_unavailable, is_transient_error
from sandbox_pool.utils.retry import RetryExhaustedError, RetryPolicy, retry_async

logger = logging.getLogger(__name__)

HEALTH_CHECK_COMMAND = "echo ok"


def _not_configuration_error(error: BaseException) -> bool:
    return not isinstance(error, ConfigurationError)


def build_s3_mount_command(
    s3_config: S3Config,
    path: str,
    mount_point: str,
    read_only: bool = False,
    allow_non_empty: bool = False,
) -> str:
    """Build an s3fs mount command.

    Credentials go to a private password file that is removed in the same
    shell invocation whether or not the mount succeeds.
    """
    passwd_file = f"/tmp/.passwd-s3fs-{uuid.uuid4().hex}"
    credentials = f"{s3_config.access_key}:{s3_config.secret_key}"
    options = [
        f"passwd_file={passwd_file}",
        f"url={s3_config.endpoint_url}",
        f"endpoint={s3_config.region}",
        "use_path_request_style",
        "compat_dir",
    ]
    if read_only:
        options.append("ro")
    if allow_non_empty:
        options.append("nonempty")

    source = f"{s3_config.bucket}:/{path.strip('/')}" if path.strip("/") else s3_config.bucket
    mount = " ".join(
        ["s3fs", shlex.quote(source), shlex.quote(mount_point)]
        + [f"-o {shlex.quote(opt)}" for opt in options]
    )
    quoted_passwd = shlex.quote(passwd_file)
    return (
        f"umask 077; printf '%s' {shlex.quote(credentials)} > {quoted_passwd}; "
        f"{mount}; rc=$?; rm -f {quoted_passwd}; exit $rc"
    )


class SandboxWrapper:
    """Owns exactly one remote sandbox handle.

    Handles health checks, budget bookkeeping, drive mounts, execution and
    the projection into persisted metadata. A wrapper is handed to one
    caller at a time by the pool; it is not safe for concurrent use.
    """

    def __init__(
        self,
        sandbox: BaseSandbox,
        context: ExecutionContext,
        config: SandboxPoolConfig,
        cwd: str,
        created_at: float,
        timeout_at: float,
        template: Optional[str] = None,
        state: SandboxState = SandboxState.CREATED,
        is_paused: bool = False,
        last_paused_at: Optional[float] = None,
        idle_since: Optional[float] = None,
    ):
        self._sandbox = sandbox
        self.context = context
        self.config = config
        self.cwd = cwd
        self.created_at = created_at
        self.timeout_at = timeout_at
        self.template = template
        self.state = state
        self.is_paused = is_paused
        self.last_paused_at = last_paused_at
        self.idle_since = idle_since
        self._mounted = False

    @property
    def sandbox_id(self) -> str:
        return self._sandbox.sandbox_id

    @property
    def affinity_key(self) -> str:
        return self.context.affinity_key

    @property
    def sandbox(self) -> BaseSandbox:
        return self._sandbox

    # Creation and reconnection

    @classmethod
    async def create(
        cls,
        context: ExecutionContext,
        config: SandboxPoolConfig,
        provider: Type[BaseSandbox],
        template: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ) -> "SandboxWrapper":
        """Create a sandbox and wait until it answers commands.

        Raises:
            SandboxCreationError: every attempt failed
            ConfigurationError: the provider credentials are missing
        """
        timeout = timeout_seconds or config.sandbox_timeout_seconds
        template = template or config.e2b_template_id
        logger.info(f"Creating sandbox for {context.affinity_key}")

        async def attempt() -> "SandboxWrapper":
            sandbox = await provider.create(
                config,
                template=template,
                timeout_seconds=timeout,
                metadata={"affinity_key": context.affinity_key, "uid": context.uid},
            )
            now = time.time()
            wrapper = cls(
                sandbox,
                context,
                config,
                cwd=config.drive_mount_point,
                created_at=now,
                timeout_at=now + timeout,
                template=template,
            )
            try:
                await wrapper._refresh_timeout_at()
                healthy = await wrapper.health_check()
            except Exception:
                await wrapper._kill_quietly()
                raise
            if not healthy:
                await wrapper._kill_quietly()
                raise SandboxCreationError(
                    "Sandbox failed health check", sandbox_id=wrapper.sandbox_id
                )
            return wrapper

        try:
            wrapper = await retry_async(
                attempt,
                RetryPolicy(
                    config.create_max_attempts,
                    config.create_retry_delay_seconds,
                    _not_configuration_error,
                ),
                name="create sandbox",
            )
        except RetryExhaustedError as e:
            raise SandboxCreationError("Failed to create sandbox", e.errors) from e

        logger.info(
            f"Sandbox {wrapper.sandbox_id} created for {context.affinity_key}"
        )
        return wrapper

    @classmethod
    async def reconnect(
        cls,
        context: ExecutionContext,
        metadata: SandboxMetadata,
        config: SandboxPoolConfig,
        provider: Type[BaseSandbox],
    ) -> "SandboxWrapper":
        """Reconnect to a persisted sandbox, resuming it if it was paused.

        Raises:
            SandboxConnectionError: every attempt failed; the caller must
                delete the metadata record
        """
        logger.info(f"Reconnecting to sandbox {metadata.sandbox_id}")

        async def attempt() -> "SandboxWrapper":
            sandbox = await provider.connect(metadata.sandbox_id, config)
            wrapper = cls(
                sandbox,
                context,
                config,
                cwd=metadata.cwd,
                created_at=metadata.created_at,
                timeout_at=metadata.timeout_at,
                template=metadata.template,
                state=metadata.state,
                is_paused=metadata.is_paused,
                last_paused_at=metadata.last_paused_at,
                idle_since=metadata.idle_since,
            )
            if not await wrapper.health_check():
                raise SandboxConnectionError(
                    "Sandbox is not healthy", sandbox_id=metadata.sandbox_id
                )
            return wrapper

        try:
            wrapper = await retry_async(
                attempt,
                RetryPolicy(
                    config.create_max_attempts,
                    config.create_retry_delay_seconds,
                    _not_configuration_error,
                ),
                name=f"reconnect sandbox {metadata.sandbox_id}",
            )
        except RetryExhaustedError as e:
            raise SandboxConnectionError(
                f"Failed to reconnect sandbox {metadata.sandbox_id}",
                e.errors,
                sandbox_id=metadata.sandbox_id,
            ) from e

        logger.info(f"Reconnected to sandbox {metadata.sandbox_id}")
        return wrapper

    # Health and budget

    async def health_check(self) -> bool:
        """Poll a trivial command a bounded number of times. Never raises."""

        async def probe() -> None:
            output = await self._sandbox.run_command(
                HEALTH_CHECK_COMMAND, timeout_seconds=self.config.command_timeout_seconds
            )
            if output.exit_code != 0:
                raise SandboxExecutionError(
                    f"Health probe exited with {output.exit_code}: {output.stderr}"
                )

        try:
            await retry_async(
                probe,
                RetryPolicy(
                    self.config.health_check_attempts,
                    self.config.health_check_interval_seconds,
                ),
                name=f"health check {self._safe_id()}",
            )
            return True
        except Exception as e:
            logger.warning(f"Sandbox {self._safe_id()} is not healthy: {e}")
            return False

    async def _refresh_timeout_at(self) -> None:
        info = await self._sandbox.get_info()
        if info.end_at:
            self.timeout_at = info.end_at

    async def extend_timeout(self, seconds: float) -> None:
        """Add ``seconds`` to the remaining budget."""
        target = max(int(self.remaining_seconds() + seconds), 1)
        await self._sandbox.set_timeout(target)
        self.timeout_at = time.time() + target
        await self._refresh_timeout_at()

    def remaining_seconds(self) -> float:
        return self.timeout_at - time.time()

    # Pause and kill

    async def pause(self) -> bool:
        """Hibernate the sandbox. Best-effort: failures are logged, never raised."""

        async def attempt() -> None:
            try:
                await self._sandbox.pause()
            except Exception as e:
                raise SandboxPauseError(str(e), self.sandbox_id) from e

        try:
            await retry_async(
                attempt,
                RetryPolicy(
                    self.config.pause_max_attempts,
                    self.config.pause_retry_delay_seconds,
                ),
                name=f"pause sandbox {self.sandbox_id}",
            )
        except Exception as e:
            logger.warning(f"Failed to pause sandbox {self._safe_id()}: {e}")
            return False
        logger.info(f"Paused sandbox {self.sandbox_id}")
        return True

    async def kill(self) -> None:
        await self._sandbox.kill()
        self.state = SandboxState.KILLED
        logger.info(f"Killed sandbox {self.sandbox_id}")

    async def _kill_quietly(self) -> None:
        try:
            await self.kill()
        except Exception as e:
            logger.warning(f"Failed to kill sandbox {self._safe_id()}: {e}")

    # Drive

    async def mount_drive(
        self,
        path: str,
        s3_config: S3Config,
        read_only: bool = False,
        allow_non_empty: bool = False,
    ) -> None:
        """Mount object storage at the working directory.

        Raises:
            SandboxMountError: the mount still failed after the last attempt
        """
        mount_point = self.config.drive_mount_point
        logger.info(f"Mounting drive {path} at {mount_point} in sandbox {self.sandbox_id}")

        mkdir = await self._run_for_mount(f"mkdir -p {shlex.quote(mount_point)}")
        if mkdir.exit_code != 0:
            raise SandboxMountError(
                f"Failed to create mount point {mount_point}: {mkdir.stderr}",
                self.sandbox_id,
            )

        async def attempt() -> CommandOutput:
            command = build_s3_mount_command(
                s3_config, path, mount_point, read_only, allow_non_empty
            )
            output = await self._sandbox.run_command(
                command, timeout_seconds=self.config.command_timeout_seconds
            )
            if output.exit_code != 0:
                raise SandboxMountError(
                    f"s3fs exited with {output.exit_code}: {output.stderr.strip()}",
                    self.sandbox_id,
                )
            return output

        try:
            await retry_async(
                attempt,
                RetryPolicy(
                    self.config.mount_max_attempts,
                    self.config.mount_retry_delay_seconds,
                ),
                name=f"mount drive in {self.sandbox_id}",
            )
        except RetryExhaustedError as e:
            raise SandboxMountError(
                f"Failed to mount drive: {e.last_error}", self.sandbox_id
            ) from e

        self._mounted = True
        if self.config.mount_settle_seconds:
            await asyncio.sleep(self.config.mount_settle_seconds)
        logger.info(f"Drive mounted at {mount_point} in sandbox {self.sandbox_id}")

    async def unmount_drive(self) -> None:
        mount_point = shlex.quote(self.config.drive_mount_point)
        output = await self._run_for_mount(
            f"fusermount -u {mount_point} || umount {mount_point}"
        )
        if output.exit_code != 0:
            raise SandboxMountError(
                f"Failed to unmount drive: {output.stderr.strip()}", self.sandbox_id
            )
        self._mounted = False
        logger.info(f"Drive unmounted in sandbox {self.sandbox_id}")

    async def _run_for_mount(self, command: str) -> CommandOutput:
        try:
            return await self._sandbox.run_command(
                command, timeout_seconds=self.config.command_timeout_seconds
            )
        except Exception as e:
            raise SandboxMountError(str(e), self.sandbox_id) from e

    # Execution

    async def execute_code(
        self, params: CodeExecuteParams, timeout_seconds: Optional[float] = None
    ) -> CodeExecutionResult:
        """Run user code once. Re-running arbitrary code is unsafe, so no retry.

        A non-zero exit is returned as a result. Provider failures raise
        SandboxTransientError when they look transient, SandboxExecutionError
        otherwise.
        """
        logger.info(
            f"Executing {params.language} code in sandbox {self.sandbox_id} "
            f"for {self.affinity_key}"
        )
        try:
            return await self._sandbox.run_code(
                params.code,
                language=params.language,
                cwd=self.cwd,
                timeout_seconds=timeout_seconds or self.config.run_code_timeout_seconds,
            )
        except Exception as e:
            if is_transient_error(e):
                raise SandboxTransientError(
                    f"Code execution interrupted: {e}", self.sandbox_id
                ) from e
            raise SandboxExecutionError(
                f"Code execution failed: {e}", self.sandbox_id
            ) from e

    async def run_command(self, command: str) -> CommandOutput:
        """Run a shell command, retrying only 'service unavailable' failures.

        Raises:
            SandboxExecutionError: the command could not run, or exited non-zero
        """

        async def attempt() -> CommandOutput:
            return await self._sandbox.run_command(
                command, timeout_seconds=self.config.command_timeout_seconds
            )

        try:
            output = await retry_async(
                attempt,
                RetryPolicy(
                    self.config.command_max_attempts,
                    self.config.command_retry_delay_seconds,
                    is_service_unavailable,
                ),
                name=f"run command in {self.sandbox_id}",
            )
        except RetryExhaustedError as e:
            raise SandboxExecutionError(
                f"Command failed after {len(e.errors)} attempts: {e.last_error}",
                self.sandbox_id,
            ) from e
        except Exception as e:
            raise SandboxExecutionError(f"Command failed: {e}", self.sandbox_id) from e

        if output.exit_code != 0:
            raise SandboxExecutionError(
                f"Command exited with {output.exit_code}: {output.stderr.strip()}",
                self.sandbox_id,
            )
        return output

    async def list_cwd_files(self) -> List[str]:
        try:
            return await self._sandbox.list_files(self.cwd)
        except Exception as e:
            raise SandboxFileListError(
                f"Failed to list {self.cwd}: {e}", self.sandbox_id
            ) from e

    # State

    def mark_as_running(self) -> None:
        self.state = SandboxState.RUNNING
        self.is_paused = False
        self.idle_since = None

    def mark_as_idle(self) -> None:
        self.state = SandboxState.IDLE
        self.idle_since = time.time()

    def mark_as_paused(self) -> None:
        self.state = SandboxState.PAUSED
        self.is_paused = True
        self.last_paused_at = time.time()

    def to_metadata(self) -> SandboxMetadata:
        return SandboxMetadata(
            sandbox_id=self.sandbox_id,
            affinity_key=self.affinity_key,
            uid=self.context.uid,
            cwd=self.cwd,
            template=self.template,
            created_at=self.created_at,
            timeout_at=self.timeout_at,
            idle_since=self.idle_since,
            state=self.state,
            is_paused=self.is_paused,
            last_paused_at=self.last_paused_at,
        )

    def _safe_id(self) -> str:
        try:
            return self.sandbox_id
        except Exception:
            return "<unknown>"
