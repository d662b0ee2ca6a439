"""Shared fixtures: an isolated fake Redis and an in-memory sandbox provider."""

import time
import uuid
from typing import Callable, Dict, List, Optional

import fakeredis
import pytest

from sandbox_pool.config import S3Config, SandboxPoolConfig
from sandbox_pool.lifecycle.lock import LockManager
from sandbox_pool.lifecycle.pool import build_pool
from sandbox_pool.lifecycle.storage import SandboxStorage
from sandbox_pool.models.payload import (
    CodeExecutionResult,
    CommandOutput,
    ExecutionContext,
    SandboxInfo,
)
from sandbox_pool.sandboxes.base import BaseSandbox


class FakeCloud:
    """State of the fake provider shared by every sandbox of one test."""

    def __init__(self):
        self.sandboxes: Dict[str, "FakeSandbox"] = {}
        self.create_calls = 0
        self.connect_calls = 0
        self.create_failures = 0
        self.command_hook: Optional[Callable[["FakeSandbox", str], CommandOutput]] = None
        self.code_hook: Optional[Callable[["FakeSandbox", str], CodeExecutionResult]] = None


class FakeSandbox(BaseSandbox):
    cloud: FakeCloud

    def __init__(self, sandbox_id: str, timeout_seconds: int):
        self._id = sandbox_id
        self.end_at = time.time() + timeout_seconds
        self.paused = False
        self.killed = False
        self.commands: List[str] = []
        self.files: List[str] = []

    @property
    def sandbox_id(self) -> str:
        return self._id

    @classmethod
    async def create(cls, config, template=None, timeout_seconds=None, metadata=None):
        config.require_api_key()
        cls.cloud.create_calls += 1
        if cls.cloud.create_failures > 0:
            cls.cloud.create_failures -= 1
            raise RuntimeError("Service Unavailable")
        sandbox = cls(f"sbx-{uuid.uuid4().hex[:8]}", timeout_seconds or 3600)
        cls.cloud.sandboxes[sandbox.sandbox_id] = sandbox
        return sandbox

    @classmethod
    async def connect(cls, sandbox_id, config):
        config.require_api_key()
        cls.cloud.connect_calls += 1
        sandbox = cls.cloud.sandboxes.get(sandbox_id)
        if sandbox is None or sandbox.killed:
            raise RuntimeError(f"Sandbox {sandbox_id} not found")
        sandbox.paused = False
        return sandbox

    async def pause(self):
        self._check_alive()
        self.paused = True

    async def kill(self):
        self.killed = True

    async def set_timeout(self, timeout_seconds):
        self._check_alive()
        self.end_at = time.time() + timeout_seconds

    async def get_info(self):
        self._check_alive()
        return SandboxInfo(
            sandbox_id=self._id,
            state="paused" if self.paused else "running",
            end_at=self.end_at,
        )

    async def run_command(self, command, timeout_seconds=None):
        self._check_alive()
        self.commands.append(command)
        if self.cloud.command_hook is not None:
            return self.cloud.command_hook(self, command)
        return CommandOutput(exit_code=0, stdout="ok\n")

    async def run_code(self, code, language, cwd, timeout_seconds=None):
        self._check_alive()
        if self.cloud.code_hook is not None:
            return self.cloud.code_hook(self, code)
        return CodeExecutionResult(exit_code=0, text="", stdout="")

    async def list_files(self, directory):
        self._check_alive()
        return list(self.files)

    def _check_alive(self):
        if self.killed:
            raise RuntimeError(f"Sandbox {self._id} not found")


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def provider(cloud):
    return type("FakeProvider", (FakeSandbox,), {"cloud": cloud})


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


def make_config(**overrides) -> SandboxPoolConfig:
    settings = dict(
        e2b_api_key="test_api_key",
        max_sandboxes=2,
        sandbox_timeout_seconds=3600,
        release_extend_seconds=600,
        min_remaining_seconds=300,
        auto_pause_delay_seconds=120,
        create_retry_delay_seconds=0,
        health_check_interval_seconds=0,
        pause_retry_delay_seconds=0,
        mount_retry_delay_seconds=0,
        mount_settle_seconds=0,
        command_retry_delay_seconds=0,
        lock_wait_timeout_seconds=1,
        lock_poll_interval_seconds=0.01,
        key_prefix="test",
        queue_name="test_lifecycle",
    )
    settings.update(overrides)
    return SandboxPoolConfig(**settings)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def s3_config():
    return S3Config(
        endpoint="s3.example.com",
        access_key="AKIATEST",
        secret_key="secret/key",
        bucket="drive",
    )


@pytest.fixture
def storage(redis_client, config):
    return SandboxStorage(
        redis_client,
        key_prefix=config.key_prefix,
        idle_queue_ttl_seconds=config.idle_queue_ttl_seconds,
    )


@pytest.fixture
def lock(redis_client, config):
    return LockManager(
        redis_client,
        key_prefix=config.key_prefix,
        poll_interval_seconds=config.lock_poll_interval_seconds,
    )


@pytest.fixture
def pool(config, redis_client, provider):
    return build_pool(config, redis_client, provider)


@pytest.fixture
def context():
    return ExecutionContext(
        affinity_key="canvas-1", uid="user-1", drive_path="user-1/canvas-1"
    )


@pytest.fixture
def config_factory():
    return make_config


@pytest.fixture
def pool_factory(redis_client, provider):
    def _build(**overrides):
        return build_pool(make_config(**overrides), redis_client, provider)

    return _build
