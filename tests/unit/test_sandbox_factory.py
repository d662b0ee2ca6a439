"""
Unit tests for SandboxFactory and the E2B provider.
"""

import pytest
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from e2b import CommandExitException

from sandbox_pool.models.exceptions import ConfigurationError
from sandbox_pool.sandboxes.e2b import E2BSandbox
from sandbox_pool.sandboxes.sandbox_factory import SandboxFactory


class TestSandboxFactory:
    """Test SandboxFactory provider lookup and registration."""

    def test_get_e2b_provider(self):
        assert SandboxFactory.get_provider("e2b") == E2BSandbox

    def test_get_default_provider_from_settings(self):
        """Test resolving the provider named by PROVIDER_TYPE."""
        with patch.dict("os.environ", {"PROVIDER_TYPE": "e2b"}):
            assert SandboxFactory.get_provider(None) == E2BSandbox

    def test_unknown_provider_in_settings_raises(self):
        with patch.dict("os.environ", {"PROVIDER_TYPE": "daytona"}):
            with pytest.raises(ValueError) as excinfo:
                SandboxFactory.get_provider(None)

        assert "daytona" in str(excinfo.value)
        assert "e2b" in str(excinfo.value)

    def test_invalid_provider_raises(self):
        with pytest.raises(ValueError) as excinfo:
            SandboxFactory.get_provider("unknown_provider")

        assert "Unsupported provider type" in str(excinfo.value)
        assert "unknown_provider" in str(excinfo.value)

    def test_register_custom_provider(self, provider):
        """Test registering and retrieving a custom provider."""
        SandboxFactory.register_provider("fake", provider)
        try:
            assert SandboxFactory.get_provider("fake") == provider
            assert "fake" in SandboxFactory.get_available_providers()
        finally:
            # Remove from registry to not affect other tests
            del SandboxFactory._providers["fake"]

    def test_register_invalid_provider_raises(self):
        class NotASandbox:
            pass

        with pytest.raises(ValueError) as excinfo:
            SandboxFactory.register_provider("invalid", NotASandbox)

        assert "must inherit from" in str(excinfo.value)


class TestE2BSandbox:
    """Test the E2B provider against a mocked SDK."""

    @pytest.fixture
    def sdk_sandbox(self):
        sandbox = MagicMock()
        sandbox.sandbox_id = "e2b-123"
        sandbox.beta_pause = AsyncMock()
        sandbox.kill = AsyncMock()
        sandbox.set_timeout = AsyncMock()
        sandbox.commands.run = AsyncMock()
        sandbox.files.list = AsyncMock()
        sandbox.create_code_context = AsyncMock(return_value="ctx")
        sandbox.run_code = AsyncMock()
        sandbox.get_info = AsyncMock()
        return sandbox

    @pytest.mark.asyncio
    async def test_create_requires_api_key(self, config_factory):
        with pytest.raises(ConfigurationError):
            await E2BSandbox.create(config_factory(e2b_api_key=None))

    @pytest.mark.asyncio
    async def test_create_passes_template_and_timeout(self, config, sdk_sandbox):
        with patch("sandbox_pool.sandboxes.e2b.AsyncSandbox") as MockSandbox:
            MockSandbox.create = AsyncMock(return_value=sdk_sandbox)

            sandbox = await E2BSandbox.create(
                config, timeout_seconds=120, metadata={"affinity_key": "canvas-1"}
            )

        assert sandbox.sandbox_id == "e2b-123"
        MockSandbox.create.assert_awaited_once_with(
            "code-interpreter-v1",
            timeout=120,
            metadata={"affinity_key": "canvas-1"},
            api_key="test_api_key",
        )

    @pytest.mark.asyncio
    async def test_pause_uses_beta_pause(self, sdk_sandbox):
        await E2BSandbox(sdk_sandbox).pause()

        sdk_sandbox.beta_pause.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_command_reports_non_zero_exit(self, sdk_sandbox):
        sdk_sandbox.commands.run.side_effect = CommandExitException(
            stderr="boom", stdout="", exit_code=3, error="exit status 3"
        )

        output = await E2BSandbox(sdk_sandbox).run_command("false")

        assert output.exit_code == 3
        assert output.stderr == "boom"

    @pytest.mark.asyncio
    async def test_run_code_reuses_context_per_directory(self, sdk_sandbox):
        sdk_sandbox.run_code.return_value = SimpleNamespace(
            error=SimpleNamespace(name="ValueError", value="bad", traceback="tb"),
            text=None,
            logs=SimpleNamespace(stdout=["a\n"], stderr=[]),
        )
        sandbox = E2BSandbox(sdk_sandbox)

        result = await sandbox.run_code("raise ValueError('bad')", "python", "/mnt/drive")
        await sandbox.run_code("1", "python", "/mnt/drive")

        assert result.exit_code == 1
        assert result.error_name == "ValueError"
        assert result.stdout == "a\n"
        sdk_sandbox.create_code_context.assert_awaited_once_with(
            cwd="/mnt/drive", language="python"
        )

    @pytest.mark.asyncio
    async def test_get_info_and_list_files(self, sdk_sandbox):
        end_at = datetime(2030, 1, 1, tzinfo=timezone.utc)
        sdk_sandbox.get_info.return_value = SimpleNamespace(
            sandbox_id="e2b-123", state="running", end_at=end_at
        )
        sdk_sandbox.files.list.return_value = [SimpleNamespace(name="out.csv")]
        sandbox = E2BSandbox(sdk_sandbox)

        info = await sandbox.get_info()

        assert info.end_at == end_at.timestamp()
        assert await sandbox.list_files("/mnt/drive") == ["out.csv"]
