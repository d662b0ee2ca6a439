"""Configuration for the sandbox pool."""

from typing import Optional
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sandbox_pool.models.exceptions import ConfigurationError


class S3Config(BaseModel):
    """Object storage settings used to mount the drive inside a sandbox.

    Only handed to the mount command, never persisted.
    """

    endpoint: str = Field(description="Object storage host, without scheme")
    port: int = Field(default=443, description="Object storage port")
    use_ssl: bool = Field(default=True, description="Whether to use https")
    access_key: str = Field(description="Access key id")
    secret_key: str = Field(description="Secret access key")
    bucket: str = Field(description="Bucket holding drive files")
    region: str = Field(default="us-east-1", description="Bucket region")

    @property
    def endpoint_url(self) -> str:
        scheme = "https" if self.use_ssl else "http"
        default_port = 443 if self.use_ssl else 80
        if self.port and self.port != default_port:
            return f"{scheme}://{self.endpoint}:{self.port}"
        return f"{scheme}://{self.endpoint}"


class SandboxPoolConfig(BaseSettings):
    """Configuration for sandbox pool management.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Sandbox provider settings
    provider_type: str = Field(
        default="e2b",
        description="Type of sandbox provider to use (e.g., 'e2b')",
    )
    e2b_api_key: Optional[str] = Field(
        default=None, description="API key for E2B sandbox provider"
    )
    e2b_template_id: str = Field(
        default="code-interpreter-v1",
        description="Template used when creating sandboxes",
    )

    # Pool sizing and budget
    max_sandboxes: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Maximum number of sandboxes in use at the same time",
    )
    sandbox_timeout_seconds: int = Field(
        default=60 * 60,
        ge=60,
        le=60 * 60 * 24,  # Max 24 hours
        description="Lifetime budget given to a newly created sandbox",
    )
    release_extend_seconds: int = Field(
        default=60 * 10,
        ge=0,
        le=60 * 60 * 24,
        description="Budget added to a sandbox each time it is released",
    )
    min_remaining_seconds: int = Field(
        default=60 * 5,
        ge=0,
        description="Sandboxes with less remaining budget are discarded on release",
    )
    auto_pause_delay_seconds: int = Field(
        default=60 * 2,
        ge=1,
        description="Idle time before a released sandbox is paused",
    )
    idle_queue_ttl_seconds: int = Field(
        default=60 * 60,
        ge=1,
        description="TTL refreshed on an idle queue on every push and pop",
    )
    drive_mount_point: str = Field(
        default="/mnt/drive",
        description="Mount point and working directory inside the sandbox",
    )

    # Retry policies
    create_max_attempts: int = Field(default=3, ge=1, le=10)
    create_retry_delay_seconds: float = Field(default=1.0, ge=0)
    health_check_attempts: int = Field(default=3, ge=1, le=20)
    health_check_interval_seconds: float = Field(default=0.5, ge=0)
    pause_max_attempts: int = Field(default=3, ge=1, le=10)
    pause_retry_delay_seconds: float = Field(default=1.0, ge=0)
    mount_max_attempts: int = Field(default=3, ge=1, le=10)
    mount_retry_delay_seconds: float = Field(default=2.0, ge=0)
    mount_settle_seconds: float = Field(
        default=1.0, ge=0, description="Wait after a successful mount"
    )
    command_max_attempts: int = Field(default=4, ge=1, le=10)
    command_retry_delay_seconds: float = Field(default=1.0, ge=0)
    command_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Timeout of a single remote command"
    )
    run_code_timeout_seconds: float = Field(
        default=60 * 5, gt=0, description="Timeout of a single code execution"
    )

    # Locking
    lock_ttl_seconds: int = Field(
        default=30, ge=1, description="TTL of coordination locks, renewed while held"
    )
    lock_wait_timeout_seconds: float = Field(
        default=60.0, ge=0, description="How long to wait for a busy lock"
    )
    lock_poll_interval_seconds: float = Field(default=0.2, gt=0)
    pause_lock_ttl_seconds: int = Field(
        default=60, ge=1, description="TTL of the per-sandbox lock taken to pause"
    )

    # Redis settings
    redis_url: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URL for pool state and the pause queue",
    )
    redis_tls_ca_path: Optional[str] = Field(
        default=None, description="Path to the CA certificate for SSL"
    )
    key_prefix: str = Field(
        default="pool", description="Prefix of every pool key in Redis"
    )
    queue_name: str = Field(
        default="sandbox_lifecycle",
        description="Name of the Redis queue for lifecycle events",
    )
    queue_max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Maximum number of retries for failed lifecycle jobs",
    )
    queue_poll_interval_seconds: float = Field(default=1.0, gt=0)

    def require_api_key(self) -> str:
        """Return the provider API key or fail when it is not configured."""
        if not self.e2b_api_key:
            raise ConfigurationError(
                "E2B API key is required. Set E2B_API_KEY environment variable"
            )
        return self.e2b_api_key

    @property
    def active_lease_seconds(self) -> int:
        """Lease of an active-set entry; a crashed holder's slot frees after it."""
        return self.sandbox_timeout_seconds + self.release_extend_seconds
