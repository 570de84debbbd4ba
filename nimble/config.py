"""Client configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BLOCK_SIZE = 5_000_000


class Settings(BaseSettings):
    """Nimble client settings.

    Every field can be overridden with a ``NIMBLE_``-prefixed environment
    variable (``NIMBLE_MAX_CONCURRENT_TRANSFERS=8``) or from a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="NIMBLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug: bool = False

    # Manifests
    block_size: int = Field(default=DEFAULT_BLOCK_SIZE, ge=1)
    hash_workers: int = Field(default=4, ge=1, le=64)
    follow_symlinks: bool = False

    # Transfers
    max_concurrent_transfers: int = Field(default=4, ge=1, le=64)
    retry_attempts: int = Field(default=4, ge=1, le=20)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=8.0, ge=0)
    request_timeout: float = Field(default=60.0, gt=0)
    whole_file_threshold: float = Field(default=0.5, ge=0, le=1)

    # Remote repository
    user_agent: str = "nimble (like Swifty)/0.1"
    allow_insecure_http: bool = False
    repo_username: str | None = None
    repo_password: str | None = None

    def validate_retry_window(self) -> None:
        """Validate that the backoff bounds are ordered."""
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError(
                "NIMBLE_RETRY_MAX_DELAY must be greater than or equal to NIMBLE_RETRY_BASE_DELAY"
            )
