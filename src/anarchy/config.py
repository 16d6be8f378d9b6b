"""Application settings via pydantic-settings. Loads from environment and .env file."""

from __future__ import annotations

from pydantic import model_validator
from pydantic_settings import BaseSettings

VALID_ENVIRONMENTS = frozenset({"development", "staging", "production"})


class Settings(BaseSettings):
    """Anarchy & Associates bot configuration.

    All values can be overridden via environment variables or .env file.
    """

    # Discord
    discord_bot_token: str = ""
    discord_guild_id: str = ""
    discord_enabled: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///anarchy.db"

    # Environment
    anarchy_env: str = "development"

    # Transactions
    compensation_max_retries: int = 3
    compensation_retry_base_delay: float = 1.0  # seconds, doubled per attempt

    # Command validation
    bypass_ttl_seconds: int = 300  # pending guild-owner bypass confirmations expire

    # Reminders
    reminder_poll_seconds: int = 30

    # Logging
    anarchy_log_level: str = "INFO"

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    @model_validator(mode="after")
    def _check_values(self) -> Settings:
        if self.anarchy_env not in VALID_ENVIRONMENTS:
            raise ValueError(
                f"anarchy_env must be one of {sorted(VALID_ENVIRONMENTS)}, got {self.anarchy_env!r}"
            )
        if self.compensation_max_retries < 1:
            raise ValueError("compensation_max_retries must be at least 1")
        return self
