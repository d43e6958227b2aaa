"""Application settings via pydantic-settings. Loads from environment and .env file."""

from __future__ import annotations

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Band governance configuration.

    All values can be overridden via environment variables or .env file.
    """

    # Database
    database_url: str = "sqlite+aiosqlite:///bandgov.db"

    # Environment
    bandgov_env: str = "development"

    # Governance defaults (bands carry their own voting period; this is the fallback)
    bandgov_default_voting_period_days: int = 7
    bandgov_max_resubmissions: int = 3
    bandgov_min_reason_length: int = 10

    # Effects registry: allow a later registration to replace an earlier handler
    bandgov_allow_handler_override: bool = False

    # Logging
    bandgov_log_level: str = "INFO"

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    @model_validator(mode="after")
    def _check_governance_limits(self) -> Settings:
        """Reject limits that would make proposals impossible to open or resubmit."""
        if self.bandgov_default_voting_period_days <= 0:
            msg = "BANDGOV_DEFAULT_VOTING_PERIOD_DAYS must be positive"
            raise ValueError(msg)
        if self.bandgov_max_resubmissions <= 0:
            msg = "BANDGOV_MAX_RESUBMISSIONS must be positive"
            raise ValueError(msg)
        return self
