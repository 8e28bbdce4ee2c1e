"""
Configuration Management for Family Ledger

Values come from the environment or a .env file via pydantic-settings.

Nothing else in the package reads the environment.
This makes it easy to see what the engine depends on (folders, retry
policy, thresholds) and ensures configuration is validated at startup.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    """Shared-folder sync configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    ledger_folder: Path = Field(
        default=Path("Ledger"),
        description="Folder mirrored by the external sync transport"
    )
    snapshot_path: Path = Field(
        default=Path(".ledger_state/snapshot.json"),
        description="Device-local path of the last synchronized snapshot"
    )
    audit_log_path: Optional[Path] = Field(
        default=Path(".ledger_state/audit.jsonl"),
        description="Append-only audit log (None keeps audit local to structlog)"
    )
    device_id: str = Field(
        default="local-device",
        min_length=1,
        description="Identifies this device in audit events"
    )
    identity_token: Optional[str] = Field(
        default=None,
        description="Linked member identity token, attributes sync authorship"
    )

    # Retry policy for transient I/O failures
    max_io_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per remote read/write before giving up this cycle"
    )
    retry_backoff_multiplier: float = Field(
        default=0.5,
        ge=0.0,
        description="Exponential backoff multiplier in seconds"
    )
    retry_wait_min_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="Lower bound of a single backoff wait"
    )
    retry_wait_max_seconds: float = Field(
        default=8.0,
        ge=0.0,
        description="Upper bound of a single backoff wait"
    )
    io_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-operation timeout enforced by the file store adapter"
    )

    default_currency: str = Field(
        default="CNY",
        min_length=3,
        max_length=3,
        description="Currency assumed when a row omits it"
    )

    @field_validator('default_currency')
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class AppSettings(BaseSettings):
    """
    Settings for draft checks and recurring templates.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Deployment name such as development or production"
    )
    debug_mode: bool = Field(
        default=False,
        description="Verbose diagnostics"
    )
    log_level: str = Field(
        default="INFO",
        description="Minimum level for structured logs"
    )

    # Draft validation thresholds
    max_transaction_amount: float = Field(
        default=1000000.0,
        description="Maximum reasonable amount (for sanity checking drafts)"
    )
    future_date_tolerance_days: int = Field(
        default=7,
        description="How many days in the future a draft date can be"
    )
    min_draft_confidence: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Confidence below which a draft field is flagged for review"
    )

    # Recurring transactions
    recurring_catch_up_days: int = Field(
        default=31,
        ge=0,
        le=366,
        description="How many missed days the recurring scheduler will back-fill"
    )

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class Settings(BaseSettings):
    """
    Root settings container.

    Groups the sync and app settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Built on access so a missing sync folder does not break app settings

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Process-wide settings.

    Cached; tests call get_settings.cache_clear() after changing the environment.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Try to build every settings group.

    Maps each group to whether it loaded, with an *_error entry for failures.
    """
    results = {}

    settings = get_settings()

    try:
        _ = settings.sync
        results["sync"] = True
    except Exception as e:
        results["sync"] = False
        results["sync_error"] = str(e)

    try:
        _ = settings.app
        results["app"] = True
    except Exception as e:
        results["app"] = False
        results["app_error"] = str(e)

    return results
