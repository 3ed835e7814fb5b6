"""Service settings for migration-control-plane.

All settings use the MIGRATION_CP_ environment prefix and cover:
- Storage (SQLAlchemy async database URL)
- Alerting (optional webhook)
- Policy seeding
- Saga compensation retries and step timeouts
- Health evaluation thresholds and cadence
- Automatic rollback behaviour
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from migration_control_plane.health.evaluator import HealthThresholds


class Settings(BaseSettings):
    """Settings for migration-control-plane.

    Environment variable prefix: MIGRATION_CP_
    """

    service_name: str = "migration-control-plane"

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    log_level: str = Field(default="INFO", description="Minimum log level.")
    log_json: bool = Field(
        default=True,
        description="Render JSON log lines. Disable for human-readable console output.",
    )

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    database_url: str = Field(
        default="sqlite+aiosqlite:///./migration_control_plane.db",
        description="SQLAlchemy async URL. Use postgresql+asyncpg://... in production.",
    )
    database_echo: bool = Field(default=False, description="Log SQL statements.")

    # -------------------------------------------------------------------------
    # Alerting
    # -------------------------------------------------------------------------

    alert_webhook_url: str = Field(
        default="",
        description="Webhook receiving operational alerts. Empty logs alerts only.",
    )
    alert_timeout_ms: int = Field(default=2000, ge=1, description="Webhook delivery timeout.")

    # -------------------------------------------------------------------------
    # Policy seeding
    # -------------------------------------------------------------------------

    policy_seed_path: str = Field(
        default="",
        description="YAML file with initial policies. Only missing policies are created.",
    )

    # -------------------------------------------------------------------------
    # Sagas
    # -------------------------------------------------------------------------

    compensation_max_attempts: int = Field(default=3, ge=1)
    compensation_backoff_seconds: float = Field(default=0.5, ge=0.0)
    compensation_backoff_max_seconds: float = Field(default=30.0, ge=0.0)
    step_timeout_seconds: float | None = Field(
        default=None,
        gt=0.0,
        description="Default timeout for saga steps without their own. None disables it.",
    )
    reconcile_on_startup: bool = Field(
        default=True,
        description="Re-drive in-flight saga instances when the service starts.",
    )

    # -------------------------------------------------------------------------
    # Health evaluation
    # -------------------------------------------------------------------------

    health_error_rate_delta: float = Field(default=0.02, ge=0.0, le=1.0)
    health_latency_delta_ms: float = Field(default=500.0, ge=0.0)
    health_min_sample_count: int = Field(default=30, ge=1)
    health_window_count: int = Field(default=5, ge=1)
    health_window_seconds: int = Field(default=60, ge=1)
    health_max_clock_skew_seconds: int = Field(
        default=60,
        ge=0,
        description="How far ahead of the current time a sample window may start before it is rejected.",
    )
    evaluation_interval_seconds: float = Field(
        default=15.0,
        ge=0.0,
        description="Seconds between health evaluation rounds. 0 disables the background loop.",
    )

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    rollback_step_size: int = Field(
        default=100,
        ge=1,
        le=100,
        description="Percentage points removed per automatic rollback. 100 rolls back fully.",
    )
    rollback_max_attempts: int = Field(default=5, ge=1)
    rollback_backoff_seconds: float = Field(default=0.5, ge=0.0)
    rollback_backoff_max_seconds: float = Field(default=30.0, ge=0.0)
    evict_sticky_on_rollback: bool = Field(
        default=True,
        description="Forget sticky routing decisions of an operation when it is rolled back.",
    )

    model_config = SettingsConfigDict(env_prefix="MIGRATION_CP_")

    def health_thresholds(self) -> HealthThresholds:
        """Return the health evaluation thresholds described by these settings."""
        return HealthThresholds(
            error_rate_delta=self.health_error_rate_delta,
            latency_delta_ms=self.health_latency_delta_ms,
            min_sample_count=self.health_min_sample_count,
            window_count=self.health_window_count,
            window_seconds=self.health_window_seconds,
            max_clock_skew_seconds=self.health_max_clock_skew_seconds,
        )
