"""Adaptive SQM configuration using Pydantic Settings."""

from __future__ import annotations

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SqmConfig(BaseSettings):
    """Controller configuration. Loads from .env file and environment variables.

    Every tuning constant of the control loop lives here: blend weights,
    stability thresholds and hysteresis are product-level knobs, not
    derived values.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    app_name: str = "ADAPTIVE-SQM"
    debug: bool = False
    host: str = "127.0.0.1"
    port: int = 8050
    cors_origins: str = "http://localhost:5173"

    # Database
    database_url: str = "sqlite+aiosqlite:///./adaptive_sqm.db"

    # Logging
    log_dir: str = "logs"
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    # Gateway remote channel
    gateway_host: str = "192.168.1.1"
    gateway_ssh_user: str = "root"
    gateway_ssh_port: int = 22
    gateway_ssh_key_path: Optional[str] = None
    remote_timeout_seconds: float = 20.0
    boot_script_dir: str = "/data/on_boot.d"

    # Deployment retry
    deploy_max_attempts: int = 3
    deploy_backoff_base_seconds: float = 2.0
    deploy_backoff_max_seconds: float = 30.0

    # Sampler
    learning_days: int = 7
    dense_interval_minutes: int = 120
    measurement_timeout_seconds: float = 120.0
    manual_test_debounce_seconds: float = 120.0
    speedtest_command: str = "speedtest"

    # Latency monitor
    ping_interval_seconds: float = 300.0
    latency_window_size: int = 12
    congestion_consecutive_samples: int = 3
    ping_count: int = 5

    # Baselines / blending
    baseline_timezone: str = "UTC"
    min_bucket_samples: int = 3
    single_sample_cv: float = 0.15
    stable_baseline_weight: float = 0.8
    volatile_baseline_weight: float = 0.6

    # Decision
    hysteresis_min_delta: float = 0.03
    default_floor_fraction: float = 0.25

    # Alerting
    failure_alert_cycles: int = 3
    drift_sigma: float = 3.0
    drift_cycles: int = 3
    alert_dedup_seconds: float = 300.0
    alert_webhook_url: Optional[str] = None

    # Retention
    retention_speed_samples_days: int = 90
    retention_ping_samples_days: int = 14
    ping_rollup_after_days: int = 2
    retention_ping_rollups_days: int = 365
    retention_alerts_days: int = 90
    retention_cleanup_interval_hours: int = 24

    @field_validator(
        "stable_baseline_weight", "volatile_baseline_weight", "single_sample_cv", "default_floor_fraction"
    )
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be between 0 and 1")
        return v

    @field_validator("hysteresis_min_delta")
    @classmethod
    def validate_hysteresis(cls, v: float) -> float:
        if not 0.0 <= v < 1.0:
            raise ValueError("hysteresis_min_delta must be in [0, 1)")
        return v

    @field_validator("remote_timeout_seconds")
    @classmethod
    def validate_remote_timeout(cls, v: float) -> float:
        if not 10.0 <= v <= 30.0:
            raise ValueError("remote_timeout_seconds must be between 10 and 30")
        return v

    @field_validator(
        "ping_interval_seconds",
        "dense_interval_minutes",
        "measurement_timeout_seconds",
        "latency_window_size",
        "congestion_consecutive_samples",
        "deploy_max_attempts",
        "min_bucket_samples",
    )
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v


def get_config() -> SqmConfig:
    """Factory function to create config instance."""
    return SqmConfig()
