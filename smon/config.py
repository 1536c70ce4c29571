"""
Configuration for the SMon monitoring core.

We use pydantic-settings (Pydantic v2) to load settings from:
- environment variables
- a local `.env` file in the project root

Range checks live here: an out-of-range value raises a ValidationError when
`Settings()` is built, so the polling core never sees an invalid threshold.
"""

import logging
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Environment variables (with defaults):

    - POLL_INTERVAL_SECONDS:   SNMP poll cycle period, >= 10 (default: 300)
    - PROBE_INTERVAL_SECONDS:  reachability probe period, 5..300 (default: 30)
    - DEVICE_TIMEOUT_SECONDS:  no successful poll for this long marks a device down
    - FLAPPING_*:              flapping windows (1..60 min) and thresholds (2..20)
    - DEVICES_FILE:            JSON file with devices and probe targets
    - DATABASE_URL:            SQLAlchemy URL, default SQLite file "metrics.db"
    - USE_SNMP_STUB:           "1" or "0" to toggle fake SNMP data (default: 0)
    - WEBHOOK_URL:             optional endpoint receiving every alert as JSON
    """

    # Polling
    poll_interval_seconds: int = Field(default=300, ge=10)
    snmp_port: int = 161
    snmp_timeout_seconds: float = Field(default=5, gt=0)
    snmp_retries: int = Field(default=1, ge=0)
    counter_cleanup_interval_seconds: int = Field(default=6 * 60 * 60, ge=60)
    counter_state_limit: int = Field(default=1000, ge=1)

    # Liveness
    device_timeout_seconds: int = Field(default=5 * 60, ge=10)
    timeout_sweep_seconds: int = Field(default=60, ge=1)

    # Probing
    probe_interval_seconds: int = Field(default=30, ge=5, le=300)
    probe_timeout_seconds: int = Field(default=5, ge=1)
    probe_count: int = Field(default=1, ge=1)

    # Flapping
    flapping_enabled: bool = True
    flapping_device_threshold: int = Field(default=5, ge=2, le=20)
    flapping_device_window_minutes: int = Field(default=10, ge=1, le=60)
    flapping_probe_threshold: int = Field(default=3, ge=2, le=20)
    flapping_probe_window_minutes: int = Field(default=5, ge=1, le=60)
    flapping_suppress_notifications: bool = True
    notify_on_flapping_start: bool = True
    notify_on_flapping_stop: bool = True

    # Ordinary alerts
    notify_on_device_up: bool = True
    notify_on_device_down: bool = True
    notify_on_probe_up: bool = True
    notify_on_probe_down: bool = True
    notify_on_probe_timeout: bool = True
    notify_on_probe_high_latency: bool = True
    probe_latency_threshold_ms: float = Field(default=50, gt=0)
    notify_on_high_cpu: bool = True
    cpu_threshold: float = Field(default=80, ge=0, le=100)

    # Wiring
    devices_file: str = "devices.json"
    database_url: str = "sqlite:///./metrics.db"
    use_snmp_stub: bool = False
    webhook_url: Optional[str] = None
    run_monitor_in_api: bool = False

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",          # ignore unknown env vars like old ones
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def parse_log_level(cls, v):
        level = str(v).upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level {v!r}")
        return level

    @field_validator("webhook_url", mode="before")
    @classmethod
    def empty_webhook_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


def setup_logging(config: Optional[Settings] = None) -> None:
    """Configure root logging from the settings' log level."""
    config = config or settings
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


# Single global settings object
settings = Settings()
