"""
Runtime configuration for Instance Guardian.
Values come from environment variables so the same code runs in Lambda and from the CLI.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Optional

from botocore.config import Config

from .exceptions import ConfigurationError

# Only these regions are scanned for instances and tried when stopping one
DEFAULT_CANDIDATE_REGIONS = ["us-east-1", "us-east-2"]

DEFAULT_CPU_LIMIT = 80.0
MIN_CPU_LIMIT = 10.0
MAX_CPU_LIMIT = 100.0

LOW_UTILIZATION_THRESHOLD = 5.0  # < 5% average CPU triggers a low-utilization alert
ALERT_COOLDOWN_MINUTES = 60

# Metric windows per call site
LIMIT_CHECK_WINDOW_MINUTES = 10
LOW_UTILIZATION_WINDOW_MINUTES = 15
METRIC_PERIOD_SECONDS = 300

# Active hours: 06:00 to 22:59 in the reference timezone
DEFAULT_ACTIVE_HOURS_TIMEZONE = "Asia/Kolkata"
DEFAULT_ACTIVE_HOURS_START = 6
DEFAULT_ACTIVE_HOURS_END = 23

DEFAULT_MONITOR_INTERVAL_SECONDS = 300
DEFAULT_MONITOR_INITIAL_DELAY_SECONDS = 60
DEFAULT_AWS_MAX_ATTEMPTS = 3


def clamp_cpu_limit(value: Any) -> float:
    """Clamp a requested CPU limit into the allowed 10-100% range."""
    try:
        limit = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CPU_LIMIT
    return max(MIN_CPU_LIMIT, min(MAX_CPU_LIMIT, limit))


def _json_list(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if not raw:
        return list(default)
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{name} is not valid JSON: {e}") from e
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigurationError(f"{name} must be a JSON list of strings")
    return value


@dataclass
class TableNames:
    """DynamoDB table names, one per collection."""

    limits: str = "instance_limits"
    production_mode: str = "production_mode_settings"
    alert_history: str = "email_alert_history"
    activity_logs: str = "activity_logs"
    history: str = "history"
    users: str = "users"
    credentials: str = "aws_credentials"


@dataclass
class Settings:
    """Everything the monitoring subsystem needs to know about its environment."""

    candidate_regions: list[str] = field(default_factory=lambda: list(DEFAULT_CANDIDATE_REGIONS))
    tables: TableNames = field(default_factory=TableNames)
    table_region: str = "us-east-1"
    monitor_interval_seconds: int = DEFAULT_MONITOR_INTERVAL_SECONDS
    monitor_initial_delay_seconds: int = DEFAULT_MONITOR_INITIAL_DELAY_SECONDS
    active_hours_timezone: str = DEFAULT_ACTIVE_HOURS_TIMEZONE
    active_hours_start: int = DEFAULT_ACTIVE_HOURS_START
    active_hours_end: int = DEFAULT_ACTIVE_HOURS_END
    alert_cooldown_minutes: int = ALERT_COOLDOWN_MINUTES
    low_utilization_threshold: float = LOW_UTILIZATION_THRESHOLD
    default_cpu_limit: float = DEFAULT_CPU_LIMIT
    email_sender: str = "noreply-costinsight@example.com"
    ses_region: str = "us-east-1"
    app_url: str = "http://localhost:3000"
    monitor_function_name: Optional[str] = None
    max_user_workers: int = 4
    aws_max_attempts: int = DEFAULT_AWS_MAX_ATTEMPTS

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables."""
        try:
            return cls(
                candidate_regions=_json_list("CANDIDATE_REGIONS", DEFAULT_CANDIDATE_REGIONS),
                tables=TableNames(
                    limits=os.environ.get("LIMITS_TABLE", "instance_limits"),
                    production_mode=os.environ.get("PRODUCTION_MODE_TABLE", "production_mode_settings"),
                    alert_history=os.environ.get("ALERT_HISTORY_TABLE", "email_alert_history"),
                    activity_logs=os.environ.get("ACTIVITY_LOG_TABLE", "activity_logs"),
                    history=os.environ.get("HISTORY_TABLE", "history"),
                    users=os.environ.get("USERS_TABLE", "users"),
                    credentials=os.environ.get("CREDENTIALS_TABLE", "aws_credentials"),
                ),
                table_region=os.environ.get("TABLE_REGION", os.environ.get("AWS_REGION", "us-east-1")),
                monitor_interval_seconds=int(
                    os.environ.get("MONITOR_INTERVAL_SECONDS", DEFAULT_MONITOR_INTERVAL_SECONDS)
                ),
                monitor_initial_delay_seconds=int(
                    os.environ.get("MONITOR_INITIAL_DELAY_SECONDS", DEFAULT_MONITOR_INITIAL_DELAY_SECONDS)
                ),
                active_hours_timezone=os.environ.get("ACTIVE_HOURS_TIMEZONE", DEFAULT_ACTIVE_HOURS_TIMEZONE),
                active_hours_start=int(os.environ.get("ACTIVE_HOURS_START", DEFAULT_ACTIVE_HOURS_START)),
                active_hours_end=int(os.environ.get("ACTIVE_HOURS_END", DEFAULT_ACTIVE_HOURS_END)),
                alert_cooldown_minutes=int(os.environ.get("ALERT_COOLDOWN_MINUTES", ALERT_COOLDOWN_MINUTES)),
                low_utilization_threshold=float(
                    os.environ.get("LOW_UTILIZATION_THRESHOLD", LOW_UTILIZATION_THRESHOLD)
                ),
                default_cpu_limit=clamp_cpu_limit(os.environ.get("DEFAULT_CPU_LIMIT", DEFAULT_CPU_LIMIT)),
                email_sender=os.environ.get("EMAIL_SENDER", "noreply-costinsight@example.com"),
                ses_region=os.environ.get("SES_REGION", "us-east-1"),
                app_url=os.environ.get("APP_URL", "http://localhost:3000").rstrip("/"),
                monitor_function_name=os.environ.get("MONITOR_FUNCTION_NAME"),
                max_user_workers=int(os.environ.get("MAX_USER_WORKERS", "4")),
                aws_max_attempts=int(os.environ.get("AWS_MAX_ATTEMPTS", DEFAULT_AWS_MAX_ATTEMPTS)),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

    def client_config(self) -> Config:
        """botocore config with a small, fixed retry count."""
        return Config(retries={"max_attempts": self.aws_max_attempts, "mode": "standard"})
