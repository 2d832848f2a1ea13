"""
Data model for per-instance CPU limits, alerting and audit records.
All records are scoped by user_id.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class AuditAction(str, Enum):
    """Actions written to the activity log. Values are the display labels."""

    LIMIT_UPDATED = "Update Instance Limit"
    AUTO_MONITOR_TOGGLED = "Toggle Auto-Monitoring"
    INSTANCE_STOPPED = "Stop Instance"
    EMAIL_SENT = "Email Alert Sent"
    PRODUCTION_MODE_TOGGLED = "Toggle Production Mode"


class AlertType(str, Enum):
    CPU_LIMIT_BREACH = "cpu_limit_breach"
    LOW_UTILIZATION = "low_utilization"


class Decision(str, Enum):
    """Outcome of evaluating one instance on one tick."""

    NOOP = "none"
    ALERT = "alert"
    STOP = "stopped"


class StopTrigger(str, Enum):
    AUTO = "auto_shutdown"
    MANUAL = "manual_stop"


@dataclass
class InstanceThreshold:
    """CPU limit configuration for one (user, instance)."""

    user_id: str
    instance_id: str
    cpu_limit: float
    auto_shutdown: bool = True
    auto_monitoring: bool = False
    breach_count: int = 0  # informational, never gates a decision
    last_breach: Optional[datetime] = None
    breaching: bool = False  # True between a breach and the next healthy tick
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_api(self) -> dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "cpuLimit": self.cpu_limit,
            "autoShutdown": self.auto_shutdown,
            "autoMonitoring": self.auto_monitoring,
            "breaching": self.breaching,
            "breachCount": self.breach_count,
            "lastBreach": self.last_breach.isoformat() if self.last_breach else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class ProductionModeSettings:
    """Per-user switch for background alerting plus per-instance email opt-outs."""

    user_id: str
    enabled: bool = False
    instance_settings: dict[str, dict[str, Any]] = field(default_factory=dict)

    def email_enabled(self, instance_id: str) -> bool:
        # Only an explicit False opts an instance out
        return self.instance_settings.get(instance_id, {}).get("emailEnabled") is not False


@dataclass
class EmailAlertRecord:
    user_id: str
    instance_id: str
    alert_type: AlertType
    timestamp: datetime


@dataclass
class MetricSnapshot:
    """CPU statistics over an evaluation window. Zero samples means unknown, not idle."""

    average: float = 0.0
    maximum: float = 0.0
    minimum: float = 0.0
    sum: float = 0.0
    sample_count: int = 0

    @property
    def has_data(self) -> bool:
        return self.sample_count > 0


@dataclass
class AuditLogEntry:
    user_id: str
    action: AuditAction
    details: str
    metadata: dict[str, Any]
    timestamp: datetime


@dataclass
class InstanceInfo:
    """An instance as seen in a region's inventory."""

    instance_id: str
    region: str
    state: str
    instance_type: str = ""
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.instance_id

    @property
    def is_running(self) -> bool:
        return self.state == "running"


@dataclass
class StopResult:
    instance_id: str
    region: str
    previous_state: str
    current_state: str


@dataclass
class EvaluationResult:
    """What happened to one instance during one tick."""

    instance_id: str
    decision: Decision
    reason: str
    cpu_average: Optional[float] = None
    cpu_limit: Optional[float] = None
    stop: Optional[StopResult] = None
    email_sent: bool = False
    error: Optional[str] = None

    def to_api(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "instanceId": self.instance_id,
            "action": self.decision.value,
            "message": self.reason,
            "currentCPU": self.cpu_average,
            "limit": self.cpu_limit,
            "emailSent": self.email_sent,
        }
        if self.stop:
            body["region"] = self.stop.region
            body["previousState"] = self.stop.previous_state
            body["currentState"] = self.stop.current_state
        if self.error:
            body["error"] = self.error
        return body


@dataclass
class UserAccount:
    user_id: str
    username: str
    email: Optional[str] = None


@dataclass
class AwsCredentials:
    access_key: str
    secret_key: str

    def client_kwargs(self) -> dict[str, str]:
        return {"aws_access_key_id": self.access_key, "aws_secret_access_key": self.secret_key}


@dataclass
class AlertEmail:
    """Template parameters for an alert email. Named fields instead of a free-form bag."""

    to_email: str
    user_name: str
    aws_account_id: str
    resource_name: str
    action_url: str
    subject: str
    message: str
    from_name: str = "noreply-costinsight"
