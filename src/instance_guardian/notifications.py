"""
Notification Gate and email delivery.

An alert email may go out for (user, instance, type) only when all of these hold:
  - the current time is inside the active-hours window
  - the user's production mode is enabled
  - the instance has not been opted out of email
  - no email of the same type went out for the instance in the cooldown window
The last check and the reservation of the slot are one conditional write.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

import boto3
import pytz
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .audit import AuditLogWriter
from .config import Settings
from .models import AlertEmail, AlertType, AuditAction, EmailAlertRecord, ProductionModeSettings, UserAccount
from .store import AlertClaim, AlertRecordStore, ProductionModeStore

logger = logging.getLogger(__name__)


class GateStatus(str, Enum):
    GRANTED = "granted"
    OUTSIDE_ACTIVE_HOURS = "outside_active_hours"
    PRODUCTION_MODE_DISABLED = "production_mode_disabled"
    EMAIL_DISABLED = "email_disabled"
    COOLDOWN = "cooldown"


@dataclass
class GateDecision:
    status: GateStatus
    claim: Optional[AlertClaim] = None

    @property
    def granted(self) -> bool:
        return self.status is GateStatus.GRANTED


class ActiveHours:
    """Daily local-time window, [start, end) in whole hours."""

    def __init__(self, timezone_name: str, start_hour: int, end_hour: int):
        self.tz = pytz.timezone(timezone_name)
        self.start_hour = start_hour
        self.end_hour = end_hour

    @classmethod
    def from_settings(cls, settings: Settings) -> "ActiveHours":
        return cls(settings.active_hours_timezone, settings.active_hours_start, settings.active_hours_end)

    def local_hour(self, now: datetime) -> int:
        return now.astimezone(self.tz).hour

    def is_open(self, now: datetime) -> bool:
        return self.start_hour <= self.local_hour(now) < self.end_hour


class NotificationGate:
    """Decides whether an alert email may be sent right now."""

    def __init__(
        self,
        alert_store: AlertRecordStore,
        production_mode_store: ProductionModeStore,
        active_hours: ActiveHours,
        cooldown: timedelta = timedelta(minutes=60),
    ):
        self.alert_store = alert_store
        self.production_mode_store = production_mode_store
        self.active_hours = active_hours
        self.cooldown = cooldown

    def acquire(
        self,
        user_id: str,
        instance_id: str,
        alert_type: AlertType,
        now: datetime,
        production_mode: Optional[ProductionModeSettings] = None,
    ) -> GateDecision:
        """Run every gate check; on success the cooldown slot is already reserved."""
        if not self.active_hours.is_open(now):
            logger.debug("Gate closed for %s: outside active hours", instance_id)
            return GateDecision(GateStatus.OUTSIDE_ACTIVE_HOURS)

        settings = production_mode or self.production_mode_store.get(user_id)
        if not settings.enabled:
            logger.debug("Gate closed for %s: production mode disabled for %s", instance_id, user_id)
            return GateDecision(GateStatus.PRODUCTION_MODE_DISABLED)

        if not settings.email_enabled(instance_id):
            logger.info("Email disabled for instance %s, skipping", instance_id)
            return GateDecision(GateStatus.EMAIL_DISABLED)

        claim = self.alert_store.claim(user_id, instance_id, alert_type, now, self.cooldown)
        if claim is None:
            logger.info("Email already sent for %s (%s) within cooldown, skipping", instance_id, alert_type.value)
            return GateDecision(GateStatus.COOLDOWN)

        return GateDecision(GateStatus.GRANTED, claim)

    def confirm(self, claim: AlertClaim, **details: Any) -> None:
        """Append the alert record for a delivered email."""
        self.alert_store.insert(
            EmailAlertRecord(
                user_id=claim.user_id,
                instance_id=claim.instance_id,
                alert_type=claim.alert_type,
                timestamp=claim.claimed_at,
            ),
            email_sent=True,
            **details,
        )

    def release(self, claim: AlertClaim) -> None:
        """Free the slot after a failed delivery so the next tick may retry."""
        self.alert_store.release(claim)


class SesEmailSender:
    """Delivers alert emails through Amazon SES."""

    def __init__(self, sender: str, region: str = "us-east-1", client_config: Optional[Config] = None):
        self.sender = sender
        kwargs: dict[str, Any] = {"region_name": region}
        if client_config:
            kwargs["config"] = client_config
        self.ses = boto3.client("ses", **kwargs)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SesEmailSender":
        return cls(settings.email_sender, settings.ses_region, settings.client_config())

    @staticmethod
    def render(email: AlertEmail) -> str:
        return f"""Hello {email.user_name},

{email.message}

AWS Account: {email.aws_account_id}
Resource: {email.resource_name}

Review it here: {email.action_url}

-- {email.from_name}
"""

    def send(self, email: AlertEmail) -> Optional[str]:
        """Send one email. Returns the SES message id, or None on failure (not retried)."""
        try:
            response = self.ses.send_email(
                Source=f"{email.from_name} <{self.sender}>",
                Destination={"ToAddresses": [email.to_email]},
                Message={
                    "Subject": {"Data": email.subject[:100]},
                    "Body": {"Text": {"Data": self.render(email)}},
                },
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("SES error sending to %s for %s: %s", email.to_email, email.resource_name, e)
            return None
        message_id = response.get("MessageId")
        logger.info("Email sent to %s for %s (%s)", email.to_email, email.resource_name, message_id)
        return message_id


class AlertDispatcher:
    """Gate, send and record alert emails for one user."""

    def __init__(
        self,
        gate: NotificationGate,
        sender: SesEmailSender,
        audit: AuditLogWriter,
        user: UserAccount,
        account_id: str,
        app_url: str,
    ):
        self.gate = gate
        self.sender = sender
        self.audit = audit
        self.user = user
        self.account_id = account_id
        self.app_url = app_url

    @property
    def action_url(self) -> str:
        return f"{self.app_url}/dashboard#resource-management"

    def dispatch(
        self,
        instance_id: str,
        display_name: str,
        alert_type: AlertType,
        subject: str,
        message: str,
        now: datetime,
        production_mode: Optional[ProductionModeSettings] = None,
        cpu_usage: Optional[float] = None,
    ) -> bool:
        """Send one alert if the gate allows it. Returns True when an email went out."""
        if not self.user.email:
            logger.warning("User %s has no email configured, not alerting", self.user.user_id)
            return False

        decision = self.gate.acquire(self.user.user_id, instance_id, alert_type, now, production_mode)
        if not decision.granted:
            return False

        resource_name = f"{display_name} ({instance_id})"
        email = AlertEmail(
            to_email=self.user.email,
            user_name=self.user.username,
            aws_account_id=self.account_id,
            resource_name=resource_name,
            action_url=self.action_url,
            subject=subject,
            message=message,
        )
        logger.info("Preparing %s email for %s to %s", alert_type.value, instance_id, self.user.email)
        if self.sender.send(email) is None:
            self.gate.release(decision.claim)
            return False

        self.gate.confirm(decision.claim, instance_name=display_name, cpu_usage=cpu_usage)
        self.audit.record(
            self.user.user_id,
            AuditAction.EMAIL_SENT,
            f"Sent {alert_type.value} alert for {resource_name}",
            {"instanceId": instance_id, "type": alert_type.value, "cpuUsage": cpu_usage},
            now=now,
        )
        if alert_type is AlertType.LOW_UTILIZATION:
            self.audit.record_history(
                self.user.user_id,
                "low_utilization_alert",
                {
                    "username": self.user.username,
                    "instance_id": instance_id,
                    "instance_name": display_name,
                    "cpu_usage": cpu_usage,
                    "email_sent": True,
                },
                now=now,
            )
        return True
