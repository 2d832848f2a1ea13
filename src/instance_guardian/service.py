"""
User-facing operations on limits, production mode and instances.

Every call is scoped to the authenticated user id. User-triggered actions
return their result or raise; nothing here is retried.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from .actions import ActionExecutor
from .audit import AuditLogWriter
from .config import Settings, clamp_cpu_limit
from .exceptions import MissingCredentialsError, ValidationError
from .models import (
    AuditAction,
    AuditLogEntry,
    AwsCredentials,
    Decision,
    EvaluationResult,
    InstanceThreshold,
    ProductionModeSettings,
    StopResult,
    StopTrigger,
    UserAccount,
)
from .notifications import SesEmailSender
from .scheduler import build_engine
from .store import Stores, utcnow

logger = logging.getLogger(__name__)

AUTO_SHUTDOWN_MARKER = "Auto-shutdown"

TriggerDispatch = Callable[[Optional[str]], None]


def validate_cpu_limit(value: Any) -> float:
    """Reject non-numeric limits, then clamp into range."""
    if isinstance(value, bool):
        raise ValidationError("cpuLimit must be a number")
    try:
        float(value)
    except (TypeError, ValueError):
        raise ValidationError("cpuLimit must be a number") from None
    return clamp_cpu_limit(value)


class GuardianService:
    """Facade used by the HTTP API and the CLI."""

    def __init__(
        self,
        settings: Settings,
        stores: Stores,
        dispatch: Optional[TriggerDispatch] = None,
        sender: Optional[SesEmailSender] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.stores = stores
        self.dispatch = dispatch
        self.sender = sender
        self.clock = clock
        self.audit = AuditLogWriter(stores.audit, stores.history)

    def _user(self, user_id: str) -> UserAccount:
        return self.stores.accounts.get_user(user_id) or UserAccount(user_id=user_id, username="")

    def _credentials(self, user_id: str) -> AwsCredentials:
        credentials = self.stores.accounts.get_credentials(user_id)
        if credentials is None:
            raise MissingCredentialsError(user_id)
        return credentials

    @staticmethod
    def _require_instance_id(instance_id: Any) -> str:
        if not instance_id or not isinstance(instance_id, str):
            raise ValidationError("Instance ID required")
        return instance_id

    # Limits

    def list_limits(self, user_id: str) -> list[InstanceThreshold]:
        return self.stores.thresholds.list_thresholds(user_id)

    def save_limit(
        self,
        user_id: str,
        instance_id: str,
        cpu_limit: Any = None,
        auto_shutdown: bool = True,
    ) -> InstanceThreshold:
        instance_id = self._require_instance_id(instance_id)
        cpu_limit = self.settings.default_cpu_limit if cpu_limit is None else validate_cpu_limit(cpu_limit)
        now = self.clock()
        threshold = self.stores.thresholds.upsert_threshold(
            user_id, instance_id, cpu_limit, auto_shutdown=auto_shutdown, now=now
        )
        self.audit.record(
            user_id,
            AuditAction.LIMIT_UPDATED,
            f"Set CPU limit for {instance_id} to {threshold.cpu_limit:g}%",
            {"instanceId": instance_id, "cpuLimit": threshold.cpu_limit, "autoShutdown": threshold.auto_shutdown},
            now=now,
        )
        logger.info("CPU limit for %s set to %s%% (user %s)", instance_id, threshold.cpu_limit, user_id)
        return threshold

    def remove_limit(self, user_id: str, instance_id: str) -> bool:
        instance_id = self._require_instance_id(instance_id)
        removed = self.stores.thresholds.delete_threshold(user_id, instance_id)
        if removed:
            logger.info("CPU limit for %s removed (user %s)", instance_id, user_id)
        return removed

    def set_auto_monitoring(
        self, user_id: str, instance_id: str, enabled: Any, cpu_limit: Any = None
    ) -> Optional[InstanceThreshold]:
        instance_id = self._require_instance_id(instance_id)
        if not isinstance(enabled, bool):
            raise ValidationError("enabled must be true or false")
        if cpu_limit is not None:
            cpu_limit = validate_cpu_limit(cpu_limit)
        now = self.clock()
        threshold = self.stores.thresholds.set_auto_monitoring(
            user_id,
            instance_id,
            enabled,
            cpu_limit=cpu_limit,
            default_limit=self.settings.default_cpu_limit,
            now=now,
        )
        metadata: dict[str, Any] = {"instanceId": instance_id, "enabled": enabled}
        if threshold is not None:
            metadata["cpuLimit"] = threshold.cpu_limit
        self.audit.record(
            user_id,
            AuditAction.AUTO_MONITOR_TOGGLED,
            f"Auto-monitoring {'enabled' if enabled else 'disabled'} for {instance_id}",
            metadata,
            now=now,
        )
        return threshold

    def list_monitored(self, user_id: str) -> list[InstanceThreshold]:
        return self.stores.thresholds.list_monitored(user_id)

    # Production mode

    def get_production_mode(self, user_id: str) -> ProductionModeSettings:
        return self.stores.production_mode.get(user_id)

    def update_production_mode(
        self,
        user_id: str,
        enabled: Optional[bool] = None,
        instance_id: Optional[str] = None,
        email_enabled: Optional[bool] = None,
    ) -> ProductionModeSettings:
        """Flip the global switch and/or one instance's email setting. Enabling queues a pass."""
        if enabled is None and (instance_id is None or email_enabled is None):
            raise ValidationError("Nothing to update: pass enabled, or instanceId with emailEnabled")
        now = self.clock()

        if enabled is not None:
            if not isinstance(enabled, bool):
                raise ValidationError("enabled must be true or false")
            self.stores.production_mode.set_enabled(user_id, enabled, now=now)
            logger.info("Production mode %s for user %s", "enabled" if enabled else "disabled", user_id)
            self.audit.record(
                user_id,
                AuditAction.PRODUCTION_MODE_TOGGLED,
                f"Production Mode {'Enabled' if enabled else 'Disabled'}",
                {"enabled": enabled},
                now=now,
            )

        if instance_id is not None and email_enabled is not None:
            self.stores.production_mode.set_instance_email(user_id, instance_id, bool(email_enabled), now=now)
            logger.info(
                "Email alerts %s for instance %s", "enabled" if email_enabled else "disabled", instance_id
            )

        if enabled:
            self.trigger_monitoring(user_id)
        return self.stores.production_mode.get(user_id)

    def trigger_monitoring(self, user_id: Optional[str] = None) -> bool:
        """Hand a pass to the scheduler without waiting for it."""
        if self.dispatch is None:
            logger.warning("No monitoring dispatcher configured, pass not started")
            return False
        self.dispatch(user_id)
        return True

    # Instances

    def stop_instance(self, user_id: str, instance_id: str, reason: str = "") -> StopResult:
        instance_id = self._require_instance_id(instance_id)
        credentials = self._credentials(user_id)
        user = self._user(user_id)
        trigger = StopTrigger.AUTO if AUTO_SHUTDOWN_MARKER in (reason or "") else StopTrigger.MANUAL
        executor = ActionExecutor(
            credentials, self.settings.candidate_regions, self.audit, self.settings.client_config()
        )
        return executor.stop_instance(
            user_id,
            instance_id,
            reason or "Manual stop",
            trigger,
            username=user.username,
            now=self.clock(),
        )

    def monitor_instance(self, user_id: str, instance_id: str) -> EvaluationResult:
        """Evaluate one instance now. A failed stop is raised to the caller."""
        instance_id = self._require_instance_id(instance_id)
        threshold = self.stores.thresholds.get_threshold(user_id, instance_id)
        if threshold is None:
            return EvaluationResult(
                instance_id=instance_id, decision=Decision.NOOP, reason="No limit set for this instance"
            )
        engine = build_engine(
            self.settings, self.stores, self._user(user_id), self._credentials(user_id), self.sender, self.clock
        )
        return engine.check(threshold, propagate_stop_errors=True)

    # Logs

    def activity_logs(self, user_id: str, limit: int = 20) -> list[AuditLogEntry]:
        return self.stores.audit.list_recent(user_id, limit=max(1, min(int(limit), 100)))

    def history(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        return self.stores.history.list_recent(user_id, limit=max(1, min(int(limit), 100)))

