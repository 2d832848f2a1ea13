"""
Evaluation Engine
Decides, per monitored instance and per tick, between no-op, alert and auto-shutdown.

Every tick is judged on its own: there is no sustained-breach window and no
debounce. Breach counters are informational and never gate a decision.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .actions import ActionExecutor
from .config import (
    LIMIT_CHECK_WINDOW_MINUTES,
    LOW_UTILIZATION_THRESHOLD,
    LOW_UTILIZATION_WINDOW_MINUTES,
    METRIC_PERIOD_SECONDS,
)
from .exceptions import StopInstanceError
from .metrics import MetricSource
from .models import (
    AlertType,
    Decision,
    EvaluationResult,
    InstanceInfo,
    InstanceThreshold,
    MetricSnapshot,
    ProductionModeSettings,
    StopTrigger,
    UserAccount,
)
from .notifications import AlertDispatcher
from .recommendations import low_utilization_message
from .store import ThresholdStore, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Verdict:
    """Outcome of the pure decision step."""

    decision: Decision
    reason: str
    breach: bool = False
    recovered: bool = False  # healthy again after a tracked breach


def decide(state: str, snapshot: MetricSnapshot, threshold: InstanceThreshold) -> Verdict:
    """
    Apply the decision rules in order:

    1. not running -> no-op
    2. no samples -> no-op (unknown, not idle)
    3. average <= limit -> no-op, clearing a tracked breach
    4. average > limit -> breach; stop if auto-shutdown is on, otherwise alert
    """
    if state != "running":
        return Verdict(Decision.NOOP, f"Instance is {state}, not monitored")

    if not snapshot.has_data:
        return Verdict(Decision.NOOP, "No CPU data available")

    if snapshot.average <= threshold.cpu_limit:
        return Verdict(
            Decision.NOOP,
            f"CPU {snapshot.average:.2f}% within limit {threshold.cpu_limit:g}%",
            recovered=threshold.breaching,
        )

    reason = f"CPU {snapshot.average:.2f}% exceeded limit {threshold.cpu_limit:g}%"
    if threshold.auto_shutdown:
        return Verdict(Decision.STOP, reason, breach=True)
    return Verdict(Decision.ALERT, reason, breach=True)


def breach_message(instance: InstanceInfo, cpu_average: float, cpu_limit: float) -> str:
    return (
        f"Alert: EC2 Instance {instance.display_name} ({instance.instance_id}) is using "
        f"{cpu_average:.2f}% CPU, above its configured limit of {cpu_limit:g}%. "
        f"Auto-shutdown is disabled for this instance, so it is still running."
    )


class EvaluationEngine:
    """Evaluates one user's monitored instances."""

    def __init__(
        self,
        user: UserAccount,
        thresholds: ThresholdStore,
        metrics: MetricSource,
        executor: ActionExecutor,
        alerts: Optional[AlertDispatcher] = None,
        candidate_regions: Optional[list[str]] = None,
        clock: Callable[[], datetime] = utcnow,
        window_minutes: int = LIMIT_CHECK_WINDOW_MINUTES,
        period_seconds: int = METRIC_PERIOD_SECONDS,
    ):
        self.user = user
        self.thresholds = thresholds
        self.metrics = metrics
        self.executor = executor
        self.alerts = alerts
        self.candidate_regions = candidate_regions or executor.candidate_regions
        self.clock = clock
        self.window_minutes = window_minutes
        self.period_seconds = period_seconds

    def evaluate(
        self,
        threshold: InstanceThreshold,
        instance: InstanceInfo,
        snapshot: MetricSnapshot,
        now: Optional[datetime] = None,
        production_mode: Optional[ProductionModeSettings] = None,
        propagate_stop_errors: bool = False,
    ) -> EvaluationResult:
        """
        Decide and act for one instance.

        The breach counter is written before any stop or alert so a failed side
        effect still leaves the breach counted. A failed stop is raised when
        ``propagate_stop_errors`` is set (user-triggered checks); otherwise it is
        logged and the instance is left running.
        """
        now = now or self.clock()
        verdict = decide(instance.state, snapshot, threshold)
        result = EvaluationResult(
            instance_id=threshold.instance_id,
            decision=verdict.decision,
            reason=verdict.reason,
            cpu_average=snapshot.average if snapshot.has_data else None,
            cpu_limit=threshold.cpu_limit,
        )

        if not verdict.breach:
            if verdict.recovered:
                self.thresholds.clear_breach(threshold.user_id, threshold.instance_id)
                logger.info("Instance %s back within its CPU limit", threshold.instance_id)
            else:
                logger.debug("No action for %s: %s", threshold.instance_id, verdict.reason)
            return result

        count = self.thresholds.increment_breach(threshold.user_id, threshold.instance_id, now=now)
        if count is None:
            logger.info("Limit for %s was removed during evaluation, skipping", threshold.instance_id)
            result.decision = Decision.NOOP
            result.reason = "Limit removed"
            return result
        logger.warning("Breach #%d for %s: %s", count, threshold.instance_id, verdict.reason)

        if verdict.decision is Decision.STOP:
            self._stop(threshold, snapshot, result, now, propagate_stop_errors)
        elif self.alerts is not None:
            result.email_sent = self.alerts.dispatch(
                instance_id=instance.instance_id,
                display_name=instance.display_name,
                alert_type=AlertType.CPU_LIMIT_BREACH,
                subject=f"CPU limit exceeded: {instance.display_name}",
                message=breach_message(instance, snapshot.average, threshold.cpu_limit),
                now=now,
                production_mode=production_mode,
                cpu_usage=round(snapshot.average, 2),
            )
        return result

    def _stop(
        self,
        threshold: InstanceThreshold,
        snapshot: MetricSnapshot,
        result: EvaluationResult,
        now: datetime,
        propagate_stop_errors: bool,
    ) -> None:
        reason = (
            f"Auto-shutdown: CPU usage {snapshot.average:.2f}% exceeded limit of {threshold.cpu_limit:g}%"
        )
        try:
            result.stop = self.executor.stop_instance(
                self.user.user_id,
                threshold.instance_id,
                reason,
                StopTrigger.AUTO,
                username=self.user.username,
                now=now,
                extra={"cpu_usage": round(snapshot.average, 2), "cpu_limit": threshold.cpu_limit},
            )
        except StopInstanceError as e:
            if propagate_stop_errors:
                raise
            logger.error("Auto-shutdown of %s failed, instance left running: %s", threshold.instance_id, e)
            result.error = str(e)

    def check(
        self,
        threshold: InstanceThreshold,
        inventory: Optional[dict[str, InstanceInfo]] = None,
        now: Optional[datetime] = None,
        production_mode: Optional[ProductionModeSettings] = None,
        propagate_stop_errors: bool = False,
    ) -> EvaluationResult:
        """Locate the instance, fetch its CPU window and evaluate it."""
        now = now or self.clock()
        instance = (inventory or {}).get(threshold.instance_id)
        if instance is None:
            instance = self.metrics.find_instance(threshold.instance_id, self.candidate_regions)
        if instance is None:
            logger.info("Instance %s not found in %s", threshold.instance_id, self.candidate_regions)
            return EvaluationResult(
                instance_id=threshold.instance_id,
                decision=Decision.NOOP,
                reason="Instance not found",
                cpu_limit=threshold.cpu_limit,
            )

        snapshot = MetricSnapshot()
        if instance.is_running:
            snapshot = self.metrics.fetch_metric(
                instance.region,
                instance.instance_id,
                window_minutes=self.window_minutes,
                period_seconds=self.period_seconds,
                now=now,
            )
        return self.evaluate(threshold, instance, snapshot, now, production_mode, propagate_stop_errors)

    def check_all(
        self,
        inventory: Optional[dict[str, InstanceInfo]] = None,
        now: Optional[datetime] = None,
        production_mode: Optional[ProductionModeSettings] = None,
    ) -> list[EvaluationResult]:
        """Evaluate every auto-monitored instance. One instance's failure does not stop the rest."""
        now = now or self.clock()
        monitored = self.thresholds.list_monitored(self.user.user_id)
        if not monitored:
            return []
        if inventory is None:
            inventory = {i.instance_id: i for i in self.metrics.list_instances(self.candidate_regions)}

        results = []
        for threshold in monitored:
            try:
                results.append(self.check(threshold, inventory, now, production_mode))
            except (BotoCoreError, ClientError) as e:
                logger.error("Evaluation of %s failed: %s", threshold.instance_id, e)
                results.append(
                    EvaluationResult(
                        instance_id=threshold.instance_id,
                        decision=Decision.NOOP,
                        reason="Evaluation failed",
                        cpu_limit=threshold.cpu_limit,
                        error=str(e),
                    )
                )
        return results

    def scan_low_utilization(
        self,
        instances: list[InstanceInfo],
        now: Optional[datetime] = None,
        production_mode: Optional[ProductionModeSettings] = None,
        threshold: float = LOW_UTILIZATION_THRESHOLD,
        window_minutes: int = LOW_UTILIZATION_WINDOW_MINUTES,
    ) -> int:
        """Email about running instances idling below ``threshold`` percent. Returns emails sent."""
        if self.alerts is None:
            return 0
        now = now or self.clock()
        sent = 0
        for instance in instances:
            if not instance.is_running:
                continue
            snapshot = self.metrics.fetch_metric(
                instance.region,
                instance.instance_id,
                window_minutes=window_minutes,
                period_seconds=self.period_seconds,
                now=now,
            )
            if not snapshot.has_data or snapshot.average >= threshold:
                continue

            logger.info("Low CPU on %s: %.2f%%", instance.instance_id, snapshot.average)
            if self.alerts.dispatch(
                instance_id=instance.instance_id,
                display_name=instance.display_name,
                alert_type=AlertType.LOW_UTILIZATION,
                subject=f"Low CPU utilization: {instance.display_name}",
                message=low_utilization_message(
                    instance.display_name, instance.instance_id, instance.instance_type, snapshot.average
                ),
                now=now,
                production_mode=production_mode,
                cpu_usage=round(snapshot.average, 2),
            ):
                sent += 1
        return sent
