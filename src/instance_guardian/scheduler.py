"""
Scheduler
Drives monitoring passes on a fixed interval and on demand.

A pass checks the active-hours window once, then evaluates every user with
production mode enabled. Users run on a small thread pool so a slow or failing
account never holds up the others.
"""

import json
import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .actions import ActionExecutor
from .audit import AuditLogWriter
from .config import Settings
from .engine import EvaluationEngine
from .exceptions import GuardianError, MissingCredentialsError
from .metrics import MetricSource
from .models import AwsCredentials, Decision, ProductionModeSettings, UserAccount
from .notifications import ActiveHours, AlertDispatcher, NotificationGate, SesEmailSender
from .store import Stores, utcnow

logger = logging.getLogger(__name__)


@dataclass
class PassSummary:
    """Counters for one monitoring pass."""

    started_at: datetime
    outside_active_hours: bool = False
    users_evaluated: int = 0
    users_skipped: int = 0
    users_failed: int = 0
    instances_checked: int = 0
    instances_stopped: int = 0
    instances_alerted: int = 0
    emails_sent: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


def next_tick_after(next_tick: float, now: float, interval: float) -> float:
    """First scheduled tick later than ``now``. Ticks missed during a long pass are dropped."""
    if next_tick > now:
        return next_tick
    if interval <= 0:
        return now
    missed = int((now - next_tick) // interval) + 1
    return next_tick + missed * interval


def build_engine(
    settings: Settings,
    stores: Stores,
    user: UserAccount,
    credentials: AwsCredentials,
    sender: Optional[SesEmailSender] = None,
    clock: Callable[[], datetime] = utcnow,
) -> EvaluationEngine:
    """Wire an Evaluation Engine for one user's AWS account."""
    client_config = settings.client_config()
    audit = AuditLogWriter(stores.audit, stores.history)
    metrics = MetricSource(credentials, client_config)
    executor = ActionExecutor(credentials, settings.candidate_regions, audit, client_config)

    alerts = None
    if sender is not None:
        gate = NotificationGate(
            stores.alerts,
            stores.production_mode,
            ActiveHours.from_settings(settings),
            cooldown=timedelta(minutes=settings.alert_cooldown_minutes),
        )
        alerts = AlertDispatcher(gate, sender, audit, user, metrics.get_account_id(), settings.app_url)

    return EvaluationEngine(
        user,
        stores.thresholds,
        metrics,
        executor,
        alerts=alerts,
        candidate_regions=settings.candidate_regions,
        clock=clock,
    )


class MonitoringScheduler:
    """Background monitoring loop plus the pass it runs."""

    _STOP = object()

    def __init__(
        self,
        settings: Settings,
        stores: Stores,
        sender: Optional[SesEmailSender] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.stores = stores
        self.sender = sender if sender is not None else SesEmailSender.from_settings(settings)
        self.clock = clock
        self.active_hours = ActiveHours.from_settings(settings)
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    # -- pass -------------------------------------------------------------

    def run_pass(self, now: Optional[datetime] = None, user_id: Optional[str] = None) -> PassSummary:
        """Run one monitoring pass, optionally limited to a single user."""
        now = now or self.clock()
        summary = PassSummary(started_at=now)

        if not self.active_hours.is_open(now):
            logger.info(
                "Outside active hours (%02d:00 local), skipping pass", self.active_hours.local_hour(now)
            )
            summary.outside_active_hours = True
            return summary

        users = self.stores.production_mode.list_enabled_users()
        if user_id is not None:
            users = [u for u in users if u.user_id == user_id]
        logger.info("Monitoring pass for %d user(s) with production mode enabled", len(users))
        if not users:
            return summary

        workers = max(1, min(self.settings.max_user_workers, len(users)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self._run_user, pm, now, summary): pm.user_id for pm in users}
            for future in as_completed(futures):
                uid = futures[future]
                try:
                    evaluated = future.result()
                except MissingCredentialsError as e:
                    logger.warning("Skipping user %s: %s", uid, e)
                    summary.users_skipped += 1
                except (GuardianError, BotoCoreError, ClientError) as e:
                    logger.error("Monitoring failed for user %s: %s", uid, e)
                    summary.users_failed += 1
                    summary.errors.append(f"{uid}: {e}")
                except Exception as e:
                    logger.exception("Unexpected error monitoring user %s", uid)
                    summary.users_failed += 1
                    summary.errors.append(f"{uid}: {e}")
                else:
                    if evaluated:
                        summary.users_evaluated += 1
                    else:
                        summary.users_skipped += 1

        logger.info(
            "Pass complete: %d evaluated, %d skipped, %d failed, %d stopped, %d alerted, %d emails",
            summary.users_evaluated,
            summary.users_skipped,
            summary.users_failed,
            summary.instances_stopped,
            summary.instances_alerted,
            summary.emails_sent,
        )
        return summary

    def _run_user(self, production_mode: ProductionModeSettings, now: datetime, summary: PassSummary) -> bool:
        user_id = production_mode.user_id
        user = self.stores.accounts.get_user(user_id)
        if user is None or not user.email:
            logger.warning("Skipping user %s: no email address on file", user_id)
            return False
        credentials = self.stores.accounts.get_credentials(user_id)
        if credentials is None:
            raise MissingCredentialsError(user_id)

        engine = build_engine(self.settings, self.stores, user, credentials, self.sender, self.clock)
        instances = engine.metrics.list_instances(self.settings.candidate_regions)
        inventory = {i.instance_id: i for i in instances}

        # The gate re-reads production mode per alert, so a mid-pass opt-out is honoured
        results = engine.check_all(inventory, now)
        emails = engine.scan_low_utilization(
            instances,
            now,
            threshold=self.settings.low_utilization_threshold,
        )

        with self._lock:
            summary.instances_checked += len(results)
            summary.instances_stopped += sum(1 for r in results if r.decision is Decision.STOP and r.stop)
            summary.instances_alerted += sum(1 for r in results if r.decision is Decision.ALERT)
            summary.emails_sent += emails + sum(1 for r in results if r.email_sent)
            summary.errors.extend(f"{r.instance_id}: {r.error}" for r in results if r.error)
        return True

    # -- background loop --------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._loop, name="instance-guardian-monitor", daemon=True)
            self._thread.start()
        logger.info(
            "Monitoring scheduler started: first tick in %ds, then every %ds",
            self.settings.monitor_initial_delay_seconds,
            self.settings.monitor_interval_seconds,
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is None:
            return
        self._queue.put(self._STOP)
        thread.join(timeout)
        self._thread = None
        logger.info("Monitoring scheduler stopped")

    def trigger(self, user_id: Optional[str] = None) -> None:
        """Queue an out-of-band pass. Returns immediately.

        This is the in-process dispatcher for ``GuardianService.trigger_monitoring``.
        """
        logger.info("Monitoring pass requested%s", f" for user {user_id}" if user_id else "")
        self._queue.put({"user_id": user_id})

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        interval = self.settings.monitor_interval_seconds
        next_tick = time.monotonic() + self.settings.monitor_initial_delay_seconds
        while True:
            try:
                message = self._queue.get(timeout=max(0.0, next_tick - time.monotonic()))
            except queue.Empty:
                message = None

            if message is self._STOP:
                return
            user_id = message.get("user_id") if message else None
            try:
                self.run_pass(user_id=user_id)
            except (GuardianError, BotoCoreError, ClientError) as e:
                logger.error("Monitoring pass failed: %s", e)
            except Exception:
                logger.exception("Unexpected error in monitoring pass")
            next_tick = next_tick_after(next_tick, time.monotonic(), interval)


class LambdaTrigger:
    """Dispatches a monitoring pass as an asynchronous Lambda invocation."""

    def __init__(self, function_name: str, region: Optional[str] = None, client: Any = None):
        self.function_name = function_name
        self.lambda_client = client or boto3.client("lambda", region_name=region)

    def __call__(self, user_id: Optional[str] = None) -> None:
        payload = {"source": "instance-guardian.trigger"}
        if user_id:
            payload["user_id"] = user_id
        try:
            self.lambda_client.invoke(
                FunctionName=self.function_name,
                InvocationType="Event",
                Payload=json.dumps(payload).encode(),
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to dispatch monitoring pass to %s: %s", self.function_name, e)
            raise GuardianError(f"Could not start monitoring: {e}") from e
        logger.info("Dispatched monitoring pass to %s", self.function_name)
