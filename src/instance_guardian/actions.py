"""
Action Executor
Stops EC2 instances across the candidate regions and records the outcome.
"""

import logging
from datetime import datetime
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .audit import AuditLogWriter
from .exceptions import StopInstanceError
from .models import AuditAction, AwsCredentials, StopResult, StopTrigger

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = ("InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed")


class ActionExecutor:
    """Irreversible instance actions for one user's AWS account."""

    def __init__(
        self,
        credentials: AwsCredentials,
        candidate_regions: list[str],
        audit: AuditLogWriter,
        client_config: Optional[Config] = None,
    ):
        self.credentials = credentials
        self.candidate_regions = candidate_regions
        self.audit = audit
        self.client_config = client_config

    def _ec2(self, region: str) -> Any:
        kwargs: dict[str, Any] = {"region_name": region, **self.credentials.client_kwargs()}
        if self.client_config:
            kwargs["config"] = self.client_config
        return boto3.client("ec2", **kwargs)

    def stop_in_regions(self, instance_id: str, regions: Optional[list[str]] = None) -> StopResult:
        """
        Try each region in order and stop at the first success.

        "Not found" moves on to the next region; any other error is remembered and
        also moves on. If every region fails, the last error is raised. Stopping an
        instance that is already stopped or stopping succeeds as a no-op.
        """
        regions = regions or self.candidate_regions
        last_error: Optional[Exception] = None

        logger.info("Attempting to stop instance %s in %s", instance_id, regions)
        for region in regions:
            try:
                response = self._ec2(region).stop_instances(InstanceIds=[instance_id])
            except ClientError as e:
                last_error = e
                if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                    logger.info("Instance %s not found in %s, checking next", instance_id, region)
                else:
                    logger.warning("Stop failed for %s in %s: %s", instance_id, region, e)
                continue
            except BotoCoreError as e:
                last_error = e
                logger.warning("Stop failed for %s in %s: %s", instance_id, region, e)
                continue

            stopping = (response.get("StoppingInstances") or [{}])[0]
            result = StopResult(
                instance_id=instance_id,
                region=region,
                previous_state=stopping.get("PreviousState", {}).get("Name", "unknown"),
                current_state=stopping.get("CurrentState", {}).get("Name", "unknown"),
            )
            logger.info(
                "Instance %s stopped in %s (%s -> %s)",
                instance_id,
                region,
                result.previous_state,
                result.current_state,
            )
            return result

        raise StopInstanceError(instance_id, list(regions), last_error)

    def stop_instance(
        self,
        user_id: str,
        instance_id: str,
        reason: str,
        trigger: StopTrigger,
        username: str = "",
        now: Optional[datetime] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> StopResult:
        """Stop an instance and write it to the audit log (and history when automatic)."""
        result = self.stop_in_regions(instance_id)

        if trigger is StopTrigger.AUTO:
            self.audit.record_history(
                user_id,
                StopTrigger.AUTO.value,
                {
                    "username": username,
                    "instance_id": instance_id,
                    "reason": reason,
                    "region": result.region,
                    "previous_state": result.previous_state,
                    "current_state": result.current_state,
                    **(extra or {}),
                },
                now=now,
            )

        self.audit.record(
            user_id,
            AuditAction.INSTANCE_STOPPED,
            f"Stopped instance {instance_id}",
            {
                "instanceId": instance_id,
                "reason": reason,
                "trigger": trigger.value,
                "region": result.region,
                "previousState": result.previous_state,
                "currentState": result.current_state,
            },
            now=now,
        )
        return result
