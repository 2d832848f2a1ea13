"""
Metric Source Adapter
Reads EC2 inventory and CloudWatch CPU statistics for a user's account.
Provider failures degrade to empty results; callers never see a zero-sample result as 0% CPU.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .models import AwsCredentials, InstanceInfo, MetricSnapshot

logger = logging.getLogger(__name__)

CPU_METRIC = "CPUUtilization"


class MetricSource:
    """CloudWatch and EC2 reads scoped to one set of AWS credentials."""

    def __init__(
        self,
        credentials: Optional[AwsCredentials] = None,
        client_config: Optional[Config] = None,
    ):
        self.credentials = credentials
        self.client_config = client_config

    def _client(self, service: str, region: str) -> Any:
        kwargs: dict[str, Any] = {"region_name": region}
        if self.credentials:
            kwargs.update(self.credentials.client_kwargs())
        if self.client_config:
            kwargs["config"] = self.client_config
        return boto3.client(service, **kwargs)

    def fetch_metric(
        self,
        region: str,
        instance_id: str,
        metric_name: str = CPU_METRIC,
        window_minutes: int = 10,
        period_seconds: int = 300,
        now: Optional[datetime] = None,
    ) -> MetricSnapshot:
        """
        Aggregate a metric over the last ``window_minutes``.

        average is the mean of the per-period averages, maximum/minimum are the
        extremes across periods, sample_count is the number of periods returned.
        Any error, including a metric with no datapoints, yields a zero-sample snapshot.
        """
        end_time = now or datetime.now(timezone.utc)
        start_time = end_time - timedelta(minutes=window_minutes)
        try:
            cw = self._client("cloudwatch", region)
            response = cw.get_metric_statistics(
                Namespace="AWS/EC2",
                MetricName=metric_name,
                Dimensions=[{"Name": "InstanceId", "Value": instance_id}],
                StartTime=start_time,
                EndTime=end_time,
                Period=period_seconds,
                Statistics=["Average", "Maximum", "Minimum", "Sum"],
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning("CloudWatch fetch failed for %s (%s) in %s: %s", instance_id, metric_name, region, e)
            return MetricSnapshot()

        datapoints = response.get("Datapoints", [])
        if not datapoints:
            logger.info("No %s datapoints for %s in %s", metric_name, instance_id, region)
            return MetricSnapshot()

        averages = [float(dp.get("Average", 0)) for dp in datapoints]
        return MetricSnapshot(
            average=sum(averages) / len(averages),
            maximum=max(float(dp.get("Maximum", 0)) for dp in datapoints),
            minimum=min(float(dp.get("Minimum", 0)) for dp in datapoints),
            sum=sum(float(dp.get("Sum", 0)) for dp in datapoints),
            sample_count=len(datapoints),
        )

    def list_instances(self, regions: list[str], running_only: bool = False) -> list[InstanceInfo]:
        """Inventory across candidate regions. An id already seen is not added again."""
        found: dict[str, InstanceInfo] = {}
        for region in regions:
            for instance in self._describe_region(region, running_only):
                if instance.instance_id not in found:
                    found[instance.instance_id] = instance
        logger.info("Found %d instances across %s", len(found), regions)
        return list(found.values())

    def find_instance(self, instance_id: str, regions: list[str]) -> Optional[InstanceInfo]:
        """Locate one instance, stopping at the first region that knows it."""
        for region in regions:
            ec2 = self._client("ec2", region)
            try:
                response = ec2.describe_instances(InstanceIds=[instance_id])
            except ClientError as e:
                code = e.response.get("Error", {}).get("Code", "")
                if code in ("InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"):
                    logger.debug("Instance %s not in %s", instance_id, region)
                else:
                    logger.warning("EC2 describe failed for %s in %s: %s", instance_id, region, e)
                continue
            except BotoCoreError as e:
                logger.warning("EC2 describe failed for %s in %s: %s", instance_id, region, e)
                continue
            for reservation in response.get("Reservations", []):
                for raw in reservation.get("Instances", []):
                    return self._to_info(raw, region)
        logger.info("Instance %s not found in %s", instance_id, regions)
        return None

    def _describe_region(self, region: str, running_only: bool) -> list[InstanceInfo]:
        ec2 = self._client("ec2", region)
        filters = [{"Name": "instance-state-name", "Values": ["running"]}] if running_only else []
        instances = []
        try:
            paginator = ec2.get_paginator("describe_instances")
            for page in paginator.paginate(Filters=filters):
                for reservation in page.get("Reservations", []):
                    for raw in reservation.get("Instances", []):
                        if raw.get("InstanceId"):
                            instances.append(self._to_info(raw, region))
        except (BotoCoreError, ClientError) as e:
            logger.warning("EC2 discovery error in %s: %s", region, e)
        return instances

    @staticmethod
    def _to_info(raw: dict[str, Any], region: str) -> InstanceInfo:
        tags = {t.get("Key"): t.get("Value") for t in raw.get("Tags", [])}
        return InstanceInfo(
            instance_id=raw["InstanceId"],
            region=region,
            state=raw.get("State", {}).get("Name", "unknown"),
            instance_type=raw.get("InstanceType", ""),
            name=tags.get("Name") or "",
        )

    def get_account_id(self) -> str:
        """AWS account id via STS, or a masked access key when STS is unavailable."""
        try:
            sts = self._client("sts", "us-east-1")
            return sts.get_caller_identity().get("Account", "Unknown")
        except (BotoCoreError, ClientError) as e:
            logger.warning("Failed to fetch account id via STS: %s", e)
            if self.credentials:
                return self.credentials.access_key[:8] + "..."
            return "Unknown"
