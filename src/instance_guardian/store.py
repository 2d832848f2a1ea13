"""
DynamoDB persistence for limits, production-mode settings, alert history and audit logs.

Uses the low-level client (thread-safe) with the boto3 type (de)serializers so the
same store objects can be shared by the scheduler's worker threads.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from .config import Settings, TableNames, clamp_cpu_limit
from .models import (
    AlertType,
    AuditAction,
    AuditLogEntry,
    AwsCredentials,
    EmailAlertRecord,
    InstanceThreshold,
    ProductionModeSettings,
    UserAccount,
)

logger = logging.getLogger(__name__)

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC timestamp so string order matches time order."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _to_dynamo(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_dynamo(v) for v in value]
    return value


def _from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamo(v) for v in value]
    return value


def serialize(item: dict[str, Any]) -> dict[str, Any]:
    return {k: _serializer.serialize(_to_dynamo(v)) for k, v in item.items()}


def deserialize(item: dict[str, Any]) -> dict[str, Any]:
    return {k: _from_dynamo(_deserializer.deserialize(v)) for k, v in item.items()}


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _sort_suffix(now: datetime) -> str:
    return f"{to_iso(now)}#{uuid.uuid4().hex[:8]}"


class _Table:
    """Shared plumbing for a single DynamoDB table."""

    def __init__(self, client: Any, table_name: str):
        self.client = client
        self.table_name = table_name

    def _query_all(self, **kwargs: Any) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        paginator = self.client.get_paginator("query")
        for page in paginator.paginate(TableName=self.table_name, **kwargs):
            items.extend(deserialize(i) for i in page.get("Items", []))
        return items

    def _scan_all(self, **kwargs: Any) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        paginator = self.client.get_paginator("scan")
        for page in paginator.paginate(TableName=self.table_name, **kwargs):
            items.extend(deserialize(i) for i in page.get("Items", []))
        return items


class ThresholdStore(_Table):
    """Per-(user, instance) CPU limits and breach counters."""

    @staticmethod
    def _key(user_id: str, instance_id: str) -> dict[str, Any]:
        return serialize({"user_id": user_id, "instance_id": instance_id})

    @staticmethod
    def _to_model(item: dict[str, Any]) -> InstanceThreshold:
        return InstanceThreshold(
            user_id=item["user_id"],
            instance_id=item["instance_id"],
            cpu_limit=float(item.get("cpu_limit", 0)),
            auto_shutdown=item.get("auto_shutdown", True) is not False,
            auto_monitoring=bool(item.get("auto_monitoring", False)),
            breach_count=int(item.get("breach_count", 0)),
            last_breach=from_iso(item.get("last_breach")),
            breaching=bool(item.get("breaching", False)),
            created_at=from_iso(item.get("created_at")),
            updated_at=from_iso(item.get("updated_at")),
        )

    def get_threshold(self, user_id: str, instance_id: str) -> Optional[InstanceThreshold]:
        response = self.client.get_item(
            TableName=self.table_name, Key=self._key(user_id, instance_id), ConsistentRead=True
        )
        item = response.get("Item")
        return self._to_model(deserialize(item)) if item else None

    def upsert_threshold(
        self,
        user_id: str,
        instance_id: str,
        cpu_limit: Any,
        auto_shutdown: bool = True,
        now: Optional[datetime] = None,
    ) -> InstanceThreshold:
        """Create or update a limit. Counters are only initialised on creation."""
        now = now or utcnow()
        response = self.client.update_item(
            TableName=self.table_name,
            Key=self._key(user_id, instance_id),
            UpdateExpression=(
                "SET cpu_limit = :limit, auto_shutdown = :shutdown, updated_at = :now, "
                "created_at = if_not_exists(created_at, :now), "
                "breach_count = if_not_exists(breach_count, :zero), "
                "breaching = if_not_exists(breaching, :false), "
                "auto_monitoring = if_not_exists(auto_monitoring, :false)"
            ),
            ExpressionAttributeValues=serialize(
                {
                    ":limit": clamp_cpu_limit(cpu_limit),
                    ":shutdown": bool(auto_shutdown),
                    ":now": to_iso(now),
                    ":zero": 0,
                    ":false": False,
                }
            ),
            ReturnValues="ALL_NEW",
        )
        return self._to_model(deserialize(response["Attributes"]))

    def set_auto_monitoring(
        self,
        user_id: str,
        instance_id: str,
        enabled: bool,
        cpu_limit: Any = None,
        default_limit: float = 80.0,
        now: Optional[datetime] = None,
    ) -> Optional[InstanceThreshold]:
        """Toggle auto-monitoring. Enabling creates the limit if needed; disabling never does."""
        now = now or utcnow()
        if enabled:
            limit = clamp_cpu_limit(cpu_limit if cpu_limit not in (None, "", 0) else default_limit)
            response = self.client.update_item(
                TableName=self.table_name,
                Key=self._key(user_id, instance_id),
                UpdateExpression=(
                    "SET auto_monitoring = :true, cpu_limit = :limit, updated_at = :now, "
                    "created_at = if_not_exists(created_at, :now), "
                    "auto_shutdown = if_not_exists(auto_shutdown, :true), "
                    "breach_count = if_not_exists(breach_count, :zero), "
                    "breaching = if_not_exists(breaching, :false)"
                ),
                ExpressionAttributeValues=serialize(
                    {":true": True, ":false": False, ":limit": limit, ":now": to_iso(now), ":zero": 0}
                ),
                ReturnValues="ALL_NEW",
            )
            return self._to_model(deserialize(response["Attributes"]))

        try:
            response = self.client.update_item(
                TableName=self.table_name,
                Key=self._key(user_id, instance_id),
                UpdateExpression="SET auto_monitoring = :false, updated_at = :now",
                ConditionExpression="attribute_exists(user_id)",
                ExpressionAttributeValues=serialize({":false": False, ":now": to_iso(now)}),
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return None
            raise
        return self._to_model(deserialize(response["Attributes"]))

    def increment_breach(
        self, user_id: str, instance_id: str, now: Optional[datetime] = None
    ) -> Optional[int]:
        """Atomically count a breach. Returns the new count, or None if the limit is gone."""
        now = now or utcnow()
        try:
            response = self.client.update_item(
                TableName=self.table_name,
                Key=self._key(user_id, instance_id),
                UpdateExpression="ADD breach_count :one SET last_breach = :now, breaching = :true",
                ConditionExpression="attribute_exists(user_id)",
                ExpressionAttributeValues=serialize({":one": 1, ":now": to_iso(now), ":true": True}),
                ReturnValues="UPDATED_NEW",
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return None
            raise
        return int(deserialize(response["Attributes"])["breach_count"])

    def clear_breach(self, user_id: str, instance_id: str) -> bool:
        """Mark the instance healthy again. The breach counter is left untouched."""
        try:
            self.client.update_item(
                TableName=self.table_name,
                Key=self._key(user_id, instance_id),
                UpdateExpression="SET breaching = :false",
                ConditionExpression="attribute_exists(user_id)",
                ExpressionAttributeValues=serialize({":false": False}),
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise
        return True

    def delete_threshold(self, user_id: str, instance_id: str) -> bool:
        response = self.client.delete_item(
            TableName=self.table_name, Key=self._key(user_id, instance_id), ReturnValues="ALL_OLD"
        )
        return "Attributes" in response

    def list_thresholds(self, user_id: str) -> list[InstanceThreshold]:
        items = self._query_all(
            KeyConditionExpression="user_id = :uid",
            ExpressionAttributeValues=serialize({":uid": user_id}),
        )
        return [self._to_model(i) for i in items]

    def list_monitored(self, user_id: str) -> list[InstanceThreshold]:
        items = self._query_all(
            KeyConditionExpression="user_id = :uid",
            FilterExpression="auto_monitoring = :true",
            ExpressionAttributeValues=serialize({":uid": user_id, ":true": True}),
        )
        return [self._to_model(i) for i in items]


class ProductionModeStore(_Table):
    """Per-user production-mode switch and per-instance email settings."""

    def get(self, user_id: str) -> ProductionModeSettings:
        response = self.client.get_item(
            TableName=self.table_name, Key=serialize({"user_id": user_id}), ConsistentRead=True
        )
        item = response.get("Item")
        if not item:
            return ProductionModeSettings(user_id=user_id)
        data = deserialize(item)
        return ProductionModeSettings(
            user_id=user_id,
            enabled=bool(data.get("enabled", False)),
            instance_settings=data.get("instance_settings", {}),
        )

    def set_enabled(self, user_id: str, enabled: bool, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.client.update_item(
            TableName=self.table_name,
            Key=serialize({"user_id": user_id}),
            UpdateExpression=(
                "SET #enabled = :enabled, updated_at = :now, "
                "instance_settings = if_not_exists(instance_settings, :empty)"
            ),
            ExpressionAttributeNames={"#enabled": "enabled"},
            ExpressionAttributeValues=serialize(
                {":enabled": bool(enabled), ":now": to_iso(now), ":empty": {}}
            ),
        )

    def set_instance_email(
        self, user_id: str, instance_id: str, email_enabled: bool, now: Optional[datetime] = None
    ) -> None:
        now = now or utcnow()
        # The parent map must exist before a nested path can be set
        self.client.update_item(
            TableName=self.table_name,
            Key=serialize({"user_id": user_id}),
            UpdateExpression=(
                "SET instance_settings = if_not_exists(instance_settings, :empty), "
                "#enabled = if_not_exists(#enabled, :false)"
            ),
            ExpressionAttributeNames={"#enabled": "enabled"},
            ExpressionAttributeValues=serialize({":empty": {}, ":false": False}),
        )
        self.client.update_item(
            TableName=self.table_name,
            Key=serialize({"user_id": user_id}),
            UpdateExpression="SET instance_settings.#iid = :setting, updated_at = :now",
            ExpressionAttributeNames={"#iid": instance_id},
            ExpressionAttributeValues=serialize(
                {
                    ":setting": {"emailEnabled": bool(email_enabled), "updatedAt": to_iso(now)},
                    ":now": to_iso(now),
                }
            ),
        )

    def list_enabled_users(self) -> list[ProductionModeSettings]:
        items = self._scan_all(
            FilterExpression="#enabled = :true",
            ExpressionAttributeNames={"#enabled": "enabled"},
            ExpressionAttributeValues=serialize({":true": True}),
        )
        return [
            ProductionModeSettings(
                user_id=i["user_id"],
                enabled=True,
                instance_settings=i.get("instance_settings", {}),
            )
            for i in items
        ]


@dataclass
class AlertClaim:
    """A won cooldown slot. Keep it to record or release the send."""

    user_id: str
    instance_id: str
    alert_type: AlertType
    claimed_at: datetime
    previous: Optional[str]


class AlertRecordStore(_Table):
    """
    Email alert history used to rate-limit emails per (user, instance, type).

    Each (instance, type) pair has one cooldown item holding ``last_sent`` next to
    the append-only records. Claiming a slot is a single conditional write on the
    cooldown item, so two concurrent evaluations cannot both pass the gate.
    """

    @staticmethod
    def _cooldown_key(user_id: str, instance_id: str, alert_type: AlertType) -> dict[str, Any]:
        return serialize({"user_id": user_id, "sk": f"{instance_id}#{AlertType(alert_type).value}"})

    def find_latest(
        self, user_id: str, instance_id: str, alert_type: AlertType
    ) -> Optional[datetime]:
        response = self.client.get_item(
            TableName=self.table_name,
            Key=self._cooldown_key(user_id, instance_id, alert_type),
            ConsistentRead=True,
        )
        item = response.get("Item")
        if not item:
            return None
        return from_iso(deserialize(item).get("last_sent"))

    def claim(
        self,
        user_id: str,
        instance_id: str,
        alert_type: AlertType,
        now: datetime,
        window: timedelta,
    ) -> Optional[AlertClaim]:
        """Take the cooldown slot if nothing was sent within ``window`` before ``now``."""
        cutoff = now - window
        try:
            response = self.client.update_item(
                TableName=self.table_name,
                Key=self._cooldown_key(user_id, instance_id, alert_type),
                UpdateExpression="SET last_sent = :now",
                ConditionExpression="attribute_not_exists(last_sent) OR last_sent < :cutoff",
                ExpressionAttributeValues=serialize({":now": to_iso(now), ":cutoff": to_iso(cutoff)}),
                ReturnValues="UPDATED_OLD",
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return None
            raise
        previous = deserialize(response.get("Attributes", {})).get("last_sent")
        return AlertClaim(user_id, instance_id, AlertType(alert_type), now, previous)

    def release(self, claim: AlertClaim) -> None:
        """Give back a slot whose email was never delivered."""
        key = self._cooldown_key(claim.user_id, claim.instance_id, claim.alert_type)
        try:
            if claim.previous is None:
                self.client.update_item(
                    TableName=self.table_name,
                    Key=key,
                    UpdateExpression="REMOVE last_sent",
                    ConditionExpression="last_sent = :claimed",
                    ExpressionAttributeValues=serialize({":claimed": to_iso(claim.claimed_at)}),
                )
            else:
                self.client.update_item(
                    TableName=self.table_name,
                    Key=key,
                    UpdateExpression="SET last_sent = :previous",
                    ConditionExpression="last_sent = :claimed",
                    ExpressionAttributeValues=serialize(
                        {":previous": claim.previous, ":claimed": to_iso(claim.claimed_at)}
                    ),
                )
        except ClientError as e:
            if not _is_conditional_failure(e):
                raise
            logger.info("Cooldown for %s already moved on, not releasing", claim.instance_id)

    def insert(self, record: EmailAlertRecord, **details: Any) -> None:
        """Append a sent-alert record and advance the cooldown marker."""
        alert_type = AlertType(record.alert_type).value
        item = {
            "user_id": record.user_id,
            "sk": f"{record.instance_id}#{alert_type}#{_sort_suffix(record.timestamp)}",
            "instance_id": record.instance_id,
            "type": alert_type,
            "timestamp": to_iso(record.timestamp),
            **{k: v for k, v in details.items() if v is not None},
        }
        self.client.put_item(TableName=self.table_name, Item=serialize(item))
        try:
            self.client.update_item(
                TableName=self.table_name,
                Key=self._cooldown_key(record.user_id, record.instance_id, record.alert_type),
                UpdateExpression="SET last_sent = :ts",
                ConditionExpression="attribute_not_exists(last_sent) OR last_sent < :ts",
                ExpressionAttributeValues=serialize({":ts": to_iso(record.timestamp)}),
            )
        except ClientError as e:
            if not _is_conditional_failure(e):
                raise

    def list_records(self, user_id: str, instance_id: str, alert_type: AlertType) -> list[dict[str, Any]]:
        prefix = f"{instance_id}#{AlertType(alert_type).value}#"
        return self._query_all(
            KeyConditionExpression="user_id = :uid AND begins_with(sk, :prefix)",
            ExpressionAttributeValues=serialize({":uid": user_id, ":prefix": prefix}),
        )


class AuditLogStore(_Table):
    """Append-only activity log shown on the dashboard."""

    def append(self, entry: AuditLogEntry) -> None:
        item = {
            "user_id": entry.user_id,
            "sk": _sort_suffix(entry.timestamp),
            "action": AuditAction(entry.action).value,
            "details": entry.details,
            "metadata": {k: v for k, v in entry.metadata.items() if v is not None},
            "timestamp": to_iso(entry.timestamp),
        }
        self.client.put_item(TableName=self.table_name, Item=serialize(item))

    def list_recent(self, user_id: str, limit: int = 20) -> list[AuditLogEntry]:
        response = self.client.query(
            TableName=self.table_name,
            KeyConditionExpression="user_id = :uid",
            ExpressionAttributeValues=serialize({":uid": user_id}),
            ScanIndexForward=False,
            Limit=limit,
        )
        entries = []
        for raw in response.get("Items", []):
            item = deserialize(raw)
            entries.append(
                AuditLogEntry(
                    user_id=item["user_id"],
                    action=AuditAction(item["action"]),
                    details=item.get("details", ""),
                    metadata=item.get("metadata", {}),
                    timestamp=from_iso(item["timestamp"]),
                )
            )
        return entries


class HistoryStore(_Table):
    """Historical analysis log (auto-shutdowns, low-utilization alerts)."""

    def append(self, user_id: str, action: str, fields: dict[str, Any], now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        item = {
            "user_id": user_id,
            "sk": _sort_suffix(now),
            "action": action,
            "timestamp": to_iso(now),
            **{k: v for k, v in fields.items() if v is not None},
        }
        self.client.put_item(TableName=self.table_name, Item=serialize(item))

    def list_recent(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        response = self.client.query(
            TableName=self.table_name,
            KeyConditionExpression="user_id = :uid",
            ExpressionAttributeValues=serialize({":uid": user_id}),
            ScanIndexForward=False,
            Limit=limit,
        )
        return [deserialize(i) for i in response.get("Items", [])]


class AccountStore:
    """User profiles and stored AWS credentials. Owned by the auth layer; read here."""

    def __init__(self, client: Any, users_table: str, credentials_table: str):
        self.client = client
        self.users_table = users_table
        self.credentials_table = credentials_table

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        response = self.client.get_item(TableName=self.users_table, Key=serialize({"user_id": user_id}))
        item = response.get("Item")
        if not item:
            return None
        data = deserialize(item)
        return UserAccount(user_id=user_id, username=data.get("username", ""), email=data.get("email"))

    def put_user(self, user: UserAccount) -> None:
        item = {"user_id": user.user_id, "username": user.username}
        if user.email:
            item["email"] = user.email
        self.client.put_item(TableName=self.users_table, Item=serialize(item))

    def get_credentials(self, user_id: str) -> Optional[AwsCredentials]:
        response = self.client.get_item(
            TableName=self.credentials_table, Key=serialize({"user_id": user_id})
        )
        item = response.get("Item")
        if not item:
            return None
        data = deserialize(item)
        if not data.get("aws_access_key") or not data.get("aws_secret_key"):
            return None
        return AwsCredentials(access_key=data["aws_access_key"], secret_key=data["aws_secret_key"])

    def put_credentials(self, user_id: str, credentials: AwsCredentials) -> None:
        self.client.put_item(
            TableName=self.credentials_table,
            Item=serialize(
                {
                    "user_id": user_id,
                    "aws_access_key": credentials.access_key,
                    "aws_secret_key": credentials.secret_key,
                }
            ),
        )


@dataclass
class Stores:
    """All stores bound to one DynamoDB client."""

    thresholds: ThresholdStore
    production_mode: ProductionModeStore
    alerts: AlertRecordStore
    audit: AuditLogStore
    history: HistoryStore
    accounts: AccountStore

    @classmethod
    def from_settings(cls, settings: Settings, client: Any = None) -> "Stores":
        client = client or boto3.client(
            "dynamodb", region_name=settings.table_region, config=settings.client_config()
        )
        t = settings.tables
        return cls(
            thresholds=ThresholdStore(client, t.limits),
            production_mode=ProductionModeStore(client, t.production_mode),
            alerts=AlertRecordStore(client, t.alert_history),
            audit=AuditLogStore(client, t.activity_logs),
            history=HistoryStore(client, t.history),
            accounts=AccountStore(client, t.users, t.credentials),
        )


def create_tables(client: Any, tables: TableNames) -> list[str]:
    """Create any missing tables. Returns the names that were created."""
    layouts = {
        tables.limits: ("user_id", "instance_id"),
        tables.production_mode: ("user_id", None),
        tables.alert_history: ("user_id", "sk"),
        tables.activity_logs: ("user_id", "sk"),
        tables.history: ("user_id", "sk"),
        tables.users: ("user_id", None),
        tables.credentials: ("user_id", None),
    }
    created = []
    for name, (hash_key, range_key) in layouts.items():
        key_schema = [{"AttributeName": hash_key, "KeyType": "HASH"}]
        attributes = [{"AttributeName": hash_key, "AttributeType": "S"}]
        if range_key:
            key_schema.append({"AttributeName": range_key, "KeyType": "RANGE"})
            attributes.append({"AttributeName": range_key, "AttributeType": "S"})
        try:
            client.create_table(
                TableName=name,
                KeySchema=key_schema,
                AttributeDefinitions=attributes,
                BillingMode="PAY_PER_REQUEST",
            )
            created.append(name)
            logger.info("Created table %s", name)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ResourceInUseException":
                raise
            logger.debug("Table %s already exists", name)
    return created
