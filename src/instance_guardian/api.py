"""
HTTP routes for API Gateway proxy events.

Authentication happens upstream; the authorizer's ``sub`` claim is the user id
that scopes every read and write.
"""

import base64
import json
import logging
import re
from typing import Any, Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .exceptions import GuardianError, MissingCredentialsError, StopInstanceError, ValidationError
from .models import AuditLogEntry
from .service import GuardianService

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict[str, Any], dict[str, Any]], tuple[int, dict[str, Any]]]


def response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body, default=str),
    }


def _entry_to_api(entry: AuditLogEntry) -> dict[str, Any]:
    return {
        "action": entry.action.value,
        "details": entry.details,
        "metadata": entry.metadata,
        "timestamp": entry.timestamp.isoformat(),
    }


def _user_id(event: dict[str, Any]) -> Optional[str]:
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    claims = authorizer.get("claims") or {}
    return claims.get("sub")


def _json_body(event: dict[str, Any]) -> dict[str, Any]:
    raw = event.get("body") or "{}"
    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")
    try:
        body = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _limit(params: dict[str, Any], default: int = 20) -> int:
    try:
        return int(params.get("limit", default))
    except (TypeError, ValueError):
        raise ValidationError("limit must be an integer") from None


class ApiRouter:
    """Dispatches API Gateway proxy events to the service."""

    def __init__(self, service: GuardianService):
        self.service = service
        self._routes: list[tuple[str, re.Pattern, Handler]] = [
            ("GET", re.compile(r"^/api/instance-limits/?$"), self.list_limits),
            ("POST", re.compile(r"^/api/instance-limits/?$"), self.save_limit),
            ("DELETE", re.compile(r"^/api/instance-limits/(?P<instance_id>[^/]+)$"), self.remove_limit),
            ("POST", re.compile(r"^/api/instance-auto-monitor/?$"), self.auto_monitor),
            ("GET", re.compile(r"^/api/monitored-instances/?$"), self.monitored_instances),
            ("POST", re.compile(r"^/api/monitor-instance/?$"), self.monitor_instance),
            ("POST", re.compile(r"^/api/stop-instance/?$"), self.stop_instance),
            ("GET", re.compile(r"^/api/production-mode-settings/?$"), self.get_production_mode),
            ("POST", re.compile(r"^/api/production-mode-settings/?$"), self.update_production_mode),
            ("POST", re.compile(r"^/api/trigger-monitoring/?$"), self.trigger_monitoring),
            ("GET", re.compile(r"^/api/activity-logs/?$"), self.activity_logs),
            ("GET", re.compile(r"^/api/history/?$"), self.history),
        ]

    def handle(self, event: dict[str, Any]) -> dict[str, Any]:
        method = (event.get("httpMethod") or "GET").upper()
        path = event.get("path") or "/"

        if path.rstrip("/") == "/api/health":
            return response(200, {"success": True, "status": "ok"})

        for route_method, pattern, handler in self._routes:
            match = pattern.match(path)
            if match and route_method == method:
                break
        else:
            return response(404, {"success": False, "message": f"Route not found: {method} {path}"})

        user_id = _user_id(event)
        if not user_id:
            return response(401, {"success": False, "message": "Authentication required"})

        params = dict(event.get("queryStringParameters") or {})
        params.update(match.groupdict())
        try:
            status, body = handler(user_id, event, params)
        except (ValidationError, MissingCredentialsError) as e:
            return response(400, {"success": False, "message": str(e)})
        except StopInstanceError as e:
            logger.error("Stop failed for %s: %s", e.instance_id, e)
            return response(500, {"success": False, "action": "error", "message": f"Failed to stop instance: {e}"})
        except (GuardianError, BotoCoreError, ClientError) as e:
            logger.error("%s %s failed for user %s: %s", method, path, user_id, e)
            return response(500, {"success": False, "message": str(e)})
        return response(status, body)

    # Limits

    def list_limits(self, user_id, _event, _params):
        limits = self.service.list_limits(user_id)
        return 200, {"success": True, "limits": [t.to_api() for t in limits]}

    def save_limit(self, user_id, event, _params):
        body = _json_body(event)
        threshold = self.service.save_limit(
            user_id,
            body.get("instanceId"),
            cpu_limit=body.get("cpuLimit"),
            auto_shutdown=body.get("autoShutdown", True) is not False,
        )
        return 200, {"success": True, "message": "Limit saved successfully", "limit": threshold.to_api()}

    def remove_limit(self, user_id, _event, params):
        removed = self.service.remove_limit(user_id, params["instance_id"])
        if not removed:
            return 404, {"success": False, "message": "No limit set for this instance"}
        return 200, {"success": True, "message": "Limit removed"}

    def auto_monitor(self, user_id, event, _params):
        body = _json_body(event)
        threshold = self.service.set_auto_monitoring(
            user_id, body.get("instanceId"), body.get("enabled"), cpu_limit=body.get("cpuLimit")
        )
        return 200, {
            "success": True,
            "message": f"Auto-monitoring {'enabled' if body.get('enabled') else 'disabled'}",
            "limit": threshold.to_api() if threshold else None,
        }

    def monitored_instances(self, user_id, _event, _params):
        monitored = self.service.list_monitored(user_id)
        return 200, {"success": True, "instances": [t.to_api() for t in monitored]}

    # Instances

    def monitor_instance(self, user_id, event, _params):
        body = _json_body(event)
        result = self.service.monitor_instance(user_id, body.get("instanceId"))
        return 200, {"success": True, **result.to_api()}

    def stop_instance(self, user_id, event, _params):
        body = _json_body(event)
        result = self.service.stop_instance(user_id, body.get("instanceId"), body.get("reason") or "")
        return 200, {
            "success": True,
            "message": f"Instance {result.instance_id} is stopping",
            "instanceId": result.instance_id,
            "region": result.region,
            "previousState": result.previous_state,
            "currentState": result.current_state,
        }

    # Production mode

    def get_production_mode(self, user_id, _event, _params):
        settings = self.service.get_production_mode(user_id)
        return 200, {"success": True, "enabled": settings.enabled, "instanceSettings": settings.instance_settings}

    def update_production_mode(self, user_id, event, _params):
        body = _json_body(event)
        settings = self.service.update_production_mode(
            user_id,
            enabled=body.get("enabled"),
            instance_id=body.get("instanceId"),
            email_enabled=body.get("emailEnabled"),
        )
        return 200, {
            "success": True,
            "message": "Settings updated successfully",
            "enabled": settings.enabled,
            "instanceSettings": settings.instance_settings,
        }

    def trigger_monitoring(self, user_id, _event, _params):
        if not self.service.trigger_monitoring(user_id):
            return 503, {"success": False, "message": "Monitoring is not available"}
        return 202, {"success": True, "message": "Monitoring started"}

    # Logs

    def activity_logs(self, user_id, _event, params):
        entries = self.service.activity_logs(user_id, _limit(params))
        return 200, {"success": True, "logs": [_entry_to_api(e) for e in entries]}

    def history(self, user_id, _event, params):
        items = self.service.history(user_id, _limit(params))
        return 200, {"success": True, "history": items}
