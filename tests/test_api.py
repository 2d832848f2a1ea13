import json
from unittest.mock import MagicMock, patch

import boto3
import pytest

from instance_guardian.api import ApiRouter
from instance_guardian.metrics import MetricSource
from instance_guardian.models import MetricSnapshot
from instance_guardian.service import GuardianService


def event(method, path, body=None, user_id="user-1", query=None):
    request = {
        "httpMethod": method,
        "path": path,
        "body": json.dumps(body) if body is not None else None,
        "queryStringParameters": query,
        "requestContext": {},
    }
    if user_id:
        request["requestContext"] = {"authorizer": {"claims": {"sub": user_id}}}
    return request


def call(router, *args, **kwargs):
    response = router.handle(event(*args, **kwargs))
    return response["statusCode"], json.loads(response["body"])


@pytest.fixture
def dispatch():
    return MagicMock()


@pytest.fixture
def router(settings, stores, dispatch, inside_hours):
    return ApiRouter(GuardianService(settings, stores, dispatch=dispatch, clock=lambda: inside_hours))


def run_instance(region="us-east-1"):
    ec2 = boto3.client("ec2", region_name=region)
    response = ec2.run_instances(ImageId="ami-12345678", InstanceType="t3.micro", MinCount=1, MaxCount=1)
    return response["Instances"][0]["InstanceId"]


class TestRouting:
    def test_health_needs_no_identity(self, router):
        status, body = call(router, "GET", "/api/health", user_id=None)
        assert status == 200
        assert body["success"] is True

    def test_missing_identity_is_rejected(self, router):
        status, body = call(router, "GET", "/api/instance-limits", user_id=None)
        assert status == 401
        assert body["success"] is False

    def test_unknown_route(self, router):
        status, _ = call(router, "GET", "/api/nope")
        assert status == 404

    def test_wrong_method(self, router):
        status, _ = call(router, "PUT", "/api/instance-limits")
        assert status == 404

    def test_invalid_json_body(self, router):
        request = event("POST", "/api/instance-limits")
        request["body"] = "{not json"
        response = router.handle(request)
        assert response["statusCode"] == 400


class TestInstanceLimits:
    def test_save_clamps_and_audits(self, router, stores):
        status, body = call(router, "POST", "/api/instance-limits", {"instanceId": "i-001", "cpuLimit": 500})

        assert status == 200
        assert body["limit"]["cpuLimit"] == 100
        assert body["limit"]["autoShutdown"] is True
        entry = stores.audit.list_recent("user-1")[0]
        assert entry.action.value == "Update Instance Limit"
        assert entry.metadata["cpuLimit"] == 100

    def test_save_defaults_limit(self, router):
        _, body = call(router, "POST", "/api/instance-limits", {"instanceId": "i-001", "autoShutdown": False})
        assert body["limit"]["cpuLimit"] == 80
        assert body["limit"]["autoShutdown"] is False

    def test_save_requires_instance_id(self, router):
        status, body = call(router, "POST", "/api/instance-limits", {"cpuLimit": 50})
        assert status == 400
        assert body["message"] == "Instance ID required"

    def test_save_rejects_non_numeric_limit(self, router):
        status, _ = call(router, "POST", "/api/instance-limits", {"instanceId": "i-001", "cpuLimit": "lots"})
        assert status == 400

    def test_list_is_scoped_to_user(self, router):
        call(router, "POST", "/api/instance-limits", {"instanceId": "i-001", "cpuLimit": 70})

        _, mine = call(router, "GET", "/api/instance-limits")
        _, theirs = call(router, "GET", "/api/instance-limits", user_id="user-2")

        assert [item["instanceId"] for item in mine["limits"]] == ["i-001"]
        assert theirs["limits"] == []

    def test_delete(self, router):
        call(router, "POST", "/api/instance-limits", {"instanceId": "i-001", "cpuLimit": 70})

        status, _ = call(router, "DELETE", "/api/instance-limits/i-001")
        assert status == 200
        status, _ = call(router, "DELETE", "/api/instance-limits/i-001")
        assert status == 404


class TestAutoMonitoring:
    def test_enable_then_list_monitored(self, router, stores):
        status, body = call(router, "POST", "/api/instance-auto-monitor", {"instanceId": "i-001", "enabled": True})

        assert status == 200
        assert body["limit"]["autoMonitoring"] is True
        _, monitored = call(router, "GET", "/api/monitored-instances")
        assert [i["instanceId"] for i in monitored["instances"]] == ["i-001"]
        assert stores.audit.list_recent("user-1")[0].action.value == "Toggle Auto-Monitoring"

    def test_enabled_must_be_boolean(self, router):
        status, _ = call(router, "POST", "/api/instance-auto-monitor", {"instanceId": "i-001", "enabled": "yes"})
        assert status == 400


class TestProductionMode:
    def test_enabling_dispatches_a_pass(self, router, dispatch, stores):
        status, body = call(router, "POST", "/api/production-mode-settings", {"enabled": True})

        assert status == 200
        assert body["enabled"] is True
        dispatch.assert_called_once_with("user-1")
        assert stores.audit.list_recent("user-1")[0].details == "Production Mode Enabled"

    def test_disabling_does_not_dispatch(self, router, dispatch):
        call(router, "POST", "/api/production-mode-settings", {"enabled": False})
        dispatch.assert_not_called()

    def test_per_instance_email(self, router, dispatch):
        call(router, "POST", "/api/production-mode-settings", {"instanceId": "i-001", "emailEnabled": False})

        _, body = call(router, "GET", "/api/production-mode-settings")
        assert body["enabled"] is False
        assert body["instanceSettings"]["i-001"]["emailEnabled"] is False
        dispatch.assert_not_called()

    def test_empty_update_is_rejected(self, router):
        status, _ = call(router, "POST", "/api/production-mode-settings", {})
        assert status == 400


class TestTriggerMonitoring:
    def test_returns_immediately(self, router, dispatch):
        status, body = call(router, "POST", "/api/trigger-monitoring")
        assert status == 202
        dispatch.assert_called_once_with("user-1")

    def test_without_dispatcher(self, settings, stores):
        router = ApiRouter(GuardianService(settings, stores))
        status, _ = call(router, "POST", "/api/trigger-monitoring")
        assert status == 503


class TestStopInstance:
    def test_missing_credentials(self, router):
        status, body = call(router, "POST", "/api/stop-instance", {"instanceId": "i-001"})
        assert status == 400
        assert "AWS credentials not found" in body["message"]

    def test_manual_stop(self, router, stores, registered_user):
        instance_id = run_instance("us-east-2")

        status, body = call(router, "POST", "/api/stop-instance", {"instanceId": instance_id, "reason": "Done for today"})

        assert status == 200
        assert body["region"] == "us-east-2"
        assert body["previousState"] == "running"
        entry = stores.audit.list_recent("user-1")[0]
        assert entry.action.value == "Stop Instance"
        assert entry.metadata["trigger"] == "manual_stop"
        assert stores.history.list_recent("user-1") == []

    def test_auto_shutdown_reason_is_tagged(self, router, stores, registered_user):
        instance_id = run_instance()

        call(router, "POST", "/api/stop-instance", {"instanceId": instance_id, "reason": "Auto-shutdown: CPU 97%"})

        history = stores.history.list_recent("user-1")[0]
        assert history["action"] == "auto_shutdown"
        assert history["username"] == "alice"
        assert stores.audit.list_recent("user-1")[0].metadata["trigger"] == "auto_shutdown"

    def test_unknown_instance_reports_failure(self, router, registered_user):
        status, body = call(router, "POST", "/api/stop-instance", {"instanceId": "i-0123456789abcdef0"})
        assert status == 500
        assert body["action"] == "error"
        assert "Failed to stop instance" in body["message"]


class TestMonitorInstance:
    def test_without_limit(self, router):
        status, body = call(router, "POST", "/api/monitor-instance", {"instanceId": "i-001"})
        assert status == 200
        assert body["action"] == "none"
        assert body["message"] == "No limit set for this instance"

    def test_breach_stops_instance(self, router, stores, registered_user):
        instance_id = run_instance()
        call(router, "POST", "/api/instance-limits", {"instanceId": instance_id, "cpuLimit": 80})

        with patch.object(MetricSource, "fetch_metric", return_value=MetricSnapshot(average=97.0, sample_count=2)):
            status, body = call(router, "POST", "/api/monitor-instance", {"instanceId": instance_id})

        assert status == 200
        assert body["action"] == "stopped"
        assert body["currentCPU"] == 97.0
        assert body["region"] == "us-east-1"
        assert stores.thresholds.get_threshold("user-1", instance_id).breach_count == 1

    def test_breach_without_shutdown_is_listed_as_breaching(self, router, stores, registered_user):
        instance_id = run_instance()
        call(router, "POST", "/api/instance-limits", {"instanceId": instance_id, "cpuLimit": 80, "autoShutdown": False})

        with patch.object(MetricSource, "fetch_metric", return_value=MetricSnapshot(average=97.0, sample_count=2)):
            _, body = call(router, "POST", "/api/monitor-instance", {"instanceId": instance_id})
        _, listed = call(router, "GET", "/api/instance-limits")

        assert body["action"] == "alert"
        limit = listed["limits"][0]
        assert limit["breaching"] is True
        assert limit["breachCount"] == 1


class TestLogs:
    def test_activity_logs_limit(self, router):
        for i in range(3):
            call(router, "POST", "/api/instance-limits", {"instanceId": f"i-00{i}", "cpuLimit": 50})

        status, body = call(router, "GET", "/api/activity-logs", query={"limit": "2"})

        assert status == 200
        assert len(body["logs"]) == 2
        assert body["logs"][0]["action"] == "Update Instance Limit"

    def test_bad_limit(self, router):
        status, _ = call(router, "GET", "/api/activity-logs", query={"limit": "many"})
        assert status == 400

    def test_history(self, router, stores):
        stores.history.append("user-1", "auto_shutdown", {"instance_id": "i-001"})

        _, body = call(router, "GET", "/api/history")

        assert body["history"][0]["instance_id"] == "i-001"
