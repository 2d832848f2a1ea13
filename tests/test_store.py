from datetime import datetime, timedelta, timezone

import pytest

from instance_guardian.models import AlertType, AuditAction, AuditLogEntry, EmailAlertRecord, UserAccount
from instance_guardian.store import from_iso, to_iso

NOW = datetime(2026, 3, 10, 6, 0, tzinfo=timezone.utc)


class TestThresholdStore:
    """Per-instance limits and breach counters."""

    def test_limit_above_range_is_clamped_to_100(self, stores):
        threshold = stores.thresholds.upsert_threshold("user-1", "i-001", 500)
        assert threshold.cpu_limit == 100
        assert stores.thresholds.get_threshold("user-1", "i-001").cpu_limit == 100

    def test_limit_below_range_is_clamped_to_10(self, stores):
        threshold = stores.thresholds.upsert_threshold("user-1", "i-001", 1)
        assert threshold.cpu_limit == 10

    def test_creation_initialises_counters(self, stores):
        threshold = stores.thresholds.upsert_threshold("user-1", "i-001", 75, now=NOW)
        assert threshold.breach_count == 0
        assert threshold.breaching is False
        assert threshold.last_breach is None
        assert threshold.auto_shutdown is True
        assert threshold.auto_monitoring is False
        assert threshold.created_at == NOW

    def test_update_keeps_counters_and_creation_time(self, stores):
        stores.thresholds.upsert_threshold("user-1", "i-001", 75, now=NOW)
        stores.thresholds.increment_breach("user-1", "i-001", now=NOW)

        later = NOW + timedelta(hours=1)
        updated = stores.thresholds.upsert_threshold("user-1", "i-001", 60, auto_shutdown=False, now=later)

        assert updated.cpu_limit == 60
        assert updated.auto_shutdown is False
        assert updated.breach_count == 1
        assert updated.created_at == NOW
        assert updated.updated_at == later

    def test_increment_breach_counts_and_stamps(self, stores):
        stores.thresholds.upsert_threshold("user-1", "i-001", 80)

        assert stores.thresholds.increment_breach("user-1", "i-001", now=NOW) == 1
        assert stores.thresholds.increment_breach("user-1", "i-001", now=NOW) == 2

        threshold = stores.thresholds.get_threshold("user-1", "i-001")
        assert threshold.breach_count == 2
        assert threshold.last_breach == NOW
        assert threshold.breaching is True

    def test_increment_breach_without_limit_creates_nothing(self, stores):
        assert stores.thresholds.increment_breach("user-1", "i-404") is None
        assert stores.thresholds.get_threshold("user-1", "i-404") is None

    def test_clear_breach_keeps_counter(self, stores):
        stores.thresholds.upsert_threshold("user-1", "i-001", 80)
        stores.thresholds.increment_breach("user-1", "i-001", now=NOW)

        assert stores.thresholds.clear_breach("user-1", "i-001") is True

        threshold = stores.thresholds.get_threshold("user-1", "i-001")
        assert threshold.breaching is False
        assert threshold.breach_count == 1

    def test_enable_auto_monitoring_creates_limit_with_default(self, stores):
        threshold = stores.thresholds.set_auto_monitoring("user-1", "i-001", True)
        assert threshold.auto_monitoring is True
        assert threshold.cpu_limit == 80
        assert threshold.auto_shutdown is True
        assert threshold.breach_count == 0

    def test_enable_auto_monitoring_clamps_given_limit(self, stores):
        threshold = stores.thresholds.set_auto_monitoring("user-1", "i-001", True, cpu_limit=150)
        assert threshold.cpu_limit == 100

    def test_disable_auto_monitoring_keeps_limit(self, stores):
        stores.thresholds.upsert_threshold("user-1", "i-001", 65)
        stores.thresholds.set_auto_monitoring("user-1", "i-001", True, cpu_limit=65)

        threshold = stores.thresholds.set_auto_monitoring("user-1", "i-001", False)
        assert threshold.auto_monitoring is False
        assert threshold.cpu_limit == 65

    def test_disable_auto_monitoring_without_limit(self, stores):
        assert stores.thresholds.set_auto_monitoring("user-1", "i-404", False) is None
        assert stores.thresholds.get_threshold("user-1", "i-404") is None

    def test_list_monitored_filters_and_scopes_by_user(self, stores):
        stores.thresholds.set_auto_monitoring("user-1", "i-001", True)
        stores.thresholds.upsert_threshold("user-1", "i-002", 50)
        stores.thresholds.set_auto_monitoring("user-2", "i-003", True)

        monitored = stores.thresholds.list_monitored("user-1")
        assert [t.instance_id for t in monitored] == ["i-001"]
        assert len(stores.thresholds.list_thresholds("user-1")) == 2

    def test_delete_threshold(self, stores):
        stores.thresholds.upsert_threshold("user-1", "i-001", 80)
        assert stores.thresholds.delete_threshold("user-1", "i-001") is True
        assert stores.thresholds.delete_threshold("user-1", "i-001") is False
        assert stores.thresholds.get_threshold("user-1", "i-001") is None


class TestProductionModeStore:
    """Production-mode switch and per-instance email opt-outs."""

    def test_defaults_to_disabled(self, stores):
        settings = stores.production_mode.get("user-1")
        assert settings.enabled is False
        assert settings.instance_settings == {}

    def test_toggle(self, stores):
        stores.production_mode.set_enabled("user-1", True)
        assert stores.production_mode.get("user-1").enabled is True

        stores.production_mode.set_enabled("user-1", False)
        assert stores.production_mode.get("user-1").enabled is False

    def test_instance_email_setting(self, stores):
        stores.production_mode.set_enabled("user-1", True)
        stores.production_mode.set_instance_email("user-1", "i-001", False)

        settings = stores.production_mode.get("user-1")
        assert settings.enabled is True
        assert settings.email_enabled("i-001") is False
        assert settings.email_enabled("i-002") is True

    def test_instance_email_before_any_toggle(self, stores):
        stores.production_mode.set_instance_email("user-1", "i-001", False)

        settings = stores.production_mode.get("user-1")
        assert settings.enabled is False
        assert settings.email_enabled("i-001") is False

    def test_list_enabled_users(self, stores):
        stores.production_mode.set_enabled("user-1", True)
        stores.production_mode.set_enabled("user-2", False)
        stores.production_mode.set_enabled("user-3", True)

        enabled = sorted(s.user_id for s in stores.production_mode.list_enabled_users())
        assert enabled == ["user-1", "user-3"]


class TestAlertRecordStore:
    """Cooldown slots and the append-only alert log."""

    WINDOW = timedelta(minutes=60)

    def test_first_claim_wins(self, stores):
        claim = stores.alerts.claim("user-1", "i-001", AlertType.LOW_UTILIZATION, NOW, self.WINDOW)
        assert claim is not None
        assert claim.previous is None
        assert stores.alerts.find_latest("user-1", "i-001", AlertType.LOW_UTILIZATION) == NOW

    def test_second_claim_within_window_is_denied(self, stores):
        stores.alerts.claim("user-1", "i-001", AlertType.LOW_UTILIZATION, NOW, self.WINDOW)
        later = NOW + timedelta(minutes=2)
        assert stores.alerts.claim("user-1", "i-001", AlertType.LOW_UTILIZATION, later, self.WINDOW) is None

    def test_claim_exactly_one_window_later_is_denied(self, stores):
        stores.alerts.claim("user-1", "i-001", AlertType.LOW_UTILIZATION, NOW, self.WINDOW)
        assert stores.alerts.claim("user-1", "i-001", AlertType.LOW_UTILIZATION, NOW + self.WINDOW, self.WINDOW) is None

    def test_claim_after_window_is_granted(self, stores):
        stores.alerts.claim("user-1", "i-001", AlertType.LOW_UTILIZATION, NOW, self.WINDOW)
        later = NOW + timedelta(minutes=61)
        claim = stores.alerts.claim("user-1", "i-001", AlertType.LOW_UTILIZATION, later, self.WINDOW)
        assert claim is not None
        assert from_iso(claim.previous) == NOW

    def test_slots_are_per_type_and_instance(self, stores):
        stores.alerts.claim("user-1", "i-001", AlertType.LOW_UTILIZATION, NOW, self.WINDOW)
        assert stores.alerts.claim("user-1", "i-001", AlertType.CPU_LIMIT_BREACH, NOW, self.WINDOW) is not None
        assert stores.alerts.claim("user-1", "i-002", AlertType.LOW_UTILIZATION, NOW, self.WINDOW) is not None
        assert stores.alerts.claim("user-2", "i-001", AlertType.LOW_UTILIZATION, NOW, self.WINDOW) is not None

    def test_release_frees_a_fresh_slot(self, stores):
        claim = stores.alerts.claim("user-1", "i-001", AlertType.LOW_UTILIZATION, NOW, self.WINDOW)
        stores.alerts.release(claim)

        assert stores.alerts.find_latest("user-1", "i-001", AlertType.LOW_UTILIZATION) is None
        later = NOW + timedelta(minutes=5)
        assert stores.alerts.claim("user-1", "i-001", AlertType.LOW_UTILIZATION, later, self.WINDOW) is not None

    def test_release_restores_previous_send(self, stores):
        stores.alerts.claim("user-1", "i-001", AlertType.LOW_UTILIZATION, NOW, self.WINDOW)
        later = NOW + timedelta(minutes=90)
        claim = stores.alerts.claim("user-1", "i-001", AlertType.LOW_UTILIZATION, later, self.WINDOW)
        stores.alerts.release(claim)

        assert stores.alerts.find_latest("user-1", "i-001", AlertType.LOW_UTILIZATION) == NOW

    def test_insert_appends_record(self, stores):
        record = EmailAlertRecord("user-1", "i-001", AlertType.CPU_LIMIT_BREACH, NOW)
        stores.alerts.insert(record, email_sent=True, cpu_usage=91.5)

        records = stores.alerts.list_records("user-1", "i-001", AlertType.CPU_LIMIT_BREACH)
        assert len(records) == 1
        assert records[0]["cpu_usage"] == 91.5
        assert records[0]["timestamp"] == to_iso(NOW)
        assert stores.alerts.find_latest("user-1", "i-001", AlertType.CPU_LIMIT_BREACH) == NOW


class TestAuditLogStore:
    """Activity log ordering."""

    def test_list_recent_is_newest_first(self, stores):
        for minute in range(3):
            stores.audit.append(
                AuditLogEntry(
                    user_id="user-1",
                    action=AuditAction.LIMIT_UPDATED,
                    details=f"change {minute}",
                    metadata={"minute": minute},
                    timestamp=NOW + timedelta(minutes=minute),
                )
            )

        entries = stores.audit.list_recent("user-1", limit=2)
        assert [e.details for e in entries] == ["change 2", "change 1"]
        assert entries[0].action is AuditAction.LIMIT_UPDATED
        assert entries[0].metadata == {"minute": 2}

    def test_history_round_trip(self, stores):
        stores.history.append("user-1", "auto_shutdown", {"instance_id": "i-001", "cpu_usage": 95.5}, now=NOW)
        items = stores.history.list_recent("user-1")
        assert items[0]["action"] == "auto_shutdown"
        assert items[0]["cpu_usage"] == 95.5


class TestAccountStore:
    def test_credentials_round_trip(self, stores, credentials):
        stores.accounts.put_credentials("user-1", credentials)
        assert stores.accounts.get_credentials("user-1") == credentials

    def test_missing_credentials(self, stores):
        assert stores.accounts.get_credentials("nobody") is None

    @pytest.mark.parametrize("email", [None, "bob@example.com"])
    def test_user_round_trip(self, stores, email):
        stores.accounts.put_user(UserAccount("user-9", "bob", email))
        assert stores.accounts.get_user("user-9") == UserAccount("user-9", "bob", email)
