"""
Tests for AlertService
"""
import json
from unittest.mock import MagicMock, patch

from infra.alerting import AlertService, AlertSeverity


class TestAlertService:
    def test_disabled_still_keeps_history(self):
        alerts = AlertService.from_config({"enabled": False})

        assert alerts.notify(AlertSeverity.CRITICAL, "Payout blacklisted", "p-1") is False
        assert alerts.recent()[0]["title"] == "Payout blacklisted"

    def test_enabled_without_webhook_is_disabled(self, monkeypatch):
        monkeypatch.delenv("ALERT_WEBHOOK_URL", raising=False)

        assert not AlertService.from_config({"enabled": True}).is_enabled()

    def test_dry_run_dedupes(self):
        alerts = AlertService.from_config({"enabled": True, "dry_run": True})

        assert alerts.notify(AlertSeverity.WARNING, "Ambiguous payment evidence", "1000 RUB") is True
        assert alerts.notify(AlertSeverity.WARNING, "Ambiguous payment evidence", "1000 RUB") is False
        assert alerts.notify(AlertSeverity.WARNING, "Ambiguous payment evidence", "2000 RUB") is True

    def test_severity_floor(self):
        alerts = AlertService.from_config({"enabled": True, "dry_run": True, "min_severity": "critical"})

        assert alerts.notify(AlertSeverity.WARNING, "Capacity", "all accounts at cap") is False
        assert alerts.notify(AlertSeverity.CRITICAL, "Account deactivated", "acc-1") is True

    def test_webhook_payload(self, monkeypatch):
        monkeypatch.setenv("P2P_ALERT_WEBHOOK_URL", "https://hooks.example.test/alert")
        alerts = AlertService.from_config({"enabled": True, "webhook_env": "P2P_ALERT_WEBHOOK_URL"})

        with patch("infra.alerting.urllib.request.urlopen") as urlopen:
            urlopen.return_value.__enter__.return_value = MagicMock(status=200)
            assert alerts.notify(AlertSeverity.CRITICAL, "Payout blacklisted", "p-1", {"evidence_id": "ev-1"})

        request = urlopen.call_args[0][0]
        assert request.full_url == "https://hooks.example.test/alert"
        body = json.loads(request.data.decode("utf-8"))
        assert body["text"] == '[CRITICAL] Payout blacklisted | p-1 | context={"evidence_id": "ev-1"}'
