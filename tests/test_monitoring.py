from datetime import datetime, timedelta

import pytest

from face_to_phone.exceptions import ValidationError
from face_to_phone.models import FraudResult, LogEvent
from face_to_phone.monitoring import AlertManager
from face_to_phone.rule_engine import BIOMETRIC_FAILURE_REASON

from .conftest import make_transaction


@pytest.fixture
def alerts(store):
    return AlertManager(store, max_alerts=200)


class TestAlertManager:
    async def test_raise_alert(self, alerts):
        first = await alerts.raise_alert("fraud_attempt", "high", "Blocked", "details")
        second = await alerts.raise_alert("suspicious_login", "medium", "Odd login", "details",
                                          {"ip": "10.0.0.1"})

        stored = await alerts.get_alerts()
        assert [a.id for a in stored] == [second.id, first.id]
        assert stored[0].metadata == {"ip": "10.0.0.1"}
        assert not stored[0].resolved

    async def test_invalid_alert(self, alerts):
        with pytest.raises(ValidationError):
            await alerts.raise_alert("meteor_strike", "high", "t", "d")
        with pytest.raises(ValidationError):
            await alerts.raise_alert("fraud_attempt", "severe", "t", "d")

    async def test_keeps_most_recent_two_hundred(self, alerts):
        raised = [
            await alerts.raise_alert("system_anomaly", "low", f"Alert {i}", "d")
            for i in range(201)
        ]

        stored = await alerts.get_alerts()
        assert len(stored) == 200
        assert stored[0].id == raised[-1].id
        assert raised[0].id not in {a.id for a in stored}
        assert await alerts.get_alert(raised[0].id) is None

    async def test_resolve(self, alerts):
        alert = await alerts.raise_alert("fraud_attempt", "critical", "t", "d")

        assert await alerts.resolve(alert.id, resolved_by="analyst")
        resolved = await alerts.get_alert(alert.id)
        assert resolved.resolved
        assert resolved.resolved_by == "analyst"
        assert resolved.resolved_at is not None
        assert await alerts.get_unresolved_alerts() == []

        assert not await alerts.resolve("alert_missing")

    async def test_stats(self, alerts):
        critical = await alerts.raise_alert("fraud_attempt", "critical", "t", "d")
        await alerts.raise_alert("biometric_failure", "high", "t", "d")
        await alerts.raise_alert("suspicious_login", "medium", "t", "d")
        await alerts.resolve(critical.id)

        stats = await alerts.stats()
        assert stats.total == 3
        assert stats.unresolved == 2
        assert (stats.critical, stats.high, stats.medium, stats.low) == (1, 1, 1, 0)
        assert stats.last_24_hours == 3

        later = await alerts.stats(now=datetime.now() + timedelta(days=2))
        assert later.last_24_hours == 0

    async def test_by_severity(self, alerts):
        await alerts.raise_alert("fraud_attempt", "critical", "t", "d")
        await alerts.raise_alert("fraud_attempt", "high", "t", "d")
        newest = await alerts.raise_alert("biometric_failure", "critical", "t", "d")

        critical = await alerts.get_alerts_by_severity("critical")
        assert len(critical) == 2
        assert critical[0].id == newest.id

    async def test_clear(self, alerts):
        await alerts.raise_alert("fraud_attempt", "high", "t", "d")
        await alerts.clear_alerts()
        assert (await alerts.stats()).total == 0


class TestMonitorTransaction:
    async def test_blocked_biometric_failure(self, alerts):
        result = FraudResult(is_blocked=True, risk_score=0.8, reasons=[BIOMETRIC_FAILURE_REASON],
                             risk_level="high")
        raised = await alerts.monitor_transaction(make_transaction(user_verified=False), result)

        assert [(a.type, a.severity) for a in raised] == [
            ("fraud_attempt", "critical"),
            ("biometric_failure", "critical"),
        ]
        assert raised[0].metadata["recipient"] == "Jane"

    async def test_blocked_medium_risk(self, alerts):
        result = FraudResult(is_blocked=True, risk_score=0.6, reasons=["amount"], risk_level="medium")
        raised = await alerts.monitor_transaction(make_transaction(), result)

        assert [(a.type, a.severity) for a in raised] == [("fraud_attempt", "high")]

    async def test_elevated_but_approved(self, alerts):
        result = FraudResult(is_blocked=False, risk_score=0.55, reasons=["x"], risk_level="medium")
        raised = await alerts.monitor_transaction(make_transaction(), result)

        assert [(a.type, a.severity) for a in raised] == [("suspicious_login", "medium")]
        assert "55.0%" in raised[0].description

    async def test_low_risk_raises_nothing(self, alerts):
        result = FraudResult(is_blocked=False, risk_score=0.2, reasons=[], risk_level="low")
        assert await alerts.monitor_transaction(make_transaction(), result) == []
        assert await alerts.get_alerts() == []

    @pytest.mark.parametrize("event_type,alert_type", [
        ("biometric", "biometric_failure"),
        ("sim_swap", "fraud_attempt"),
        ("ussd", "system_anomaly"),
    ])
    async def test_notify_critical_event(self, alerts, event_type, alert_type):
        alert = await alerts.notify_critical_event(LogEvent(type=event_type, severity="critical",
                                                            user_id="user_1"))
        assert alert.type == alert_type
        assert alert.severity == "critical"
        assert alert.metadata["user_id"] == "user_1"
