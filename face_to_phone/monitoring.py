"""
Security monitoring and alerting.
Derives user-facing alerts from risk decisions and critical log events,
tracks their resolution and keeps only the most recent ones.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Any, Optional

import pydantic

from .config import config
from .database import EncryptedStore
from .exceptions import ValidationError
from .models import SecurityAlert, AlertStats, FraudResult, TransactionData, LogEvent, FraudAnalysis

logger = logging.getLogger(__name__)

BIOMETRIC_FAILURE_MARKER = "Biometric verification failed"

# Alert type raised for a critical log event of each type
EVENT_ALERT_TYPES = {
    "fraud_alert": "fraud_attempt",
    "sim_swap": "fraud_attempt",
    "transaction": "fraud_attempt",
    "biometric": "biometric_failure",
    "login": "suspicious_login",
}


class AlertManager:
    """Stores alerts newest-first in a bounded, encrypted collection."""

    collection = "alerts"

    def __init__(self, store: EncryptedStore, max_alerts: Optional[int] = None):
        self.store = store
        self.max_alerts = max_alerts or config.get("alerts.max_alerts", 200)

    async def raise_alert(
        self,
        type: str,
        severity: str,
        title: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SecurityAlert:
        """
        Create and store a security alert.

        The oldest alerts beyond ``max_alerts`` are dropped.
        """
        try:
            alert = SecurityAlert(
                type=type,
                severity=severity,
                title=title,
                description=description,
                metadata=metadata or {},
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid alert: {str(e)}") from e

        await self.store.put(self.collection, alert.id, alert.model_dump(mode="json"))
        dropped = await self.store.trim(self.collection, self.max_alerts)
        if dropped:
            logger.debug(f"Dropped {len(dropped)} oldest alerts")

        logger.info(f"Alert generated: [{alert.severity}] {alert.type} - {alert.title}")
        return alert

    async def get_alerts(self) -> List[SecurityAlert]:
        """All retained alerts, newest first."""
        rows = await self.store.recent(self.collection)
        return [SecurityAlert.model_validate(row) for row in rows]

    async def get_alert(self, alert_id: str) -> Optional[SecurityAlert]:
        data = await self.store.get(self.collection, alert_id)
        return SecurityAlert.model_validate(data) if data else None

    async def get_alerts_by_severity(self, severity: str) -> List[SecurityAlert]:
        rows = await self.store.find(self.collection, {"severity": severity})
        alerts = [SecurityAlert.model_validate(row) for row in rows]
        return sorted(alerts, key=lambda a: a.id, reverse=True)

    async def get_unresolved_alerts(self) -> List[SecurityAlert]:
        return [a for a in await self.get_alerts() if not a.resolved]

    async def resolve(self, alert_id: str, resolved_by: str = "system") -> bool:
        """
        Mark an alert as resolved.

        Returns:
            False if no such alert exists
        """
        alert = await self.get_alert(alert_id)
        if alert is None:
            return False

        resolved = alert.model_copy(update={
            "resolved": True,
            "resolved_at": datetime.now(),
            "resolved_by": resolved_by,
        })
        await self.store.put(self.collection, alert_id, resolved.model_dump(mode="json"))
        logger.info(f"Alert resolved: {alert_id} by {resolved_by}")
        return True

    async def stats(self, now: Optional[datetime] = None) -> AlertStats:
        """Counts over all retained alerts."""
        alerts = await self.get_alerts()
        since = (now or datetime.now()) - timedelta(hours=24)
        by_severity = {s: sum(1 for a in alerts if a.severity == s)
                       for s in ("critical", "high", "medium", "low")}
        return AlertStats(
            total=len(alerts),
            unresolved=sum(1 for a in alerts if not a.resolved),
            last_24_hours=sum(1 for a in alerts if a.timestamp >= since),
            **by_severity,
        )

    async def monitor_transaction(self, transaction: TransactionData,
                                  fraud_result: FraudResult) -> List[SecurityAlert]:
        """Raise the alerts a fraud result calls for."""
        alerts = []
        tx_data = transaction.model_dump(mode="json")

        if fraud_result.is_blocked:
            alerts.append(await self.raise_alert(
                "fraud_attempt",
                "critical" if fraud_result.risk_level == "high" else "high",
                f"Fraudulent transaction blocked - {transaction.amount:,.2f} {transaction.currency}",
                f"Transaction to {transaction.recipient} was blocked due to: {', '.join(fraud_result.reasons)}",
                {
                    "amount": transaction.amount,
                    "recipient": transaction.recipient,
                    "risk_score": fraud_result.risk_score,
                    "reasons": fraud_result.reasons,
                },
            ))

        if any(BIOMETRIC_FAILURE_MARKER in reason for reason in fraud_result.reasons):
            alerts.append(await self.raise_alert(
                "biometric_failure",
                "critical",
                "Biometric authentication failure",
                "Potential impostor attempt detected - biometric verification failed",
                {"transaction": tx_data, "failure_type": "biometric_mismatch"},
            ))

        if fraud_result.risk_score > 0.5 and not fraud_result.is_blocked:
            alerts.append(await self.raise_alert(
                "suspicious_login",
                "medium",
                "Suspicious transaction approved with elevated risk",
                f"Transaction approved but flagged with {fraud_result.risk_score * 100:.1f}% risk score",
                {"transaction": tx_data, "risk_score": fraud_result.risk_score},
            ))

        return alerts

    async def on_fraud_analyzed(self, analysis: FraudAnalysis):
        await self.monitor_transaction(analysis.transaction, analysis.result)

    async def notify_critical_event(self, event: LogEvent) -> SecurityAlert:
        """Surface a critical log event as an alert."""
        return await self.raise_alert(
            EVENT_ALERT_TYPES.get(event.type, "system_anomaly"),
            "critical",
            f"Critical {event.type.replace('_', ' ')} event",
            f"A critical security event was recorded at {event.timestamp:%Y-%m-%d %H:%M:%S}",
            {"event_id": event.id, "user_id": event.user_id},
        )

    async def clear_alerts(self):
        await self.store.clear(self.collection)
        logger.info("All alerts cleared")
