"""
Append-only, encrypted security event log with filtering and report export.
"""
import json
import logging
from datetime import datetime
from typing import Dict, List, Any, Optional

import pandas as pd
import pydantic

from .database import EncryptedStore
from .exceptions import StorageError, ValidationError
from .models import (
    LogEvent, EventFilters, ExportArtifact, Location, FraudAnalysis, SEVERITIES, generate_id,
)

logger = logging.getLogger(__name__)

CHATBOT_MESSAGE_LIMIT = 100


class SecurityEventLog:
    """
    Security event ledger.

    Appends never raise on persistence problems: the failure is logged and
    the caller carries on. Critical events are also handed to the notifier
    (usually the AlertManager), best-effort.
    """

    collection = "events"

    def __init__(self, store: EncryptedStore, notifier=None):
        self.store = store
        self.notifier = notifier

    async def append(
        self,
        type: str,
        severity: str,
        details: Dict[str, Any],
        user_id: Optional[str] = None,
        location: Optional[Location] = None,
        device_fingerprint: Optional[str] = None,
        notify: bool = True
    ) -> str:
        """
        Record an event.

        Returns:
            Event ID (also when the event could not be persisted)

        Raises:
            ValidationError: unknown event type or severity
        """
        try:
            event = LogEvent(
                type=type,
                severity=severity,
                details=details,
                user_id=user_id,
                location=location,
                device_fingerprint=device_fingerprint,
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid log event: {str(e)}") from e

        try:
            await self.store.put(self.collection, event.id, event.model_dump(mode="json"))
        except StorageError as e:
            logger.error(f"Failed to persist {type} event {event.id}: {str(e)}")

        logger.info(f"{severity.upper()}: {type} {event.id}")

        if notify and severity == "critical" and self.notifier is not None:
            try:
                await self.notifier.notify_critical_event(event)
            except Exception as e:
                logger.warning(f"Critical event notification failed for {event.id}: {str(e)}")

        return event.id

    async def query(self, filters: Optional[EventFilters] = None, **kwargs) -> List[LogEvent]:
        """
        Get events matching the filters, newest first.

        Filters may be passed as an EventFilters instance or as keyword
        arguments (type, severity, user_id, start_date, end_date).
        """
        filters = filters or EventFilters(**kwargs)
        rows = await self.store.find(
            self.collection,
            {"type": filters.type, "severity": filters.severity, "user_id": filters.user_id},
            filters.start_date,
            filters.end_date,
        )
        events = [LogEvent.model_validate(row) for row in rows]
        return sorted(events, key=lambda e: (e.timestamp, e.id), reverse=True)

    async def export_report(self, filters: Optional[EventFilters] = None, fmt: str = "json") -> ExportArtifact:
        """
        Build a timestamped report of the matching events.

        The report carries severity and type counts plus every event with its
        decrypted details, and a copy is kept encrypted in the store.

        Args:
            filters: Optional event filters
            fmt: "json" or "text"

        Returns:
            Downloadable artifact
        """
        if fmt not in ("json", "text"):
            raise ValidationError(f"Unsupported report format: {fmt}")

        filters = filters or EventFilters()
        events = await self.query(filters)
        generated_at = datetime.now()

        df = pd.DataFrame([{"severity": e.severity, "type": e.type} for e in events],
                          columns=["severity", "type"])
        severity_counts = df["severity"].value_counts().reindex(SEVERITIES, fill_value=0)
        type_counts = df["type"].value_counts()

        report = {
            "report_id": generate_id("report"),
            "generated_at": generated_at.isoformat(),
            "filters": filters.model_dump(mode="json", exclude_none=True),
            "total_events": len(events),
            "severity_counts": {k: int(v) for k, v in severity_counts.items()},
            "type_counts": {k: int(v) for k, v in type_counts.items()},
            "events": [
                {
                    "id": e.id,
                    "timestamp": e.timestamp.isoformat(),
                    "type": e.type,
                    "severity": e.severity,
                    "user_id": e.user_id or "anonymous",
                    "encrypted": e.encrypted,
                    "details": e.details,
                }
                for e in events
            ],
        }

        try:
            await self.store.put("reports", report["report_id"], report)
        except StorageError as e:
            logger.error(f"Failed to persist report {report['report_id']}: {str(e)}")

        stamp = generated_at.strftime("%Y%m%d-%H%M%S")
        if fmt == "json":
            return ExportArtifact(
                filename=f"security-report-{stamp}.json",
                mime_type="application/json",
                content=json.dumps(report, indent=2).encode("utf-8"),
                report_id=report["report_id"],
            )
        return ExportArtifact(
            filename=f"security-report-{stamp}.txt",
            mime_type="text/plain",
            content=self._render_text(report).encode("utf-8"),
            report_id=report["report_id"],
        )

    @staticmethod
    def _render_text(report: Dict[str, Any]) -> str:
        lines = [
            "FACE-TO-PHONE SECURITY REPORT",
            f"Generated: {report['generated_at']}",
            f"Report ID: {report['report_id']}",
        ]
        if report["filters"]:
            lines.append("Filters: " + ", ".join(f"{k}={v}" for k, v in report["filters"].items()))
        lines.append(f"Total events: {report['total_events']}")
        lines.append("")
        lines.append("Severity summary:")
        for severity, count in report["severity_counts"].items():
            lines.append(f"  {severity:<9}{count}")
        lines.append("")
        lines.append("Events:")
        for e in report["events"]:
            lines.append(f"  {e['timestamp']}  [{e['severity'].upper()}] {e['type']}  user={e['user_id']}  id={e['id']}")
            for key, value in e["details"].items():
                lines.append(f"      {key}: {value}")
        return "\n".join(lines) + "\n"

    async def get_report(self, report_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get("reports", report_id)

    async def clear_events(self):
        await self.store.clear(self.collection)
        logger.info("All events cleared")

    # Predefined logging methods for common events

    async def log_login(self, user_id: str, success: bool, method: str,
                        user_agent: Optional[str] = None) -> str:
        return await self.append(
            "login",
            "low" if success else "medium",
            {
                "success": success,
                "method": method,
                "user_agent": user_agent,
                "timestamp": datetime.now().isoformat(),
            },
            user_id,
        )

    async def log_fraud_alert(self, user_id: str, alert_type: str, risk_score: float,
                              details: Any, notify: bool = True) -> str:
        return await self.append(
            "fraud_alert",
            "critical" if risk_score > 0.8 else "high",
            {"alert_type": alert_type, "risk_score": risk_score, "details": details},
            user_id,
            notify=notify,
        )

    async def log_ai_action(self, action: str, confidence: float, details: Any,
                            model: str = "fraud_detection_v1") -> str:
        return await self.append(
            "ai_action",
            "low" if confidence > 0.9 else "medium",
            {"action": action, "confidence": confidence, "details": details, "model": model},
        )

    async def log_chatbot_message(self, user_id: str, message: str, language: str) -> str:
        return await self.append(
            "chatbot_message",
            "low",
            {
                "message": message[:CHATBOT_MESSAGE_LIMIT],
                "language": language,
                "message_length": len(message),
            },
            user_id,
        )

    async def log_transaction(self, user_id: str, amount: float, type: str, status: str,
                              currency: str = "KSH", **extra) -> str:
        return await self.append(
            "transaction",
            "medium" if status in ("failed", "blocked") else "low",
            {"amount": amount, "type": type, "status": status, "currency": currency, **extra},
            user_id,
        )

    async def log_biometric_event(self, user_id: str, type: str, success: bool,
                                  confidence: Optional[float] = None) -> str:
        return await self.append(
            "biometric",
            "low" if success else "medium",
            {"type": type, "success": success, "confidence": confidence},
            user_id,
        )

    async def log_sim_swap(self, user_id: str, detected: bool, details: Optional[Dict[str, Any]] = None) -> str:
        return await self.append(
            "sim_swap",
            "critical" if detected else "low",
            {"detected": detected, **(details or {})},
            user_id,
        )

    async def log_system(self, event: str, details: Optional[Dict[str, Any]] = None) -> str:
        return await self.append("system", "low", {"event": event, **(details or {})})

    async def on_fraud_analyzed(self, analysis: FraudAnalysis):
        """Record a scored transaction and, when blocked, a fraud alert."""
        result = analysis.result
        status = "blocked" if result.is_blocked else "approved"
        await self.log_transaction(
            analysis.user_id,
            analysis.transaction.amount,
            "transfer",
            status,
            currency=analysis.transaction.currency,
            record_id=analysis.record_id,
            risk_score=result.risk_score,
            risk_level=result.risk_level,
        )
        if result.is_blocked:
            await self.log_fraud_alert(
                analysis.user_id,
                "transaction_blocked",
                result.risk_score,
                {"reasons": result.reasons, "record_id": analysis.record_id,
                 "device_fingerprint": analysis.device_fingerprint},
                # AlertManager.monitor_transaction already alerts on this decision
                notify=False,
            )
