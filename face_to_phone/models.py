"""
Data models and schema definitions for the Face-to-Phone security core.
Defines Pydantic models for transactions, risk profiles, alerts and events.
"""
import threading
import time
from datetime import datetime
from typing import Dict, List, Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

RISK_LEVELS = ["low", "medium", "high"]
SEVERITIES = ["low", "medium", "high", "critical"]
TRANSACTION_STATUSES = ["pending", "approved", "completed", "blocked", "failed"]
ALERT_TYPES = ["fraud_attempt", "biometric_failure", "suspicious_login", "system_anomaly"]
EVENT_TYPES = [
    "login", "fraud_alert", "ai_action", "chatbot_message", "transaction",
    "biometric", "ussd", "sms_scan", "sim_swap", "system",
]
BIOMETRIC_TYPES = ["face", "voice"]
ACCOUNT_TYPES = ["individual", "business"]

_id_lock = threading.Lock()
_last_id_ns = 0


def generate_id(prefix: str) -> str:
    """
    Generate a unique ID with a prefix.

    The leading part is a strictly increasing nanosecond counter so ids sort
    in creation order within a process.
    """
    global _last_id_ns
    with _id_lock:
        now = max(time.time_ns(), _last_id_ns + 1)
        _last_id_ns = now
    return f"{prefix}_{now:016x}{uuid4().hex[:12]}"


def _check_choice(value: str, choices: List[str], field: str) -> str:
    if value not in choices:
        raise ValueError(f"{field} must be one of {choices}")
    return value


def _naive_local(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes become naive local time, the form every stored timestamp uses."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


class Location(BaseModel):
    """Geographic position attached to a transaction or event."""
    lat: float
    lng: float


class TransactionData(BaseModel):
    """Transaction submitted for analysis."""
    amount: float
    recipient: str
    timestamp: datetime = Field(default_factory=datetime.now)
    user_verified: bool
    description: Optional[str] = None
    currency: str = "KSH"

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v):
        return _naive_local(v)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        if v <= 0:
            raise ValueError("amount must be greater than zero")
        return v

    @field_validator("recipient")
    @classmethod
    def validate_recipient(cls, v):
        if not v or not v.strip():
            raise ValueError("recipient must not be empty")
        return v.strip()

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 250.0,
            "recipient": "Jane Wanjiru",
            "timestamp": "2024-03-01T12:30:00",
            "user_verified": True,
            "currency": "KSH",
        }
    })


class HistoryEntry(BaseModel):
    """A past transaction retained in the rolling risk profile."""
    amount: float
    timestamp: datetime
    recipient: str

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v):
        return _naive_local(v)


class UserRiskProfile(BaseModel):
    """Per-user rolling statistics used as the fraud baseline."""
    user_id: str
    average_transaction_amount: float = 0.0
    transaction_history: List[HistoryEntry] = []
    last_transaction_time: Optional[datetime] = None
    suspicious_activity_count: int = 0

    @field_validator("last_transaction_time")
    @classmethod
    def normalize_last_transaction_time(cls, v):
        return _naive_local(v)

    def knows_recipient(self, recipient: str) -> bool:
        return any(entry.recipient == recipient for entry in self.transaction_history)


class RuleResult(BaseModel):
    """Result of a single rule evaluation."""
    rule_id: str
    triggered: bool
    score: float = 0.0
    reason: str
    forces_block: bool = False


class FraudResult(BaseModel):
    """Decision produced by the risk engine."""
    is_blocked: bool
    risk_score: float
    reasons: List[str] = []
    risk_level: str
    triggered_rules: List[str] = []
    secondary_score: Optional[float] = None

    @field_validator("risk_score")
    @classmethod
    def clamp_risk_score(cls, v):
        return min(1.0, max(0.0, v))

    @field_validator("risk_level")
    @classmethod
    def validate_risk_level(cls, v):
        return _check_choice(v, RISK_LEVELS, "risk_level")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "is_blocked": True,
            "risk_score": 0.8,
            "reasons": ["Biometric verification failed - impostor detected"],
            "risk_level": "high",
            "triggered_rules": ["BIOMETRIC_FAILED"],
        }
    })


class TransactionRecord(BaseModel):
    """Persisted, append-only record of one transaction attempt."""
    id: str = Field(default_factory=lambda: generate_id("tx"))
    user_id: str
    recipient: str
    amount: float
    currency: str = "KSH"
    description: Optional[str] = None
    status: str
    fraud_score: float
    fraud_reasons: List[str] = []
    risk_level: str = "low"
    biometric_verified: bool
    timestamp: datetime = Field(default_factory=datetime.now)
    device_fingerprint: str = "unknown"
    location: Optional[Location] = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v):
        return _naive_local(v)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _check_choice(v, TRANSACTION_STATUSES, "status")

    model_config = ConfigDict(frozen=True)


class TransactionStats(BaseModel):
    """Aggregate figures over stored transactions."""
    total: int = 0
    approved: int = 0
    blocked: int = 0
    total_amount: float = 0.0
    average_amount: float = 0.0
    average_fraud_score: float = 0.0


class SecurityAlert(BaseModel):
    """User-facing security notification."""
    id: str = Field(default_factory=lambda: generate_id("alert"))
    type: str
    severity: str
    title: str
    description: str
    timestamp: datetime = Field(default_factory=datetime.now)
    metadata: Dict[str, Any] = {}
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        return _check_choice(v, ALERT_TYPES, "type")

    @field_validator("severity")
    @classmethod
    def validate_severity(cls, v):
        return _check_choice(v, SEVERITIES, "severity")


class AlertStats(BaseModel):
    total: int = 0
    unresolved: int = 0
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    last_24_hours: int = 0


class LogEvent(BaseModel):
    """Entry of the security event log; ``details`` are encrypted at rest."""
    id: str = Field(default_factory=lambda: generate_id("evt"))
    timestamp: datetime = Field(default_factory=datetime.now)
    type: str
    severity: str
    user_id: Optional[str] = None
    details: Dict[str, Any] = {}
    encrypted: bool = True
    location: Optional[Location] = None
    device_fingerprint: Optional[str] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        return _check_choice(v, EVENT_TYPES, "type")

    @field_validator("severity")
    @classmethod
    def validate_severity(cls, v):
        return _check_choice(v, SEVERITIES, "severity")


class EventFilters(BaseModel):
    """Filters accepted by the event log query and export."""
    type: Optional[str] = None
    severity: Optional[str] = None
    user_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ExportArtifact(BaseModel):
    """Downloadable report produced by the event log."""
    filename: str
    mime_type: str
    content: bytes
    report_id: str


class BiometricTemplate(BaseModel):
    """Stored feature vector for one (user, modality) pair."""
    id: str
    user_id: str
    type: str
    template: List[float]
    confidence: float = 1.0
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        return _check_choice(v, BIOMETRIC_TYPES, "type")


class VerificationResult(BaseModel):
    modality: str
    match: bool
    confidence: float


class UserAccount(BaseModel):
    """Registered account holder."""
    id: str = Field(default_factory=lambda: generate_id("user"))
    account_type: str = "individual"
    full_name: str
    phone_number: str
    email: str
    business_name: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    trust_score: int = 85

    @field_validator("account_type")
    @classmethod
    def validate_account_type(cls, v):
        return _check_choice(v, ACCOUNT_TYPES, "account_type")


class FraudAnalysis(BaseModel):
    """Payload published after a transaction has been scored and recorded."""
    user_id: str
    transaction: TransactionData
    result: FraudResult
    record_id: Optional[str] = None
    device_fingerprint: Optional[str] = None
    analyzed_at: datetime = Field(default_factory=datetime.now)


class TransactionOutcome(BaseModel):
    """What the caller of the transaction flow gets back."""
    record: TransactionRecord
    result: FraudResult
    message: str
