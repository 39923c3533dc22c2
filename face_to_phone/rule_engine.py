"""
Rule Engine for the Face-to-Phone fraud checks
Implements independently weighted rules whose scores add up to a clamped
risk score, a risk tier and a block decision
"""
import logging
from datetime import timedelta
from typing import Dict, List, Any, Optional, Iterable

from pydantic import BaseModel

from .config import config
from .models import (
    TransactionData, UserRiskProfile, HistoryEntry, FraudResult, RuleResult, TransactionRecord,
)
from .randomness import RandomSource, NumpyRandomSource

logger = logging.getLogger(__name__)

BIOMETRIC_FAILURE_REASON = "Biometric verification failed - impostor detected"


class RiskPolicy(BaseModel):
    """Tunable constants of the risk engine."""
    block_threshold: float = 0.6
    high_risk_threshold: float = 0.7
    medium_risk_threshold: float = 0.4
    max_history: int = 50
    biometric_failure_weight: float = 0.8
    amount_multiplier: float = 3.0
    amount_step_weight: float = 0.2
    amount_max_weight: float = 0.6
    suspicious_hours_start: int = 22
    suspicious_hours_end: int = 6
    suspicious_hours_weight: float = 0.3
    rapid_transaction_minutes: float = 5
    rapid_transaction_weight: float = 0.4
    round_amount_minimum: float = 1000.0
    round_amount_multiple: float = 100.0
    round_amount_weight: float = 0.2
    new_recipient_minimum: float = 500.0
    new_recipient_weight: float = 0.3
    sim_swap_probability: float = 0.1
    sim_swap_weight: float = 0.7
    velocity_window_hours: float = 24
    velocity_max_transactions: int = 5
    velocity_weight: float = 0.4

    @classmethod
    def from_config(cls) -> "RiskPolicy":
        return cls(**config.get("risk", {}))

    def risk_level(self, score: float) -> str:
        if score >= self.high_risk_threshold:
            return "high"
        if score >= self.medium_risk_threshold:
            return "medium"
        return "low"


class Rule:
    """Base class for fraud detection rules"""
    def __init__(self, rule_id: str, description: str, weight: float, forces_block: bool = False):
        self.rule_id = rule_id
        self.description = description
        self.weight = weight
        self.forces_block = forces_block

    def evaluate(self, transaction: TransactionData, context: Dict[str, Any]) -> RuleResult:
        """Evaluate the rule against a transaction"""
        raise NotImplementedError("Rule subclasses must implement evaluate")

    def _hit(self, reason: str, score: Optional[float] = None) -> RuleResult:
        return RuleResult(
            rule_id=self.rule_id,
            triggered=True,
            score=self.weight if score is None else score,
            reason=reason,
            forces_block=self.forces_block,
        )

    def _miss(self, reason: str) -> RuleResult:
        return RuleResult(rule_id=self.rule_id, triggered=False, score=0.0, reason=reason)


class BiometricRule(Rule):
    """Fails every transaction whose biometric verification did not pass"""
    def evaluate(self, transaction: TransactionData, context: Dict[str, Any]) -> RuleResult:
        if not transaction.user_verified:
            return self._hit(BIOMETRIC_FAILURE_REASON)
        return self._miss("Biometric verification passed")


class AmountAnomalyRule(Rule):
    """Detects amounts far above the user's rolling average"""
    def __init__(self, rule_id: str, description: str, multiplier: float,
                 step_weight: float, max_weight: float):
        super().__init__(rule_id, description, max_weight)
        self.multiplier = multiplier
        self.step_weight = step_weight

    def evaluate(self, transaction: TransactionData, context: Dict[str, Any]) -> RuleResult:
        profile: UserRiskProfile = context["profile"]
        baseline = profile.average_transaction_amount
        if baseline <= 0:
            return self._miss("No transaction baseline yet")

        ratio = transaction.amount / baseline
        if ratio > self.multiplier:
            return self._hit(
                f"Transaction amount {ratio:.1f}x above normal baseline ({baseline:.2f})",
                score=min(self.weight, (ratio - self.multiplier) * self.step_weight),
            )
        return self._miss("Transaction amount within normal range")


class SuspiciousHoursRule(Rule):
    """Flags transactions late at night or early in the morning"""
    def __init__(self, rule_id: str, description: str, start_hour: int, end_hour: int, weight: float):
        super().__init__(rule_id, description, weight)
        self.start_hour = start_hour
        self.end_hour = end_hour

    def evaluate(self, transaction: TransactionData, context: Dict[str, Any]) -> RuleResult:
        hour = transaction.timestamp.hour
        if hour >= self.start_hour or hour <= self.end_hour:
            return self._hit(f"Transaction attempted during suspicious hours ({hour}:00)")
        return self._miss("Transaction time within normal hours")


class RapidSuccessionRule(Rule):
    """Detects a transaction following the previous one too closely"""
    def __init__(self, rule_id: str, description: str, window_minutes: float, weight: float):
        super().__init__(rule_id, description, weight)
        self.window = timedelta(minutes=window_minutes)

    def evaluate(self, transaction: TransactionData, context: Dict[str, Any]) -> RuleResult:
        profile: UserRiskProfile = context["profile"]
        if profile.last_transaction_time is None:
            return self._miss("First transaction from this user")
        if transaction.timestamp - profile.last_transaction_time < self.window:
            return self._hit("Rapid successive transactions detected")
        return self._miss("Transaction spacing within normal limits")


class RoundAmountRule(Rule):
    """Detects large round amounts (structuring pattern)"""
    def __init__(self, rule_id: str, description: str, minimum: float, multiple: float, weight: float):
        super().__init__(rule_id, description, weight)
        self.minimum = minimum
        self.multiple = multiple

    def evaluate(self, transaction: TransactionData, context: Dict[str, Any]) -> RuleResult:
        amount = transaction.amount
        if amount >= self.minimum and amount % self.multiple == 0:
            return self._hit("Large round amount transaction - potential money laundering pattern")
        return self._miss("Amount is not a large round figure")


class NewRecipientRule(Rule):
    """Detects a large first payment to an unknown recipient"""
    def __init__(self, rule_id: str, description: str, minimum: float, weight: float):
        super().__init__(rule_id, description, weight)
        self.minimum = minimum

    def evaluate(self, transaction: TransactionData, context: Dict[str, Any]) -> RuleResult:
        profile: UserRiskProfile = context["profile"]
        if not profile.knows_recipient(transaction.recipient) and transaction.amount > self.minimum:
            return self._hit("Large transaction to new recipient")
        return self._miss("Recipient known or amount small")


class SimSwapRule(Rule):
    """
    Simulated SIM swap / device mismatch signal.

    Fires with a fixed probability drawn from the injected random source; it
    stands in for a real device or carrier signal.
    """
    def __init__(self, rule_id: str, description: str, probability: float, weight: float):
        super().__init__(rule_id, description, weight)
        self.probability = probability

    def evaluate(self, transaction: TransactionData, context: Dict[str, Any]) -> RuleResult:
        random_source: RandomSource = context["random_source"]
        if random_source.random() < self.probability:
            return self._hit("Potential SIM swap detected - device fingerprint mismatch")
        return self._miss("Device fingerprint consistent")


class VelocityRule(Rule):
    """Detects too many transactions in the trailing window"""
    def __init__(self, rule_id: str, description: str, window_hours: float,
                 max_transactions: int, weight: float):
        super().__init__(rule_id, description, weight)
        self.window = timedelta(hours=window_hours)
        self.max_transactions = max_transactions

    def evaluate(self, transaction: TransactionData, context: Dict[str, Any]) -> RuleResult:
        profile: UserRiskProfile = context["profile"]
        recent = [
            entry for entry in profile.transaction_history
            if transaction.timestamp - entry.timestamp < self.window
        ]
        if len(recent) >= self.max_transactions:
            return self._hit(
                f"Transaction velocity limit exceeded ({self.max_transactions}+ transactions in "
                f"{self.window.total_seconds() / 3600:g}h)"
            )
        return self._miss("Transaction frequency within normal limits")


class RuleEngine:
    """Main rule engine that coordinates rule evaluation"""
    def __init__(self, policy: Optional[RiskPolicy] = None,
                 random_source: Optional[RandomSource] = None):
        self.policy = policy or RiskPolicy.from_config()
        self.random_source = random_source or NumpyRandomSource()
        self.rules: List[Rule] = []
        self._initialize_default_rules()

    def _initialize_default_rules(self):
        """Initialize the default rule set"""
        p = self.policy
        self.rules = [
            BiometricRule(
                rule_id="BIOMETRIC_FAILED",
                description="Blocks transactions without a passing biometric check",
                weight=p.biometric_failure_weight,
                forces_block=True
            ),
            AmountAnomalyRule(
                rule_id="AMOUNT_ANOMALY",
                description="Detects amounts far above the rolling average",
                multiplier=p.amount_multiplier,
                step_weight=p.amount_step_weight,
                max_weight=p.amount_max_weight
            ),
            SuspiciousHoursRule(
                rule_id="SUSPICIOUS_HOURS",
                description="Detects transactions at unusual hours",
                start_hour=p.suspicious_hours_start,
                end_hour=p.suspicious_hours_end,
                weight=p.suspicious_hours_weight
            ),
            RapidSuccessionRule(
                rule_id="RAPID_SUCCESSION",
                description="Detects transactions in quick succession",
                window_minutes=p.rapid_transaction_minutes,
                weight=p.rapid_transaction_weight
            ),
            RoundAmountRule(
                rule_id="ROUND_AMOUNT",
                description="Detects large round amounts",
                minimum=p.round_amount_minimum,
                multiple=p.round_amount_multiple,
                weight=p.round_amount_weight
            ),
            NewRecipientRule(
                rule_id="NEW_RECIPIENT",
                description="Detects large payments to new recipients",
                minimum=p.new_recipient_minimum,
                weight=p.new_recipient_weight
            ),
            SimSwapRule(
                rule_id="SIM_SWAP",
                description="Simulated SIM swap / device mismatch signal",
                probability=p.sim_swap_probability,
                weight=p.sim_swap_weight
            ),
            VelocityRule(
                rule_id="DAILY_VELOCITY",
                description="Detects too many transactions per day",
                window_hours=p.velocity_window_hours,
                max_transactions=p.velocity_max_transactions,
                weight=p.velocity_weight
            ),
        ]

    def add_rule(self, rule: Rule):
        """Add a custom rule to the engine"""
        self.rules.append(rule)

    def remove_rule(self, rule_id: str) -> bool:
        """Remove a rule by ID"""
        initial_count = len(self.rules)
        self.rules = [r for r in self.rules if r.rule_id != rule_id]
        return len(self.rules) < initial_count

    def evaluate(self, transaction: TransactionData, profile: UserRiskProfile) -> List[RuleResult]:
        """Evaluate all rules against a transaction"""
        context = {
            "profile": profile,
            "random_source": self.random_source,
            "policy": self.policy,
        }

        results = []
        for rule in self.rules:
            try:
                results.append(rule.evaluate(transaction, context))
            except Exception as e:
                logger.error(f"Error evaluating rule {rule.rule_id}: {str(e)}")
                results.append(RuleResult(
                    rule_id=rule.rule_id,
                    triggered=False,
                    score=0.0,
                    reason=f"Rule evaluation failed: {str(e)}"
                ))
        return results

    def analyze(self, transaction: TransactionData, profile: UserRiskProfile) -> FraudResult:
        """
        Score a transaction against the user's profile.

        Neither argument is modified; the caller applies ``update_profile``
        afterwards.

        Returns:
            Fraud result with clamped score, tier, block decision and reasons
        """
        triggered = [r for r in self.evaluate(transaction, profile) if r.triggered]
        raw_score = sum(r.score for r in triggered)
        risk_score = min(1.0, max(0.0, raw_score))

        result = FraudResult(
            is_blocked=risk_score >= self.policy.block_threshold or any(r.forces_block for r in triggered),
            risk_score=risk_score,
            reasons=[r.reason for r in triggered],
            risk_level=self.policy.risk_level(risk_score),
            triggered_rules=[r.rule_id for r in triggered],
        )
        logger.debug(f"Analysis result: score={risk_score:.2f} level={result.risk_level} "
                     f"blocked={result.is_blocked} rules={result.triggered_rules}")
        return result


def _append_history(profile: UserRiskProfile, entry: HistoryEntry, max_history: int) -> UserRiskProfile:
    history = (profile.transaction_history + [entry])[-max_history:]
    return profile.model_copy(update={
        "transaction_history": history,
        "average_transaction_amount": sum(e.amount for e in history) / len(history),
        "last_transaction_time": entry.timestamp,
    })


def update_profile(profile: UserRiskProfile, transaction: TransactionData,
                   max_history: int = 50, suspicious: bool = False) -> UserRiskProfile:
    """
    Return a new profile with the transaction appended.

    History keeps the most recent ``max_history`` entries (oldest evicted
    first); the average and last transaction time are recomputed.
    """
    entry = HistoryEntry(
        amount=transaction.amount,
        timestamp=transaction.timestamp,
        recipient=transaction.recipient,
    )
    updated = _append_history(profile, entry, max_history)
    if suspicious:
        updated.suspicious_activity_count += 1
    return updated


def rebuild_profile(user_id: str, records: Iterable[TransactionRecord],
                    max_history: int = 50) -> UserRiskProfile:
    """Re-derive a profile from the transaction log, oldest record first."""
    profile = UserRiskProfile(user_id=user_id)
    for record in sorted(records, key=lambda r: r.timestamp):
        entry = HistoryEntry(amount=record.amount, timestamp=record.timestamp, recipient=record.recipient)
        profile = _append_history(profile, entry, max_history)
        if record.risk_level != "low":
            profile.suspicious_activity_count += 1
    return profile


ATTACK_SCENARIOS: Dict[str, FraudResult] = {
    "face_spoof": FraudResult(
        is_blocked=True,
        risk_score=0.95,
        reasons=["Biometric verification failed - face spoofing detected", "Impostor attempt blocked"],
        risk_level="high",
    ),
    "voice_clone": FraudResult(
        is_blocked=True,
        risk_score=0.9,
        reasons=["Biometric verification failed - voice cloning detected",
                 "Synthetic voice pattern identified"],
        risk_level="high",
    ),
    "large_amount": FraudResult(
        is_blocked=True,
        risk_score=0.8,
        reasons=["Transaction amount 10.0x above normal baseline (50.00)",
                 "Large round amount transaction - potential money laundering pattern"],
        risk_level="high",
    ),
    "suspicious_time": FraudResult(
        is_blocked=True,
        risk_score=0.7,
        reasons=["Transaction attempted during suspicious hours (2:00)",
                 "Rapid successive transactions detected",
                 "Potential SIM swap detected - device fingerprint mismatch"],
        risk_level="high",
    ),
}


def simulate_attack(attack_type: str) -> FraudResult:
    """Canned demo result for a named attack; unknown names give a clean low-risk result."""
    scenario = ATTACK_SCENARIOS.get(attack_type)
    if scenario is None:
        return FraudResult(is_blocked=False, risk_score=0.1, reasons=[], risk_level="low")
    return scenario.model_copy(deep=True)
