"""
Secondary scorers that can be combined with the rule engine.
A secondary scorer produces its own score and reasons; the combined result
takes the maximum of both scores.
"""
import logging
from typing import Dict, List, Optional, Tuple

import numpy as np
from sklearn.ensemble import IsolationForest

from .config import config
from .data_processor import string_entropy
from .models import TransactionData, UserRiskProfile, FraudResult
from .randomness import RandomSource, NumpyRandomSource
from .rule_engine import RiskPolicy

logger = logging.getLogger(__name__)


class SecondaryScorer:
    """Interface for scorers plugged in next to the rule engine."""

    name = "secondary"

    def score(self, transaction: TransactionData, profile: UserRiskProfile) -> float:
        raise NotImplementedError("SecondaryScorer subclasses must implement score")

    def explain(self, score: float) -> List[str]:
        """Reasons to append to the rule-engine reasons for this score."""
        anomaly_threshold = config.get("ml.anomaly_reason_threshold", 0.7)
        deep_threshold = config.get("ml.deep_reason_threshold", 0.8)
        reasons = []
        if score > anomaly_threshold:
            reasons.append("ML model detected anomalous transaction pattern")
        if score > deep_threshold:
            reasons.append("Deep learning model flagged high-risk behavioral indicators")
        return reasons


def extract_features(transaction: TransactionData) -> Dict[str, float]:
    """
    Extract model features from a transaction.

    Args:
        transaction: Transaction data

    Returns:
        Dictionary of features
    """
    timestamp = transaction.timestamp
    return {
        "amount_normalized": min(1.0, transaction.amount / 1000),
        "time_of_day": timestamp.hour / 24,
        "day_of_week": timestamp.weekday() / 7,
        "recipient_entropy": string_entropy(transaction.recipient),
    }


class HeuristicScorer(SecondaryScorer):
    """
    Placeholder for a learned model.

    A small random base score plus fixed bumps for late-night activity,
    large amounts and random-looking recipient names.
    """

    name = "heuristic"

    def __init__(self, random_source: Optional[RandomSource] = None,
                 base_weight: Optional[float] = None):
        self.random_source = random_source or NumpyRandomSource()
        self.base_weight = config.get("ml.heuristic_base_weight", 0.3) if base_weight is None else base_weight

    def score(self, transaction: TransactionData, profile: UserRiskProfile) -> float:
        features = extract_features(transaction)
        ml_score = self.random_source.random() * self.base_weight

        # Late night/early morning
        if features["time_of_day"] < 0.25 or features["time_of_day"] > 0.92:
            ml_score += 0.2

        if features["amount_normalized"] > 0.8:
            ml_score += 0.3

        # Random-looking recipient names
        if features["recipient_entropy"] > 0.8:
            ml_score += 0.2

        return min(1.0, ml_score)


class ProfileAnomalyScorer(SecondaryScorer):
    """
    Isolation forest fitted on the user's own retained history.

    Scores how isolated the new (amount, hour, weekday) point is among past
    transactions. Returns 0 until the profile holds enough history.
    """

    name = "isolation_forest"

    def __init__(self, min_history: Optional[int] = None, n_estimators: Optional[int] = None,
                 random_state: Optional[int] = None):
        self.min_history = config.get("ml.anomaly_min_history", 10) if min_history is None else min_history
        self.n_estimators = config.get("ml.anomaly_estimators", 100) if n_estimators is None else n_estimators
        self.random_state = config.get("ml.random_state", 42) if random_state is None else random_state

    @staticmethod
    def _vector(amount: float, hour: int, weekday: int) -> List[float]:
        return [float(np.log1p(amount)), hour / 24, weekday / 7]

    def score(self, transaction: TransactionData, profile: UserRiskProfile) -> float:
        history = profile.transaction_history
        if len(history) < self.min_history:
            return 0.0

        X = np.array([self._vector(e.amount, e.timestamp.hour, e.timestamp.weekday()) for e in history])
        model = IsolationForest(n_estimators=self.n_estimators, random_state=self.random_state)
        model.fit(X)

        point = np.array([self._vector(transaction.amount, transaction.timestamp.hour,
                                       transaction.timestamp.weekday())])
        # score_samples is the negated anomaly score: about -0.5 for inliers,
        # close to -1 for outliers. Rescale so inliers land at 0.
        anomaly = float(-model.score_samples(point)[0])
        return min(1.0, max(0.0, (anomaly - 0.5) * 2))


def combine_results(rule_result: FraudResult, secondary_score: float, secondary_reasons: List[str],
                    policy: Optional[RiskPolicy] = None) -> FraudResult:
    """
    Merge a rule-engine result with a secondary score.

    The combined score is the maximum of both, the tier follows the combined
    score, and the block decision stays the rule engine's.
    """
    policy = policy or RiskPolicy.from_config()
    combined = min(1.0, max(rule_result.risk_score, secondary_score))
    return rule_result.model_copy(update={
        "risk_score": combined,
        "reasons": rule_result.reasons + secondary_reasons,
        "risk_level": policy.risk_level(combined),
        "secondary_score": secondary_score,
    })


def score_with(scorer: SecondaryScorer, transaction: TransactionData,
               profile: UserRiskProfile) -> Tuple[float, List[str]]:
    """Run a scorer and collect its reasons; a failing scorer contributes nothing."""
    try:
        value = scorer.score(transaction, profile)
    except Exception as e:
        logger.error(f"Secondary scorer {scorer.name} failed: {str(e)}")
        return 0.0, []
    return value, scorer.explain(value)
