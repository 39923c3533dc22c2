"""
Data processing utilities for the Face-to-Phone security core.
Handles simulated biometric feature extraction, device fingerprints and
transaction summaries.
"""
import hashlib
import json
import logging
from typing import Dict, List, Any, Union, Iterable

import numpy as np
import pandas as pd

from .models import TransactionStats, TransactionRecord

logger = logging.getLogger(__name__)

Capture = Union[str, bytes]


def _digest(capture: Capture) -> bytes:
    if isinstance(capture, str):
        capture = capture.encode("utf-8")
    return hashlib.sha256(capture).digest()


def _expand_digest(capture: Capture, size: int) -> np.ndarray:
    """Spread a SHA-256 digest over ``size`` values in [-1, 1]."""
    digest = np.frombuffer(_digest(capture), dtype=np.uint8).astype(np.float64)
    return np.resize(digest, size) / 255.0 * 2 - 1


def simulate_face_embedding(image_data: Capture, size: int = 128) -> List[float]:
    """
    Derive a face embedding from a captured image.

    This stands in for a real face-embedding model: identical captures give
    identical vectors, anything else gives an unrelated vector.
    """
    return _expand_digest(image_data, size).tolist()


def simulate_voice_features(audio_data: bytes, size: int = 64) -> List[float]:
    """Derive voice features from a recorded sample (stand-in for MFCC extraction)."""
    return _expand_digest(audio_data, size).tolist()


def generate_device_fingerprint(environment: Dict[str, Any]) -> str:
    """
    Summarise client environment traits into a stable identifier.

    Args:
        environment: Traits such as user_agent, language, platform,
            screen_resolution, timezone, hardware_concurrency

    Returns:
        Hex digest identifying the device
    """
    canonical = json.dumps(environment, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def string_entropy(text: str) -> float:
    """Shannon entropy of ``text`` normalised to [0, 1] by its maximum for the length."""
    if len(text) <= 1:
        return 0.0
    _, counts = np.unique(list(text.lower()), return_counts=True)
    probabilities = counts / len(text)
    entropy = float(-(probabilities * np.log2(probabilities)).sum())
    return entropy / float(np.log2(len(text)))


def summarize_transactions(records: Iterable[TransactionRecord]) -> TransactionStats:
    """
    Compute totals and averages over transaction records.

    Args:
        records: Transaction records

    Returns:
        Transaction statistics (all zero when there are no records)
    """
    df = pd.DataFrame([
        {"status": r.status, "amount": r.amount, "fraud_score": r.fraud_score}
        for r in records
    ])
    if df.empty:
        return TransactionStats()

    status_counts = df["status"].value_counts()
    return TransactionStats(
        total=len(df),
        approved=int(status_counts.get("approved", 0) + status_counts.get("completed", 0)),
        blocked=int(status_counts.get("blocked", 0)),
        total_amount=float(df["amount"].sum()),
        average_amount=float(df["amount"].mean()),
        average_fraud_score=float(df["fraud_score"].mean()),
    )
