"""
Similarity scoring between biometric feature vectors.
"""
import logging
from typing import Sequence, Optional

import numpy as np

from .config import config
from .randomness import RandomSource, NumpyRandomSource

logger = logging.getLogger(__name__)


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Plain cosine similarity; 0 for mismatched lengths or zero vectors."""
    a = np.asarray(vec_a, dtype=np.float64)
    b = np.asarray(vec_b, dtype=np.float64)
    if a.shape != b.shape or a.size == 0:
        return 0.0
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)


def similarity(
    vec_a: Sequence[float],
    vec_b: Sequence[float],
    random_source: Optional[RandomSource] = None,
    inflation_min: Optional[float] = None,
    inflation_max: Optional[float] = None,
    cap: Optional[float] = None,
) -> float:
    """
    Bounded match score between two feature vectors.

    The cosine similarity is scaled by a random factor in
    [inflation_min, inflation_max] to model sensor noise and capped, so a
    perfect capture scores somewhere in [0.8, 0.95] with the defaults.

    Returns:
        Score in [0, cap]; 0 when the vectors cannot be compared
    """
    random_source = random_source or NumpyRandomSource()
    inflation_min = config.get("biometrics.inflation_min", 0.8) if inflation_min is None else inflation_min
    inflation_max = config.get("biometrics.inflation_max", 0.95) if inflation_max is None else inflation_max
    cap = config.get("biometrics.score_cap", 0.95) if cap is None else cap

    if len(vec_a) != len(vec_b):
        logger.debug(f"Cannot compare vectors of length {len(vec_a)} and {len(vec_b)}")
        return 0.0

    base = cosine_similarity(vec_a, vec_b)
    factor = random_source.uniform(inflation_min, inflation_max)
    return min(cap, max(0.0, base * factor))
