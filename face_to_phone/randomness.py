"""
Randomness sources for the simulated parts of the system.

Business rules never call a global RNG; they receive a RandomSource so tests
can replay a fixed sequence.
"""
from itertools import cycle
from typing import Iterable, Optional

import numpy as np


class RandomSource:
    """Source of uniform floats in [0, 1)."""

    def random(self) -> float:
        raise NotImplementedError("RandomSource subclasses must implement random")

    def uniform(self, low: float, high: float) -> float:
        return low + (high - low) * self.random()


class NumpyRandomSource(RandomSource):
    """Default source backed by a numpy Generator."""

    def __init__(self, seed: Optional[int] = None):
        self._rng = np.random.default_rng(seed)

    def random(self) -> float:
        return float(self._rng.random())


class SequenceRandomSource(RandomSource):
    """Replays the given values in a loop."""

    def __init__(self, values: Iterable[float]):
        values = list(values)
        if not values:
            raise ValueError("SequenceRandomSource needs at least one value")
        for v in values:
            if not 0.0 <= v < 1.0:
                raise ValueError(f"Random values must lie in [0, 1), got {v}")
        self._values = cycle(values)

    def random(self) -> float:
        return next(self._values)
