"""
Injectable random-number sources for reproducible search and synthetic data.

**Conceptual**: The genetic and iterative searches, and the synthetic price
generators, all draw random numbers. Reaching for the global numpy/random
state makes two runs with the same seed diverge as soon as anything else in
the process consumes randomness. Instead every consumer receives a
RandomSource and draws only from it.

NumpyRandomSource wraps numpy's Generator API (PCG64). spawn() derives
independent child streams, so concurrently evaluated candidates never share
one stream and completion order cannot affect the numbers drawn.
"""

from typing import Protocol

import numpy as np


class RandomSource(Protocol):
    """Minimal random interface used throughout the engine."""

    def random(self) -> float:
        """Uniform float in [0, 1)."""
        ...

    def uniform(self, low: float, high: float) -> float:
        """Uniform float in [low, high]."""
        ...

    def integer(self, low: int, high: int) -> int:
        """Uniform integer in [low, high)."""
        ...

    def standard_normal(self, size: int) -> np.ndarray:
        """Array of i.i.d. N(0, 1) draws."""
        ...

    def spawn(self) -> "RandomSource":
        """Independent child stream."""
        ...


class NumpyRandomSource:
    """
    RandomSource backed by numpy.random.Generator.

    **Usage**:
        rng = NumpyRandomSource(seed=42)
        rng.uniform(0.0, 1.0)
        child = rng.spawn()  # deterministic, independent of rng's later draws
    """

    def __init__(self, seed: int | None = None, *, generator: np.random.Generator | None = None):
        """
        Args:
            seed: Seed for reproducibility. None draws fresh OS entropy.
            generator: Pre-built Generator (used by spawn()). Overrides seed.
        """
        self.seed = seed
        self._generator = generator if generator is not None else np.random.default_rng(seed)

    def random(self) -> float:
        return float(self._generator.random())

    def uniform(self, low: float, high: float) -> float:
        if low == high:
            return float(low)
        return float(self._generator.uniform(low, high))

    def integer(self, low: int, high: int) -> int:
        return int(self._generator.integers(low, high))

    def standard_normal(self, size: int) -> np.ndarray:
        return self._generator.standard_normal(size)

    def spawn(self) -> "NumpyRandomSource":
        (child,) = self._generator.spawn(1)
        return NumpyRandomSource(generator=child)


def make_random_source(seed: int | None = None) -> NumpyRandomSource:
    """NumpyRandomSource for `seed` (None draws fresh entropy)."""
    return NumpyRandomSource(seed=seed)
