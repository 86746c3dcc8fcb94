"""Per-mode sampling distributions derived from the tensor ring cores"""
from __future__ import annotations

import warnings
from typing import List, Optional, Sequence, Tuple

import numpy as np
import numpy.typing as npt

from tr_sketch.utils import matricize


class SamplingDistributions:
    """Keeps one probability vector per mode, current with the cores.

    The probability of index ``i`` of mode ``mu`` is proportional to the
    squared norm of the slice ``core[mu][:, i, :]``. A core that is
    identically zero (or not finite) gets the uniform distribution instead."""

    shape: Tuple[int, ...]
    probs: List[Optional[npt.NDArray[np.float64]]]
    rng: np.random.Generator

    def __init__(
        self, shape: Sequence[int], rng: Optional[np.random.Generator] = None
    ) -> None:
        self.shape = tuple(shape)
        self.probs = [None] * len(self.shape)
        if rng is None:
            rng = np.random.default_rng()
        self.rng = rng

    def __getitem__(self, mode: int) -> npt.NDArray[np.float64]:
        probs = self.probs[mode]
        if probs is None:
            raise RuntimeError(
                f"Sampling distribution of mode {mode} is not initialized"
            )
        return probs

    def update(self, mode: int, core: npt.NDArray) -> None:
        """Recompute the distribution of ``mode`` from its (updated) core."""
        if core.shape[1] != self.shape[mode]:
            raise ValueError(
                f"Core of shape {core.shape} doesn't match mode {mode} of"
                f" size {self.shape[mode]}"
            )
        row_norms = np.sum(matricize(core, 1) ** 2, axis=1)
        total = np.sum(row_norms)
        if total > 0 and np.isfinite(total):
            self.probs[mode] = row_norms / total
        else:
            warnings.warn(
                f"Core {mode} has zero or non-finite norm, falling back to"
                f" uniform sampling for this mode",
                RuntimeWarning,
            )
            self.probs[mode] = np.full(self.shape[mode], 1 / self.shape[mode])

    def sample(self, mode: int, count: int) -> npt.NDArray[np.int64]:
        """Draw ``count`` i.i.d. indices of ``mode``, with replacement."""
        return self.rng.choice(
            self.shape[mode], size=count, replace=True, p=self[mode]
        )

    def probabilities(
        self, mode: int, indices: npt.NDArray[np.int64]
    ) -> npt.NDArray[np.float64]:
        """Probability of drawing each of ``indices`` from ``mode``."""
        return self[mode][indices]
