"""
histogram.py — per-voxel signed-distance vote histograms.

Provides:
  bin_params()   — bin-centre table and centre spacing for a bin count
  Histogram      — view over one voxel's counters (occluded / interior / empty)
  SortedHist     — bounded incremental sorted sequence with O(1) median,
                   used by the histogram proximal operator
  round_half_away() — rounding rule used to pick interior bins
"""
from __future__ import annotations
import bisect
import math

import numpy as np


def bin_params(bins: int) -> tuple[np.ndarray, float]:
    """
    Bin centres and centre spacing for *bins* histogram bins.

    Index 0 is reserved for occluded voxels (signed distance < -1), index
    bins-1 for empty voxels (signed distance > 1). Interior bins cover (-1, 1).
    With bins == 3 the spacing divides by zero and yields inf/nan.
    """
    centers = np.empty(bins, dtype=np.float64)
    centers[0] = -1.0
    centers[bins - 1] = 1.0
    denom = np.float64(bins - 3)
    with np.errstate(divide="ignore", invalid="ignore"):
        for i in range(1, bins - 1):
            centers[i] = 2.0 * np.float64(i - 1) / denom - 1.0
        step = float(np.float64(2.0) / denom)
    return centers, step


def round_half_away(x: float) -> int:
    """Round to nearest integer, ties away from zero (C ``roundf``)."""
    return int(math.copysign(math.floor(abs(x) + 0.5), x))


class Histogram:
    """
    Counters of a single voxel.

    ``hist(i)`` is 1-indexed (1 = occluded, bins = empty); ``hist[k]`` is the
    zero-based storage slot. Writes go straight to grid storage.
    """

    def __init__(self, counts):
        self._c = counts

    def __len__(self):
        return int(self._c.shape[0])

    def __call__(self, i: int) -> int:
        return int(self._c[i - 1])

    def __getitem__(self, k: int) -> int:
        return int(self._c[k])

    def first(self) -> int:
        return int(self._c[0])

    def last(self) -> int:
        return int(self._c[len(self) - 1])

    def increment(self, k: int) -> None:
        self._c[k] += 1

    def increment_first(self) -> None:
        self.increment(0)

    def increment_last(self) -> None:
        self.increment(len(self) - 1)

    def total(self) -> int:
        return int(self._c.sum())

    def counts(self) -> np.ndarray:
        """Copy of the counters as a host int array."""
        c = self._c
        if hasattr(c, "detach"):
            c = c.detach().cpu().numpy()
        return np.array(c, dtype=np.int64)

    def __repr__(self):
        return f"Histogram({self.counts().tolist()})"


class SortedHist:
    """
    Sorted multiset of at most *capacity* values.

    Insertion keeps the sequence ordered so ``median()`` is a constant-time
    lookup. An optional *seed* (e.g. the bin centres) is inserted first.
    """

    def __init__(self, capacity: int, seed=None):
        self.capacity = capacity
        self._data: list[float] = []
        if seed is not None:
            for s in seed:
                self.insert(float(s))

    def __len__(self):
        return len(self._data)

    def insert(self, value: float) -> bool:
        """Insert *value*; returns False once capacity is reached."""
        if len(self._data) >= self.capacity:
            return False
        bisect.insort(self._data, value)
        return True

    def median(self) -> float:
        n = len(self._data)
        if n == 0:
            return 0.0
        mid = n // 2
        if n % 2:
            return self._data[mid]
        return 0.5 * (self._data[mid - 1] + self._data[mid])

    def values(self) -> list[float]:
        return list(self._data)
