"""voxel.py — voxel record layout and a by-reference view of one record."""
from __future__ import annotations
from functools import lru_cache

import numpy as np

from .histogram import Histogram


@lru_cache(maxsize=None)
def voxel_dtype(bins: int) -> np.dtype:
    """
    Packed record: primal u, helper v, dual p[3], histogram h[bins].

    Every field is 4 bytes wide so the record can be reinterpreted as a run of
    float32/int32 words on the device.
    """
    return np.dtype([
        ("u", "<f4"),
        ("v", "<f4"),
        ("p", "<f4", (3,)),
        ("h", "<i4", (bins,)),
    ])


class Voxel:
    """Reference to the record at (x, y, z); reads and writes hit grid storage."""

    __slots__ = ("_f", "_idx")

    def __init__(self, fields: dict, x: int, y: int, z: int):
        self._f = fields
        self._idx = (z, y, x)

    @property
    def u(self) -> float:
        return float(self._f["u"][self._idx])

    @u.setter
    def u(self, value: float) -> None:
        self._f["u"][self._idx] = value

    @property
    def v(self) -> float:
        return float(self._f["v"][self._idx])

    @v.setter
    def v(self, value: float) -> None:
        self._f["v"][self._idx] = value

    @property
    def p(self):
        return self._f["p"][self._idx]

    @p.setter
    def p(self, value) -> None:
        p = self._f["p"][self._idx]
        for k in range(3):
            p[k] = float(value[k])

    @property
    def h(self) -> Histogram:
        return Histogram(self._f["h"][self._idx])

    def __repr__(self):
        z, y, x = self._idx
        return f"Voxel(x={x}, y={y}, z={z}, u={self.u:.4f}, v={self.v:.4f})"


def host_buffer(w: int, h: int, d: int, bins: int, pitch: int = None):
    """
    Zeroed host buffer for copy_from / copy_to.

    Returns (buffer, pitch); *pitch* defaults to an unpadded row.
    """
    row = w * voxel_dtype(bins).itemsize
    pitch = row if pitch is None else int(pitch)
    if pitch < row:
        raise ValueError(f"pitch {pitch} smaller than a row of {row} bytes")
    return np.zeros(pitch * h * d, dtype=np.uint8), pitch


def voxel_view(buf: np.ndarray, w: int, h: int, d: int, bins: int, pitch: int) -> np.ndarray:
    """(D, H, W) structured record view over a pitched host buffer."""
    dt = voxel_dtype(bins)
    return np.ndarray((d, h, w), dtype=dt, buffer=buf, strides=(pitch * h, pitch, dt.itemsize))
