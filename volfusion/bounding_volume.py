"""bounding_volume.py — axis-aligned world-space box the voxel grid spans."""
from __future__ import annotations
import numpy as np


class Rectangle:
    """
    Axis-aligned bounding box given by two opposite corners.

    Parameters
    ----------
    a : (3,) corner in world coordinates (default origin)
    b : (3,) corner opposite to *a*      (default origin)
    """

    def __init__(self, a=(0.0, 0.0, 0.0), b=(0.0, 0.0, 0.0)):
        self.a = np.asarray(a, dtype=np.float32).reshape(3).copy()
        self.b = np.asarray(b, dtype=np.float32).reshape(3).copy()
        self.a.flags.writeable = False
        self.b.flags.writeable = False

    def size(self) -> np.ndarray:
        return self.b - self.a

    def __eq__(self, other):
        if not isinstance(other, Rectangle):
            return NotImplemented
        return bool(np.array_equal(self.a, other.a) and np.array_equal(self.b, other.b))

    def __repr__(self):
        return f"Rectangle(a={self.a.tolist()}, b={self.b.tolist()})"
