"""
fusion_data.py — voxel grid for histogram-based depth-map fusion.

Holds a pitched W×H×D array of voxel records (primal u, helper v, dual p,
histogram h) on host or device and implements the per-voxel operators used
by a TV-regularised primal-dual fusion loop:

  gradient / divergence   grad_u_fwd, grad_v_fwd, div_p_bwd
  data term               update_hist, wi, pi, prox_hist
  dual projection         project_unit_ball

Usage:
    from volfusion import FusionData

    grid = FusionData(64, 64, 64, (0, 0, 0), (1, 1, 1), bins=5)
    grid.update_hist(x, y, z, voxdepth, depth, threshold=0.1)
    u_new = grid.prox_hist(grid.v(x, y, z), x, y, z, tau, lam)

Indices are not range-checked on the fast accessors; callers guarantee
0 <= x < W, 0 <= y < H, 0 <= z < D. Use voxel_checked() for a checked lookup.
"""
from __future__ import annotations
import logging
from typing import Optional

import numpy as np

from .bounding_volume import Rectangle
from .histogram import Histogram, SortedHist, bin_params, round_half_away
from .memory import DeviceMemory, HostMemory, MemoryStatus
from .voxel import Voxel, voxel_dtype

logger = logging.getLogger(__name__)

DEFAULT_BINS = 5


def _as_volume(vol) -> Rectangle:
    if not isinstance(vol, Rectangle):
        raise TypeError(f"volume must be a Rectangle (or pass both corners), got {vol!r}")
    return vol


class FusionData:
    """
    Depth-map fusion voxel grid.

    Parameters
    ----------
    w, h, d   : grid size in voxels (all zero → no storage is allocated)
    vol       : bounding Rectangle, or first corner when *b* is given
    b         : corner opposite to *vol* in world coordinates
    bins      : histogram bins per voxel (>= 2)
    on_device : keep voxel storage in CUDA memory instead of host memory
    memory    : explicit HostMemory / DeviceMemory (overrides *on_device*)
    """

    BINS = DEFAULT_BINS
    ON_DEVICE = False

    def __init__(self, w: int = 0, h: int = 0, d: int = 0, vol=None, b=None, *,
                 bins: int = None, on_device: bool = None, memory=None):
        self._w, self._h, self._d = int(w), int(h), int(d)
        self._bins = int(self.BINS if bins is None else bins)
        on_device = self.ON_DEVICE if on_device is None else on_device
        if b is not None:
            vol = Rectangle(vol, b)
        self._vol = _as_volume(vol) if vol is not None else Rectangle()
        self._memory = memory if memory is not None else (DeviceMemory() if on_device else HostMemory())
        self._dtype = voxel_dtype(self._bins)
        self._bincenters, self._binstep = bin_params(self._bins)

        self._voxel = None
        self._fields: Optional[dict] = None
        self._pitch = 0
        self._spitch = 0
        if self.elements() > 0:
            self._voxel, self._pitch, self._spitch = self._memory.malloc(
                self._w, self._h, self._d, self._dtype.itemsize)
            self._fields = self._memory.field_views(
                self._voxel, self._dtype, self._w, self._h, self._d, self._pitch, self._spitch)
            logger.info(
                f"[FusionData] Allocated {self._w}x{self._h}x{self._d} grid "
                f"({self._bins} bins, {'device' if self.on_device else 'host'}) "
                f"pitch={self._pitch} slice_pitch={self._spitch} size={self.size_kbytes():.1f} KB"
            )

    @classmethod
    def from_config(cls, cfg: dict = None):
        """Build a grid from a fusion config dict (see config.default_config)."""
        from .config import default_config, validate_config

        cfg = cfg if cfg is not None else default_config()
        errors = validate_config(cfg)
        if errors:
            raise ValueError("invalid fusion config: " + "; ".join(errors))

        defaults = default_config()
        if cfg["on_device"]:
            memory = DeviceMemory(cfg.get("device_pitch_alignment", defaults["device_pitch_alignment"]))
        else:
            memory = HostMemory(cfg.get("host_pitch_alignment", defaults["host_pitch_alignment"]))
        vol = cfg.get("volume")
        rect = Rectangle(vol["a"], vol["b"]) if vol else None
        w, h, d = cfg["grid_size"]
        return cls(w, h, d, rect, bins=cfg["bins"], memory=memory)

    def release(self) -> None:
        """Drop voxel storage; the grid returns to the zero-size state."""
        self._voxel = None
        self._fields = None
        self._w = self._h = self._d = 0
        self._pitch = self._spitch = 0

    # ── Metadata ─────────────────────────────────────────────────────────────

    @property
    def width(self) -> int:
        return self._w

    @property
    def height(self) -> int:
        return self._h

    @property
    def depth(self) -> int:
        return self._d

    @property
    def pitch(self) -> int:
        """Row size in bytes, including padding."""
        return self._pitch

    @property
    def slice_pitch(self) -> int:
        """Slice size in bytes (pitch * height)."""
        return self._spitch

    @property
    def bins(self) -> int:
        return self._bins

    @property
    def on_device(self) -> bool:
        return self._memory.on_device

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def storage(self):
        """Raw pitched byte buffer (numpy array or CUDA tensor)."""
        return self._voxel

    @property
    def fields(self) -> dict:
        """Strided (D, H, W[, k]) views of u, v, p and h over the storage."""
        return self._fields

    @property
    def volume(self) -> Rectangle:
        return self._vol

    @volume.setter
    def volume(self, vol: Rectangle) -> None:
        self._vol = _as_volume(vol)

    def set_volume(self, a, b) -> None:
        self._vol = Rectangle(a, b)

    def elements(self) -> int:
        return self._w * self._h * self._d

    def size_bytes(self) -> int:
        return self._spitch * self._d

    def size_kbytes(self) -> float:
        return self.size_bytes() / 1024.0

    def size_mbytes(self) -> float:
        return self.size_kbytes() / 1024.0

    def size_gbytes(self) -> float:
        return self.size_mbytes() / 1024.0

    def index(self, x: int, y: int, z: int) -> int:
        """Logical linear index of voxel (x, y, z)."""
        return x + y * self._w + z * self._w * self._h

    def world_coords(self, x: int, y: int, z: int) -> np.ndarray:
        """World position of the centre of voxel (x, y, z)."""
        rel = np.array([(x + .5) / self._w, (y + .5) / self._h, (z + .5) / self._d])
        return (self._vol.a + self._vol.size() * rel).astype(np.float32)

    # ── Bin parameters ───────────────────────────────────────────────────────

    def bin_center(self, binindex: int) -> float:
        if binindex < self._bins:
            return float(self._bincenters[binindex])
        return 0.0

    def bin_centers(self) -> np.ndarray:
        return self._bincenters.copy()

    def bin_step(self) -> float:
        return self._binstep

    # ── Element access ───────────────────────────────────────────────────────

    def u(self, x: int = 0, y: int = 0, z: int = 0) -> float:
        return float(self._fields["u"][z, y, x])

    def set_u(self, x: int, y: int, z: int, value: float) -> None:
        self._fields["u"][z, y, x] = value

    def v(self, x: int = 0, y: int = 0, z: int = 0) -> float:
        return float(self._fields["v"][z, y, x])

    def set_v(self, x: int, y: int, z: int, value: float) -> None:
        self._fields["v"][z, y, x] = value

    def p(self, x: int = 0, y: int = 0, z: int = 0):
        """Writable 3-vector view of the dual variable."""
        return self._fields["p"][z, y, x]

    def set_p(self, x: int, y: int, z: int, value) -> None:
        p = self._fields["p"][z, y, x]
        for k in range(3):
            p[k] = float(value[k])

    def h(self, x: int = 0, y: int = 0, z: int = 0) -> Histogram:
        return Histogram(self._fields["h"][z, y, x])

    def voxel_ptr(self, x: int = 0, y: int = 0, z: int = 0) -> Voxel:
        return Voxel(self._fields, x, y, z)

    def voxel_checked(self, x: int, y: int, z: int) -> Voxel:
        """Like voxel_ptr() but raises IndexError outside the grid."""
        if not (0 <= x < self._w and 0 <= y < self._h and 0 <= z < self._d):
            raise IndexError(
                f"voxel ({x}, {y}, {z}) outside grid {self._w}x{self._h}x{self._d}")
        return self.voxel_ptr(x, y, z)

    # ── Finite differences ───────────────────────────────────────────────────

    def _grad_fwd(self, f, x: int, y: int, z: int) -> np.ndarray:
        c = float(f[z, y, x])
        result = np.zeros(3, dtype=np.float32)
        if x < self._w - 1:
            result[0] = float(f[z, y, x + 1]) - c
        if y < self._h - 1:
            result[1] = float(f[z, y + 1, x]) - c
        if z < self._d - 1:
            result[2] = float(f[z + 1, y, x]) - c
        return result

    def grad_u_fwd(self, x: int, y: int, z: int) -> np.ndarray:
        """Forward-difference gradient of u; zero across the far boundary."""
        return self._grad_fwd(self._fields["u"], x, y, z)

    def grad_v_fwd(self, x: int, y: int, z: int) -> np.ndarray:
        """Forward-difference gradient of v; zero across the far boundary."""
        return self._grad_fwd(self._fields["v"], x, y, z)

    def div_p_bwd(self, x: int, y: int, z: int) -> float:
        """Backward-difference divergence of p; p is taken as zero outside the grid."""
        p = self._fields["p"]
        result = float(p[z, y, x, 0]) + float(p[z, y, x, 1]) + float(p[z, y, x, 2])
        if x > 0:
            result -= float(p[z, y, x - 1, 0])
        if y > 0:
            result -= float(p[z, y - 1, x, 1])
        if z > 0:
            result -= float(p[z - 1, y, x, 2])
        return result

    # ── Histogram data term ──────────────────────────────────────────────────

    def update_hist(self, x: int, y: int, z: int,
                    voxdepth: float, depth: float, threshold: float) -> None:
        """
        Vote for the signed distance voxdepth - depth.

        sd >= threshold goes to the empty bin, sd <= -threshold to the occluded
        bin, anything in between to an interior bin. Arithmetic is float32.
        """
        sd = np.float32(voxdepth) - np.float32(depth)
        threshold = np.float32(0.0) if self._bins == 2 else np.float32(threshold)
        hist = self.h(x, y, z)

        # empty
        if sd >= threshold:
            hist.increment_last()
            return

        # occluded
        if sd <= -threshold:
            hist.increment_first()
            return

        # close to surface
        ratio = (sd + threshold) / (np.float32(2.0) * threshold) * np.float32(self._bins - 3)
        hist.increment(round_half_away(float(ratio)))

    def wi(self, i: int, x: int, y: int, z: int) -> int:
        """Votes above bin *i* minus votes at or below it (bins 1-indexed)."""
        counts = self.h(x, y, z).counts()
        return int(counts[i:].sum()) - int(counts[:i].sum())

    def pi(self, u: float, i: int, x: int, y: int, z: int,
           tau: float, lam: float) -> float:
        return u + tau * lam * self.wi(i, x, y, z)

    def prox_hist(self, u: float, x: int, y: int, z: int, tau: float, lam: float,
                  with_bin_centers: bool = False) -> float:
        """
        Proximal step of the histogram data term at voxel (x, y, z).

        Median of {u, p_1, ..., p_B}. With *with_bin_centers* the bin centres
        are added to the set first, giving the weighted median over
        {c_1..c_B, u, p_1..p_B}.
        """
        u = float(u)
        seed = self._bincenters if with_bin_centers else None
        capacity = self._bins + 1 + (self._bins if with_bin_centers else 0)
        prox = SortedHist(capacity, seed)
        prox.insert(u)
        for j in range(1, self._bins + 1):
            prox.insert(self.pi(u, j, x, y, z, tau, lam))
        return prox.median()

    @staticmethod
    def project_unit_ball(p) -> np.ndarray:
        """
        Project a dual 3-vector onto the unit ball.

        The constraint is on the Euclidean norm, p / max(1, ||p||_2), even
        though the operator is usually written as prox for ||p||_inf <= 1.
        """
        if hasattr(p, "detach"):
            p = p.detach().cpu().numpy()
        p = np.asarray(p, dtype=np.float32)
        return p / max(np.float32(1.0), np.sqrt(np.sum(p * p)))

    # ── Transfers ────────────────────────────────────────────────────────────

    def copy_from(self, data, npitch: int) -> MemoryStatus:
        """Fill the grid from a pitched host buffer with row pitch *npitch*."""
        status = self._memory.copy_in(self._voxel, self._pitch, data, npitch,
                                      self._w, self._h, self._d, self._dtype.itemsize)
        if status != MemoryStatus.SUCCESS:
            logger.warning(f"[FusionData] copy_from failed: {status.name}")
        return status

    def copy_to(self, data, npitch: int) -> MemoryStatus:
        """Write the grid into a pitched host buffer with row pitch *npitch*."""
        status = self._memory.copy_out(data, npitch, self._voxel, self._pitch,
                                       self._w, self._h, self._d, self._dtype.itemsize)
        if status != MemoryStatus.SUCCESS:
            logger.warning(f"[FusionData] copy_to failed: {status.name}")
        return status

    def __repr__(self):
        return (f"{type(self).__name__}({self._w}x{self._h}x{self._d}, bins={self._bins}, "
                f"{'device' if self.on_device else 'host'}, {self._vol!r})")


def make_fusion_class(bins: int, on_device: bool = False) -> type:
    """FusionData subclass with a fixed bin count and storage mode."""
    name = f"{'D' if on_device else ''}FusionData{bins}"
    return type(name, (FusionData,), {"BINS": bins, "ON_DEVICE": on_device,
                                      "__module__": __name__})


# Host-resident grids
FusionData2 = make_fusion_class(2)
FusionData3 = make_fusion_class(3)
FusionData4 = make_fusion_class(4)
FusionData5 = make_fusion_class(5)
FusionData6 = make_fusion_class(6)
FusionData7 = make_fusion_class(7)
FusionData8 = make_fusion_class(8)
FusionData9 = make_fusion_class(9)
FusionData10 = make_fusion_class(10)

# Device-resident grids
DFusionData2 = make_fusion_class(2, on_device=True)
DFusionData3 = make_fusion_class(3, on_device=True)
DFusionData4 = make_fusion_class(4, on_device=True)
DFusionData5 = make_fusion_class(5, on_device=True)
DFusionData6 = make_fusion_class(6, on_device=True)
DFusionData7 = make_fusion_class(7, on_device=True)
DFusionData8 = make_fusion_class(8, on_device=True)
DFusionData9 = make_fusion_class(9, on_device=True)
DFusionData10 = make_fusion_class(10, on_device=True)
