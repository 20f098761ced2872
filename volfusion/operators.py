"""
operators.py — grid-wide versions of the per-voxel fusion operators.

Each function is one data-parallel phase: it reads the grid fields it needs
(including neighbours) and returns a new array, or writes only the per-voxel
outputs it owns. Run a phase only after the previous phase's writes are
complete; consecutive calls on one thread already satisfy that.

Host grids are processed with numpy, device grids with torch on the grid's
CUDA device. Arrays are indexed (z, y, x[, component]).
"""
from __future__ import annotations

import numpy as np
import torch


def _is_torch(a) -> bool:
    return isinstance(a, torch.Tensor)


def _zeros(like, shape, dtype=None):
    if _is_torch(like):
        return torch.zeros(shape, dtype=dtype or like.dtype, device=like.device)
    return np.zeros(shape, dtype=dtype or like.dtype)


def grad_fwd(f):
    """Forward-difference gradient (D, H, W, 3); zero on the far face of each axis."""
    g = _zeros(f, tuple(f.shape) + (3,))
    g[:, :, :-1, 0] = f[:, :, 1:] - f[:, :, :-1]
    g[:, :-1, :, 1] = f[:, 1:, :] - f[:, :-1, :]
    g[:-1, :, :, 2] = f[1:] - f[:-1]
    return g


def grad_u_fwd_all(grid):
    return grad_fwd(grid.fields["u"])


def grad_v_fwd_all(grid):
    return grad_fwd(grid.fields["v"])


def div_bwd(p):
    """Backward-difference divergence (D, H, W) of a (D, H, W, 3) field, zero outside."""
    div = p[..., 0] + p[..., 1] + p[..., 2]
    div[:, :, 1:] -= p[:, :, :-1, 0]
    div[:, 1:, :] -= p[:, :-1, :, 1]
    div[1:] -= p[:-1, :, :, 2]
    return div


def div_p_bwd_all(grid):
    return div_bwd(grid.fields["p"])


def wi_all(grid):
    """W_i for every voxel and i = 1..B, shape (D, H, W, B)."""
    h = grid.fields["h"]
    if _is_torch(h):
        c = torch.cumsum(h.to(torch.int64), dim=-1)
    else:
        c = np.cumsum(h.astype(np.int64), axis=-1)
    return c[..., -1:] - 2 * c


def _median_last(s):
    n = s.shape[-1]
    mid = n // 2
    if n % 2:
        return s[..., mid]
    return 0.5 * (s[..., mid - 1] + s[..., mid])


def prox_hist_all(grid, u, tau: float, lam: float, with_bin_centers: bool = False):
    """
    Histogram proximal step for every voxel.

    *u* is a (D, H, W) array of the same kind as the grid storage; the result
    is a new float32 array of that shape.
    """
    w = wi_all(grid)
    if _is_torch(u):
        u64 = u.to(torch.float64).unsqueeze(-1)
        cand = torch.cat([u64, u64 + tau * lam * w.to(torch.float64)], dim=-1)
        if with_bin_centers:
            centers = torch.as_tensor(grid.bin_centers(), dtype=torch.float64, device=u.device)
            cand = torch.cat([centers.expand(tuple(u.shape) + (grid.bins,)), cand], dim=-1)
        s = torch.sort(cand, dim=-1).values
        return _median_last(s).to(torch.float32)

    u64 = np.asarray(u, dtype=np.float64)[..., None]
    cand = np.concatenate([u64, u64 + tau * lam * w.astype(np.float64)], axis=-1)
    if with_bin_centers:
        centers = np.broadcast_to(grid.bin_centers(), u64.shape[:-1] + (grid.bins,))
        cand = np.concatenate([centers, cand], axis=-1)
    s = np.sort(cand, axis=-1)
    return _median_last(s).astype(np.float32)


def project_unit_ball_all(p):
    """Euclidean unit-ball projection of a (..., 3) dual field."""
    if _is_torch(p):
        n = torch.sqrt((p * p).sum(dim=-1))
        return p / torch.clamp(n, min=1.0).unsqueeze(-1)
    n = np.sqrt((p * p).sum(axis=-1))
    return p / np.maximum(np.float32(1.0), n)[..., None]


def hist_bin_indices(bins: int, voxdepth, depth, threshold: float) -> np.ndarray:
    """Zero-based histogram slot receiving each vote, same rule as FusionData.update_hist."""
    sd = np.asarray(voxdepth, dtype=np.float32) - np.asarray(depth, dtype=np.float32)
    t = np.float32(0.0) if bins == 2 else np.float32(threshold)
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = ((sd + t) / (np.float32(2.0) * t) * np.float32(bins - 3)).astype(np.float64)
    ratio = np.nan_to_num(ratio)
    interior = np.sign(ratio) * np.floor(np.abs(ratio) + 0.5)
    idx = np.where(sd >= t, bins - 1, np.where(sd <= -t, 0, interior))
    return idx.astype(np.int64)


def update_hist_batch(grid, xs, ys, zs, voxdepth, depth, threshold: float) -> None:
    """Vote for many voxels at once; repeated voxels accumulate every vote."""
    k = hist_bin_indices(grid.bins, voxdepth, depth, threshold)
    # any mutually broadcastable shapes, e.g. the (D, H, W) arrays of a meshgrid
    zs, ys, xs, k = (a.flatten() for a in np.broadcast_arrays(
        np.asarray(zs, dtype=np.int64), np.asarray(ys, dtype=np.int64),
        np.asarray(xs, dtype=np.int64), k))
    h = grid.fields["h"]
    if _is_torch(h):
        index = tuple(torch.as_tensor(a, device=h.device) for a in (zs, ys, xs, k))
        ones = torch.ones(xs.shape[0], dtype=h.dtype, device=h.device)
        h.index_put_(index, ones, accumulate=True)
    else:
        np.add.at(h, (zs, ys, xs, k), 1)
