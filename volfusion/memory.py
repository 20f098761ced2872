"""
memory.py — pitched voxel storage on host (numpy) or device (torch/CUDA).

Layout: rows of W records padded to ``pitch`` bytes, H rows per slice
(``slice_pitch = pitch * H``), D slices. External host buffers use the same
layout with their own pitch.

Provides:
  MemoryStatus      — status codes returned by every transfer
  AllocationError   — raised when storage cannot be allocated
  HostMemory        — numpy-backed storage, host↔host transfers
  DeviceMemory      — CUDA torch-backed storage, host↔device transfers
  host2host_copy / host2device_copy / device2host_copy
"""
from __future__ import annotations
import logging
from enum import IntEnum

import numpy as np
import torch

logger = logging.getLogger(__name__)

HOST_PITCH_ALIGNMENT = 4
DEVICE_PITCH_ALIGNMENT = 512


class MemoryStatus(IntEnum):
    SUCCESS = 0
    INVALID_VALUE = 1
    INVALID_PITCH = 2
    INVALID_DIRECTION = 3
    NO_DEVICE = 4
    ALLOCATION_FAILED = 5
    COPY_FAILED = 6


class AllocationError(MemoryError):
    def __init__(self, status: MemoryStatus, message: str):
        super().__init__(f"{message} ({status.name})")
        self.status = status


def aligned_pitch(row_bytes: int, alignment: int) -> int:
    """Smallest multiple of *alignment* that holds *row_bytes*."""
    alignment = max(int(alignment), 1)
    return -(-int(row_bytes) // alignment) * alignment


def _as_host_bytes(buf):
    """Flat uint8 view of a host buffer; returns (view, status)."""
    if isinstance(buf, torch.Tensor):
        if buf.is_cuda:
            return None, MemoryStatus.INVALID_DIRECTION
        buf = buf.numpy()
    if isinstance(buf, (bytearray, memoryview)):
        return np.frombuffer(buf, dtype=np.uint8), MemoryStatus.SUCCESS
    if isinstance(buf, np.ndarray):
        if not buf.flags.c_contiguous:
            return None, MemoryStatus.INVALID_VALUE
        return buf.reshape(-1).view(np.uint8), MemoryStatus.SUCCESS
    return None, MemoryStatus.INVALID_VALUE


def _host_rows(buf, pitch: int, w: int, h: int, d: int, itemsize: int):
    """
    (D, H, W*itemsize) byte view of a pitched host buffer.

    Returns (view, status); view is None when status is not SUCCESS.
    """
    b, status = _as_host_bytes(buf)
    if status != MemoryStatus.SUCCESS:
        return None, status
    row = w * itemsize
    if pitch < row:
        return None, MemoryStatus.INVALID_PITCH
    if b.size < pitch * h * d:
        return None, MemoryStatus.INVALID_VALUE
    view = np.lib.stride_tricks.as_strided(
        b, shape=(d, h, row), strides=(pitch * h, pitch, 1))
    return view, MemoryStatus.SUCCESS


def _device_rows(buf, pitch: int, w: int, h: int, d: int, itemsize: int):
    if not isinstance(buf, torch.Tensor) or not buf.is_cuda:
        return None, MemoryStatus.INVALID_DIRECTION
    row = w * itemsize
    if pitch < row:
        return None, MemoryStatus.INVALID_PITCH
    if buf.numel() < pitch * h * d:
        return None, MemoryStatus.INVALID_VALUE
    return buf.as_strided((d, h, row), (pitch * h, pitch, 1)), MemoryStatus.SUCCESS


def _log_status(op: str, status: MemoryStatus) -> MemoryStatus:
    if status != MemoryStatus.SUCCESS:
        logger.warning(f"[Memory] {op} failed: {status.name}")
    return status


def host2host_copy(dst, dpitch: int, src, spitch: int,
                   w: int, h: int, d: int, itemsize: int) -> MemoryStatus:
    """Copy a W×H×D block of records between two pitched host buffers."""
    dst_rows, status = _host_rows(dst, dpitch, w, h, d, itemsize)
    if status != MemoryStatus.SUCCESS:
        return _log_status("host2host", status)
    src_rows, status = _host_rows(src, spitch, w, h, d, itemsize)
    if status != MemoryStatus.SUCCESS:
        return _log_status("host2host", status)
    if not dst_rows.flags.writeable:
        return _log_status("host2host", MemoryStatus.INVALID_VALUE)
    dst_rows[...] = src_rows
    return MemoryStatus.SUCCESS


def host2device_copy(dst, dpitch: int, src, spitch: int,
                     w: int, h: int, d: int, itemsize: int) -> MemoryStatus:
    """Copy a W×H×D block of records from a pitched host buffer to the device."""
    if not torch.cuda.is_available():
        return _log_status("host2device", MemoryStatus.NO_DEVICE)
    dst_rows, status = _device_rows(dst, dpitch, w, h, d, itemsize)
    if status != MemoryStatus.SUCCESS:
        return _log_status("host2device", status)
    src_rows, status = _host_rows(src, spitch, w, h, d, itemsize)
    if status != MemoryStatus.SUCCESS:
        return _log_status("host2device", status)
    try:
        dst_rows.copy_(torch.from_numpy(np.ascontiguousarray(src_rows)))
        torch.cuda.synchronize(dst.device)
    except RuntimeError as e:
        logger.error(f"[Memory] host2device copy raised: {e}")
        return MemoryStatus.COPY_FAILED
    return MemoryStatus.SUCCESS


def device2host_copy(dst, dpitch: int, src, spitch: int,
                     w: int, h: int, d: int, itemsize: int) -> MemoryStatus:
    """Copy a W×H×D block of records from the device to a pitched host buffer."""
    if not torch.cuda.is_available():
        return _log_status("device2host", MemoryStatus.NO_DEVICE)
    dst_rows, status = _host_rows(dst, dpitch, w, h, d, itemsize)
    if status != MemoryStatus.SUCCESS:
        return _log_status("device2host", status)
    src_rows, status = _device_rows(src, spitch, w, h, d, itemsize)
    if status != MemoryStatus.SUCCESS:
        return _log_status("device2host", status)
    if not dst_rows.flags.writeable:
        return _log_status("device2host", MemoryStatus.INVALID_VALUE)
    try:
        dst_rows[...] = src_rows.cpu().numpy()
    except RuntimeError as e:
        logger.error(f"[Memory] device2host copy raised: {e}")
        return MemoryStatus.COPY_FAILED
    return MemoryStatus.SUCCESS


class HostMemory:
    """Pitched voxel storage in a numpy byte buffer."""

    on_device = False

    def __init__(self, alignment: int = HOST_PITCH_ALIGNMENT):
        self.alignment = alignment

    def malloc(self, w: int, h: int, d: int, itemsize: int):
        """Allocate zeroed storage; returns (buffer, pitch, slice_pitch)."""
        pitch = aligned_pitch(w * itemsize, self.alignment)
        spitch = pitch * h
        try:
            buf = np.zeros(spitch * d, dtype=np.uint8)
        except MemoryError as e:
            raise AllocationError(MemoryStatus.ALLOCATION_FAILED,
                                  f"host allocation of {spitch * d} bytes failed") from e
        logger.debug(f"[Memory] host malloc {w}x{h}x{d} pitch={pitch} spitch={spitch}")
        return buf, pitch, spitch

    def field_views(self, buf, dtype: np.dtype, w: int, h: int, d: int,
                    pitch: int, spitch: int) -> dict:
        records = np.ndarray((d, h, w), dtype=dtype, buffer=buf,
                             strides=(spitch, pitch, dtype.itemsize))
        views = {name: records[name] for name in dtype.names}
        views["records"] = records
        return views

    def copy_in(self, dst, dpitch, src, spitch, w, h, d, itemsize) -> MemoryStatus:
        return host2host_copy(dst, dpitch, src, spitch, w, h, d, itemsize)

    def copy_out(self, dst, dpitch, src, spitch, w, h, d, itemsize) -> MemoryStatus:
        return host2host_copy(dst, dpitch, src, spitch, w, h, d, itemsize)


class DeviceMemory:
    """Pitched voxel storage in a CUDA byte tensor."""

    on_device = True

    def __init__(self, alignment: int = DEVICE_PITCH_ALIGNMENT, device: str = "cuda"):
        self.alignment = alignment
        self.device = device

    def malloc(self, w: int, h: int, d: int, itemsize: int):
        if not torch.cuda.is_available():
            raise AllocationError(MemoryStatus.NO_DEVICE, "CUDA device not available")
        pitch = aligned_pitch(w * itemsize, self.alignment)
        spitch = pitch * h
        try:
            buf = torch.zeros(spitch * d, dtype=torch.uint8, device=self.device)
        except torch.cuda.OutOfMemoryError as e:
            raise AllocationError(MemoryStatus.ALLOCATION_FAILED,
                                  f"device allocation of {spitch * d} bytes failed") from e
        logger.debug(f"[Memory] device malloc {w}x{h}x{d} pitch={pitch} spitch={spitch}")
        return buf, pitch, spitch

    def field_views(self, buf, dtype: np.dtype, w: int, h: int, d: int,
                    pitch: int, spitch: int) -> dict:
        # All record fields are 4-byte words: view the bytes as float32/int32
        # and stride over them in words.
        words_f = buf.view(torch.float32)
        words_i = buf.view(torch.int32)
        base = (spitch // 4, pitch // 4, dtype.itemsize // 4)
        views = {}
        for name in dtype.names:
            sub, offset = dtype.fields[name][:2]
            words = words_i if sub.base.kind == "i" else words_f
            if sub.shape:
                views[name] = words.as_strided((d, h, w) + sub.shape, base + (1,), offset // 4)
            else:
                views[name] = words.as_strided((d, h, w), base, offset // 4)
        return views

    def copy_in(self, dst, dpitch, src, spitch, w, h, d, itemsize) -> MemoryStatus:
        return host2device_copy(dst, dpitch, src, spitch, w, h, d, itemsize)

    def copy_out(self, dst, dpitch, src, spitch, w, h, d, itemsize) -> MemoryStatus:
        return device2host_copy(dst, dpitch, src, spitch, w, h, d, itemsize)
