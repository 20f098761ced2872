# tests/test_memory.py
import numpy as np
import pytest
import torch
from pathlib import Path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from volfusion import (AllocationError, FusionData, HostMemory, MemoryStatus,
                       host_buffer, voxel_dtype, voxel_view)
from volfusion.memory import aligned_pitch, host2device_copy, host2host_copy

requires_cuda = pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA not available")


def _random_grid(w=4, h=3, d=2, bins=5, seed=0, **kwargs):
    rng = np.random.default_rng(seed)
    g = FusionData(w, h, d, (0, 0, 0), (1, 1, 1), bins=bins, **kwargs)
    f = g.fields
    if g.on_device:
        f["u"].copy_(torch.from_numpy(rng.normal(size=(d, h, w)).astype(np.float32)))
        f["v"].copy_(torch.from_numpy(rng.normal(size=(d, h, w)).astype(np.float32)))
        f["p"].copy_(torch.from_numpy(rng.normal(size=(d, h, w, 3)).astype(np.float32)))
        f["h"].copy_(torch.from_numpy(rng.integers(0, 50, size=(d, h, w, bins)).astype(np.int32)))
    else:
        f["u"][...] = rng.normal(size=(d, h, w))
        f["v"][...] = rng.normal(size=(d, h, w))
        f["p"][...] = rng.normal(size=(d, h, w, 3))
        f["h"][...] = rng.integers(0, 50, size=(d, h, w, bins))
    return g


def _host_fields(g):
    out = {}
    for name in ("u", "v", "p", "h"):
        a = g.fields[name]
        out[name] = a.cpu().numpy() if isinstance(a, torch.Tensor) else np.array(a)
    return out


class TestAlignedPitch:
    def test_exact_multiple(self):
        assert aligned_pitch(160, 4) == 160

    def test_rounds_up(self):
        assert aligned_pitch(161, 64) == 192
        assert aligned_pitch(40, 512) == 512


class TestHostTransfer:
    def test_round_trip_same_pitch(self):
        src = _random_grid()
        buf, pitch = host_buffer(4, 3, 2, 5)
        assert src.copy_to(buf, pitch) == MemoryStatus.SUCCESS

        dst = FusionData(4, 3, 2, bins=5)
        assert dst.copy_from(buf, pitch) == MemoryStatus.SUCCESS
        a, b = _host_fields(src), _host_fields(dst)
        for name in a:
            assert np.array_equal(a[name], b[name]), name

    def test_round_trip_through_padded_buffer(self):
        src = _random_grid(seed=1)
        row = 4 * voxel_dtype(5).itemsize
        buf, pitch = host_buffer(4, 3, 2, 5, pitch=row + 24)
        assert src.copy_to(buf, pitch) == MemoryStatus.SUCCESS

        dst = FusionData(4, 3, 2, bins=5, memory=HostMemory(alignment=128))
        assert dst.pitch != pitch
        assert dst.copy_from(buf, pitch) == MemoryStatus.SUCCESS
        a, b = _host_fields(src), _host_fields(dst)
        for name in a:
            assert np.array_equal(a[name], b[name]), name

    def test_buffer_layout_is_row_major_records(self):
        src = _random_grid(seed=2)
        buf, pitch = host_buffer(4, 3, 2, 5, pitch=200)
        src.copy_to(buf, pitch)
        rec = voxel_view(buf, 4, 3, 2, 5, pitch)
        assert rec["u"][1, 2, 3] == np.float32(src.u(3, 2, 1))
        assert rec["h"][0, 1, 2].tolist() == src.h(2, 1, 0).counts().tolist()

    def test_pitch_smaller_than_row(self):
        g = _random_grid()
        buf, _ = host_buffer(4, 3, 2, 5)
        assert g.copy_to(buf, 10) == MemoryStatus.INVALID_PITCH
        assert g.copy_from(buf, 10) == MemoryStatus.INVALID_PITCH

    def test_buffer_too_small(self):
        g = _random_grid()
        buf = np.zeros(16, dtype=np.uint8)
        assert g.copy_to(buf, g.pitch) == MemoryStatus.INVALID_VALUE

    def test_read_only_destination(self):
        g = _random_grid()
        buf, pitch = host_buffer(4, 3, 2, 5)
        buf.flags.writeable = False
        assert g.copy_to(buf, pitch) == MemoryStatus.INVALID_VALUE

    def test_bytearray_buffer(self):
        g = _random_grid(seed=3)
        buf = bytearray(g.size_bytes())
        assert g.copy_to(buf, g.pitch) == MemoryStatus.SUCCESS
        dst = FusionData(4, 3, 2, bins=5)
        assert dst.copy_from(buf, g.pitch) == MemoryStatus.SUCCESS
        assert np.array_equal(_host_fields(g)["p"], _host_fields(dst)["p"])

    def test_failed_copy_is_logged(self, caplog):
        g = _random_grid()
        with caplog.at_level("WARNING"):
            g.copy_to(np.zeros(4, dtype=np.uint8), g.pitch)
        assert "copy_to failed" in caplog.text

    def test_host2host_copy_direct(self):
        itemsize = voxel_dtype(2).itemsize
        src = np.arange(2 * itemsize * 2, dtype=np.uint8)
        dst = np.zeros(3 * itemsize * 2, dtype=np.uint8)
        status = host2host_copy(dst, 3 * itemsize, src, 2 * itemsize, 2, 2, 1, itemsize)
        assert status == MemoryStatus.SUCCESS
        assert np.array_equal(dst[:2 * itemsize], src[:2 * itemsize])
        assert not dst[2 * itemsize:3 * itemsize].any()


@pytest.mark.skipif(torch.cuda.is_available(), reason="checks behaviour without CUDA")
class TestNoDevice:
    def test_device_grid_allocation_fails(self):
        with pytest.raises(AllocationError) as exc:
            FusionData(2, 2, 2, bins=5, on_device=True)
        assert exc.value.status == MemoryStatus.NO_DEVICE

    def test_host2device_reports_no_device(self):
        buf = np.zeros(64, dtype=np.uint8)
        assert host2device_copy(None, 32, buf, 32, 1, 1, 1, 32) == MemoryStatus.NO_DEVICE


@requires_cuda
class TestDeviceTransfer:
    def test_device_pitch_is_aligned(self):
        g = FusionData(4, 3, 2, bins=5, on_device=True)
        assert g.on_device
        assert g.pitch % 512 == 0
        assert g.storage.is_cuda

    def test_round_trip_host_device_host(self):
        src = _random_grid(seed=4)
        buf, pitch = host_buffer(4, 3, 2, 5, pitch=208)
        assert src.copy_to(buf, pitch) == MemoryStatus.SUCCESS

        dev = FusionData(4, 3, 2, bins=5, on_device=True)
        assert dev.copy_from(buf, pitch) == MemoryStatus.SUCCESS
        out, out_pitch = host_buffer(4, 3, 2, 5)
        assert dev.copy_to(out, out_pitch) == MemoryStatus.SUCCESS

        back = FusionData(4, 3, 2, bins=5)
        back.copy_from(out, out_pitch)
        a, b = _host_fields(src), _host_fields(back)
        for name in a:
            assert np.array_equal(a[name], b[name]), name

    def test_device_accessors(self):
        dev = FusionData(2, 2, 2, bins=5, on_device=True)
        dev.set_u(1, 0, 1, 0.5)
        dev.update_hist(1, 0, 1, 1.0, 1.0, 1.0)
        assert dev.u(1, 0, 1) == 0.5
        assert dev.h(1, 0, 1)[1] == 1

    def test_device_buffer_rejected_by_host_grid(self):
        g = _random_grid()
        dev_buf = torch.zeros(g.size_bytes(), dtype=torch.uint8, device="cuda")
        assert g.copy_to(dev_buf, g.pitch) == MemoryStatus.INVALID_DIRECTION

    def test_device_buffer_rejected_by_device_grid(self):
        dev = FusionData(2, 2, 2, bins=5, on_device=True)
        dev_buf = torch.zeros(dev.size_bytes(), dtype=torch.uint8, device="cuda")
        assert dev.copy_from(dev_buf, dev.pitch) == MemoryStatus.INVALID_DIRECTION
