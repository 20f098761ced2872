from .bounding_volume import Rectangle
from .histogram import Histogram, SortedHist, bin_params
from .memory import AllocationError, DeviceMemory, HostMemory, MemoryStatus
from .voxel import Voxel, host_buffer, voxel_dtype, voxel_view
from .fusion_data import (
    FusionData, make_fusion_class,
    FusionData2, FusionData3, FusionData4, FusionData5, FusionData6,
    FusionData7, FusionData8, FusionData9, FusionData10,
    DFusionData2, DFusionData3, DFusionData4, DFusionData5, DFusionData6,
    DFusionData7, DFusionData8, DFusionData9, DFusionData10,
)

__all__ = [
    "Rectangle",
    "Histogram",
    "SortedHist",
    "bin_params",
    "AllocationError",
    "DeviceMemory",
    "HostMemory",
    "MemoryStatus",
    "Voxel",
    "host_buffer",
    "voxel_dtype",
    "voxel_view",
    "FusionData",
    "make_fusion_class",
    "FusionData2", "FusionData3", "FusionData4", "FusionData5", "FusionData6",
    "FusionData7", "FusionData8", "FusionData9", "FusionData10",
    "DFusionData2", "DFusionData3", "DFusionData4", "DFusionData5", "DFusionData6",
    "DFusionData7", "DFusionData8", "DFusionData9", "DFusionData10",
]
