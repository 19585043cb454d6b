"""Shared API constants and device descriptions."""

from __future__ import annotations

from dataclasses import dataclass

TASK_PRIORITY = "CUDA_TASK_PRIORITY"
CORE_LIMIT_SWITCH = "GPU_CORE_UTILIZATION_POLICY"


@dataclass
class DeviceInfo:
    """A GPU device as registered by a node."""

    index: int = 0
    id: str = ""
    count: int = 0
    devmem: int = 0
    devcore: int = 0
    type: str = ""
    numa: int = 0
    health: bool = False