"""
设备监控模块，提供设备能力、实时指标和设备标识
"""

from .environment_probe import (
    EnvironmentProbe,
    PsutilEnvironmentProbe,
    RealTimeStats,
    DeviceInfo,
    generate_device_id
)

__all__ = [
    "EnvironmentProbe",
    "PsutilEnvironmentProbe",
    "RealTimeStats",
    "DeviceInfo",
    "generate_device_id"
]
