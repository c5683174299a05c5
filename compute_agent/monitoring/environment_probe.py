import abc
import os
import platform
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, Optional

import psutil

from compute_agent.utils.helpers import to_base36
from compute_agent.utils.logger import get_logger


@dataclass(frozen=True)
class RealTimeStats:
    """设备实时指标，仅用于会话统计和遥测，不单独持久化"""

    cpu_usage: float
    memory_usage: float
    battery_level: Optional[float] = None
    is_charging: Optional[bool] = None
    temperature: Optional[float] = None
    timestamp: float = field(default_factory=time.time)
    process_memory_mb: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DeviceInfo:
    cpu_cores: int
    logical_cores: int
    total_memory_gb: float
    architecture: str
    platform: str
    battery_level: Optional[float] = None
    is_charging: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def fold_fingerprint(fingerprint: str) -> int:
    """把指纹字符串折叠成有符号32位整数（h = h*31 + c）"""
    value = 0
    for char in fingerprint:
        value = ((value << 5) - value + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value


def generate_device_id(signals: Iterable[Any]) -> str:
    """根据环境信号生成稳定的设备标识，形如 device_xxxxxx"""
    fingerprint = "|".join(str(signal) for signal in signals)
    return f"device_{to_base36(abs(fold_fingerprint(fingerprint)))}"


class EnvironmentProbe(metaclass=abc.ABCMeta):
    """设备能力和实时指标的来源"""

    @abc.abstractmethod
    def device_info(self) -> DeviceInfo:
        """返回设备硬件能力"""

    @abc.abstractmethod
    def real_time_stats(self) -> RealTimeStats:
        """采集一次实时指标"""

    @abc.abstractmethod
    def device_id(self) -> str:
        """返回稳定的设备标识"""


class PsutilEnvironmentProbe(EnvironmentProbe):
    """基于psutil的环境探针"""

    # 优先使用的温度传感器名称
    _PREFERRED_SENSORS = ("coretemp", "k10temp", "cpu_thermal", "cpu-thermal", "acpitz", "soc_thermal")

    def __init__(self):
        self.logger = get_logger("monitoring.probe")
        self._process = psutil.Process(os.getpid())
        self._device_id: Optional[str] = None

        # 首次调用cpu_percent(interval=None)只建立基准，返回值无意义
        psutil.cpu_percent(interval=None)
        self._process.cpu_percent(interval=None)

    def _get_battery(self):
        if not hasattr(psutil, "sensors_battery"):
            return None, None
        try:
            battery = psutil.sensors_battery()
        except Exception as e:
            self.logger.debug(f"读取电池信息失败: {str(e)}")
            return None, None
        if battery is None:
            return None, None
        return round(float(battery.percent), 2), bool(battery.power_plugged)

    def _get_temperature(self) -> Optional[float]:
        if not hasattr(psutil, "sensors_temperatures"):
            return None
        try:
            sensors = psutil.sensors_temperatures()
        except Exception as e:
            self.logger.debug(f"读取温度传感器失败: {str(e)}")
            return None
        if not sensors:
            return None

        names = [name for name in self._PREFERRED_SENSORS if name in sensors] or list(sensors)
        readings = [entry.current for name in names for entry in sensors[name] if entry.current]
        return round(max(readings), 1) if readings else None

    def device_info(self) -> DeviceInfo:
        battery_level, is_charging = self._get_battery()
        return DeviceInfo(
            cpu_cores=psutil.cpu_count(logical=False) or 1,
            logical_cores=psutil.cpu_count(logical=True) or 1,
            total_memory_gb=round(psutil.virtual_memory().total / 1024 ** 3, 2),
            architecture=platform.machine() or "unknown",
            platform=platform.system() or "unknown",
            battery_level=battery_level,
            is_charging=is_charging
        )

    def real_time_stats(self) -> RealTimeStats:
        battery_level, is_charging = self._get_battery()
        return RealTimeStats(
            cpu_usage=round(psutil.cpu_percent(interval=None), 2),
            memory_usage=round(psutil.virtual_memory().percent, 2),
            battery_level=battery_level,
            is_charging=is_charging,
            temperature=self._get_temperature(),
            timestamp=time.time(),
            process_memory_mb=round(self._process.memory_info().rss / 1024 / 1024, 2)
        )

    def fingerprint_signals(self):
        """
        生成设备标识用的环境信号

        只使用重启后不变的信号：不含内核版本，时区取不含夏令时的标准偏移
        """
        info = self.device_info()
        return [
            platform.system(),
            f"{info.logical_cores}x{info.total_memory_gb}",
            time.timezone // 60,
            f"{platform.node()}/{platform.machine()}/{platform.processor()}"
        ]

    def device_id(self) -> str:
        if self._device_id is None:
            self._device_id = generate_device_id(self.fingerprint_signals())
        return self._device_id
