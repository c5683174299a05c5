"""
资源限制和贡献会话数据模型
"""
import math
import time
import uuid
from dataclasses import dataclass, field, fields, asdict, replace
from typing import Any, Dict, Mapping, Optional

from compute_agent.utils.helpers import timestamp_to_iso

_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


def _to_flag(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS | _FALSE_STRINGS:
        return value.strip().lower() in _TRUE_STRINGS
    raise ValueError(f"资源限制 {name} 需要布尔值，实际为: {value!r}")


def _to_limit(name: str, value: Any) -> float:
    # bool 是 int 的子类，这里单独排除
    if isinstance(value, bool) or value is None:
        raise ValueError(f"资源限制 {name} 需要数值，实际为: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"资源限制 {name} 需要数值，实际为: {value!r}") from None
    if not math.isfinite(number) or number < 0:
        raise ValueError(f"资源限制 {name} 必须是非负有限数值，实际为: {value!r}")
    return number


@dataclass(frozen=True)
class ResourceLimits:
    """
    贡献资源时的安全限制，每个指标采集周期读取一次

    构造时统一转换字段类型，无法转换的值抛出 ValueError，
    因此 from_dict 和 merged 都不会产生类型错误的限制。
    """

    max_cpu_percent: float = 25
    max_memory_mb: float = 512
    only_when_charging: bool = False
    only_when_idle: bool = False
    temperature_threshold: float = 75
    max_battery_drain_percent: float = 10

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if f.type in (bool, "bool"):
                coerced = _to_flag(f.name, value)
            else:
                coerced = _to_limit(f.name, value)
            object.__setattr__(self, f.name, coerced)

    @classmethod
    def field_names(cls):
        return {f.name for f in fields(cls)}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ResourceLimits":
        data = dict(data or {})
        return cls(**{key: value for key, value in data.items() if key in cls.field_names()})

    def merged(self, partial: Mapping[str, Any]) -> "ResourceLimits":
        """返回应用部分更新后的新限制，未知字段报错"""
        unknown = set(partial) - self.field_names()
        if unknown:
            raise ValueError(f"未知的资源限制字段: {', '.join(sorted(unknown))}")
        return replace(self, **dict(partial))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ContributionSession:
    """设备正在贡献资源的时间段及其汇总统计"""

    user_id: str
    device_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    total_operations: int = 0
    avg_cpu_usage: float = 0.0
    avg_memory_usage: float = 0.0
    contribution_score: float = 0.0
    start_battery_level: Optional[float] = None

    def record_sample(self, cpu_usage: float, memory_usage: float, score_increment: float) -> None:
        """累加一次指标采样（累计均值）"""
        self.total_operations += 1
        count = self.total_operations
        self.avg_cpu_usage += (cpu_usage - self.avg_cpu_usage) / count
        self.avg_memory_usage += (memory_usage - self.avg_memory_usage) / count
        self.contribution_score = round(self.contribution_score + score_increment, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "started_at": timestamp_to_iso(self.started_at),
            "ended_at": timestamp_to_iso(self.ended_at) if self.ended_at else None,
            "total_operations": self.total_operations,
            "avg_cpu_usage": round(self.avg_cpu_usage, 2),
            "avg_memory_usage": round(self.avg_memory_usage, 2),
            "contribution_score": self.contribution_score,
            "compute_time_ms": int(((self.ended_at or time.time()) - self.started_at) * 1000)
        }
