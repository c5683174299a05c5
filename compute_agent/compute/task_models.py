"""
计算任务数据模型
"""
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


class TaskType(str, Enum):
    PRIME_SEARCH = "prime_search"
    HASH_COMPUTATION = "hash_computation"
    CRYPTO_ANALYSIS = "crypto_analysis"
    MATRIX_OPERATIONS = "matrix_operations"


# 操作名称到任务类型的固定映射，未知名称回退为哈希计算
OPERATION_TYPE_MAP: Mapping[str, TaskType] = MappingProxyType({
    "OPERATION_PRIME_SWEEP": TaskType.PRIME_SEARCH,
    "OPERATION_CRYPTO_ANALYSIS": TaskType.CRYPTO_ANALYSIS,
    "OPERATION_DATA_MATRIX": TaskType.MATRIX_OPERATIONS,
})
DEFAULT_TASK_TYPE = TaskType.HASH_COMPUTATION


def map_operation_type(operation_name: Optional[str]) -> TaskType:
    """将目录中的操作名称映射为任务类型"""
    return OPERATION_TYPE_MAP.get(operation_name or "", DEFAULT_TASK_TYPE)


@dataclass(frozen=True)
class ComputeTask:
    """一个经过签发、可调度的计算任务，创建后不可修改"""

    id: str
    operation_id: str
    task_type: TaskType
    parameters: Mapping[str, Any]
    hash: str
    signature: Optional[str] = None
    priority: int = 1
    estimated_duration: int = 0  # 毫秒
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        # 参数做只读包装，防止执行过程中被篡改
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters or {})))

    @classmethod
    def from_operation(cls, operation: Dict[str, Any]) -> "ComputeTask":
        """根据目录中的操作定义创建任务"""
        return cls(
            id=str(uuid.uuid4()),
            operation_id=str(operation["id"]),
            task_type=map_operation_type(operation.get("name")),
            parameters=operation.get("parameters") or {},
            hash=operation.get("task_hash") or "",
            signature=operation.get("task_signature"),
            priority=1,
            estimated_duration=int(float(operation.get("required_compute_power") or 0) * 1000),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "operation_id": self.operation_id,
            "type": self.task_type.value,
            "parameters": dict(self.parameters),
            "hash": self.hash,
            "signature": self.signature,
            "priority": self.priority,
            "estimated_duration": self.estimated_duration,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class TaskResult:
    task_id: str
    result_data: Any
    compute_time_ms: int
    operations: int = 0
    verification_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "result_data": self.result_data,
            "compute_time_ms": self.compute_time_ms,
            "operations": self.operations,
            "verification_hash": self.verification_hash,
        }
