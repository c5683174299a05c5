"""
计算模块，负责任务模型、完整性校验和任务执行
"""

from .errors import (
    ComputeError,
    AuthorizationError,
    ExecutionError,
    TaskCancelledError,
    TaskTimeoutError
)
from .task_models import ComputeTask, TaskResult, TaskType, map_operation_type
from .integrity import TaskVerifier
from .compute_engine import ComputeEngine

__all__ = [
    "ComputeError",
    "AuthorizationError",
    "ExecutionError",
    "TaskCancelledError",
    "TaskTimeoutError",
    "ComputeTask",
    "TaskResult",
    "TaskType",
    "map_operation_type",
    "TaskVerifier",
    "ComputeEngine"
]
