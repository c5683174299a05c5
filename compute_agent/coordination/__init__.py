"""任务协调模块，负责任务发现、排队和调度执行"""

from .task_queue import TaskQueue
from .task_coordinator import TaskCoordinator

__all__ = ["TaskQueue", "TaskCoordinator"]
