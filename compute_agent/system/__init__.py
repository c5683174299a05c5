"""
系统模块，负责组件基类和后台工作进程

提供统一的启动、停止和状态查询接口，实现心跳、健康检查与有限次数的自动重启
"""

from .base_component import BaseComponent
from .background_worker import BackgroundWorker, WorkerHealthStatus, WorkerState

__all__ = ["BaseComponent", "BackgroundWorker", "WorkerHealthStatus", "WorkerState"]
__version__ = "1.0.0"
