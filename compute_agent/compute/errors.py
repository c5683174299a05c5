"""计算任务相关的异常类型"""


class ComputeError(Exception):
    """计算模块异常基类"""


class AuthorizationError(ComputeError):
    """任务完整性校验失败，任务被拒绝执行"""

    def __init__(self, task_id: str, reason: str = "任务哈希不在白名单中且签名无效"):
        super().__init__(f"任务 {task_id} 校验失败: {reason}")
        self.task_id = task_id
        self.reason = reason


class ExecutionError(ComputeError):
    """任务执行失败（未知任务类型、参数错误或内部故障）"""


class TaskCancelledError(ExecutionError):
    """任务在让出点检测到停止标志后被取消"""


class TaskTimeoutError(ExecutionError):
    """任务超过墙钟截止时间"""
