"""
任务队列

待执行(pending)、执行中(active)和已完成(completed)三个集合，所有修改都在锁内进行。
"""
import threading
from collections import OrderedDict, deque
from typing import Deque, Dict, Iterable, List, Optional

from compute_agent.compute.task_models import ComputeTask


class TaskQueue:
    """协调器持有的任务队列"""

    def __init__(self, max_completed: int = 1000):
        self._lock = threading.Lock()
        self._pending: "OrderedDict[str, ComputeTask]" = OrderedDict()
        self._active: Dict[str, ComputeTask] = {}
        self._completed: Deque[str] = deque(maxlen=max_completed)
        self._completed_total = 0

    def admit(self, tasks: Iterable[ComputeTask]) -> List[ComputeTask]:
        """
        将任务加入待执行队列

        同一操作已有待执行任务时跳过，返回实际加入的任务
        """
        admitted = []
        with self._lock:
            pending_operations = {task.operation_id for task in self._pending.values()}
            for task in tasks:
                if task.operation_id in pending_operations:
                    continue
                self._pending[task.id] = task
                pending_operations.add(task.operation_id)
                admitted.append(task)
        return admitted

    def pop_next(self) -> Optional[ComputeTask]:
        """按先进先出取出下一个待执行任务"""
        with self._lock:
            if not self._pending:
                return None
            _, task = self._pending.popitem(last=False)
            return task

    def activate(self, task: ComputeTask) -> bool:
        """标记任务开始执行，已有任务在执行时返回False"""
        with self._lock:
            if self._active:
                return False
            self._active[task.id] = task
            return True

    def finish(self, task: ComputeTask) -> None:
        with self._lock:
            self._active.pop(task.id, None)
            self._completed.append(task.id)
            self._completed_total += 1

    def clear_pending(self) -> int:
        with self._lock:
            count = len(self._pending)
            self._pending.clear()
            return count

    @property
    def has_active(self) -> bool:
        with self._lock:
            return bool(self._active)

    def pending_operation_ids(self) -> List[str]:
        with self._lock:
            return [task.operation_id for task in self._pending.values()]

    def status(self) -> Dict[str, int]:
        with self._lock:
            return {
                "pending": len(self._pending),
                "active": len(self._active),
                "completed": self._completed_total
            }
