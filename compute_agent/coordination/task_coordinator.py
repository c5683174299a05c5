"""
任务协调器

周期性地从后端发现可执行的操作，去重后加入队列，在计算引擎空闲时按先进先出
取出任务执行，并把执行结果、进度遥测和安全事件写回后端。
"""
import threading
from typing import Any, Callable, Dict, List, Optional

from compute_agent.compute.compute_engine import ComputeEngine
from compute_agent.compute.errors import AuthorizationError, ExecutionError
from compute_agent.compute.task_models import ComputeTask, TaskResult
from compute_agent.coordination.task_queue import TaskQueue
from compute_agent.monitoring.environment_probe import EnvironmentProbe
from compute_agent.storage.backend import PersistenceBackend
from compute_agent.system.base_component import BaseComponent
from compute_agent.utils.helpers import timestamp_to_iso
from compute_agent.utils.logger import get_logger


class TaskCoordinator(BaseComponent):
    """任务调度组件"""

    def __init__(self, engine: ComputeEngine, backend: PersistenceBackend,
                 probe: EnvironmentProbe, config=None,
                 contribution_gate: Optional[Callable[[], bool]] = None):
        get = config.get if config is not None else (lambda _path, default=None: default)
        super().__init__(max_recent_errors=int(get("worker.max_recent_errors", 10)))
        self.logger = get_logger("coordination.coordinator")
        self.engine = engine
        self.backend = backend
        self.probe = probe
        # 返回False时只发现任务，不取出执行
        self.contribution_gate = contribution_gate

        self.poll_interval = float(get("coordination.poll_interval", 10))
        self.error_backoff = float(get("coordination.error_backoff", 30))
        self.fetch_limit = int(get("coordination.fetch_limit", 5))
        self.task_timeout = get("compute.task_timeout", None)

        self.queue = TaskQueue()
        self._counter_lock = threading.Lock()
        self._tasks_processed = 0
        self._task_error_count = 0

        self._user_id: Optional[str] = None
        self._device_id: Optional[str] = None
        self._coordination_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def tasks_processed(self) -> int:
        with self._counter_lock:
            return self._tasks_processed

    @property
    def task_error_count(self) -> int:
        with self._counter_lock:
            return self._task_error_count

    def is_coordinator_active(self) -> bool:
        return self._is_running

    def start_coordination(self, user_id: str, device_id: str) -> bool:
        """启动调度线程"""
        if self._is_running:
            self.logger.warning("任务协调器已在运行中")
            return False

        self._user_id = user_id
        self._device_id = device_id
        self._stop_event = threading.Event()
        self._mark_started()
        self._coordination_thread = threading.Thread(
            target=self._coordination_loop,
            args=(self._stop_event, user_id, device_id),
            name="task-coordinator",
            daemon=True
        )
        self._coordination_thread.start()
        self.logger.info(f"任务协调器已启动，轮询间隔: {self.poll_interval}秒")
        return True

    def stop_coordination(self) -> None:
        """停止调度线程并取消正在执行的任务"""
        if not self._is_running:
            return

        self._mark_stopped()
        self._stop_event.set()
        if self.engine.is_running:
            self.engine.stop()

        self._join_thread(self._coordination_thread, 10, self.logger, "任务协调")
        dropped = self.queue.clear_pending()
        if dropped:
            self.logger.debug(f"丢弃 {dropped} 个待执行任务")
        self.logger.info("任务协调器已停止")

    def start(self) -> bool:
        if self._user_id is None or self._device_id is None:
            raise ValueError("首次启动需要调用 start_coordination(user_id, device_id)")
        return self.start_coordination(self._user_id, self._device_id)

    def stop(self) -> None:
        self.stop_coordination()

    # ------------------------------------------------------------------
    # 调度循环
    # ------------------------------------------------------------------

    def _coordination_loop(self, stop_event: threading.Event, user_id: str, device_id: str) -> None:
        self.logger.debug("调度循环开始")
        while not stop_event.is_set():
            try:
                self.run_cycle(user_id, device_id, stop_event)
                wait = self.poll_interval
            except Exception as e:
                self.logger.error(f"调度循环出错: {str(e)}", exc_info=True)
                self.record_error(e)
                wait = self.error_backoff
            stop_event.wait(wait)
        self.logger.debug("调度循环已退出")

    def run_cycle(self, user_id: str, device_id: str,
                  stop_event: Optional[threading.Event] = None) -> Optional[TaskResult]:
        """
        执行一轮调度：发现任务、入队，引擎空闲时执行队首任务

        获取任务之后重新检查停止信号和贡献状态，停止或暂停贡献时不取出任务
        """
        admitted = self.queue.admit(self.fetch_available_tasks(user_id))
        if admitted:
            self.logger.debug(f"新加入 {len(admitted)} 个任务: {[task.operation_id for task in admitted]}")

        if stop_event is not None and stop_event.is_set():
            return None
        if not self.may_execute():
            self.logger.debug("设备当前未贡献资源，暂不执行任务")
            return None

        if self.engine.is_running or self.queue.has_active:
            return None

        task = self.queue.pop_next()
        if task is None:
            return None
        return self.execute_task(task, user_id, device_id)

    def may_execute(self) -> bool:
        if self.contribution_gate is None:
            return True
        return bool(self.contribution_gate())

    def fetch_available_tasks(self, user_id: str) -> List[ComputeTask]:
        """
        获取用户当前可执行的任务

        只保留解锁门槛不超过用户已完成操作数的操作，数量受 fetch_limit 限制，
        已在待执行队列中的操作不会重复生成任务
        """
        operations = self.backend.list_eligible_operations(user_id)
        completed = self.backend.get_completed_operation_count(user_id)

        unlocked = [
            op for op in operations
            if op.get("is_active", True) and int(op.get("unlock_threshold") or 0) <= completed
        ][:self.fetch_limit]

        pending = set(self.queue.pending_operation_ids())
        return [ComputeTask.from_operation(op) for op in unlocked if str(op["id"]) not in pending]

    def execute_task(self, task: ComputeTask, user_id: str, device_id: str) -> Optional[TaskResult]:
        """
        执行单个任务并持久化结果

        执行记录在任务开始前创建，创建失败时异常向上抛出，任务不会运行。
        任务本身的失败会被记录，不会中断调度循环。
        """
        execution_id = self.backend.create_task_execution(task, user_id, device_id)

        if not self.queue.activate(task):
            self._persist_outcome(execution_id, "failed", error="已有任务在执行")
            raise ExecutionError(f"已有任务在执行，任务 {task.id} 未运行")

        result: Optional[TaskResult] = None
        failed = True
        try:
            result = self.engine.execute(
                task,
                on_progress=self._forward_progress,
                deadline=self.task_timeout
            )
            failed = False
            self._persist_outcome(
                execution_id, "completed",
                result=result.result_data,
                compute_time_ms=result.compute_time_ms
            )
        except AuthorizationError as e:
            self.logger.warning(f"任务 {task.id} 未通过完整性校验，拒绝执行")
            self._persist_outcome(execution_id, "failed", error=str(e))
            self._log_security_event(
                user_id, "task_integrity_violation", "medium",
                f"任务 {task.id} 未通过完整性校验",
                {"task_id": task.id, "operation_id": task.operation_id, "hash": task.hash}
            )
        except Exception as e:
            self.logger.error(f"任务 {task.id} 执行失败: {str(e)}")
            self.record_error(e)
            self._persist_outcome(execution_id, "failed", error=str(e))
        finally:
            self.queue.finish(task)
            with self._counter_lock:
                self._tasks_processed += 1
                if failed:
                    self._task_error_count += 1

        return result

    def _persist_outcome(self, execution_id: str, status: str, result: Any = None,
                         error: Optional[str] = None, compute_time_ms: Optional[int] = None) -> None:
        try:
            self.backend.update_task_execution(
                execution_id, status,
                result=result,
                error=error,
                compute_time_ms=compute_time_ms,
                completed_at=timestamp_to_iso()
            )
        except Exception as e:
            self.logger.error(f"更新执行记录 {execution_id} 失败: {str(e)}")
            self.record_error(e)

    def _forward_progress(self, progress: float, operations: int) -> None:
        """把任务进度写入遥测，失败只记录日志"""
        try:
            self.backend.insert_telemetry_sample(
                operations, round(progress * 100, 2), self.probe.real_time_stats()
            )
        except Exception as e:
            self.logger.warning(f"写入进度遥测失败: {str(e)}")

    def _log_security_event(self, user_id: str, event_type: str, severity: str,
                            description: str, metadata: Dict[str, Any]) -> None:
        try:
            self.backend.log_security_event(user_id, event_type, severity, description, metadata)
        except Exception as e:
            self.logger.error(f"记录安全事件 {event_type} 失败: {str(e)}")
            self.record_error(e)

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    def queue_status(self) -> Dict[str, int]:
        return self.queue.status()

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        engine_status = self.engine.status()
        current_task = engine_status["current_task"]
        status.update({
            "queue": self.queue_status(),
            "tasks_processed": self.tasks_processed,
            "task_error_count": self.task_error_count,
            "engine_running": engine_status["is_running"],
            "current_task": current_task.id if current_task else None
        })
        return status
