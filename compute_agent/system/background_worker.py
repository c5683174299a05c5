"""
后台工作进程

顶层监督组件：启动资源贡献和任务协调，定期发送心跳并做健康检查，
连续失败达到阈值时按有限次数自动重启。
"""
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from compute_agent.compute.compute_engine import ComputeEngine
from compute_agent.compute.integrity import TaskVerifier
from compute_agent.coordination.task_coordinator import TaskCoordinator
from compute_agent.monitoring.environment_probe import EnvironmentProbe
from compute_agent.resources.models import ResourceLimits
from compute_agent.resources.resource_manager import ResourceManager
from compute_agent.storage.backend import PersistenceBackend
from compute_agent.system.base_component import BaseComponent
from compute_agent.utils.logger import get_logger


class WorkerState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    RESTARTING = "restarting"
    STOPPED = "stopped"


# 工作状态到心跳状态的映射
HEARTBEAT_STATUS_MAP = {
    WorkerState.RUNNING: "active",
    WorkerState.DEGRADED: "error",
    WorkerState.RESTARTING: "restarting",
}


@dataclass
class WorkerHealthStatus:
    is_healthy: bool
    last_heartbeat: Optional[float]
    consecutive_failures: int
    uptime: float
    tasks_processed: int
    errors: List[str] = field(default_factory=list)
    restart_attempts: int = 0
    state: WorkerState = WorkerState.IDLE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class BackgroundWorker(BaseComponent):
    """
    后台工作进程

    每次 start() 都会用默认资源限制（叠加 update_resource_limits 设置的覆盖值）
    创建新的资源管理器；任务协调器在多次重启之间复用，任务计数因此累计。
    """

    def __init__(self, user_id: str, backend: PersistenceBackend, probe: EnvironmentProbe,
                 config, coordinator: Optional[TaskCoordinator] = None):
        get = config.get
        super().__init__(max_recent_errors=int(get("worker.max_recent_errors", 10)))
        self.logger = get_logger("system.worker")
        self.config = config
        self.user_id = user_id
        self.backend = backend
        self.probe = probe
        self.device_id = probe.device_id()

        self.heartbeat_interval = float(get("worker.heartbeat_interval", 30))
        self.health_check_interval = float(get("worker.health_check_interval", 60))
        self.failure_threshold = int(get("worker.failure_threshold", 3))
        self.max_restart_attempts = int(get("worker.max_restart_attempts", 5))
        self.restart_delay = float(get("worker.restart_delay", 5))
        self.max_task_errors = int(get("worker.max_task_errors", 10))

        if coordinator is None:
            engine = ComputeEngine(TaskVerifier.from_config(config), config)
            coordinator = TaskCoordinator(engine, backend, probe, config)
        self.coordinator = coordinator
        self.coordinator.contribution_gate = self._contribution_active
        self.resource_manager: Optional[ResourceManager] = None

        self._limit_overrides: Dict[str, Any] = {}

        # 健康状态，受 _state_lock 保护
        self._state = WorkerState.IDLE
        self._is_healthy = False
        self._consecutive_failures = 0
        self._restart_attempts = 0
        self._restart_exhausted = False
        self._last_heartbeat: Optional[float] = None
        self._health_violations: List[str] = []
        self._task_error_baseline = 0

        self._restart_lock = threading.Lock()
        self._heartbeat_lock = threading.Lock()
        self._restarting = False
        self._shutdown_requested = threading.Event()

        self._stop_event = threading.Event()
        self._heartbeat_thread: Optional[threading.Thread] = None
        self._health_thread: Optional[threading.Thread] = None

    @property
    def state(self) -> WorkerState:
        with self._state_lock:
            return self._state

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """启动工作进程，失败时返回False并记录安全事件"""
        with self._state_lock:
            if self._is_running:
                self.logger.warning("后台工作进程已在运行中")
                return True
            if self._restart_exhausted:
                self.logger.error("重启次数已耗尽，拒绝启动后台工作进程")
                return False
            self._state = WorkerState.STARTING
        if not self._restarting:
            self._shutdown_requested.clear()

        self.logger.info(f"正在启动后台工作进程，用户: {self.user_id}，设备: {self.device_id}")
        resource_manager = None
        try:
            resource_manager = ResourceManager(self._effective_limits(), self.probe, self.backend, self.config)
            if not resource_manager.start_contribution(self.user_id, self.device_id):
                raise RuntimeError("当前设备状态不允许贡献资源")
            self.resource_manager = resource_manager

            if not self.coordinator.start_coordination(self.user_id, self.device_id):
                raise RuntimeError("任务协调器启动失败")
        except Exception as e:
            self.logger.error(f"启动后台工作进程失败: {str(e)}")
            self.record_error(e)
            self.coordinator.stop_coordination()
            if resource_manager is not None:
                resource_manager.stop_contribution()
            with self._state_lock:
                self._state = WorkerState.RESTARTING if self._restarting else WorkerState.IDLE
                self._is_healthy = False
            self._log_security_event(
                "worker_start_failed", "medium",
                f"后台工作进程启动失败: {str(e)}",
                {"device_id": self.device_id, "restart_attempts": self._restart_attempts}
            )
            return False

        # 检查停止请求和标记启动在同一把锁内完成，stop() 要么看到运行中的组件，要么让这里回滚
        with self._state_lock:
            cancelled = self._shutdown_requested.is_set()
            if not cancelled:
                self._activate_locked()
        if cancelled:
            self.logger.info("启动过程中收到停止请求，回滚已启动的组件")
            self.coordinator.stop_coordination()
            resource_manager.stop_contribution()
            with self._state_lock:
                if self.resource_manager is resource_manager:
                    self.resource_manager = None
                if self._state != WorkerState.STOPPED:
                    self._state = WorkerState.IDLE
                self._is_healthy = False
            return False

        self.logger.info("后台工作进程启动成功")
        return True

    def _activate_locked(self) -> None:
        """标记为运行中并启动心跳和健康检查线程，调用方需持有 _state_lock"""
        self._task_error_baseline = self.coordinator.task_error_count
        self._consecutive_failures = 0
        self._health_violations = []
        self._is_healthy = True
        self._state = WorkerState.RUNNING
        self._mark_started()

        self._stop_event = threading.Event()
        self._heartbeat_thread = threading.Thread(
            target=self._periodic_loop,
            args=(self._stop_event, self.heartbeat_interval, self.send_heartbeat, "心跳"),
            name="worker-heartbeat",
            daemon=True
        )
        self._health_thread = threading.Thread(
            target=self._periodic_loop,
            args=(self._stop_event, self.health_check_interval, self.check_health, "健康检查"),
            name="worker-health",
            daemon=True
        )
        self._heartbeat_thread.start()
        self._health_thread.start()

    def stop(self) -> None:
        """停止工作进程，可重复调用"""
        self._shutdown_requested.set()
        with self._state_lock:
            if not self._is_running and self.resource_manager is None:
                return
        self.logger.info("正在停止后台工作进程")
        self._stop_components()
        with self._state_lock:
            if self._state != WorkerState.STOPPED:
                self._state = WorkerState.IDLE
            self._is_healthy = False
        self.logger.info("后台工作进程已停止")

    def _stop_components(self) -> None:
        """停止心跳、健康检查、任务协调和资源贡献"""
        self._stop_event.set()
        self._join_thread(self._heartbeat_thread, 5, self.logger, "心跳")
        self._join_thread(self._health_thread, 5, self.logger, "健康检查")

        self.coordinator.stop_coordination()
        resource_manager = self.resource_manager
        self.resource_manager = None
        if resource_manager is not None:
            resource_manager.stop_contribution()

        with self._state_lock:
            if self._is_running:
                self._mark_stopped()

    def _periodic_loop(self, stop_event: threading.Event, interval: float, action, name: str) -> None:
        self.logger.debug(f"{name}线程开始运行")
        while not stop_event.wait(interval):
            try:
                action()
            except Exception as e:
                self.logger.error(f"{name}线程出错: {str(e)}", exc_info=True)
                self.record_error(e)
        self.logger.debug(f"{name}线程已退出")

    # ------------------------------------------------------------------
    # 心跳和健康检查
    # ------------------------------------------------------------------

    def send_heartbeat(self) -> bool:
        """
        发送一次心跳

        上一次心跳尚未结束时直接跳过。发送失败计入连续失败次数，
        达到阈值后触发重启。
        """
        if not self._heartbeat_lock.acquire(blocking=False):
            self.logger.debug("上一次心跳仍在进行，跳过本次心跳")
            return False
        try:
            with self._state_lock:
                status = HEARTBEAT_STATUS_MAP.get(self._state, "inactive")
                consecutive_failures = self._consecutive_failures

            now = time.time()
            try:
                self.backend.send_heartbeat(
                    self.user_id, self.device_id, now, status,
                    self.coordinator.tasks_processed, consecutive_failures
                )
            except Exception as e:
                self._register_failure(f"心跳发送失败: {str(e)}", e)
                return False

            with self._state_lock:
                self._last_heartbeat = now
                # 健康检查仍有问题时，心跳成功不清零失败计数
                if not self._health_violations:
                    self._consecutive_failures = 0
                    if self._state == WorkerState.DEGRADED:
                        self._state = WorkerState.RUNNING
            return True
        finally:
            self._heartbeat_lock.release()

    def check_health(self) -> List[str]:
        """执行一次健康检查，返回发现的问题列表"""
        violations = []
        if not self._is_running:
            violations.append("工作进程未运行")

        resource_manager = self.resource_manager
        if resource_manager is None or not resource_manager.is_currently_contributing():
            violations.append("资源贡献已停止")

        task_errors = self.coordinator.task_error_count - self._task_error_baseline
        if task_errors >= self.max_task_errors:
            violations.append(f"任务错误过多 ({task_errors} >= {self.max_task_errors})")

        with self._state_lock:
            self._health_violations = violations

        if violations:
            reason = "; ".join(violations)
            self._register_failure(f"健康检查未通过: {reason}", RuntimeError(reason))
        return violations

    def _register_failure(self, reason: str, error: Exception) -> None:
        with self._state_lock:
            self._consecutive_failures += 1
            failures = self._consecutive_failures
            if self._state == WorkerState.RUNNING:
                self._state = WorkerState.DEGRADED
        self.record_error(error)
        self.logger.warning(f"{reason}（连续失败 {failures}/{self.failure_threshold}）")

        if failures >= self.failure_threshold and not self._shutdown_requested.is_set():
            self.attempt_restart(reason)

    # ------------------------------------------------------------------
    # 自动重启
    # ------------------------------------------------------------------

    def attempt_restart(self, reason: str = "") -> bool:
        """
        有限次数的自动重启

        每轮先增加重启次数，超过上限时放弃并记录高级别安全事件；
        否则停止所有组件，等待 restart_delay 后重新启动。启动失败继续下一轮。
        """
        if not self._restart_lock.acquire(blocking=False):
            self.logger.debug("已有重启正在进行，忽略本次重启请求")
            return False
        self._restarting = True
        try:
            while not self._shutdown_requested.is_set():
                with self._state_lock:
                    if self._restart_exhausted:
                        return False
                    self._restart_attempts += 1
                    attempts = self._restart_attempts
                    exhausted = attempts > self.max_restart_attempts
                    if exhausted:
                        self._restart_exhausted = True
                    else:
                        self._state = WorkerState.RESTARTING

                if exhausted:
                    self._give_up(reason)
                    return False

                self.logger.warning(
                    f"正在重启后台工作进程 (第 {attempts}/{self.max_restart_attempts} 次)，原因: {reason}"
                )
                self._stop_components()
                if self._shutdown_requested.wait(self.restart_delay):
                    break

                if self.start():
                    self.logger.info(f"后台工作进程重启成功 (第 {attempts} 次)")
                    return True

                with self._state_lock:
                    self._consecutive_failures += 1
                reason = "重启后启动失败"

            self.logger.info("收到停止请求，取消自动重启")
            with self._state_lock:
                if not self._is_running and self._state == WorkerState.RESTARTING:
                    self._state = WorkerState.IDLE
            return False
        finally:
            self._restarting = False
            self._restart_lock.release()

    def _give_up(self, reason: str) -> None:
        self.logger.error(f"重启次数已达上限 ({self.max_restart_attempts})，后台工作进程停止运行")
        self._log_security_event(
            "worker_restart_exhausted", "high",
            f"后台工作进程重启 {self.max_restart_attempts} 次后仍然失败: {reason}",
            {"device_id": self.device_id, "restart_attempts": self.max_restart_attempts}
        )
        self._stop_components()
        with self._state_lock:
            self._state = WorkerState.STOPPED
            self._is_healthy = False

    def _contribution_active(self) -> bool:
        resource_manager = self.resource_manager
        return resource_manager is not None and resource_manager.is_currently_contributing()

    def _log_security_event(self, event_type: str, severity: str, description: str,
                            metadata: Dict[str, Any]) -> None:
        try:
            self.backend.log_security_event(self.user_id, event_type, severity, description, metadata)
        except Exception as e:
            self.logger.error(f"记录安全事件 {event_type} 失败: {str(e)}")
            self.record_error(e)

    # ------------------------------------------------------------------
    # 资源限制
    # ------------------------------------------------------------------

    def _effective_limits(self) -> ResourceLimits:
        defaults = self.config.get_resource_limits()
        with self._state_lock:
            overrides = dict(self._limit_overrides)
        return ResourceLimits.from_dict(defaults).merged(overrides)

    def update_resource_limits(self, limits: Mapping[str, Any]) -> None:
        """更新资源限制，正在运行时下一个采集周期生效，重启后仍然保留"""
        # 字段名和取值都先校验，非法值不会进入覆盖配置
        self._effective_limits().merged(limits)
        with self._state_lock:
            self._limit_overrides.update(limits)
        resource_manager = self.resource_manager
        if resource_manager is not None:
            resource_manager.update_resource_limits(limits)

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    def health_status(self) -> WorkerHealthStatus:
        with self._state_lock:
            return WorkerHealthStatus(
                is_healthy=self._is_healthy,
                last_heartbeat=self._last_heartbeat,
                consecutive_failures=self._consecutive_failures,
                uptime=self.uptime,
                tasks_processed=self.coordinator.tasks_processed,
                errors=[error["message"] for error in self._recent_errors],
                restart_attempts=self._restart_attempts,
                state=self._state
            )

    def status(self) -> Dict[str, Any]:
        resource_manager = self.resource_manager
        session = resource_manager.current_session() if resource_manager else None
        return {
            "is_running": self._is_running,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "task_queue": self.coordinator.queue_status(),
            "resource_contribution": bool(resource_manager and resource_manager.is_currently_contributing()),
            "current_session": session.to_dict() if session else None,
            "health": self.health_status().to_dict()
        }

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status.update(self.status())
        return status
