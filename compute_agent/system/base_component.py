import abc
import threading
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional


class BaseComponent(metaclass=abc.ABCMeta):
    """
    所有代理组件的基类

    提供组件生命周期状态（启动/停止）、错误记录和状态查询功能
    """

    def __init__(self, max_recent_errors: int = 10):
        self._is_running = False  # 组件运行状态
        self._start_time: Optional[float] = None
        self._stop_time: Optional[float] = None
        self._error_count = 0
        self._recent_errors: Deque[Dict[str, Any]] = deque(maxlen=max(1, max_recent_errors))
        self._state_lock = threading.RLock()

    @property
    def is_running(self) -> bool:
        """返回组件是否正在运行"""
        return self._is_running

    def start(self) -> bool:
        """启动组件"""
        if not self._is_running:
            self._mark_started()
        return True

    def stop(self) -> None:
        """停止组件"""
        if self._is_running:
            self._mark_stopped()

    def _mark_started(self) -> None:
        self._is_running = True
        self._start_time = time.time()
        self._stop_time = None

    def _mark_stopped(self) -> None:
        self._is_running = False
        self._stop_time = time.time()

    @property
    def uptime(self) -> float:
        if self._is_running and self._start_time:
            return time.time() - self._start_time
        return 0.0

    def record_error(self, error: Exception) -> None:
        """记录组件错误"""
        with self._state_lock:
            self._error_count += 1
            self._recent_errors.append({
                "message": str(error),
                "timestamp": time.time(),
                "type": error.__class__.__name__
            })

    @property
    def recent_errors(self) -> List[Dict[str, Any]]:
        with self._state_lock:
            return list(self._recent_errors)

    def get_status(self) -> Dict[str, Any]:
        """
        获取组件状态信息

        返回:
            包含组件状态的字典
        """
        with self._state_lock:
            last_error = self._recent_errors[-1] if self._recent_errors else None
            return {
                "is_running": self._is_running,
                "start_time": self._start_time,
                "stop_time": self._stop_time,
                "uptime": self.uptime if self._is_running else None,
                "error_count": self._error_count,
                "last_error": last_error,
                "component_type": self.__class__.__name__
            }

    @staticmethod
    def _join_thread(thread: Optional[threading.Thread], timeout: float, logger, name: str) -> None:
        """等待线程结束；在该线程内部调用时不等待自身"""
        if thread is None or not thread.is_alive():
            return
        if threading.current_thread() is thread:
            logger.debug(f"在{name}线程内部调用停止，无需等待自身")
            return
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning(f"{name}线程未能在 {timeout} 秒内终止")

    def __str__(self) -> str:
        status = "运行中" if self._is_running else "已停止"
        return f"{self.__class__.__name__} ({status})"
