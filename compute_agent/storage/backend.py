"""
持久化/遥测后端

代理核心只依赖 PersistenceBackend 接口；这里提供内存实现和基于JSON Lines
文件的本地实现，便于单机运行和测试。
"""
import abc
import copy
import os
import threading
import uuid
from collections import deque
from typing import Any, Dict, List, Optional, Tuple

from compute_agent.utils.helpers import (
    append_jsonl,
    iter_jsonl,
    load_json,
    save_json,
    timestamp_to_iso
)
from compute_agent.utils.logger import get_logger

HEARTBEAT_STATUSES = ("active", "inactive", "error", "restarting")
EXECUTION_STATUSES = ("running", "completed", "failed")
SEVERITIES = ("low", "medium", "high", "critical")


def _as_dict(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return dict(value)


class PersistenceBackend(metaclass=abc.ABCMeta):
    """代理调用的持久化接口"""

    @abc.abstractmethod
    def list_eligible_operations(self, user_id: str) -> List[Dict[str, Any]]:
        """返回用户可见的启用中的操作（含 unlock_threshold）"""

    @abc.abstractmethod
    def get_completed_operation_count(self, user_id: str) -> int:
        """返回用户已完成的操作数，用于解锁判断"""

    @abc.abstractmethod
    def create_task_execution(self, task, user_id: str, device_id: str) -> str:
        """记录任务开始执行，返回执行记录ID"""

    @abc.abstractmethod
    def update_task_execution(self, execution_id: str, status: str, result: Any = None,
                              error: Optional[str] = None, compute_time_ms: Optional[int] = None,
                              completed_at: Optional[str] = None) -> None:
        """更新任务执行记录"""

    @abc.abstractmethod
    def upsert_user_session(self, user_id: str, device_id: str, vitals, is_contributing: bool) -> None:
        """按 (user, device) 更新当前会话遥测"""

    @abc.abstractmethod
    def insert_contribution_record(self, session) -> None:
        """保存一个已结束的贡献会话"""

    @abc.abstractmethod
    def insert_telemetry_sample(self, operations_completed: int, progress_percent: float,
                                device_vitals) -> None:
        """保存一条任务进度遥测"""

    @abc.abstractmethod
    def send_heartbeat(self, user_id: str, device_id: str, timestamp: float, status: str,
                       tasks_processed: int, consecutive_failures: int) -> None:
        """保存一次心跳"""

    @abc.abstractmethod
    def log_security_event(self, user_id: str, event_type: str, severity: str,
                           description: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """记录安全/运维事件"""


class InMemoryBackend(PersistenceBackend):
    """线程安全的内存后端"""

    def __init__(self, operations: Optional[List[Dict[str, Any]]] = None):
        self.logger = get_logger("storage.memory")
        self._lock = threading.RLock()

        self.operations: List[Dict[str, Any]] = copy.deepcopy(operations or [])
        self.task_executions: Dict[str, Dict[str, Any]] = {}
        self.user_sessions: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.contribution_records: List[Dict[str, Any]] = []
        self.telemetry_samples: List[Dict[str, Any]] = []
        self.heartbeats: List[Dict[str, Any]] = []
        self.security_events: List[Dict[str, Any]] = []
        self._completed_counts: Dict[str, int] = {}

    def list_eligible_operations(self, user_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(op) for op in self.operations if op.get("is_active", True)]

    def get_completed_operation_count(self, user_id: str) -> int:
        with self._lock:
            return self._completed_counts.get(user_id, 0)

    def create_task_execution(self, task, user_id: str, device_id: str) -> str:
        execution_id = str(uuid.uuid4())
        record = {
            "id": execution_id,
            "task_id": task.id,
            "operation_id": task.operation_id,
            "task_type": getattr(task.task_type, "value", task.task_type),
            "user_id": user_id,
            "device_id": device_id,
            "task_data": dict(task.parameters),
            "status": "running",
            "started_at": timestamp_to_iso(),
            "completed_at": None,
            "result_data": None,
            "error_message": None,
            "compute_time_ms": None
        }
        with self._lock:
            self.task_executions[execution_id] = record
        return execution_id

    def update_task_execution(self, execution_id: str, status: str, result: Any = None,
                              error: Optional[str] = None, compute_time_ms: Optional[int] = None,
                              completed_at: Optional[str] = None) -> None:
        if status not in EXECUTION_STATUSES:
            raise ValueError(f"无效的执行状态: {status}")
        with self._lock:
            record = self.task_executions.get(execution_id)
            if record is None:
                raise KeyError(f"执行记录不存在: {execution_id}")
            previous = record["status"]
            record.update({
                "status": status,
                "result_data": result if result is not None else record["result_data"],
                "error_message": error if error is not None else record["error_message"],
                "compute_time_ms": compute_time_ms if compute_time_ms is not None else record["compute_time_ms"],
                "completed_at": completed_at or record["completed_at"]
            })
            if status == "completed" and previous != "completed":
                user_id = record["user_id"]
                self._completed_counts[user_id] = self._completed_counts.get(user_id, 0) + 1

    def upsert_user_session(self, user_id: str, device_id: str, vitals, is_contributing: bool) -> None:
        stats = _as_dict(vitals)
        record = {
            "user_id": user_id,
            "device_id": device_id,
            "hardware_specs": stats,
            "is_contributing": bool(is_contributing),
            "battery_level": stats.get("battery_level"),
            "temperature_celsius": stats.get("temperature"),
            "last_active": timestamp_to_iso()
        }
        with self._lock:
            self.user_sessions[(user_id, device_id)] = record

    def insert_contribution_record(self, session) -> None:
        with self._lock:
            self.contribution_records.append(_as_dict(session))

    def insert_telemetry_sample(self, operations_completed: int, progress_percent: float,
                                device_vitals) -> None:
        with self._lock:
            self.telemetry_samples.append({
                "operations_completed": int(operations_completed),
                "progress_percent": float(progress_percent),
                "device_vitals": _as_dict(device_vitals),
                "recorded_at": timestamp_to_iso()
            })

    def send_heartbeat(self, user_id: str, device_id: str, timestamp: float, status: str,
                       tasks_processed: int, consecutive_failures: int) -> None:
        if status not in HEARTBEAT_STATUSES:
            raise ValueError(f"无效的心跳状态: {status}")
        with self._lock:
            self.heartbeats.append({
                "user_id": user_id,
                "device_id": device_id,
                "last_heartbeat": timestamp_to_iso(timestamp),
                "timestamp": timestamp,
                "status": status,
                "tasks_processed": int(tasks_processed),
                "consecutive_failures": int(consecutive_failures)
            })

    def log_security_event(self, user_id: str, event_type: str, severity: str,
                           description: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        if severity not in SEVERITIES:
            raise ValueError(f"无效的事件级别: {severity}")
        with self._lock:
            self.security_events.append({
                "user_id": user_id,
                "event_type": event_type,
                "severity": severity,
                "description": description,
                "metadata": dict(metadata or {}),
                "created_at": timestamp_to_iso()
            })

    def latest_heartbeat(self, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        with self._lock:
            for heartbeat in reversed(self.heartbeats):
                if user_id is None or heartbeat["user_id"] == user_id:
                    return dict(heartbeat)
        return None


class JsonlBackend(InMemoryBackend):
    """
    本地文件后端

    任务执行、贡献记录、遥测、心跳和安全事件以追加方式写入JSON Lines文件，
    当前会话写入JSON快照。启动时回放任务执行记录以恢复已完成操作数。
    文件是完整记录，内存中只保留最近 history_limit 条，进行中的执行记录始终保留。
    """

    FILES = {
        "task_executions": "task_executions.jsonl",
        "contribution_records": "contribution_records.jsonl",
        "telemetry_samples": "telemetry_samples.jsonl",
        "heartbeats": "worker_heartbeats.jsonl",
        "security_events": "security_events.jsonl",
        "user_sessions": "user_sessions.json"
    }

    def __init__(self, data_dir: str, operations: Optional[List[Dict[str, Any]]] = None,
                 history_limit: int = 1000):
        super().__init__(operations)
        self.history_limit = max(1, int(history_limit))
        self.contribution_records = deque(maxlen=self.history_limit)
        self.telemetry_samples = deque(maxlen=self.history_limit)
        self.heartbeats = deque(maxlen=self.history_limit)
        self.security_events = deque(maxlen=self.history_limit)
        self.logger = get_logger("storage.jsonl")
        self.data_dir = os.path.abspath(data_dir)
        os.makedirs(self.data_dir, exist_ok=True)
        self._replay()

    def _path(self, name: str) -> str:
        return os.path.join(self.data_dir, self.FILES[name])

    def _replay(self) -> None:
        """回放任务执行日志（同一ID以最后一条为准）"""
        executions: Dict[str, Dict[str, Any]] = {}
        for record in iter_jsonl(self._path("task_executions")):
            if "id" in record:
                executions[record["id"]] = record

        for record in executions.values():
            if record.get("status") == "completed":
                user_id = record.get("user_id")
                self._completed_counts[user_id] = self._completed_counts.get(user_id, 0) + 1

        sessions = load_json(self._path("user_sessions")) or {}
        for record in sessions.values():
            self.user_sessions[(record["user_id"], record["device_id"])] = record

        if executions:
            self.logger.info(f"已从 {self.data_dir} 回放 {len(executions)} 条任务执行记录")

    def create_task_execution(self, task, user_id: str, device_id: str) -> str:
        execution_id = super().create_task_execution(task, user_id, device_id)
        with self._lock:
            append_jsonl(self.task_executions[execution_id], self._path("task_executions"))
        return execution_id

    def update_task_execution(self, execution_id: str, status: str, result: Any = None,
                              error: Optional[str] = None, compute_time_ms: Optional[int] = None,
                              completed_at: Optional[str] = None) -> None:
        super().update_task_execution(execution_id, status, result, error, compute_time_ms, completed_at)
        with self._lock:
            append_jsonl(self.task_executions[execution_id], self._path("task_executions"))
            self._trim_executions()

    def _trim_executions(self) -> None:
        excess = len(self.task_executions) - self.history_limit
        if excess <= 0:
            return
        finished = [execution_id for execution_id, record in self.task_executions.items()
                    if record["status"] != "running"][:excess]
        for execution_id in finished:
            del self.task_executions[execution_id]

    def upsert_user_session(self, user_id: str, device_id: str, vitals, is_contributing: bool) -> None:
        super().upsert_user_session(user_id, device_id, vitals, is_contributing)
        with self._lock:
            snapshot = {f"{user}|{device}": record for (user, device), record in self.user_sessions.items()}
            if not save_json(snapshot, self._path("user_sessions")):
                raise OSError(f"写入会话快照失败: {self._path('user_sessions')}")

    def insert_contribution_record(self, session) -> None:
        super().insert_contribution_record(session)
        with self._lock:
            append_jsonl(self.contribution_records[-1], self._path("contribution_records"))

    def insert_telemetry_sample(self, operations_completed: int, progress_percent: float,
                                device_vitals) -> None:
        super().insert_telemetry_sample(operations_completed, progress_percent, device_vitals)
        with self._lock:
            append_jsonl(self.telemetry_samples[-1], self._path("telemetry_samples"))

    def send_heartbeat(self, user_id: str, device_id: str, timestamp: float, status: str,
                       tasks_processed: int, consecutive_failures: int) -> None:
        super().send_heartbeat(user_id, device_id, timestamp, status, tasks_processed, consecutive_failures)
        with self._lock:
            append_jsonl(self.heartbeats[-1], self._path("heartbeats"))

    def log_security_event(self, user_id: str, event_type: str, severity: str,
                           description: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        super().log_security_event(user_id, event_type, severity, description, metadata)
        with self._lock:
            append_jsonl(self.security_events[-1], self._path("security_events"))

    @classmethod
    def read_latest_heartbeat(cls, data_dir: str) -> Optional[Dict[str, Any]]:
        """不创建后端实例，直接读取最近一次心跳（供 status 命令使用）"""
        latest = None
        for record in iter_jsonl(os.path.join(data_dir, cls.FILES["heartbeats"])):
            latest = record
        return latest


def create_backend(config) -> PersistenceBackend:
    """根据配置创建持久化后端"""
    backend_type = config.get("storage.backend", "jsonl")
    operations = config.get_operations()
    if backend_type == "memory":
        return InMemoryBackend(operations)
    if backend_type == "jsonl":
        return JsonlBackend(
            config.get("storage.data_dir", "data"), operations,
            history_limit=config.get("storage.history_limit", 1000)
        )
    raise ValueError(f"不支持的存储后端: {backend_type}")