"""
测试用的环境探针、持久化后端和配置
"""
import dataclasses
import os
import tempfile
import threading
import time

from compute_agent.config.config_manager import ConfigManager
from compute_agent.monitoring.environment_probe import DeviceInfo, EnvironmentProbe, RealTimeStats
from compute_agent.storage.backend import InMemoryBackend


def make_stats(cpu=20.0, memory=40.0, battery=90.0, charging=True, temperature=50.0,
               process_memory_mb=100.0) -> RealTimeStats:
    return RealTimeStats(
        cpu_usage=cpu,
        memory_usage=memory,
        battery_level=battery,
        is_charging=charging,
        temperature=temperature,
        process_memory_mb=process_memory_mb
    )


def make_config(**overrides) -> ConfigManager:
    """使用默认配置并缩短所有周期，配置目录不存在时不会读写文件"""
    config = ConfigManager(config_dir=os.path.join(tempfile.mkdtemp(), "config"))
    values = {
        "storage.backend": "memory",
        "resources.tick_interval": 3600,
        "coordination.poll_interval": 0.05,
        "coordination.error_backoff": 0.05,
        "worker.heartbeat_interval": 3600,
        "worker.health_check_interval": 3600,
        "worker.restart_delay": 0,
        "compute.yield_every": 10,
        "compute.progress_every": 10
    }
    values.update({key.replace("__", "."): value for key, value in overrides.items()})
    for path, value in values.items():
        config.set(path, value)
    return config


def wait_until(predicate, timeout=5.0, interval=0.01) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class ScriptedProbe(EnvironmentProbe):
    """返回预设指标的探针，测试中可随时修改"""

    def __init__(self, stats: RealTimeStats = None, device_id: str = "device_test"):
        self._lock = threading.Lock()
        self._stats = stats or make_stats()
        self._device_id = device_id
        self.calls = 0

    def set_stats(self, **changes) -> None:
        with self._lock:
            self._stats = dataclasses.replace(self._stats, **changes)

    def device_info(self) -> DeviceInfo:
        return DeviceInfo(
            cpu_cores=4,
            logical_cores=8,
            total_memory_gb=16.0,
            architecture="x86_64",
            platform="Linux",
            battery_level=self._stats.battery_level,
            is_charging=self._stats.is_charging
        )

    def real_time_stats(self) -> RealTimeStats:
        with self._lock:
            self.calls += 1
            return dataclasses.replace(self._stats, timestamp=time.time())

    def device_id(self) -> str:
        return self._device_id


class FailingBackend(InMemoryBackend):
    """内存后端，fail 中列出的方法调用时抛出 ConnectionError"""

    def __init__(self, operations=None, fail=()):
        super().__init__(operations)
        self.fail = set(fail)
        self.calls = {}

    def _check(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        if name in self.fail:
            raise ConnectionError(f"{name} 不可用")

    def list_eligible_operations(self, user_id):
        self._check("list_eligible_operations")
        return super().list_eligible_operations(user_id)

    def create_task_execution(self, task, user_id, device_id):
        self._check("create_task_execution")
        return super().create_task_execution(task, user_id, device_id)

    def update_task_execution(self, execution_id, status, result=None, error=None,
                              compute_time_ms=None, completed_at=None):
        self._check("update_task_execution")
        return super().update_task_execution(execution_id, status, result, error, compute_time_ms, completed_at)

    def upsert_user_session(self, user_id, device_id, vitals, is_contributing):
        self._check("upsert_user_session")
        return super().upsert_user_session(user_id, device_id, vitals, is_contributing)

    def insert_contribution_record(self, session):
        self._check("insert_contribution_record")
        return super().insert_contribution_record(session)

    def insert_telemetry_sample(self, operations_completed, progress_percent, device_vitals):
        self._check("insert_telemetry_sample")
        return super().insert_telemetry_sample(operations_completed, progress_percent, device_vitals)

    def send_heartbeat(self, user_id, device_id, timestamp, status, tasks_processed, consecutive_failures):
        self._check("send_heartbeat")
        return super().send_heartbeat(user_id, device_id, timestamp, status, tasks_processed, consecutive_failures)

    def log_security_event(self, user_id, event_type, severity, description, metadata=None):
        self._check("log_security_event")
        return super().log_security_event(user_id, event_type, severity, description, metadata)


def prime_operation(op_id="op_prime", end=50, unlock=0, task_hash="hash_prime_sweep_v1_2024"):
    return {
        "id": op_id,
        "name": "OPERATION_PRIME_SWEEP",
        "required_compute_power": 1,
        "task_hash": task_hash,
        "task_signature": None,
        "unlock_threshold": unlock,
        "is_active": True,
        "parameters": {"start": 2, "end": end}
    }


def hash_operation(op_id="op_hash", iterations=20, unlock=0, task_hash="hash_batch_v1_2024"):
    return {
        "id": op_id,
        "name": "OPERATION_HASH_BATCH",
        "required_compute_power": 1,
        "task_hash": task_hash,
        "task_signature": None,
        "unlock_threshold": unlock,
        "is_active": True,
        "parameters": {"iterations": iterations, "seed": "test"}
    }
