import os
import shutil
import sys
import tempfile
import time
import unittest

# 添加项目根目录到Python路径
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, project_root)

from compute_agent.compute.task_models import ComputeTask
from compute_agent.resources.models import ContributionSession
from compute_agent.storage.backend import InMemoryBackend, JsonlBackend, create_backend
from tests.fakes import make_config, make_stats, prime_operation


class TestInMemoryBackend(unittest.TestCase):
    """测试内存后端"""

    def setUp(self):
        self.backend = InMemoryBackend([prime_operation("op_a"), dict(prime_operation("op_b"), is_active=False)])
        self.task = ComputeTask.from_operation(prime_operation("op_a"))

    def test_only_active_operations_listed(self):
        self.assertEqual([op["id"] for op in self.backend.list_eligible_operations("user")], ["op_a"])

    def test_execution_lifecycle(self):
        execution_id = self.backend.create_task_execution(self.task, "user", "device")
        self.assertEqual(self.backend.task_executions[execution_id]["status"], "running")
        self.assertEqual(self.backend.get_completed_operation_count("user"), 0)

        self.backend.update_task_execution(execution_id, "completed", result={"primes": [2]}, compute_time_ms=5)
        # 重复标记完成不会重复计数
        self.backend.update_task_execution(execution_id, "completed")

        record = self.backend.task_executions[execution_id]
        self.assertEqual(record["result_data"], {"primes": [2]})
        self.assertEqual(record["compute_time_ms"], 5)
        self.assertEqual(self.backend.get_completed_operation_count("user"), 1)
        self.assertEqual(self.backend.get_completed_operation_count("other"), 0)

    def test_invalid_updates(self):
        execution_id = self.backend.create_task_execution(self.task, "user", "device")
        with self.assertRaises(ValueError):
            self.backend.update_task_execution(execution_id, "paused")
        with self.assertRaises(KeyError):
            self.backend.update_task_execution("missing", "failed")

    def test_heartbeat_and_event_validation(self):
        with self.assertRaises(ValueError):
            self.backend.send_heartbeat("user", "device", time.time(), "sleeping", 0, 0)
        with self.assertRaises(ValueError):
            self.backend.log_security_event("user", "event", "urgent", "描述")

        self.backend.send_heartbeat("user", "device", time.time(), "active", 3, 0)
        self.assertEqual(self.backend.latest_heartbeat("user")["tasks_processed"], 3)
        self.assertIsNone(self.backend.latest_heartbeat("nobody"))

    def test_user_session_upsert(self):
        self.backend.upsert_user_session("user", "device", make_stats(battery=55), True)
        self.backend.upsert_user_session("user", "device", make_stats(battery=54), False)
        self.assertEqual(len(self.backend.user_sessions), 1)
        record = self.backend.user_sessions[("user", "device")]
        self.assertEqual(record["battery_level"], 54)
        self.assertFalse(record["is_contributing"])


class TestJsonlBackend(unittest.TestCase):
    """测试本地文件后端"""

    def setUp(self):
        self.data_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.data_dir, ignore_errors=True)

    def test_replay_completed_counts(self):
        """测试重新打开后恢复已完成操作数"""
        backend = JsonlBackend(self.data_dir, [prime_operation()])
        task = ComputeTask.from_operation(prime_operation())
        done = backend.create_task_execution(task, "user", "device")
        backend.update_task_execution(done, "completed", result={"ok": True})
        failed = backend.create_task_execution(task, "user", "device")
        backend.update_task_execution(failed, "failed", error="boom")

        reopened = JsonlBackend(self.data_dir, [prime_operation()])
        self.assertEqual(reopened.get_completed_operation_count("user"), 1)

    def test_records_written(self):
        backend = JsonlBackend(self.data_dir)
        session = ContributionSession(user_id="user", device_id="device", started_at=1000.0, ended_at=1002.0)
        backend.insert_contribution_record(session)
        backend.insert_telemetry_sample(10, 50.0, make_stats())
        backend.log_security_event("user", "worker_start_failed", "medium", "启动失败", {"attempt": 1})
        backend.upsert_user_session("user", "device", make_stats(), True)

        for name in ("contribution_records.jsonl", "telemetry_samples.jsonl",
                     "security_events.jsonl", "user_sessions.json"):
            self.assertTrue(os.path.exists(os.path.join(self.data_dir, name)), name)
        self.assertEqual(backend.contribution_records[0]["compute_time_ms"], 2000)

        reopened = JsonlBackend(self.data_dir)
        self.assertIn(("user", "device"), reopened.user_sessions)

    def test_read_latest_heartbeat(self):
        self.assertIsNone(JsonlBackend.read_latest_heartbeat(self.data_dir))
        backend = JsonlBackend(self.data_dir)
        backend.send_heartbeat("user", "device", 100.0, "active", 1, 0)
        backend.send_heartbeat("user", "device", 200.0, "error", 2, 1)

        latest = JsonlBackend.read_latest_heartbeat(self.data_dir)
        self.assertEqual(latest["status"], "error")
        self.assertEqual(latest["timestamp"], 200.0)

    def test_memory_history_bounded(self):
        """测试内存中只保留最近的记录，文件保留全部记录"""
        backend = JsonlBackend(self.data_dir, [prime_operation()], history_limit=3)
        for i in range(10):
            backend.insert_telemetry_sample(i, 10.0, make_stats())
            backend.send_heartbeat("user", "device", float(i), "active", i, 0)
            backend.log_security_event("user", "worker_start_failed", "medium", "启动失败")

        task = ComputeTask.from_operation(prime_operation())
        running = backend.create_task_execution(task, "user", "device")
        for _ in range(5):
            execution_id = backend.create_task_execution(task, "user", "device")
            backend.update_task_execution(execution_id, "completed")

        self.assertEqual(len(backend.telemetry_samples), 3)
        self.assertEqual(len(backend.heartbeats), 3)
        self.assertEqual(len(backend.security_events), 3)
        self.assertEqual(backend.latest_heartbeat()["timestamp"], 9.0)
        self.assertEqual(len(backend.task_executions), 3)
        self.assertIn(running, backend.task_executions)
        self.assertEqual(backend.get_completed_operation_count("user"), 5)

        with open(os.path.join(self.data_dir, "telemetry_samples.jsonl"), encoding="utf-8") as f:
            self.assertEqual(len(f.readlines()), 10)
        reopened = JsonlBackend(self.data_dir, history_limit=3)
        self.assertEqual(reopened.get_completed_operation_count("user"), 5)


class TestCreateBackend(unittest.TestCase):

    def test_backend_types(self):
        self.assertIsInstance(create_backend(make_config(**{"storage.backend": "memory"})), InMemoryBackend)

        data_dir = tempfile.mkdtemp()
        try:
            backend = create_backend(make_config(**{"storage.backend": "jsonl", "storage.data_dir": data_dir}))
            self.assertIsInstance(backend, JsonlBackend)
            self.assertEqual(len(backend.list_eligible_operations("user")), 4)
        finally:
            shutil.rmtree(data_dir, ignore_errors=True)

        with self.assertRaises(ValueError):
            create_backend(make_config(**{"storage.backend": "postgres"}))


if __name__ == "__main__":
    unittest.main()
