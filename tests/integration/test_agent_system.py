import json
import logging
import os
import shutil
import sys
import tempfile
import unittest

from typer.testing import CliRunner

# 添加项目根目录到Python路径
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, project_root)

from compute_agent.cli.main import app
from compute_agent.storage.backend import InMemoryBackend, JsonlBackend
from compute_agent.system.background_worker import BackgroundWorker, WorkerState
from tests.fakes import ScriptedProbe, hash_operation, make_config, prime_operation, wait_until


class TestAgentEndToEnd(unittest.TestCase):
    """代理端到端集成测试"""

    def setUp(self):
        self.operations = [
            hash_operation("op_hash", iterations=50, unlock=0),
            prime_operation("op_prime", end=500, unlock=1)
        ]
        self.probe = ScriptedProbe()
        self.config = make_config(**{
            "resources.tick_interval": 0.05,
            "worker.heartbeat_interval": 0.05,
            "worker.health_check_interval": 0.1
        })

    def test_worker_processes_tasks(self):
        """测试工作进程发现、执行任务并上报心跳"""
        backend = InMemoryBackend(self.operations)
        worker = BackgroundWorker("user", backend, self.probe, self.config)

        self.assertTrue(worker.start())
        try:
            self.assertTrue(wait_until(lambda: worker.coordinator.tasks_processed >= 3))
            self.assertTrue(wait_until(lambda: len(backend.heartbeats) >= 2))
        finally:
            worker.stop()

        self.assertEqual(worker.state, WorkerState.IDLE)
        self.assertEqual(len(backend.contribution_records), 1)
        self.assertGreater(backend.contribution_records[0]["total_operations"], 0)

        operations = {record["operation_id"] for record in backend.task_executions.values()
                      if record["status"] == "completed"}
        self.assertEqual(operations, {"op_hash", "op_prime"})
        self.assertTrue(backend.telemetry_samples)
        self.assertEqual(backend.security_events, [])
        self.assertTrue(all(heartbeat["status"] == "active" for heartbeat in backend.heartbeats))
        self.assertFalse(backend.user_sessions[("user", "device_test")]["is_contributing"])

    def test_unsafe_device_stops_contribution(self):
        """测试设备状态变差后贡献停止，健康检查最终放弃重启"""
        backend = InMemoryBackend(self.operations)
        config = make_config(**{
            "resources.tick_interval": 0.02,
            "worker.health_check_interval": 0.02,
            "worker.heartbeat_interval": 3600,
            "worker.max_restart_attempts": 2
        })
        worker = BackgroundWorker("user", backend, self.probe, config)
        self.assertTrue(worker.start())
        try:
            self.probe.set_stats(battery_level=15, is_charging=False)
            self.assertTrue(wait_until(lambda: worker.state == WorkerState.STOPPED))
        finally:
            worker.stop()

        health = worker.health_status()
        self.assertFalse(health.is_healthy)
        severities = [event["severity"] for event in backend.security_events
                      if event["event_type"] == "worker_restart_exhausted"]
        self.assertEqual(severities, ["high"])

    def test_jsonl_persistence(self):
        data_dir = tempfile.mkdtemp()
        try:
            backend = JsonlBackend(data_dir, self.operations)
            worker = BackgroundWorker("user", backend, self.probe, self.config)
            self.assertTrue(worker.start())
            try:
                self.assertTrue(wait_until(lambda: worker.coordinator.tasks_processed >= 1))
                self.assertTrue(wait_until(lambda: backend.latest_heartbeat() is not None))
            finally:
                worker.stop()

            self.assertIsNotNone(JsonlBackend.read_latest_heartbeat(data_dir))
            reopened = JsonlBackend(data_dir, self.operations)
            self.assertGreaterEqual(reopened.get_completed_operation_count("user"), 1)
        finally:
            shutil.rmtree(data_dir, ignore_errors=True)


class TestCommandLine(unittest.TestCase):
    """命令行集成测试"""

    def setUp(self):
        self.runner = CliRunner()
        self.original_cwd = os.getcwd()
        self.test_dir = tempfile.mkdtemp()
        os.chdir(self.test_dir)
        self.config_dir = os.path.join(self.test_dir, "config")

    def tearDown(self):
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()
        os.chdir(self.original_cwd)
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def invoke(self, *args):
        return self.runner.invoke(app, ["--config-dir", self.config_dir, *args])

    def test_init_writes_config(self):
        result = self.invoke("init")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertTrue(os.path.exists(os.path.join(self.config_dir, "config.yaml")))
        self.assertTrue(os.path.exists(os.path.join(self.config_dir, "catalog.yaml")))
        self.assertTrue(os.path.isdir(os.path.join(self.test_dir, "data")))

    def test_run_task(self):
        output_file = os.path.join(self.test_dir, "result.json")
        result = self.invoke("run-task", "op_hash_batch", "--output", output_file)
        self.assertEqual(result.exit_code, 0, result.output)

        with open(output_file, "r", encoding="utf-8") as f:
            data = json.load(f)
        self.assertEqual(data["result_data"]["total_hashes"], 10000)
        self.assertEqual(len(data["verification_hash"]), 64)

    def test_run_unknown_task(self):
        result = self.invoke("run-task", "op_missing")
        self.assertEqual(result.exit_code, 1)

    def test_status_without_agent(self):
        result = self.invoke("status")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("代理未运行", result.output)

    def test_device_id(self):
        result = self.invoke("device-id", "--json")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("device_", result.output)


if __name__ == "__main__":
    unittest.main()
