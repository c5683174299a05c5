import os
import sys
import unittest

# 添加项目根目录到Python路径
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, project_root)

from compute_agent.resources.models import ContributionSession, ResourceLimits
from compute_agent.resources.resource_manager import ResourceManager, calculate_contribution_score
from compute_agent.storage.backend import InMemoryBackend
from tests.fakes import FailingBackend, ScriptedProbe, make_config, make_stats, wait_until


class TestContributionPolicy(unittest.TestCase):
    """测试贡献安全策略"""

    def setUp(self):
        self.probe = ScriptedProbe()
        self.manager = ResourceManager(ResourceLimits(), self.probe, InMemoryBackend(), make_config())

    def test_battery_rules(self):
        self.assertFalse(self.manager.can_contribute(make_stats(battery=15, charging=True)))
        self.assertTrue(self.manager.can_contribute(make_stats(battery=20, charging=True)))
        self.assertFalse(self.manager.can_contribute(make_stats(battery=49, charging=False)))
        self.assertTrue(self.manager.can_contribute(make_stats(battery=50, charging=False)))
        self.assertTrue(self.manager.can_contribute(make_stats(battery=40, charging=True)))

    def test_temperature_rule(self):
        self.assertTrue(self.manager.can_contribute(make_stats(temperature=75)))
        self.assertFalse(self.manager.can_contribute(make_stats(temperature=75.5)))

    def test_unknown_readings_never_block(self):
        """测试电量或温度未知时不会阻止贡献"""
        stats = make_stats(battery=None, charging=None, temperature=None)
        self.assertTrue(self.manager.can_contribute(stats))

    def test_only_when_charging(self):
        self.manager.update_resource_limits({"only_when_charging": True})
        self.assertFalse(self.manager.can_contribute(make_stats(battery=90, charging=False)))
        self.assertTrue(self.manager.can_contribute(make_stats(battery=90, charging=True)))
        self.assertTrue(self.manager.can_contribute(make_stats(battery=None, charging=None)))

    def test_only_when_idle(self):
        self.manager.update_resource_limits({"only_when_idle": True})
        self.assertFalse(self.manager.can_contribute(make_stats(cpu=50)))
        self.assertTrue(self.manager.can_contribute(make_stats(cpu=10)))

    def test_blockers_describe_reasons(self):
        reasons = self.manager.contribution_blockers(make_stats(battery=15, charging=False, temperature=90))
        self.assertEqual(len(reasons), 3)

    def test_unknown_limit_rejected(self):
        with self.assertRaises(ValueError):
            self.manager.update_resource_limits({"max_gpu_percent": 10})

    def test_invalid_limit_value_rejected(self):
        """测试非法的限制值被拒绝，原有限制保持不变"""
        for value in (None, "hot", float("nan"), -1, True):
            with self.assertRaises(ValueError):
                self.manager.update_resource_limits({"temperature_threshold": value})
        with self.assertRaises(ValueError):
            self.manager.update_resource_limits({"only_when_charging": "maybe"})
        self.assertEqual(self.manager.get_resource_limits().temperature_threshold, 75)

        # 被拒绝的更新不影响安全策略
        self.assertFalse(self.manager.can_contribute(make_stats(battery=10, charging=False)))

    def test_limit_values_coerced(self):
        """测试配置文件中的字符串值被转换为对应类型"""
        limits = ResourceLimits.from_dict({
            "temperature_threshold": "70",
            "max_cpu_percent": 30,
            "only_when_idle": "true"
        })
        self.assertEqual(limits.temperature_threshold, 70.0)
        self.assertIsInstance(limits.max_cpu_percent, float)
        self.assertIs(limits.only_when_idle, True)

        with self.assertRaises(ValueError):
            ResourceLimits.from_dict({"max_battery_drain_percent": "ten"})


class TestContributionScore(unittest.TestCase):
    """测试贡献分数"""

    def test_weights(self):
        self.assertEqual(calculate_contribution_score(make_stats(cpu=50, memory=40, temperature=50), 75), 52.0)
        self.assertEqual(calculate_contribution_score(make_stats(cpu=50, memory=40, temperature=80), 75), 42.0)
        self.assertEqual(calculate_contribution_score(make_stats(cpu=50, memory=40, temperature=None), 75), 42.0)

    def test_clamped_non_negative(self):
        self.assertEqual(calculate_contribution_score(make_stats(cpu=-5, memory=-1, temperature=None), 75), 0.0)
        self.assertEqual(calculate_contribution_score(make_stats(cpu=150, memory=100, temperature=None), 75), 90.0)

    def test_session_running_mean(self):
        session = ContributionSession(user_id="u", device_id="d")
        session.record_sample(10, 20, 5.5)
        session.record_sample(30, 40, 4.25)
        self.assertEqual(session.total_operations, 2)
        self.assertAlmostEqual(session.avg_cpu_usage, 20.0)
        self.assertAlmostEqual(session.avg_memory_usage, 30.0)
        self.assertEqual(session.contribution_score, 9.75)


class TestResourceManager(unittest.TestCase):
    """测试贡献会话生命周期"""

    def setUp(self):
        self.probe = ScriptedProbe()
        self.backend = InMemoryBackend()
        self.manager = ResourceManager({"temperature_threshold": 75}, self.probe, self.backend, make_config())

    def tearDown(self):
        self.manager.stop_contribution()

    def test_start_contribution(self):
        self.assertTrue(self.manager.start_contribution("user", "device"))
        self.assertTrue(self.manager.is_currently_contributing())
        self.assertTrue(self.manager.is_running)
        self.assertEqual(self.manager.current_session().start_battery_level, 90.0)
        self.assertTrue(self.backend.user_sessions[("user", "device")]["is_contributing"])

        # 重复启动不会创建新会话
        session = self.manager.current_session()
        self.assertFalse(self.manager.start_contribution("user", "device"))
        self.assertIs(self.manager.current_session(), session)

    def test_start_refused_by_policy(self):
        self.probe.set_stats(battery_level=15)
        self.assertFalse(self.manager.start_contribution("user", "device"))
        self.assertFalse(self.manager.is_currently_contributing())
        self.assertIsNone(self.manager.current_session())

    def test_stop_twice_persists_once(self):
        """测试重复停止只持久化一次会话"""
        self.manager.start_contribution("user", "device")
        self.manager.stop_contribution()
        self.manager.stop_contribution()

        self.assertEqual(len(self.backend.contribution_records), 1)
        self.assertIsNotNone(self.backend.contribution_records[0]["ended_at"])
        self.assertFalse(self.backend.user_sessions[("user", "device")]["is_contributing"])
        self.assertFalse(self.manager.is_running)

    def test_low_battery_tick_stops_contribution(self):
        """测试一次低电量采集就会自动停止贡献"""
        self.manager.start_contribution("user", "device")
        self.manager.handle_stats_update(make_stats(battery=15, charging=False))

        self.assertFalse(self.manager.is_currently_contributing())
        self.assertEqual(len(self.backend.contribution_records), 1)
        self.assertFalse(self.backend.user_sessions[("user", "device")]["is_contributing"])

    def test_battery_drain_limit(self):
        self.probe.set_stats(battery_level=80, is_charging=False)
        self.manager.start_contribution("user", "device")

        self.manager.handle_stats_update(make_stats(battery=75, charging=False))
        self.assertTrue(self.manager.is_currently_contributing())

        self.manager.handle_stats_update(make_stats(battery=65, charging=False))
        self.assertFalse(self.manager.is_currently_contributing())

    def test_score_non_decreasing(self):
        """测试贡献分数只增不减"""
        self.manager.start_contribution("user", "device")
        scores = []
        for cpu, memory, temperature in [(10, 20, 50), (0, 0, None), (90, 60, 70), (5, 5, 30)]:
            self.manager.handle_stats_update(make_stats(cpu=cpu, memory=memory, temperature=temperature))
            scores.append(self.manager.current_session().contribution_score)
        self.assertEqual(scores, sorted(scores))
        self.assertEqual(self.manager.current_session().total_operations, 4)

    def test_limit_update_applies_on_next_tick(self):
        self.manager.start_contribution("user", "device")
        self.manager.update_resource_limits({"temperature_threshold": 40})
        self.assertTrue(self.manager.is_currently_contributing())

        self.manager.handle_stats_update(make_stats(temperature=50))
        self.assertFalse(self.manager.is_currently_contributing())

    def test_updates_ignored_when_not_contributing(self):
        self.manager.handle_stats_update(make_stats())
        self.assertEqual(self.backend.user_sessions, {})

    def test_persistence_errors_are_recorded(self):
        """测试持久化失败不会抛出异常"""
        backend = FailingBackend(fail={"insert_contribution_record", "upsert_user_session"})
        manager = ResourceManager(None, self.probe, backend, make_config())
        self.assertTrue(manager.start_contribution("user", "device"))
        manager.stop_contribution()

        self.assertFalse(manager.is_currently_contributing())
        self.assertEqual(backend.calls["insert_contribution_record"], 1)
        self.assertGreaterEqual(manager.get_status()["error_count"], 2)

    def test_monitor_thread_auto_stop(self):
        """测试监控线程在采集到危险指标后停止贡献"""
        manager = ResourceManager(None, self.probe, self.backend, make_config(**{"resources.tick_interval": 0.02}))
        manager.start_contribution("user", "device")
        self.assertTrue(wait_until(lambda: self.probe.calls >= 3))

        self.probe.set_stats(battery_level=15)
        self.assertTrue(wait_until(lambda: len(self.backend.contribution_records) == 1))
        self.assertFalse(manager.is_currently_contributing())
        self.assertGreater(self.backend.contribution_records[0]["total_operations"], 0)

    def test_status(self):
        self.manager.start_contribution("user", "device")
        status = self.manager.get_status()
        self.assertTrue(status["is_contributing"])
        self.assertEqual(status["limits"]["temperature_threshold"], 75)
        self.assertEqual(status["current_session"]["user_id"], "user")


if __name__ == "__main__":
    unittest.main()
