"""
资源管理器

负责贡献会话的生命周期：根据设备实时指标判断是否允许贡献，在每个采集周期
更新会话统计与贡献分数，并在安全策略不再允许时自动结束会话。
"""
import threading
import time
from typing import Any, Dict, List, Mapping, Optional, Union

from compute_agent.monitoring.environment_probe import EnvironmentProbe, RealTimeStats
from compute_agent.resources.models import ContributionSession, ResourceLimits
from compute_agent.storage.backend import PersistenceBackend
from compute_agent.system.base_component import BaseComponent
from compute_agent.utils.logger import get_logger

# 贡献分数权重
CPU_SCORE_WEIGHT = 0.6
MEMORY_SCORE_WEIGHT = 0.3
STABILITY_BONUS = 10.0

# 电量安全线
CRITICAL_BATTERY_LEVEL = 20
UNPLUGGED_MIN_BATTERY_LEVEL = 50


def calculate_contribution_score(stats: RealTimeStats, temperature_threshold: float) -> float:
    """
    计算单个采集周期的贡献分数增量

    0.6 * CPU占用 + 0.3 * 内存占用，温度已知且低于阈值时再加10分稳定性奖励。
    占用率限制在 [0, 100]，因此增量非负。
    """
    cpu = min(max(float(stats.cpu_usage or 0), 0.0), 100.0)
    memory = min(max(float(stats.memory_usage or 0), 0.0), 100.0)
    stability = STABILITY_BONUS if stats.temperature is not None and stats.temperature < temperature_threshold else 0.0
    return round(cpu * CPU_SCORE_WEIGHT + memory * MEMORY_SCORE_WEIGHT + stability, 2)


class ResourceManager(BaseComponent):
    """贡献会话管理组件"""

    def __init__(self, limits: Union[ResourceLimits, Mapping[str, Any], None],
                 probe: EnvironmentProbe, backend: PersistenceBackend, config=None):
        max_recent_errors = config.get("worker.max_recent_errors", 10) if config is not None else 10
        super().__init__(max_recent_errors=max_recent_errors)
        self.logger = get_logger("resources.manager")
        self.probe = probe
        self.backend = backend

        get = config.get if config is not None else (lambda _path, default=None: default)
        self.tick_interval = float(get("resources.tick_interval", 5))
        self.idle_cpu_percent = float(get("resources.idle_cpu_percent", 30))

        if isinstance(limits, ResourceLimits):
            self._limits = limits
        else:
            self._limits = ResourceLimits.from_dict(limits)
        self._limits_lock = threading.Lock()

        self._session_lock = threading.RLock()
        self._is_contributing = False
        self._session: Optional[ContributionSession] = None

        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # 安全策略
    # ------------------------------------------------------------------

    def contribution_blockers(self, stats: RealTimeStats,
                              limits: Optional[ResourceLimits] = None,
                              session: Optional[ContributionSession] = None) -> List[str]:
        """返回当前指标下禁止贡献的原因列表，空列表表示允许贡献"""
        limits = limits or self.get_resource_limits()
        reasons = []
        battery = stats.battery_level
        unplugged = stats.is_charging is False

        if battery is not None and battery < CRITICAL_BATTERY_LEVEL:
            reasons.append(f"电量过低 ({battery}%)")
        if unplugged and battery is not None and battery < UNPLUGGED_MIN_BATTERY_LEVEL:
            reasons.append(f"未充电且电量低于{UNPLUGGED_MIN_BATTERY_LEVEL}% ({battery}%)")
        if stats.temperature is not None and stats.temperature > limits.temperature_threshold:
            reasons.append(f"温度过高 ({stats.temperature}°C > {limits.temperature_threshold}°C)")
        if limits.only_when_charging and unplugged:
            reasons.append("仅在充电时贡献")
        if limits.only_when_idle and stats.cpu_usage > self.idle_cpu_percent:
            reasons.append(f"设备不空闲 (CPU {stats.cpu_usage}% > {self.idle_cpu_percent}%)")
        if (session is not None and unplugged and battery is not None
                and session.start_battery_level is not None
                and session.start_battery_level - battery > limits.max_battery_drain_percent):
            reasons.append(
                f"电量消耗超过上限 ({session.start_battery_level - battery:.1f}% > "
                f"{limits.max_battery_drain_percent}%)"
            )
        return reasons

    def can_contribute(self, stats: RealTimeStats) -> bool:
        with self._session_lock:
            session = self._session
        return not self.contribution_blockers(stats, session=session)

    # ------------------------------------------------------------------
    # 会话生命周期
    # ------------------------------------------------------------------

    def start_contribution(self, user_id: str, device_id: str) -> bool:
        """开始贡献资源，安全策略不允许或已在贡献时返回False"""
        with self._session_lock:
            if self._is_contributing:
                self.logger.warning("已经在贡献资源，忽略重复的启动请求")
                return False

            stats = self.probe.real_time_stats()
            blockers = self.contribution_blockers(stats)
            if blockers:
                self.logger.info(f"当前不满足贡献条件: {'; '.join(blockers)}")
                return False

            self._session = ContributionSession(
                user_id=user_id,
                device_id=device_id,
                start_battery_level=stats.battery_level
            )
            self._is_contributing = True
            self._mark_started()

            self._stop_event = threading.Event()
            self._monitor_thread = threading.Thread(
                target=self._monitor_loop,
                args=(self._stop_event,),
                name="resource-monitor",
                daemon=True
            )
            self._monitor_thread.start()
            session_id = self._session.id

        self._update_user_session(user_id, device_id, stats, True)
        self.logger.info(f"开始贡献资源，会话 {session_id}，"
                         f"采集间隔: {self.tick_interval}秒")
        return True

    def stop_contribution(self, final_stats: Optional[RealTimeStats] = None) -> None:
        """结束贡献并持久化会话，重复调用不会重复持久化"""
        with self._session_lock:
            if not self._is_contributing or self._session is None:
                return
            session = self._session
            session.ended_at = time.time()
            self._session = None
            self._is_contributing = False
            self._mark_stopped()
            self._stop_event.set()
            monitor_thread = self._monitor_thread

        self._join_thread(monitor_thread, max(self.tick_interval, 1.0) + 5, self.logger, "资源监控")

        try:
            self.backend.insert_contribution_record(session)
        except Exception as e:
            self.logger.error(f"保存贡献会话 {session.id} 失败: {str(e)}")
            self.record_error(e)

        stats = final_stats
        if stats is None:
            try:
                stats = self.probe.real_time_stats()
            except Exception as e:
                self.logger.error(f"结束会话时采集设备指标失败: {str(e)}")
                self.record_error(e)
        if stats is not None:
            self._update_user_session(session.user_id, session.device_id, stats, False)

        self.logger.info(
            f"已停止贡献资源，会话 {session.id}，采样 {session.total_operations} 次，"
            f"贡献分数 {session.contribution_score}"
        )

    def handle_stats_update(self, stats: RealTimeStats) -> None:
        """处理一次指标采集：检查安全策略，更新会话统计并上报"""
        with self._session_lock:
            session = self._session
            if not self._is_contributing or session is None:
                return

            # 每个周期只读取一次限制，周期中途的修改在下个周期生效
            limits = self.get_resource_limits()
            blockers = self.contribution_blockers(stats, limits, session)
            if not blockers:
                session.record_sample(
                    stats.cpu_usage,
                    stats.memory_usage,
                    calculate_contribution_score(stats, limits.temperature_threshold)
                )
            user_id, device_id = session.user_id, session.device_id

        if blockers:
            self.logger.warning(f"触发安全限制，自动停止贡献: {'; '.join(blockers)}")
            self.stop_contribution(final_stats=stats)
            return

        self._check_usage_limits(stats, limits)
        self._update_user_session(user_id, device_id, stats, True)

    def _check_usage_limits(self, stats: RealTimeStats, limits: ResourceLimits) -> None:
        if stats.process_memory_mb is not None and stats.process_memory_mb > limits.max_memory_mb:
            self.logger.warning(f"进程内存过高: {stats.process_memory_mb}MB > {limits.max_memory_mb}MB")
        if stats.cpu_usage > limits.max_cpu_percent:
            self.logger.debug(f"CPU使用率高于贡献上限: {stats.cpu_usage}% > {limits.max_cpu_percent}%")

    def _monitor_loop(self, stop_event: threading.Event) -> None:
        """指标采集循环"""
        self.logger.debug("资源监控循环开始")
        while not stop_event.wait(self.tick_interval):
            try:
                self.handle_stats_update(self.probe.real_time_stats())
            except Exception as e:
                self.logger.error(f"资源监控循环出错: {str(e)}", exc_info=True)
                self.record_error(e)
        self.logger.debug("资源监控循环已退出")

    def _update_user_session(self, user_id: str, device_id: str, stats: RealTimeStats,
                             is_contributing: bool) -> None:
        try:
            self.backend.upsert_user_session(user_id, device_id, stats, is_contributing)
        except Exception as e:
            self.logger.error(f"更新用户会话失败: {str(e)}")
            self.record_error(e)

    # ------------------------------------------------------------------
    # 查询与配置
    # ------------------------------------------------------------------

    def update_resource_limits(self, partial: Mapping[str, Any]) -> None:
        with self._limits_lock:
            self._limits = self._limits.merged(partial)
        self.logger.info(f"资源限制已更新: {dict(partial)}")

    def get_resource_limits(self) -> ResourceLimits:
        with self._limits_lock:
            return self._limits

    def get_current_stats(self) -> RealTimeStats:
        return self.probe.real_time_stats()

    def is_currently_contributing(self) -> bool:
        return self._is_contributing

    def current_session(self) -> Optional[ContributionSession]:
        with self._session_lock:
            return self._session

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        session = self.current_session()
        status.update({
            "is_contributing": self._is_contributing,
            "current_session": session.to_dict() if session else None,
            "limits": self.get_resource_limits().to_dict(),
            "tick_interval": self.tick_interval
        })
        return status
