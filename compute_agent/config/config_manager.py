import copy
import os
import yaml
from typing import Dict, Any, List
from compute_agent.utils.logger import get_logger


class ConfigManager:
    """配置管理器，负责加载、保存和访问配置文件"""

    def __init__(self, config_dir: str = "config"):
        """
        初始化配置管理器

        Args:
            config_dir: 配置文件目录
        """
        self.config_dir = os.path.abspath(config_dir)
        self.logger = get_logger("config_manager")

        # 配置文件路径
        self.main_config_path = os.path.join(self.config_dir, "config.yaml")
        self.catalog_path = os.path.join(self.config_dir, "catalog.yaml")

        # 配置数据
        self._config: Dict[str, Any] = {}
        self._catalog: Dict[str, Any] = {}

        # 加载配置
        self.load()

    def load(self) -> None:
        """加载所有配置文件"""
        if not os.path.exists(self.config_dir):
            self.logger.warning(f"配置目录 {self.config_dir} 不存在，将使用默认配置")
            self._init_default_configs()
            return

        # 加载主配置，缺失的键用默认值补齐
        try:
            if os.path.exists(self.main_config_path):
                with open(self.main_config_path, "r", encoding="utf-8") as f:
                    loaded = yaml.safe_load(f) or {}
                self._init_default_main_config()
                self._merge(self._config, loaded)
                self.logger.info(f"已加载主配置: {self.main_config_path}")
            else:
                self.logger.warning(f"主配置文件 {self.main_config_path} 不存在，使用默认配置")
                self._init_default_main_config()
        except Exception as e:
            self.logger.error(f"加载主配置失败: {str(e)}，使用默认配置")
            self._init_default_main_config()

        # 加载任务目录
        try:
            if os.path.exists(self.catalog_path):
                with open(self.catalog_path, "r", encoding="utf-8") as f:
                    self._catalog = yaml.safe_load(f) or {}
                self.logger.info(f"已加载任务目录: {self.catalog_path}")
            else:
                self.logger.warning(f"任务目录文件 {self.catalog_path} 不存在，使用默认任务目录")
                self._init_default_catalog()
        except Exception as e:
            self.logger.error(f"加载任务目录失败: {str(e)}，使用默认任务目录")
            self._init_default_catalog()

    @classmethod
    def _merge(cls, base: Dict[str, Any], override: Dict[str, Any]) -> None:
        """递归合并配置字典"""
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                cls._merge(base[key], value)
            else:
                base[key] = value

    def _init_default_main_config(self) -> None:
        """初始化默认主配置"""
        self._config = {
            "general": {
                "log_level": "INFO",
                "log_dir": "logs",
                "pid_file": "compute_agent.pid"
            },
            "agent": {
                "user_id": "local_user"
            },
            "storage": {
                "backend": "jsonl",  # jsonl 或 memory
                "data_dir": "data",
                "history_limit": 1000      # 本地后端在内存中保留的最近记录条数
            },
            "compute": {
                "yield_every": 100,        # 每多少次迭代让出一次控制权
                "progress_every": 1000,    # 每多少次迭代上报一次进度
                "hash_function": "sha256",
                "task_timeout": None,      # 单个任务的墙钟超时(秒)，None表示不限制
                "signing_key": "",
                "allowed_task_hashes": [
                    "hash_prime_sweep_v1_2024",
                    "hash_crypto_analysis_v1_2024",
                    "hash_data_matrix_v1_2024",
                    "hash_batch_v1_2024"
                ]
            },
            "resources": {
                "tick_interval": 5,        # 设备指标采集间隔(秒)
                "idle_cpu_percent": 30,    # 仅空闲时贡献时的CPU占用上限
                "limits": {
                    "max_cpu_percent": 25,
                    "max_memory_mb": 512,
                    "only_when_charging": False,
                    "only_when_idle": False,
                    "temperature_threshold": 75,
                    "max_battery_drain_percent": 10
                }
            },
            "coordination": {
                "poll_interval": 10,       # 调度轮询间隔(秒)
                "error_backoff": 30,       # 出错后的退避间隔(秒)
                "fetch_limit": 5
            },
            "worker": {
                "heartbeat_interval": 30,
                "health_check_interval": 60,
                "failure_threshold": 3,
                "max_restart_attempts": 5,
                "restart_delay": 5,
                "max_task_errors": 10,
                "max_recent_errors": 10
            }
        }

    def _init_default_catalog(self) -> None:
        """初始化默认任务目录"""
        self._catalog = {
            "operations": [
                {
                    "id": "op_prime_sweep",
                    "name": "OPERATION_PRIME_SWEEP",
                    "description": "使用试除法搜索区间内的素数",
                    "required_compute_power": 100,
                    "task_hash": "hash_prime_sweep_v1_2024",
                    "task_signature": "sig_prime_sweep_v1_2024",
                    "unlock_threshold": 0,
                    "is_active": True,
                    "parameters": {"start": 2, "end": 200000}
                },
                {
                    "id": "op_crypto_analysis",
                    "name": "OPERATION_CRYPTO_ANALYSIS",
                    "description": "分布式哈希前缀搜索",
                    "required_compute_power": 500,
                    "task_hash": "hash_crypto_analysis_v1_2024",
                    "task_signature": "sig_crypto_analysis_v1_2024",
                    "unlock_threshold": 5,
                    "is_active": True,
                    "parameters": {"hash_function": "sha256", "target_prefix": "0000", "max_iterations": 200000}
                },
                {
                    "id": "op_data_matrix",
                    "name": "OPERATION_DATA_MATRIX",
                    "description": "矩阵乘法与转置",
                    "required_compute_power": 1000,
                    "task_hash": "hash_data_matrix_v1_2024",
                    "task_signature": "sig_data_matrix_v1_2024",
                    "unlock_threshold": 10,
                    "is_active": True,
                    "parameters": {"matrix_size": 200, "seed": 42, "operations": ["multiply", "transpose"]}
                },
                {
                    "id": "op_hash_batch",
                    "name": "OPERATION_HASH_BATCH",
                    "description": "批量计算SHA-256摘要",
                    "required_compute_power": 50,
                    "task_hash": "hash_batch_v1_2024",
                    "task_signature": "sig_batch_v1_2024",
                    "unlock_threshold": 0,
                    "is_active": True,
                    "parameters": {"hash_function": "sha256", "iterations": 10000, "seed": "batch"}
                }
            ]
        }

    def _init_default_configs(self) -> None:
        """初始化所有默认配置"""
        self._init_default_main_config()
        self._init_default_catalog()

    def save(self) -> None:
        """保存所有配置文件"""
        os.makedirs(self.config_dir, exist_ok=True)

        try:
            with open(self.main_config_path, "w", encoding="utf-8") as f:
                yaml.dump(self._config, f, sort_keys=False, indent=2, allow_unicode=True)
            self.logger.info(f"已保存主配置: {self.main_config_path}")
        except Exception as e:
            self.logger.error(f"保存主配置失败: {str(e)}")

        try:
            with open(self.catalog_path, "w", encoding="utf-8") as f:
                yaml.dump(self._catalog, f, sort_keys=False, indent=2, allow_unicode=True)
            self.logger.info(f"已保存任务目录: {self.catalog_path}")
        except Exception as e:
            self.logger.error(f"保存任务目录失败: {str(e)}")

    def _resolve(self, path: str):
        """根据路径前缀确定配置字典和键列表"""
        if path.startswith("catalog."):
            return self._catalog, path.split(".")[1:]
        return self._config, path.split(".")

    def get(self, path: str, default: Any = None) -> Any:
        """
        通过点路径获取配置值

        Args:
            path: 配置路径，如 "worker.heartbeat_interval"
            default: 默认值

        Returns:
            配置值或默认值
        """
        current, parts = self._resolve(path)
        for part in parts:
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return default
        return current

    def set(self, path: str, value: Any) -> None:
        """
        通过点路径设置配置值

        Args:
            path: 配置路径，如 "resources.tick_interval"
            value: 要设置的值
        """
        current, parts = self._resolve(path)
        for part in parts[:-1]:
            if part not in current or not isinstance(current[part], dict):
                current[part] = {}
            current = current[part]

        current[parts[-1]] = value
        self.logger.debug(f"设置配置 {path} = {value}")

    def get_operations(self) -> List[Dict[str, Any]]:
        """获取任务目录中的所有操作定义"""
        return copy.deepcopy(self._catalog.get("operations", []))

    def get_resource_limits(self) -> Dict[str, Any]:
        """获取默认资源限制"""
        return dict(self.get("resources.limits", {}) or {})

    def __str__(self) -> str:
        return f"ConfigManager(config_dir={self.config_dir})"
