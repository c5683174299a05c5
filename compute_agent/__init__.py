"""
后台计算贡献代理核心模块
"""
# 后台计算贡献代理核心包
__version__ = "1.0.0"

# 导出核心模块和类
from compute_agent.system.background_worker import BackgroundWorker
from compute_agent.config.config_manager import ConfigManager

__all__ = ["BackgroundWorker", "ConfigManager"]
