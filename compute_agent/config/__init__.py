"""配置管理模块，负责代理所有配置的加载、管理和保存"""

from .config_manager import ConfigManager

__all__ = ["ConfigManager"]
__version__ = "1.0.0"
