"""
通用工具模块，提供日志和文件读写等功能
"""

from .logger import get_logger, init_logger, set_log_level
from .helpers import (
    save_json,
    load_json,
    append_jsonl,
    iter_jsonl,
    canonical_json,
    timestamp_to_str,
    timestamp_to_iso,
    to_base36
)

__all__ = [
    # 日志相关
    "get_logger",
    "init_logger",
    "set_log_level",
    # 辅助函数
    "save_json",
    "load_json",
    "append_jsonl",
    "iter_jsonl",
    "canonical_json",
    "timestamp_to_str",
    "timestamp_to_iso",
    "to_base36"
]

__version__ = "1.0.0"
