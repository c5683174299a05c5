import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

# 日志格式配置
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "../../logs"))
DEFAULT_LOG_FILE = "agent.log"


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """获取指定名称的日志器"""
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)

    # 根日志器已配置时交给根日志器输出，避免重复
    if not logger.handlers and not logging.getLogger().handlers:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(console_handler)
        logger.setLevel(level or logging.INFO)
        logger.propagate = False

    return logger


def init_logger(
    log_dir: Optional[str] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> None:
    """
    初始化全局日志系统（代理启动时调用）

    参数:
        log_dir: 日志存储目录（默认使用项目根目录下的logs/）
        level: 全局日志级别
        max_bytes: 单个日志文件最大字节数
        backup_count: 日志备份文件数量
    """
    log_dir = log_dir or DEFAULT_LOG_DIR
    os.makedirs(log_dir, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # 清除已有的处理器（避免重复）
    if root_logger.handlers:
        root_logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # 全局轮转文件处理器
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, DEFAULT_LOG_FILE),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # 之前由 get_logger 单独挂载的处理器改为交给根日志器
    for name in list(logging.root.manager.loggerDict):
        existing = logging.getLogger(name)
        if existing.handlers and not existing.propagate:
            existing.handlers.clear()
            existing.setLevel(logging.NOTSET)
            existing.propagate = True

    root_logger.info(f"日志系统初始化完成，日志目录: {log_dir}")


def set_log_level(level: int) -> None:
    """设置全局日志级别"""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)
    for name in list(logging.root.manager.loggerDict):
        existing = logging.getLogger(name)
        if existing.handlers:
            existing.setLevel(level)
