#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
后台计算贡献代理CLI主程序
"""
import logging

import typer

from compute_agent.cli.commands import device_id, init, run_task, start, status, stop
from compute_agent.config.config_manager import ConfigManager
from compute_agent.utils.logger import get_logger, init_logger

# 初始化日志
logger = get_logger(__name__)

# 创建Typer应用
app = typer.Typer(no_args_is_help=True, add_completion=False)

app.command(name="init", help="初始化目录和默认配置文件")(init.init)
app.command(name="start", help="在前台启动后台计算代理")(start.start)
app.command(name="stop", help="停止正在运行的代理")(stop.stop)
app.command(name="status", help="查看代理运行状态和最近一次心跳")(status.status)
app.command(name="device-id", help="显示设备标识和设备信息")(device_id.device_id)
app.command(name="run-task", help="在本地执行一个目录中的操作")(run_task.run_task)


@app.callback()
def main(
    ctx: typer.Context,
    config_dir: str = typer.Option("config", "--config-dir", "-c", help="配置文件目录"),
    log_level: str = typer.Option(None, "--log-level", "-l", help="日志级别 (DEBUG, INFO, WARNING, ERROR)")
):
    """后台计算贡献代理CLI工具"""
    # 加载配置
    try:
        config = ConfigManager(config_dir=config_dir)
    except Exception as e:
        logger.error(f"配置加载失败: {e}")
        raise typer.Exit(1)

    level_name = (log_level or config.get("general.log_level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    init_logger(config.get("general.log_dir", "logs"), level)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


if __name__ == "__main__":
    app()
