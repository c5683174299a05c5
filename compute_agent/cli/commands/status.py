"""
状态命令模块
"""
import time

import psutil
import typer

from compute_agent.cli.utils import print_info, print_json, print_success, print_warning, running_agent_pid
from compute_agent.storage.backend import JsonlBackend
from compute_agent.utils.helpers import timestamp_to_str


def status(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="以JSON格式输出")
):
    """显示代理进程状态和最近一次心跳"""
    config = ctx.obj["config"]
    pid_file = config.get("general.pid_file", "compute_agent.pid")

    pid = running_agent_pid(pid_file)
    process_info = None
    if pid is not None:
        try:
            process = psutil.Process(pid)
            with process.oneshot():
                process_info = {
                    "pid": pid,
                    "started_at": timestamp_to_str(process.create_time()),
                    "cpu_percent": process.cpu_percent(interval=0.1),
                    "memory_mb": round(process.memory_info().rss / 1024 / 1024, 2)
                }
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            print_warning(f"读取进程信息失败: {e}")

    heartbeat = None
    if config.get("storage.backend", "jsonl") == "jsonl":
        heartbeat = JsonlBackend.read_latest_heartbeat(config.get("storage.data_dir", "data"))

    if as_json:
        print_json({"running": pid is not None, "process": process_info, "last_heartbeat": heartbeat})
        return

    if pid is None:
        print_warning("代理未运行")
    else:
        print_success(f"代理正在运行 (PID: {pid})")
        if process_info:
            print_info(f"启动时间: {process_info['started_at']}")
            print_info(f"CPU: {process_info['cpu_percent']}%  内存: {process_info['memory_mb']}MB")

    if heartbeat:
        age = time.time() - float(heartbeat.get("timestamp", 0))
        print_info(
            f"最近心跳: {heartbeat.get('last_heartbeat')} ({age:.0f}秒前)，状态: {heartbeat.get('status')}，"
            f"已处理任务: {heartbeat.get('tasks_processed')}，连续失败: {heartbeat.get('consecutive_failures')}"
        )
    else:
        print_info("没有心跳记录")
