"""
启动命令模块
"""
import os
import signal
import threading

import typer

from compute_agent.cli.utils import print_error, print_info, print_success, print_warning, running_agent_pid
from compute_agent.monitoring.environment_probe import PsutilEnvironmentProbe
from compute_agent.storage.backend import create_backend
from compute_agent.system.background_worker import BackgroundWorker, WorkerState
from compute_agent.utils.logger import get_logger

logger = get_logger("cli.start")


def run_worker(config, user_id: str, pid_file: str) -> bool:
    """
    在前台运行后台工作进程，直到收到 SIGINT/SIGTERM 或工作进程放弃重启

    Returns:
        是否正常运行并退出
    """
    backend = create_backend(config)
    probe = PsutilEnvironmentProbe()
    worker = BackgroundWorker(user_id, backend, probe, config)

    stop_requested = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info(f"收到信号 {signal.Signals(signum).name}，准备停止")
        stop_requested.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    if not worker.start():
        print_error("代理启动失败，请检查设备状态（电量、充电、温度）和日志")
        return False

    with open(pid_file, "w") as f:
        f.write(str(os.getpid()))

    print_success(f"代理已启动，设备: {worker.device_id}")
    print_info("代理正在运行，按 Ctrl+C 停止")
    try:
        while not stop_requested.wait(1):
            if worker.state == WorkerState.STOPPED:
                print_error("代理多次重启失败，已停止运行")
                return False
    finally:
        logger.info("正在停止代理")
        worker.stop()
        if os.path.exists(pid_file):
            os.remove(pid_file)
        print_info("代理已停止")
    return True


def start(
    ctx: typer.Context,
    user_id: str = typer.Option(None, "--user-id", "-u", help="贡献资源的用户ID（默认读取配置）")
):
    """在前台启动后台计算代理"""
    config = ctx.obj["config"]
    pid_file = config.get("general.pid_file", "compute_agent.pid")

    pid = running_agent_pid(pid_file)
    if pid is not None:
        print_warning(f"代理已在运行 (PID: {pid})")
        raise typer.Exit(1)

    try:
        ok = run_worker(config, user_id or config.get("agent.user_id", "local_user"), pid_file)
    except Exception as e:
        logger.error(f"启动代理时发生错误: {e}", exc_info=True)
        print_error(f"启动代理时发生错误: {e}")
        raise typer.Exit(1)

    if not ok:
        raise typer.Exit(1)
