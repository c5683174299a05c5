"""
停止命令模块
"""
import os

import psutil
import typer

from compute_agent.cli.utils import print_error, print_info, print_success, print_warning, running_agent_pid


def stop(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="强制终止进程"),
    timeout: float = typer.Option(20.0, "--timeout", "-t", help="等待进程退出的秒数")
):
    """通过PID文件停止正在运行的代理"""
    config = ctx.obj["config"]
    pid_file = config.get("general.pid_file", "compute_agent.pid")

    pid = running_agent_pid(pid_file)
    if pid is None:
        print_warning("代理似乎未运行（未找到PID文件或进程已退出）")
        return

    try:
        process = psutil.Process(pid)
        if force:
            print_warning("使用强制终止模式")
            process.kill()
        else:
            print_info(f"正在向代理进程发送停止信号 (PID: {pid})...")
            process.terminate()

        try:
            process.wait(timeout=timeout)
        except psutil.TimeoutExpired:
            print_warning(f"代理进程未能在 {timeout} 秒内退出，强制终止")
            process.kill()
            process.wait(timeout=5)
    except psutil.NoSuchProcess:
        print_info("代理进程已退出")
    except psutil.AccessDenied:
        print_error("停止代理失败: 权限不足")
        raise typer.Exit(1)

    if os.path.exists(pid_file):
        os.remove(pid_file)
    print_success("代理已停止!")
