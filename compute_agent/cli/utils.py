import json
import os
import sys
from typing import Any, List, Optional, Tuple

import psutil

# 终端颜色代码
COLOR_RESET = "\033[0m"
COLOR_GREEN = "\033[32m"
COLOR_RED = "\033[31m"
COLOR_YELLOW = "\033[33m"
COLOR_BLUE = "\033[34m"


def print_success(message: str) -> None:
    """打印成功消息（绿色）"""
    print(f"{COLOR_GREEN}[+] {message}{COLOR_RESET}")


def print_error(message: str) -> None:
    """打印错误消息（红色）"""
    print(f"{COLOR_RED}[-] {message}{COLOR_RESET}", file=sys.stderr)


def print_warning(message: str) -> None:
    """打印警告消息（黄色）"""
    print(f"{COLOR_YELLOW}[!] {message}{COLOR_RESET}")


def print_info(message: str) -> None:
    """打印信息消息（蓝色）"""
    print(f"{COLOR_BLUE}[*] {message}{COLOR_RESET}")


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def create_directories(dirs: List[str]) -> Tuple[bool, List[str]]:
    """
    创建目录列表

    Args:
        dirs: 要创建的目录路径列表

    Returns:
        (是否全部成功, 失败的目录列表)
    """
    failed = []
    for dir_path in dirs:
        try:
            if os.path.exists(dir_path):
                print_info(f"目录已存在: {dir_path}")
            else:
                os.makedirs(dir_path, exist_ok=True)
                print_success(f"已创建目录: {dir_path}")
        except OSError as e:
            print_error(f"创建目录 {dir_path} 失败: {str(e)}")
            failed.append(dir_path)

    return len(failed) == 0, failed


def read_pid_file(pid_file: str) -> Optional[int]:
    """读取PID文件，文件不存在或内容无效时返回None"""
    if not os.path.exists(pid_file):
        return None
    try:
        with open(pid_file, "r") as f:
            return int(f.read().strip())
    except (ValueError, OSError) as e:
        print_warning(f"读取PID文件 {pid_file} 失败: {e}")
        return None


def running_agent_pid(pid_file: str) -> Optional[int]:
    """返回PID文件中仍在运行的进程号；进程已退出时清理PID文件"""
    pid = read_pid_file(pid_file)
    if pid is None:
        return None
    if psutil.pid_exists(pid):
        return pid
    try:
        os.remove(pid_file)
    except OSError as e:
        print_warning(f"删除无效的PID文件失败: {e}")
    return None
