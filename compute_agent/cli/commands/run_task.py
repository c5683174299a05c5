"""
本地执行任务命令模块
"""
from typing import Optional

import typer

from compute_agent.cli.utils import print_error, print_info, print_json, print_success
from compute_agent.compute.compute_engine import ComputeEngine
from compute_agent.compute.errors import AuthorizationError, ExecutionError
from compute_agent.compute.integrity import TaskVerifier
from compute_agent.compute.task_models import ComputeTask
from compute_agent.utils.helpers import save_json


def run_task(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="操作ID或名称，如 op_prime_sweep / OPERATION_PRIME_SWEEP"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="结果保存路径(JSON)"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="任务超时(秒)")
):
    """在本地执行一个目录中的操作并输出结果"""
    config = ctx.obj["config"]
    operation = next(
        (op for op in config.get_operations() if name in (op.get("id"), op.get("name"))),
        None
    )
    if operation is None:
        print_error(f"任务目录中不存在操作: {name}")
        raise typer.Exit(1)

    task = ComputeTask.from_operation(operation)
    engine = ComputeEngine(TaskVerifier.from_config(config), config)

    last_reported = [-1]

    def _on_progress(progress: float, operations: int) -> None:
        percent = int(progress * 100)
        if percent // 10 > last_reported[0]:
            last_reported[0] = percent // 10
            print_info(f"进度: {percent}% (操作数 {operations})")

    print_info(f"正在执行 {operation['id']} ({task.task_type.value})...")
    try:
        result = engine.execute(task, on_progress=_on_progress,
                                deadline=timeout or config.get("compute.task_timeout"))
    except AuthorizationError as e:
        print_error(f"任务未通过完整性校验: {e}")
        raise typer.Exit(1)
    except ExecutionError as e:
        print_error(f"任务执行失败: {e}")
        raise typer.Exit(1)

    print_success(f"任务完成，耗时 {result.compute_time_ms}ms，操作数 {result.operations}")
    if output:
        if not save_json(result.to_dict(), output):
            raise typer.Exit(1)
        print_success(f"结果已保存到: {output}")
    else:
        print_json(result.to_dict())
