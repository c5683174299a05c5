"""
初始化命令模块
"""
import os

import typer

from compute_agent.cli.utils import create_directories, print_error, print_info, print_success


def init(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="覆盖已存在的配置文件")
):
    """创建目录并写入默认配置文件"""
    config = ctx.obj["config"]
    print_info("正在初始化代理配置...")

    dirs = [
        config.config_dir,
        config.get("storage.data_dir", "data"),
        config.get("general.log_dir", "logs")
    ]
    ok, failed = create_directories(dirs)
    if not ok:
        print_error(f"以下目录创建失败: {', '.join(failed)}")
        raise typer.Exit(1)

    existing = [path for path in (config.main_config_path, config.catalog_path) if os.path.exists(path)]
    if existing and not force:
        for path in existing:
            print_info(f"配置文件已存在: {path}")
        print_info("使用 --force 覆盖已存在的配置文件")
    else:
        config.save()
        print_success(f"已写入配置文件: {config.main_config_path}, {config.catalog_path}")

    print_success("初始化完成!")
