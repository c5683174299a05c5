"""命令行接口模块"""
from compute_agent.cli.main import app

main = app

__all__ = ["app", "main"]
