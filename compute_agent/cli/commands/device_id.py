"""
设备标识命令模块
"""
import typer

from compute_agent.cli.utils import print_info, print_json
from compute_agent.monitoring.environment_probe import PsutilEnvironmentProbe


def device_id(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="以JSON格式输出")
):
    """显示设备标识、设备信息和当前指标"""
    probe = PsutilEnvironmentProbe()
    data = {
        "device_id": probe.device_id(),
        "device_info": probe.device_info().to_dict(),
        "real_time_stats": probe.real_time_stats().to_dict()
    }
    if as_json:
        print_json(data)
        return

    print_info(f"设备标识: {data['device_id']}")
    for key, value in data["device_info"].items():
        print_info(f"  {key}: {value}")
