from typing import Any, Dict, Iterator, Optional
import json
import os
import time
from datetime import datetime, timezone


def save_json(data: Any, file_path: str, indent: int = 2) -> bool:
    """
    保存数据到JSON文件

    参数:
        data: 要保存的数据
        file_path: 文件路径
        indent: JSON缩进

    返回:
        保存是否成功
    """
    try:
        directory = os.path.dirname(file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(file_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, ensure_ascii=False, default=str)
        return True
    except Exception as e:
        from .logger import get_logger
        logger = get_logger("utils.helpers")
        logger.error(f"保存JSON文件 {file_path} 失败: {str(e)}")
        return False


def load_json(file_path: str) -> Optional[Any]:
    """
    从JSON文件加载数据

    参数:
        file_path: 文件路径

    返回:
        加载的数据，失败则返回None
    """
    try:
        if not os.path.exists(file_path):
            return None

        with open(file_path, "r", encoding="utf-8") as f:
            return json.load(f)
    except Exception as e:
        from .logger import get_logger
        logger = get_logger("utils.helpers")
        logger.error(f"加载JSON文件 {file_path} 失败: {str(e)}")
        return None


def append_jsonl(record: Dict[str, Any], file_path: str) -> None:
    """
    追加一条记录到JSON Lines文件

    与 save_json 不同，写入失败时直接抛出异常，由调用方决定如何处理
    """
    directory = os.path.dirname(file_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(file_path, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False, default=str))
        f.write("\n")


def iter_jsonl(file_path: str) -> Iterator[Dict[str, Any]]:
    """逐行读取JSON Lines文件，跳过损坏的行"""
    if not os.path.exists(file_path):
        return

    with open(file_path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                continue


def canonical_json(data: Any) -> str:
    """生成稳定的JSON表示（键排序、无多余空白），用于计算校验哈希"""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def timestamp_to_str(timestamp: float, format: str = "%Y-%m-%d %H:%M:%S") -> str:
    """
    将时间戳转换为字符串

    参数:
        timestamp: 时间戳
        format: 时间格式

    返回:
        格式化的时间字符串
    """
    return time.strftime(format, time.localtime(timestamp))


def timestamp_to_iso(timestamp: Optional[float] = None) -> str:
    """将时间戳转换为UTC ISO-8601字符串，None表示当前时间"""
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def to_base36(number: int) -> str:
    """将非负整数转换为36进制字符串"""
    if number < 0:
        raise ValueError(f"仅支持非负整数: {number}")
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    result = []
    while number:
        number, remainder = divmod(number, 36)
        result.append(digits[remainder])
    return "".join(reversed(result))
