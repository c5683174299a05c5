import hashlib
import hmac
from typing import Iterable, Optional

from compute_agent.compute.task_models import ComputeTask
from compute_agent.utils.logger import get_logger


class TaskVerifier:
    """
    任务完整性校验器

    任务哈希在白名单中即通过；配置了签名密钥时，签名为
    HMAC-SHA256(密钥, 任务哈希) 的十六进制串的任务也通过。
    """

    def __init__(self, allowed_hashes: Iterable[str], signing_key: Optional[str] = None):
        self._allowed_hashes = frozenset(h for h in allowed_hashes if h)
        self._signing_key = signing_key.encode("utf-8") if signing_key else None
        self.logger = get_logger("compute.integrity")

    @classmethod
    def from_config(cls, config) -> "TaskVerifier":
        return cls(
            allowed_hashes=config.get("compute.allowed_task_hashes", []) or [],
            signing_key=config.get("compute.signing_key", "") or None,
        )

    @property
    def supports_signatures(self) -> bool:
        return self._signing_key is not None

    def sign(self, task_hash: str) -> str:
        """为任务哈希生成签名（用于签发任务和测试）"""
        if self._signing_key is None:
            raise ValueError("未配置签名密钥，无法生成签名")
        return hmac.new(self._signing_key, task_hash.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_signature(self, task: ComputeTask) -> bool:
        if self._signing_key is None or not task.signature or not task.hash:
            return False
        return hmac.compare_digest(self.sign(task.hash), task.signature)

    def verify(self, task: ComputeTask) -> bool:
        if task.hash and task.hash in self._allowed_hashes:
            return True
        if self.verify_signature(task):
            return True
        self.logger.warning(f"任务 {task.id} (操作 {task.operation_id}) 未通过完整性校验")
        return False
