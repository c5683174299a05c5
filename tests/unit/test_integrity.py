import os
import sys
import unittest

# 添加项目根目录到Python路径
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, project_root)

from compute_agent.compute.integrity import TaskVerifier
from compute_agent.compute.task_models import ComputeTask, TaskType
from tests.fakes import make_config


def make_task(task_hash, signature=None):
    return ComputeTask(
        id="task-1",
        operation_id="op-1",
        task_type=TaskType.HASH_COMPUTATION,
        parameters={"inputs": ["a"]},
        hash=task_hash,
        signature=signature
    )


class TestTaskVerifier(unittest.TestCase):
    """测试任务完整性校验"""

    def test_allow_list(self):
        verifier = TaskVerifier(["hash_a", "hash_b"])
        self.assertTrue(verifier.verify(make_task("hash_a")))
        self.assertFalse(verifier.verify(make_task("hash_c")))
        self.assertFalse(verifier.verify(make_task("")))

    def test_signature(self):
        """测试HMAC签名校验"""
        verifier = TaskVerifier([], signing_key="secret")
        self.assertTrue(verifier.supports_signatures)

        signature = verifier.sign("hash_new")
        self.assertEqual(len(signature), 64)
        self.assertTrue(verifier.verify(make_task("hash_new", signature)))
        self.assertFalse(verifier.verify(make_task("hash_new", "0" * 64)))
        self.assertFalse(verifier.verify(make_task("hash_other", signature)))

        other = TaskVerifier([], signing_key="another")
        self.assertFalse(other.verify(make_task("hash_new", signature)))

    def test_without_key(self):
        verifier = TaskVerifier([])
        self.assertFalse(verifier.supports_signatures)
        with self.assertRaises(ValueError):
            verifier.sign("hash")
        self.assertFalse(verifier.verify(make_task("hash", "anything")))

    def test_from_config(self):
        config = make_config(**{"compute.signing_key": "k"})
        verifier = TaskVerifier.from_config(config)
        self.assertTrue(verifier.verify(make_task("hash_prime_sweep_v1_2024")))
        self.assertTrue(verifier.verify(make_task("custom", verifier.sign("custom"))))


if __name__ == "__main__":
    unittest.main()
