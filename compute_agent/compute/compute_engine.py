"""
计算引擎

一次只执行一个经过校验的任务。长时间运行的算法（素数搜索、哈希计算、
哈希前缀搜索）在固定的迭代节奏上让出控制权，并在让出点检查停止标志和截止时间。
"""
import hashlib
import math
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np

from compute_agent.compute.errors import (
    AuthorizationError,
    ExecutionError,
    TaskCancelledError,
    TaskTimeoutError
)
from compute_agent.compute.integrity import TaskVerifier
from compute_agent.compute.task_models import ComputeTask, TaskResult, TaskType
from compute_agent.utils.helpers import canonical_json
from compute_agent.utils.logger import get_logger

ProgressCallback = Callable[[float, int], None]


class _ExecutionContext:
    """单次任务执行的让出、进度和截止时间状态"""

    def __init__(self, engine: "ComputeEngine", task: ComputeTask,
                 on_progress: Optional[ProgressCallback], deadline_at: Optional[float]):
        self.engine = engine
        self.task = task
        self.on_progress = on_progress
        self.deadline_at = deadline_at

    def checkpoint(self) -> None:
        """让出点：短暂交出CPU，并检查取消和超时"""
        time.sleep(0)
        if self.engine._stop_requested.is_set():
            raise TaskCancelledError(f"任务 {self.task.id} 已被取消")
        if self.deadline_at is not None and time.monotonic() > self.deadline_at:
            raise TaskTimeoutError(f"任务 {self.task.id} 超过截止时间")

    def report(self, progress: float, operations: int) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(min(max(progress, 0.0), 1.0), operations)
        except Exception as e:
            # 进度上报与结果持久化相互独立，回调失败不影响任务本身
            self.engine.logger.warning(f"任务 {self.task.id} 进度回调失败: {str(e)}")


class ComputeEngine:
    """串行执行计算任务的引擎"""

    def __init__(self, verifier: TaskVerifier, config=None,
                 yield_every: Optional[int] = None, progress_every: Optional[int] = None):
        self.verifier = verifier
        self.logger = get_logger("compute.engine")

        get = config.get if config is not None else (lambda _path, default=None: default)
        self.yield_every = max(1, int(yield_every or get("compute.yield_every", 100)))
        self.progress_every = max(1, int(progress_every or get("compute.progress_every", 1000)))
        self.hash_function = get("compute.hash_function", "sha256") or "sha256"

        self._lock = threading.Lock()
        self._is_running = False
        self._current_task: Optional[ComputeTask] = None
        self._stop_requested = threading.Event()

        self._handlers: Dict[TaskType, Callable[[Mapping[str, Any], _ExecutionContext], Tuple[Any, int]]] = {
            TaskType.PRIME_SEARCH: self._search_primes,
            TaskType.HASH_COMPUTATION: self._compute_hashes,
            TaskType.CRYPTO_ANALYSIS: self._analyze_hash_prefix,
            TaskType.MATRIX_OPERATIONS: self._matrix_operations,
        }

    @property
    def is_running(self) -> bool:
        return self._is_running

    def execute(self, task: ComputeTask, on_progress: Optional[ProgressCallback] = None,
                deadline: Optional[float] = None) -> TaskResult:
        """
        执行一个任务

        Args:
            task: 待执行的任务
            on_progress: 进度回调 (进度0~1, 已完成操作数)
            deadline: 墙钟截止时间(秒)，None表示不限制

        Returns:
            TaskResult

        Raises:
            AuthorizationError: 完整性校验失败，任务不会运行
            ExecutionError: 任务类型未知、参数错误、被取消、超时或内部故障
        """
        if not self.verifier.verify(task):
            raise AuthorizationError(task.id)

        with self._lock:
            if self._is_running:
                raise ExecutionError(
                    f"计算引擎正忙（当前任务 {self._current_task.id if self._current_task else '?'}），"
                    f"拒绝执行任务 {task.id}"
                )
            self._is_running = True
            self._current_task = task
            self._stop_requested.clear()

        self.logger.info(f"开始执行任务 {task.id}，类型: {getattr(task.task_type, 'value', task.task_type)}")
        start_time = time.monotonic()
        deadline_at = start_time + deadline if deadline else None
        context = _ExecutionContext(self, task, on_progress, deadline_at)

        try:
            try:
                handler = self._handlers[TaskType(task.task_type)]
            except (KeyError, ValueError):
                raise ExecutionError(f"未知任务类型: {task.task_type}")

            try:
                result_data, operations = handler(task.parameters, context)
            except ExecutionError:
                raise
            except Exception as e:
                raise ExecutionError(f"任务 {task.id} 执行失败: {str(e)}") from e

            context.report(1.0, operations)
        finally:
            with self._lock:
                self._is_running = False
                self._current_task = None

        compute_time_ms = int((time.monotonic() - start_time) * 1000)
        verification_hash = hashlib.sha256(
            (canonical_json(result_data) + task.hash + (task.signature or "")).encode("utf-8")
        ).hexdigest()

        self.logger.info(f"任务 {task.id} 执行完成，耗时 {compute_time_ms}ms，操作数 {operations}")
        return TaskResult(
            task_id=task.id,
            result_data=result_data,
            compute_time_ms=compute_time_ms,
            operations=operations,
            verification_hash=verification_hash
        )

    def stop(self) -> None:
        """请求取消当前任务，在下一个让出点生效"""
        self._stop_requested.set()

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "is_running": self._is_running,
                "current_task": self._current_task
            }

    # ------------------------------------------------------------------
    # 任务算法
    # ------------------------------------------------------------------

    @staticmethod
    def _is_prime(number: int) -> bool:
        if number < 2:
            return False
        if number < 4:
            return True
        if number % 2 == 0:
            return False
        for divisor in range(3, math.isqrt(number) + 1, 2):
            if number % divisor == 0:
                return False
        return True

    def _search_primes(self, params: Mapping[str, Any], ctx: _ExecutionContext) -> Tuple[Any, int]:
        if "end" in params:
            start = int(params.get("start", 2))
            end = int(params["end"])
        elif "range_size" in params:
            start, end = 2, int(params["range_size"])
        else:
            raise ExecutionError("素数搜索缺少参数 end 或 range_size")
        if end < start:
            raise ExecutionError(f"素数搜索区间无效: [{start}, {end}]")

        target_primes = params.get("target_primes")
        target_primes = int(target_primes) if target_primes else None

        primes: List[int] = []
        span = max(end - start, 1)
        operations = 0
        for current in range(start, end + 1):
            operations += 1
            if self._is_prime(current):
                primes.append(current)
                if target_primes and len(primes) >= target_primes:
                    break
            if operations % self.yield_every == 0:
                ctx.checkpoint()
            if operations % self.progress_every == 0:
                ctx.report((current - start) / span, operations)

        return {
            "primes": primes,
            "total_primes_found": len(primes),
            "range_searched": [start, end],
            "operations_performed": operations
        }, operations

    def _digest(self, algorithm: str, data: str) -> str:
        try:
            hasher = hashlib.new(algorithm)
        except ValueError:
            raise ExecutionError(f"不支持的哈希算法: {algorithm}")
        hasher.update(data.encode("utf-8"))
        return hasher.hexdigest()

    def _compute_hashes(self, params: Mapping[str, Any], ctx: _ExecutionContext) -> Tuple[Any, int]:
        algorithm = params.get("hash_function") or self.hash_function
        if "inputs" in params:
            inputs = [str(item) for item in params["inputs"]]
        elif "iterations" in params:
            seed = params.get("seed", "data")
            inputs = [f"{seed}_{i}" for i in range(int(params["iterations"]))]
        else:
            raise ExecutionError("哈希计算缺少参数 inputs 或 iterations")

        total = len(inputs)
        hashes: List[str] = []
        for processed, item in enumerate(inputs, start=1):
            hashes.append(self._digest(algorithm, item))
            if processed % self.yield_every == 0:
                ctx.checkpoint()
                ctx.report(processed / total, processed)

        return {
            "hashes": hashes,
            "total_hashes": len(hashes),
            "hash_function": algorithm,
            "operations_performed": total
        }, total

    def _analyze_hash_prefix(self, params: Mapping[str, Any], ctx: _ExecutionContext) -> Tuple[Any, int]:
        algorithm = params.get("hash_function") or self.hash_function
        target_prefix = str(params.get("target_prefix") or "0" * int(params.get("pattern_length", 4)))
        max_iterations = int(params.get("max_iterations", params.get("iterations", 100000)))
        seed = params.get("seed", "block")

        found_nonce = None
        found_hash = None
        operations = 0
        for nonce in range(max_iterations):
            operations += 1
            digest = self._digest(algorithm, f"{seed}_{nonce}")
            if digest.startswith(target_prefix):
                found_nonce, found_hash = nonce, digest
                break
            if operations % self.yield_every == 0:
                ctx.checkpoint()
            if operations % self.progress_every == 0:
                ctx.report(operations / max_iterations, operations)

        return {
            "found": found_hash is not None,
            "nonce": found_nonce,
            "hash": found_hash,
            "target_prefix": target_prefix,
            "hash_function": algorithm,
            "operations_performed": operations
        }, operations

    @staticmethod
    def _summarize_matrix(matrix: np.ndarray) -> Dict[str, Any]:
        return {
            "shape": list(matrix.shape),
            "trace": float(np.trace(matrix)) if matrix.ndim == 2 else None,
            "checksum": float(np.sum(matrix))
        }

    def _matrix_operations(self, params: Mapping[str, Any], ctx: _ExecutionContext) -> Tuple[Any, int]:
        ctx.checkpoint()
        reducer = params.get("reducer")
        if reducer:
            return self._apply_reducer(str(reducer), params)

        if "matrix_size" not in params:
            raise ExecutionError("矩阵运算缺少参数 reducer 或 matrix_size")

        size = int(params["matrix_size"])
        if size <= 0:
            raise ExecutionError(f"矩阵尺寸无效: {size}")
        rng = np.random.default_rng(params.get("seed"))
        matrix_a = rng.uniform(-50, 50, (size, size))
        matrix_b = rng.uniform(-50, 50, (size, size))
        operations = size * size * 2

        results: Dict[str, Any] = {}
        for name in params.get("operations") or ["multiply"]:
            if name == "multiply":
                results["multiplication"] = self._summarize_matrix(matrix_a @ matrix_b)
                operations += size ** 3
            elif name == "transpose":
                results["transpose"] = self._summarize_matrix(matrix_a.T)
                operations += size * size
            elif name == "determinant":
                sign, log_abs_det = np.linalg.slogdet(matrix_a)
                results["determinant"] = {"sign": float(sign), "log_abs_det": float(log_abs_det)}
                operations += size ** 3
            elif name == "inverse":
                results["inverse"] = self._summarize_matrix(np.linalg.inv(matrix_a))
                operations += size ** 3
            else:
                raise ExecutionError(f"不支持的矩阵运算: {name}")

        return {
            "matrix_size": size,
            "results": results,
            "operations_performed": operations
        }, operations

    def _apply_reducer(self, reducer: str, params: Mapping[str, Any]) -> Tuple[Any, int]:
        if "data" not in params:
            raise ExecutionError(f"归约 {reducer} 缺少参数 data")
        data = np.asarray(params["data"], dtype=float)
        operations = int(data.size)

        if reducer == "sum":
            value: Any = float(np.sum(data))
        elif reducer == "average":
            if data.size == 0:
                raise ExecutionError("无法对空数据求平均值")
            value = float(np.mean(data))
        elif reducer == "sort":
            value = np.sort(data, axis=None).tolist()
        elif reducer == "transpose":
            value = data.T.tolist()
        elif reducer == "multiply":
            if "matrix_b" not in params:
                raise ExecutionError("矩阵乘法缺少参数 matrix_b")
            value = (data @ np.asarray(params["matrix_b"], dtype=float)).tolist()
            operations += int(data.size * np.asarray(params["matrix_b"]).shape[-1])
        elif reducer == "determinant":
            value = float(np.linalg.det(data))
        else:
            raise ExecutionError(f"不支持的归约操作: {reducer}")

        return {"reducer": reducer, "value": value, "operations_performed": operations}, operations
