"""存储模块，提供代理所依赖的持久化/遥测后端"""

from .backend import PersistenceBackend, InMemoryBackend, JsonlBackend, create_backend

__all__ = ["PersistenceBackend", "InMemoryBackend", "JsonlBackend", "create_backend"]
