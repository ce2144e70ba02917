"""构建模块

拆分说明:
- backends.py: 构建后端（封闭变体 + 统一 execute 契约）
- cache.py: 已安装产物复用判断
- orchestrator.py: 并行构建编排
"""

from rockforge.services.build.backends import BACKEND_TYPES, BackendEnv, make_backends
from rockforge.services.build.cache import InstalledCache
from rockforge.services.build.orchestrator import BuildOrchestrator

__all__ = ["BACKEND_TYPES", "BackendEnv", "BuildOrchestrator", "InstalledCache", "make_backends"]
