"""统一异常体系

所有业务异常继承 RockforgeError，CLI 层据此输出一行友好提示并给出退出码。
领域异常都携带足够的身份信息（包名、版本、依赖链），
无需提高日志级别重跑即可定位问题。
"""

from __future__ import annotations


class RockforgeError(Exception):
    """基础异常"""

    code: str = "UNKNOWN"
    exit_code: int = 1

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConfigError(RockforgeError):
    """配置文件缺失或内容无效"""

    code = "CONFIG_ERROR"
    exit_code = 2


class ValidationError(RockforgeError):
    """输入数据校验失败"""

    code = "VALIDATION_ERROR"
    exit_code = 2

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class PackageNotFoundError(RockforgeError):
    """清单索引或安装树中不存在指定包"""

    code = "PACKAGE_NOT_FOUND"

    def __init__(self, name: str, detail: str = "") -> None:
        suffix = f": {detail}" if detail else ""
        super().__init__(f"包不存在: {name}{suffix}")
        self.name = name


class VersionParseError(RockforgeError):
    """版本号或约束表达式无法解析"""

    code = "VERSION_PARSE_ERROR"

    def __init__(self, text: str, reason: str) -> None:
        super().__init__(f"无法解析版本 '{text}': {reason}")
        self.text = text
        self.reason = reason


def _format_chain(chain: list[str] | tuple[str, ...]) -> str:
    return " -> ".join(chain)


class UnsatisfiableConstraint(RockforgeError):
    """没有任何可用版本同时满足全部约束"""

    code = "UNSATISFIABLE"

    def __init__(
        self, name: str, requirements: list[str], chain: list[str] | None = None,
    ) -> None:
        self.name = name
        self.requirements = list(requirements)
        self.chain = list(chain or [])
        msg = f"无法满足 {name} 的约束: {', '.join(self.requirements) or '(任意)'}"
        if self.chain:
            msg += f" (依赖链: {_format_chain(self.chain)})"
        super().__init__(msg)


class CyclicDependency(RockforgeError):
    """同一身份 (name, version) 直接或间接依赖自身"""

    code = "CYCLIC_DEPENDENCY"

    def __init__(self, chain: list[str]) -> None:
        self.chain = list(chain)
        super().__init__(f"检测到循环依赖: {_format_chain(self.chain)}")


class CorruptArtifact(RockforgeError):
    """缓存或已安装产物的哈希与锁文件记录不一致"""

    code = "CORRUPT_ARTIFACT"

    def __init__(self, package: str, expected: str, actual: str) -> None:
        self.package = package
        self.expected = expected
        self.actual = actual
        super().__init__(f"产物校验失败 {package}: 期望 {expected}, 实际 {actual}")


class BuildFailure(RockforgeError):
    """单个包构建失败"""

    code = "BUILD_FAILURE"

    def __init__(self, package: str, backend: str, detail: str) -> None:
        self.package = package
        self.backend = backend
        self.detail = detail
        super().__init__(f"构建失败 {package} [{backend}]: {detail}")


class LockfileDrift(RockforgeError):
    """锁文件与清单索引或项目声明不一致"""

    code = "LOCKFILE_DRIFT"

    def __init__(self, package: str, detail: str) -> None:
        self.package = package
        self.detail = detail
        super().__init__(f"锁文件漂移 {package}: {detail}")


class TreeIntegrityError(RockforgeError):
    """锁文件引用的条目在安装树中不存在，或安装树索引自相矛盾"""

    code = "TREE_INTEGRITY"

    def __init__(self, package: str, detail: str) -> None:
        self.package = package
        self.detail = detail
        super().__init__(f"安装树不一致 {package}: {detail}")


class UninstallConflict(RockforgeError):
    """非级联卸载被依赖方阻止，可改用 cascade 重试"""

    code = "UNINSTALL_CONFLICT"

    def __init__(self, package: str, dependents: list[str]) -> None:
        self.package = package
        self.dependents = sorted(dependents)
        super().__init__(
            f"无法卸载 {package}: 仍被 {', '.join(self.dependents)} 依赖（可使用 --cascade）"
        )


class ExecutionError(RockforgeError):
    """外部进程执行失败"""

    code = "EXECUTION_ERROR"


class LockTimeoutError(RockforgeError):
    """在超时时间内未能获得安装树的咨询锁"""

    code = "LOCK_TIMEOUT"


class OperationCancelled(RockforgeError):
    """操作被中断（fail-fast 或用户中断）"""

    code = "CANCELLED"
