"""版本与约束引擎

版本语法（兼容旧索引格式）::

    1.2.3            纯数字分量，分隔符 . 或 _
    1.2.3-rc1        预发布/构建标签（也可写作 1.2.3rc1）
    1.2.3-1          末尾的 -<数字> 为 specrev（规格修订号）
    1.2.3-rc1-2      标签 + specrev

排序规则:
  1. 数字分量逐位比较，短的一方补 0（1.0 == 1.0.0）
  2. 数字相同时，带标签的版本排在不带标签的之前
  3. 仍相同时比较 specrev，缺省视为 0，大者为新

约束运算符: == = ~= > >= < <= ~>
  - 无运算符的裸版本视为 ==
  - ~= 沿用旧索引语义：不等于
  - ~> 为悲观约束：~> 1.2 等价于 >=1.2, <2
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from functools import total_ordering

from rockforge.core.exceptions import VersionParseError

_SPECREV_RE = re.compile(r"^(?P<rest>.+?)-(?P<rev>\d+)$")
_CORE_RE = re.compile(
    r"^(?P<nums>\d+(?:[._]\d+)*)(?:[-._+]?(?P<label>[A-Za-z][0-9A-Za-z.]*))?$"
)
_LABEL_TOKEN_RE = re.compile(r"\d+|[A-Za-z]+")


def _label_key(label: str) -> tuple[tuple[int, int, str], ...]:
    """标签自然排序键：rc2 < rc10，字母段按字典序"""
    key: list[tuple[int, int, str]] = []
    for tok in _LABEL_TOKEN_RE.findall(label.lower()):
        if tok.isdigit():
            key.append((0, int(tok), ""))
        else:
            key.append((1, 0, tok))
    return tuple(key)


@total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    """已解析的版本号"""

    components: tuple[int, ...]
    label: str | None = None
    specrev: int | None = None

    def sort_key(self) -> tuple:
        nums = list(self.components)
        while len(nums) > 1 and nums[-1] == 0:
            nums.pop()
        has_label = self.label is not None
        return (
            tuple(nums),
            0 if has_label else 1,
            _label_key(self.label) if has_label else (),
            self.specrev or 0,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.sort_key() == other.sort_key()

    def __lt__(self, other: Version) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __hash__(self) -> int:
        return hash(self.sort_key())

    def __str__(self) -> str:
        text = ".".join(str(c) for c in self.components)
        if self.label is not None:
            text += f"-{self.label}"
        if self.specrev is not None:
            text += f"-{self.specrev}"
        return text

    def __repr__(self) -> str:
        return f"Version('{self}')"


def parse(text: str) -> Version:
    """解析版本字符串

    Raises:
        VersionParseError: 空串、非数字开头或无法识别的尾段
    """
    raw = text.strip() if isinstance(text, str) else ""
    if not raw:
        raise VersionParseError(str(text), "空版本号")
    if not raw[0].isdigit():
        raise VersionParseError(raw, f"必须以数字开头，实际为 '{raw[0]}'")

    rest, specrev = raw, None
    m = _SPECREV_RE.match(raw)
    if m and _CORE_RE.match(m.group("rest")):
        rest, specrev = m.group("rest"), int(m.group("rev"))

    core = _CORE_RE.match(rest)
    if core is None:
        raise VersionParseError(raw, "无法识别的版本尾段")
    components = tuple(int(p) for p in re.split(r"[._]", core.group("nums")))
    return Version(components=components, label=core.group("label"), specrev=specrev)


def compare(a: Version, b: Version) -> int:
    """返回 -1 / 0 / 1"""
    ka, kb = a.sort_key(), b.sort_key()
    return (ka > kb) - (ka < kb)


class Comparator(str, Enum):
    EQ = "=="
    NE = "~="
    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="
    PESSIMISTIC = "~>"


_CONSTRAINT_RE = re.compile(r"^(?P<op>==|~=|~>|>=|<=|>|<|=)?\s*(?P<ver>.+)$")


@dataclass(frozen=True)
class Constraint:
    """单个约束：运算符 + 版本"""

    op: Comparator
    version: Version

    def satisfied_by(self, version: Version) -> bool:
        c = compare(version, self.version)
        if self.op is Comparator.EQ:
            return c == 0
        if self.op is Comparator.NE:
            return c != 0
        if self.op is Comparator.GT:
            return c > 0
        if self.op is Comparator.GE:
            return c >= 0
        if self.op is Comparator.LT:
            return c < 0
        if self.op is Comparator.LE:
            return c <= 0
        return c >= 0 and version < self._pessimistic_upper()

    def _pessimistic_upper(self) -> Version:
        nums = list(self.version.components)
        if len(nums) > 1:
            nums.pop()
        nums[-1] += 1
        return Version(components=tuple(nums))

    def __str__(self) -> str:
        return f"{self.op.value}{self.version}"


def parse_constraint(text: str) -> Constraint:
    """解析单个约束；缺省运算符为 =="""
    raw = text.strip()
    m = _CONSTRAINT_RE.match(raw)
    if not raw or m is None:
        raise VersionParseError(text, "空约束")
    op_text = m.group("op") or "=="
    if op_text == "=":
        op_text = "=="
    return Constraint(op=Comparator(op_text), version=parse(m.group("ver")))


def satisfies(version: Version, constraint: Constraint) -> bool:
    return constraint.satisfied_by(version)


@dataclass(frozen=True)
class VersionReq:
    """逗号分隔的约束合取；空表示任意版本"""

    constraints: tuple[Constraint, ...] = ()

    @property
    def is_any(self) -> bool:
        return not self.constraints

    def matches(self, version: Version) -> bool:
        return all(c.satisfied_by(version) for c in self.constraints)

    def __str__(self) -> str:
        if self.is_any:
            return "*"
        return ", ".join(str(c) for c in self.constraints)

    @classmethod
    def exact(cls, version: Version) -> VersionReq:
        return cls((Constraint(Comparator.EQ, version),))


ANY = VersionReq()


def parse_requirement(text: str | None) -> VersionReq:
    """解析 '>=1.0, <2.0' 形式的约束组；None / '' / '*' 表示任意版本"""
    if text is None:
        return ANY
    raw = str(text).strip()
    if raw in ("", "*"):
        return ANY
    parts = [p for p in (s.strip() for s in raw.split(",")) if p]
    return VersionReq(tuple(parse_constraint(p) for p in parts))


_PKG_REQ_RE = re.compile(r"^(?P<name>[A-Za-z0-9][A-Za-z0-9_.+-]*?)\s*(?:@\s*(?P<pin>\S+)|(?P<req>[\s<>=~].*))?$")


def parse_package_req(text: str) -> tuple[str, VersionReq]:
    """解析 'name' / 'name@1.2' / 'name >= 1.0, < 2' 为 (包名, 约束组)"""
    raw = text.strip()
    m = _PKG_REQ_RE.match(raw)
    if m is None:
        raise VersionParseError(text, "无法识别的包需求")
    if m.group("pin"):
        return m.group("name"), VersionReq.exact(parse(m.group("pin")))
    return m.group("name"), parse_requirement(m.group("req"))
