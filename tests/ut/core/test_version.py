"""版本解析、排序与约束匹配"""

from __future__ import annotations

import pytest

from rockforge.core.exceptions import VersionParseError
from rockforge.core.version import (
    ANY,
    Comparator,
    compare,
    parse,
    parse_constraint,
    parse_package_req,
    parse_requirement,
    satisfies,
)


class TestParse:
    def test_components_and_separators(self) -> None:
        assert parse("1.2.3").components == (1, 2, 3)
        assert parse("1_2_3").components == (1, 2, 3)
        assert str(parse("1_2_3")) == "1.2.3"

    @pytest.mark.parametrize(("text", "label", "specrev"), [
        ("1.2.3", None, None),
        ("1.2.3-1", None, 1),
        ("1.2.3-rc1", "rc1", None),
        ("1.2.3rc1", "rc1", None),
        ("1.2.3-rc1-2", "rc1", 2),
        ("2.1.0-beta.2", "beta.2", None),
    ])
    def test_label_and_specrev(self, text: str, label: str | None, specrev: int | None) -> None:
        v = parse(text)
        assert v.label == label
        assert v.specrev == specrev

    def test_str_keeps_label_and_specrev(self) -> None:
        assert str(parse("1.0-rc1-2")) == "1.0-rc1-2"

    @pytest.mark.parametrize("text", ["", "   ", "v1.0", "abc", "1.2.3!", "1..2"])
    def test_invalid(self, text: str) -> None:
        with pytest.raises(VersionParseError):
            parse(text)


class TestOrdering:
    @pytest.mark.parametrize(("a", "b"), [
        ("1.0", "1.0.0"),
        ("1.0", "1"),
        ("1_2", "1.2"),
        ("2.1.0", "2.1.0-0"),
    ])
    def test_equal(self, a: str, b: str) -> None:
        assert parse(a) == parse(b)
        assert hash(parse(a)) == hash(parse(b))
        assert compare(parse(a), parse(b)) == 0

    @pytest.mark.parametrize(("lower", "higher"), [
        ("1.2", "1.10"),
        ("1.9.9", "2.0"),
        ("1.0-rc1", "1.0"),
        ("1.0rc2", "1.0rc10"),
        ("1.0-alpha", "1.0-beta"),
        ("1.0", "1.0-1"),
        ("1.0-1", "1.0-2"),
        ("1.0-rc1-5", "1.0"),
    ])
    def test_less_than(self, lower: str, higher: str) -> None:
        assert parse(lower) < parse(higher)
        assert compare(parse(lower), parse(higher)) == -1
        assert compare(parse(higher), parse(lower)) == 1

    def test_sorted(self) -> None:
        texts = ["1.10", "1.2", "1.2-rc1", "1.2-1", "0.9"]
        assert [str(v) for v in sorted(parse(t) for t in texts)] == [
            "0.9", "1.2-rc1", "1.2", "1.2-1", "1.10",
        ]


class TestConstraint:
    @pytest.mark.parametrize(("text", "op"), [
        ("== 1.0", Comparator.EQ),
        ("= 1.0", Comparator.EQ),
        ("1.0", Comparator.EQ),
        ("~= 1.0", Comparator.NE),
        (">1.0", Comparator.GT),
        (">= 1.0", Comparator.GE),
        ("<1.0", Comparator.LT),
        ("<= 1.0", Comparator.LE),
        ("~> 1.0", Comparator.PESSIMISTIC),
    ])
    def test_operators(self, text: str, op: Comparator) -> None:
        assert parse_constraint(text).op is op

    @pytest.mark.parametrize(("constraint", "version", "expected"), [
        ("== 1.0", "1.0.0", True),
        ("~= 1.0", "1.0", False),
        ("~= 1.0", "1.1", True),
        ("> 1.0", "1.0-1", True),
        ("< 1.0", "1.0-rc1", True),
        ("~> 1.2", "1.9", True),
        ("~> 1.2", "2.0", False),
        ("~> 1.2", "1.1", False),
        ("~> 1.2.3", "1.2.9", True),
        ("~> 1.2.3", "1.3", False),
        ("~> 2", "2.7", True),
        ("~> 2", "3.0", False),
    ])
    def test_satisfies(self, constraint: str, version: str, expected: bool) -> None:
        assert satisfies(parse(version), parse_constraint(constraint)) is expected

    def test_empty_constraint(self) -> None:
        with pytest.raises(VersionParseError):
            parse_constraint("  ")


class TestRequirement:
    def test_any(self) -> None:
        assert parse_requirement(None) is ANY
        assert parse_requirement("*").is_any
        assert parse_requirement("").matches(parse("0.0.1"))
        assert str(ANY) == "*"

    def test_conjunction(self) -> None:
        req = parse_requirement(">= 1.0, < 2.0")
        assert len(req.constraints) == 2
        assert req.matches(parse("1.5"))
        assert not req.matches(parse("2.0"))
        assert str(req) == ">=1.0, <2.0"

    @pytest.mark.parametrize(("text", "name", "req"), [
        ("penlight", "penlight", "*"),
        ("lua-cjson@2.1.0", "lua-cjson", "==2.1.0"),
        ("penlight >= 1.13", "penlight", ">=1.13"),
        ("penlight>=1.0,<2", "penlight", ">=1.0, <2"),
        ("luasocket ~> 3.0", "luasocket", "~>3.0"),
    ])
    def test_package_req(self, text: str, name: str, req: str) -> None:
        got_name, got_req = parse_package_req(text)
        assert got_name == name
        assert str(got_req) == req

    def test_package_req_invalid(self) -> None:
        with pytest.raises(VersionParseError):
            parse_package_req("@1.0")
