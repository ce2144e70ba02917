"""yaml_io：原子写入与容错读取"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from rockforge.utils.yaml_io import atomic_write, dump_yaml, load_yaml, save_yaml


class TestYamlIO:
    def test_missing_is_empty(self, tmp_path: Path) -> None:
        assert load_yaml(tmp_path / "none.yml") == {}

    @pytest.mark.parametrize("body", ["", "- a\n- b\n", "just text\n"])
    def test_non_mapping_is_empty(self, tmp_path: Path, body: str) -> None:
        path = tmp_path / "x.yml"
        path.write_text(body, encoding="utf-8")
        assert load_yaml(path) == {}

    def test_syntax_error(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yml"
        path.write_text("a: [1, 2\n", encoding="utf-8")
        with pytest.raises(yaml.YAMLError):
            load_yaml(path)

    def test_save_creates_parents(self, tmp_path: Path) -> None:
        path = tmp_path / "deep" / "dir" / "x.yml"
        save_yaml(path, {"名称": "值", "n": 1})
        assert load_yaml(path) == {"名称": "值", "n": 1}
        assert "名称" in path.read_text(encoding="utf-8")

    def test_sort_keys(self) -> None:
        assert dump_yaml({"b": 1, "a": 2}, sort_keys=True) == "a: 2\nb: 1\n"
        assert dump_yaml({"b": 1, "a": 2}) == "b: 1\na: 2\n"

    def test_atomic_write_bytes_leaves_no_temp(self, tmp_path: Path) -> None:
        target = tmp_path / "blob.bin"
        atomic_write(target, b"\x00\x01")
        atomic_write(target, b"\x02")
        assert target.read_bytes() == b"\x02"
        assert [p.name for p in tmp_path.iterdir()] == ["blob.bin"]
