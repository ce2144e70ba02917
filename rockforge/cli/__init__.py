"""rockforge 命令行接口

CLI 按领域拆分为子模块，每个模块注册自己的命令到 main group。
业务异常统一转成 stderr 上的一行提示和非零退出码。
"""

from __future__ import annotations

import json
import os
import sys
from typing import Any

import click

from rockforge import __version__
from rockforge.core.config import DEFAULT_CONFIG_FILE
from rockforge.core.exceptions import RockforgeError
from rockforge.core.models import OperationReport
from rockforge.services.context import ProjectContext
from rockforge.services.operations import PackageManager
from rockforge.utils.logger import setup_logging


class RockforgeGroup(click.Group):
    """把 RockforgeError 映射为退出码"""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except RockforgeError as e:
            click.echo(f"错误 [{e.code}]: {e}", err=True)
            for detail in getattr(e, "details", []):
                click.echo(f"  - {detail}", err=True)
            sys.exit(e.exit_code)


def _manager(ctx: click.Context) -> PackageManager:
    """按 --config 构建本次调用的上下文"""
    obj = ctx.ensure_object(dict)
    if "manager" not in obj:
        obj["manager"] = PackageManager(ProjectContext.from_file(obj["config"]))
    return obj["manager"]


def emit_report(report: OperationReport, as_json: bool) -> None:
    """输出操作报告并以报告的退出码结束"""
    if as_json:
        click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    else:
        if report.diff is not None and not report.diff.is_empty:
            d = report.diff
            click.echo(
                f"差异: +{len(d.added)} ~{len(d.updated)} -{len(d.removed)} "
                f"重建 {len(d.stale)}"
            )
        for p in report.packages:
            extra = f"  {p.message}" if p.message else ""
            click.echo(f"  {p.status:10s} {p.name}@{p.version}{extra}")
        if report.error:
            click.echo(report.error, err=True)
    if report.exit_code:
        sys.exit(report.exit_code)


@click.group(cls=RockforgeGroup)
@click.version_option(version=__version__)
@click.option("--config", "config_path", default=DEFAULT_CONFIG_FILE,
              envvar="ROCKFORGE_CONFIG", help="配置文件路径")
@click.pass_context
def main(ctx: click.Context, config_path: str) -> None:
    """rockforge - 可复现的并行包管理器"""
    setup_logging(
        level=os.getenv("ROCKFORGE_LOG_LEVEL", "INFO"),
        json_output=os.getenv("ROCKFORGE_LOG_JSON", "") == "1",
    )
    ctx.ensure_object(dict)["config"] = config_path


# 注册各领域子命令
from rockforge.cli.cmd_ops import register as _reg_ops  # noqa: E402
from rockforge.cli.cmd_project import register as _reg_project  # noqa: E402

_reg_ops(main)
_reg_project(main)
