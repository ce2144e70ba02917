"""CLI - 解析 / 同步 / 构建 / 安装 / 卸载"""

from __future__ import annotations

import click

from rockforge.cli import _manager, emit_report
from rockforge.core.version import parse_package_req


def register(group: click.Group) -> None:
    group.add_command(resolve)
    group.add_command(sync_cmd)
    group.add_command(build)
    group.add_command(install)
    group.add_command(uninstall)
    group.add_command(update)


_fail_fast_option = click.option(
    "--fail-fast/--keep-going", "fail_fast", default=None,
    help="首个构建失败即取消其余构建（默认沿用配置 fail_fast）",
)


def _split_req(requirement: str | None) -> tuple[str | None, str | None]:
    if not requirement:
        return None, None
    name, req = parse_package_req(requirement)
    return name, None if req.is_any else str(req)


@click.command()
@click.argument("requirement", required=False)
@click.option("--opt", "include_optional", is_flag=True, help="同时解析可选依赖")
@click.option("--dev", "include_dev", is_flag=True, help="同时解析 dev 依赖")
@click.option("--repin", multiple=True, help="忽略该名称的锁定版本（可重复）")
@click.option("--json", "as_json", is_flag=True, help="JSON 输出")
@click.pass_context
def resolve(
    ctx: click.Context, requirement: str | None, include_optional: bool,
    include_dev: bool, repin: tuple[str, ...], as_json: bool,
) -> None:
    """解析依赖（不构建、不写锁），不指定包时解析整个项目"""
    name, constraint = _split_req(requirement)
    report, _ = _manager(ctx).resolve(
        name, constraint, include_optional=include_optional,
        include_dev=include_dev, unlock=repin,
    )
    emit_report(report, as_json)


@click.command(name="sync")
@click.option("--opt", "include_optional", is_flag=True, help="同时解析可选依赖")
@click.option("--dev", "include_dev", is_flag=True, help="同时解析 dev 依赖")
@click.option("--repin", multiple=True, help="允许移动该名称的锁定版本（可重复）")
@click.option("--strict", is_flag=True, help="未安装或产物损坏时直接失败")
@_fail_fast_option
@click.option("--json", "as_json", is_flag=True, help="JSON 输出")
@click.pass_context
def sync_cmd(
    ctx: click.Context, include_optional: bool, include_dev: bool,
    repin: tuple[str, ...], strict: bool, fail_fast: bool | None, as_json: bool,
) -> None:
    """按项目声明同步锁文件与安装树"""
    report = _manager(ctx).sync(
        include_optional=include_optional, include_dev=include_dev,
        unlock=repin, strict=strict, fail_fast=fail_fast,
    )
    emit_report(report, as_json)


@click.command()
@click.argument("name", required=False)
@_fail_fast_option
@click.option("--json", "as_json", is_flag=True, help="JSON 输出")
@click.pass_context
def build(
    ctx: click.Context, name: str | None, fail_fast: bool | None, as_json: bool,
) -> None:
    """强制重新构建项目依赖（或指定的包）"""
    emit_report(_manager(ctx).build(name, fail_fast=fail_fast), as_json)


@click.command()
@click.argument("requirements", nargs=-1, required=True)
@click.option("--force", is_flag=True, help="已安装也重新构建")
@click.option("--opt", "include_optional", is_flag=True, help="同时安装可选依赖")
@_fail_fast_option
@click.option("--json", "as_json", is_flag=True, help="JSON 输出")
@click.pass_context
def install(
    ctx: click.Context, requirements: tuple[str, ...], force: bool,
    include_optional: bool, fail_fast: bool | None, as_json: bool,
) -> None:
    """安装包到安装树，如 'lua-cjson@2.1.0' 或 'penlight >= 1.13'"""
    report = _manager(ctx).install(
        requirements, force=force, include_optional=include_optional, fail_fast=fail_fast,
    )
    emit_report(report, as_json)


@click.command()
@click.argument("name")
@click.argument("version", required=False)
@click.option("--cascade", is_flag=True, help="同时卸载依赖它的包并修剪悬空依赖")
@click.option("--json", "as_json", is_flag=True, help="JSON 输出")
@click.pass_context
def uninstall(
    ctx: click.Context, name: str, version: str | None, cascade: bool, as_json: bool,
) -> None:
    """卸载包（被依赖时需要 --cascade）"""
    emit_report(_manager(ctx).uninstall(name, version, cascade=cascade), as_json)


@click.command()
@click.argument("names", nargs=-1)
@click.option("--json", "as_json", is_flag=True, help="JSON 输出")
@click.pass_context
def update(ctx: click.Context, names: tuple[str, ...], as_json: bool) -> None:
    """忽略锁定版本重新解析并同步"""
    emit_report(_manager(ctx).update(names), as_json)
