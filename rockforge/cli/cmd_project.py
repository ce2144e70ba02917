"""CLI - 项目声明编辑与安装树查询"""

from __future__ import annotations

import click

from rockforge.cli import _manager, emit_report


def register(group: click.Group) -> None:
    group.add_command(add)
    group.add_command(remove)
    group.add_command(pin)
    group.add_command(unpin)
    group.add_command(list_tree)
    group.add_command(query)
    group.add_command(purge)


@click.command()
@click.argument("requirement")
@click.option("--opt", "optional", is_flag=True, help="声明为可选依赖")
@click.option("--pin", "pinned", is_flag=True, help="声明为锁定依赖")
@click.option("--dev", is_flag=True, help="声明为 dev 依赖")
@click.pass_context
def add(ctx: click.Context, requirement: str, optional: bool, pinned: bool, dev: bool) -> None:
    """向项目声明添加依赖，如 'penlight >= 1.13'"""
    spec = _manager(ctx).add(requirement, optional=optional, pinned=pinned, dev=dev)
    click.echo(f"已添加: {spec}")


@click.command()
@click.argument("name")
@click.pass_context
def remove(ctx: click.Context, name: str) -> None:
    """从项目声明移除依赖"""
    if _manager(ctx).remove(name):
        click.echo(f"已移除: {name}")
    else:
        click.echo(f"未声明: {name}", err=True)
        ctx.exit(1)


@click.command()
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="JSON 输出")
@click.pass_context
def pin(ctx: click.Context, name: str, as_json: bool) -> None:
    """锁定依赖的当前版本"""
    emit_report(_manager(ctx).pin(name), as_json)


@click.command()
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="JSON 输出")
@click.pass_context
def unpin(ctx: click.Context, name: str, as_json: bool) -> None:
    """解除版本锁定"""
    emit_report(_manager(ctx).unpin(name), as_json)


@click.command(name="list")
@click.pass_context
def list_tree(ctx: click.Context) -> None:
    """列出安装树中的包"""
    grouped = _manager(ctx).list()
    if not grouped:
        click.echo("安装树为空。")
        return
    for name, entries in grouped.items():
        click.echo(name)
        for e in entries:
            flags = []
            if e.root:
                flags.append("entrypoint")
            if e.project:
                flags.append("project")
            if e.pinned:
                flags.append("pinned")
            tag = f" [{', '.join(flags)}]" if flags else ""
            click.echo(f"  {e.id.version}{tag}  {e.path}")


@click.command()
@click.argument("name")
@click.pass_context
def query(ctx: click.Context, name: str) -> None:
    """查询某个包已安装的全部版本"""
    entries = _manager(ctx).query(name)
    if not entries:
        click.echo(f"未安装: {name}", err=True)
        ctx.exit(1)
    for e in entries:
        bins = f"  bin: {', '.join(e.entrypoints)}" if e.entrypoints else ""
        click.echo(f"{e.id}  {e.path}{bins}")


@click.command()
@click.confirmation_option(prompt="确认清空整个安装树？")
@click.pass_context
def purge(ctx: click.Context) -> None:
    """清空安装树"""
    count = _manager(ctx).purge()
    click.echo(f"已删除 {count} 个条目")
