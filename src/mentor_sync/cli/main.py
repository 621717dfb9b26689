"""
CLI 命令行入口 - 使用 Click 框架
"""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import click

from mentor_sync import __version__
from mentor_sync.config import ConfigError, load_config, save_config_template
from mentor_sync.models.checkpoint import RunOutcome, SyncRun
from mentor_sync.storage.checkpoint import CheckpointError, CheckpointStore
from mentor_sync.utils.logging import configure_logging, get_logger, set_log_level
from mentor_sync.utils.notifier import ConsoleNotifier, NotifierManager, format_run

logger = get_logger(__name__)

# sync 命令的退出码
EXIT_CODES = {
    RunOutcome.SUCCESS: 0,
    RunOutcome.FAILED: 1,
    RunOutcome.PARTIAL: 2,
    RunOutcome.SKIPPED: 3,
}


@click.group()
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    default=None,
    help="日志级别（默认取配置文件中的 log_level）",
)
@click.version_option(version=__version__, prog_name="mentor-sync")
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str]) -> None:
    """
    mentor-sync 增量同步 CLI

    把看板的目标、反思和登录记录增量同步到 Google Sheets 和 Discord。
    """
    configure_logging(log_level=log_level or "INFO", json_format=False)

    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


def _load(config_path: str):
    try:
        return load_config(config_path)
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("output_path", type=click.Path(), default="sync.yaml")
def init(output_path: str) -> None:
    """
    生成配置文件模板

    示例:
        mentor-sync init sync.yaml
    """
    path = Path(output_path)

    if path.exists():
        click.confirm(f"文件 {output_path} 已存在，是否覆盖？", abort=True)

    save_config_template(output_path)
    click.echo(f"✓ 配置模板已生成: {output_path}")


@cli.command()
@click.argument("config_path", type=click.Path(exists=True))
def validate(config_path: str) -> None:
    """
    验证配置文件

    示例:
        mentor-sync validate sync.yaml
    """
    config = _load(config_path)
    click.echo("✓ 配置验证通过")
    click.echo(f"  记录源: {config.record_store.db_path}")
    click.echo(f"  目标: {', '.join(f'{s.name}({s.type})' for s in config.sinks)}")
    for source in config.sources:
        click.echo(
            f"  源 {source.name}: {source.kind.value} v{source.schema_version}"
            f" → {', '.join(source.sinks)}"
        )
    click.echo(f"  水位线策略: {config.watermark_policy.value}")
    click.echo(f"  周期截止时间: {config.cycle_deadline_seconds}s")


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="配置文件路径",
)
@click.option(
    "--sources",
    "-s",
    help="要同步的源（逗号分隔，默认全部）",
)
@click.option(
    "--deadline",
    type=float,
    help="覆盖周期截止时间(秒)",
)
@click.option(
    "--json-logs",
    is_flag=True,
    help="输出 JSON 格式日志（定时任务使用）",
)
@click.pass_context
def sync(
    ctx: click.Context,
    config: str,
    sources: Optional[str],
    deadline: Optional[float],
    json_logs: bool,
) -> None:
    """
    执行一个同步周期

    退出码: 0 成功, 2 部分成功, 1 失败, 3 跳过（另一个周期正在运行）

    示例:
        mentor-sync sync -c sync.yaml
        mentor-sync sync -c sync.yaml --sources goals,reflections
    """
    cfg = _load(config)
    log_level = ctx.obj.get("log_level") or cfg.log_level
    if json_logs:
        configure_logging(log_level=log_level, json_format=True)
    else:
        set_log_level(log_level)

    source_list = [s.strip() for s in sources.split(",") if s.strip()] if sources else None

    try:
        run = asyncio.run(_run_sync(cfg, source_list, deadline))
    except KeyboardInterrupt:
        click.echo("\n同步已中断")
        sys.exit(1)
    except Exception as e:
        click.echo(f"✗ 同步失败: {e}", err=True)
        sys.exit(1)

    if not json_logs:
        manager = NotifierManager()
        manager.add_notifier(ConsoleNotifier(use_colors=sys.stdout.isatty()))
        asyncio.run(manager.report_run(run))

    sys.exit(EXIT_CODES[run.outcome])


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="配置文件路径",
)
def status(config: str) -> None:
    """
    查看各源的同步状态

    示例:
        mentor-sync status -c sync.yaml
    """
    cfg = _load(config)
    try:
        store = CheckpointStore(cfg.checkpoint_path)
        checkpoints = store.list_checkpoints()
    except CheckpointError as e:
        click.echo(f"✗ 获取状态失败: {e}", err=True)
        sys.exit(1)

    click.echo("mentor-sync 同步状态")
    click.echo("=" * 40)
    click.echo(f"断点存储: {cfg.checkpoint_path}")
    click.echo("")

    for source in cfg.sources:
        cp = checkpoints.get(source.name)
        if cp is None:
            click.echo(f"  · {source.name}: 从未同步")
            continue
        icon = "✓" if cp.last_sync_status and cp.last_sync_status.value == "success" else "✗"
        last_status = cp.last_sync_status.value if cp.last_sync_status else "-"
        click.echo(f"  {icon} {source.name}: {last_status}")
        click.echo(f"    水位线: {cp.watermark.isoformat()}")
        click.echo(f"    最近同步: {cp.last_sync_time.isoformat() if cp.last_sync_time else '-'}")
        click.echo(f"    累计同步: {cp.records_synced} 条")
        if cp.last_error:
            click.echo(f"    最近错误: {cp.last_error}")


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="配置文件路径",
)
@click.option("--limit", "-n", type=int, default=10, show_default=True, help="显示条数")
def runs(config: str, limit: int) -> None:
    """
    查看最近的同步周期

    示例:
        mentor-sync runs -c sync.yaml --limit 5
    """
    cfg = _load(config)
    try:
        history: List[SyncRun] = CheckpointStore(cfg.checkpoint_path).list_runs(limit)
    except CheckpointError as e:
        click.echo(f"✗ 读取运行记录失败: {e}", err=True)
        sys.exit(1)

    if not history:
        click.echo("暂无运行记录")
        return

    for run in history:
        click.echo(f"[{run.started_at.isoformat()}] {run.outcome.value}")
        for line in format_run(run).splitlines():
            click.echo(f"  {line}")


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="配置文件路径",
)
@click.option(
    "--source",
    "-s",
    help="重置指定源的水位线（不指定则重置所有）",
)
@click.option("--yes", "-y", is_flag=True, help="跳过确认")
def reset(config: str, source: Optional[str], yes: bool) -> None:
    """
    重置水位线，下一个周期将重新同步全部记录

    示例:
        mentor-sync reset -c sync.yaml --source goals
        mentor-sync reset -c sync.yaml  # 重置所有源
    """
    cfg = _load(config)

    if source and cfg.get_source(source) is None:
        click.echo(f"✗ 未配置的源: {source}", err=True)
        sys.exit(1)

    targets = [source] if source else [s.name for s in cfg.sources]
    if not yes:
        click.confirm(f"重置 {', '.join(targets)} 的水位线？目标中会出现重复数据", abort=True)

    try:
        store = CheckpointStore(cfg.checkpoint_path)
        for name in targets:
            store.reset_watermark(name)
    except CheckpointError as e:
        click.echo(f"✗ 重置失败: {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ 已重置: {', '.join(targets)}")


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="配置文件路径",
)
@click.option("--source", "-s", help="只显示指定源")
def errors(config: str, source: Optional[str]) -> None:
    """
    查看被跳过的记录（投影失败）

    示例:
        mentor-sync errors -c sync.yaml --source reflections
    """
    cfg = _load(config)
    try:
        rows = CheckpointStore(cfg.checkpoint_path).list_unresolved_errors(source)
    except CheckpointError as e:
        click.echo(f"✗ 读取错误记录失败: {e}", err=True)
        sys.exit(1)

    if not rows:
        click.echo("✓ 没有未解决的错误")
        return

    for row in rows:
        click.echo(
            f"#{row['id']} [{row['created_at']}] {row['source_key']}/{row['record_id']}"
            f" {row['error_type']}: {row['error_message']}"
        )


# ============================================================================
# 异步执行函数
# ============================================================================

async def _run_sync(cfg, sources: Optional[List[str]], deadline: Optional[float]) -> SyncRun:
    """创建协调器并执行一个周期"""
    from mentor_sync.core.orchestrator import build_orchestrator

    orchestrator = build_orchestrator(cfg)
    async with orchestrator:
        return await orchestrator.run_sync_cycle(sources=sources, deadline=deadline)


if __name__ == "__main__":
    cli()
