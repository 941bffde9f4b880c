#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
WIM镜像定制工具命令行入口
用于无人值守地定制Windows安装镜像，以及维护本地补丁库
"""

import sys
import logging
from pathlib import Path

import click

# 添加项目根目录到Python路径
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from core.config_manager import ConfigManager
from core.dism_manager import DismManager
from core.image.session import BuildStage, ImageSession, PipelineState
from core.pipeline import run_pipeline
from core.selections import CustomizationSelections
from core.updates.models import ArtifactStatus
from core.updates.resolver import UpdateCatalogResolver
from core.version_resolver import VersionStatus, resolve_version
from utils.logger import get_build_log_path, log_system_event, setup_logger

logger = logging.getLogger("WIMCustomizer")


def confirm_pause(stage: BuildStage, session: ImageSession) -> bool:
    """交互式暂停点：继续或放弃镜像"""
    click.echo(f"已在 {stage.value} 暂停，挂载目录: {session.mount_dir}")
    return click.confirm("是否继续构建？选择否将放弃镜像", default=True)


@click.group()
@click.option("--config", "config_file", type=click.Path(dir_okay=False, path_type=Path),
              help="配置文件路径，默认为 config/wim_customizer.json")
@click.option("--debug/--no-debug", help="控制台输出调试日志")
@click.pass_context
def cli(ctx: click.Context, config_file: Path, debug: bool):
    """WIM镜像定制工具"""
    config_manager = ConfigManager(config_file)
    ctx.obj = config_manager

    log_dir = config_manager.get_path("logs")
    setup_logger(
        log_file_path=log_dir / "wim_customizer.log",
        enable_system_log=True,
        enable_build_log=True,
        build_log_path=log_dir / "build_logs",
        context={"command": ctx.invoked_subcommand or ""},
        console_level=logging.DEBUG if debug else logging.INFO
    )


@cli.command()
@click.option("--selections", "selections_file", required=True,
              type=click.Path(exists=True, dir_okay=False, path_type=Path), help="定制选项文件")
@click.option("--interactive/--unattended", default=False, help="是否在暂停点等待确认")
@click.pass_obj
def run(config_manager: ConfigManager, selections_file: Path, interactive: bool):
    """按定制选项文件执行一次构建"""
    log_system_event("构建开始", str(selections_file))
    try:
        session = run_pipeline(selections_file, config_manager,
                               pause_handler=confirm_pause if interactive else None)
    except (OSError, ValueError) as e:
        logger.error(f"无法加载定制选项: {e}")
        sys.exit(1)

    build_log = get_build_log_path()
    click.echo(f"状态: {session.state.value}")
    click.echo(f"消息: {session.message}")
    if build_log:
        click.echo(f"构建日志: {build_log}")
    sys.exit(0 if session.state is PipelineState.COMPLETED else 1)


@cli.command("init-selections")
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--source", default="", help="源WIM文件")
@click.option("--index", default=1, show_default=True, type=int, help="源镜像索引")
@click.option("--output-dir", default="", help="导出目录")
@click.option("--name", default="", help="导出镜像名称")
def init_selections(output: Path, source: str, index: int, output_dir: str, name: str):
    """生成默认的定制选项文件"""
    selections = CustomizationSelections()
    selections.source.image_path = source
    selections.source.index = index
    selections.output.path = output_dir
    selections.output.name = name
    if not selections.save(output):
        sys.exit(1)
    click.echo(f"定制选项已写入: {output}")


@cli.command("refresh-updates")
@click.option("--os", "os_family", required=True,
              type=click.Choice(["Windows 10", "Windows 11", "Windows Server"]), help="系统家族")
@click.option("--version", "version", required=True, help="版本标签，如 22H2")
@click.option("--arch", default="x64", show_default=True, type=click.Choice(["x64", "x86", "arm64"]))
@click.option("--optional/--no-optional", default=False, help="包含可选补丁")
@click.option("--dynamic/--no-dynamic", default=False, help="包含动态更新")
@click.pass_obj
def refresh_updates(config_manager: ConfigManager, os_family: str, version: str, arch: str,
                    optional: bool, dynamic: bool):
    """清理过期补丁并下载最新补丁"""
    resolver = UpdateCatalogResolver(config_manager, DismManager(config_manager))
    artifacts = resolver.refresh_repository(os_family, version, arch,
                                            include_optional=optional, include_dynamic=dynamic)

    failed = [a for a in artifacts if a.status in (ArtifactStatus.FAILED, ArtifactStatus.INVALID)]
    for artifact in artifacts:
        click.echo(f"[{artifact.update_class.value}] {artifact.title}: {artifact.status.value}")
    click.echo(f"共 {len(artifacts)} 个补丁，失败 {len(failed)} 个")
    sys.exit(1 if failed else 0)


@cli.command("resolve-version")
@click.argument("build")
def resolve_version_command(build: str):
    """显示内部版本号对应的版本标签"""
    result = resolve_version(build)
    if result.status is VersionStatus.SUPPORTED:
        click.echo(result.version)
        sys.exit(0)
    click.echo(f"{result.status.value}: {result.build}")
    sys.exit(1)


def main():
    """主函数"""
    try:
        cli()
    except Exception as e:
        logging.error(f"程序运行失败: {str(e)}")
        log_system_event("程序运行失败", str(e), "error")
        raise


if __name__ == "__main__":
    main()
