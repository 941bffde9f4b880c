#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
构建流水线模块
按固定顺序驱动一次完整的镜像定制：
校验 -> 复制源镜像 -> 删除多余索引 -> 挂载 -> 各项注入 -> 补丁 -> OneDrive ->
预配应用移除 -> 提交卸载 -> 导出 -> 安装介质后处理

终止状态：
- COMPLETED: 导出成功
- DISCARDED: 挂载前失败、用户在暂停点放弃或提交前出错，镜像已放弃，没有导出
- ABORTED: 提交、导出或放弃本身失败，挂载和暂存文件保留，需要手动清理
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union
import logging

import psutil

from core.config_manager import ConfigManager
from core.dism_manager import DismManager
from core.image.customizations import ImageCustomizer
from core.image.media import MediaBuilder
from core.image.mount_guard import MountGuard, MountQueryError, PrepareResult
from core.image.session import BuildStage, ImageSession, PipelineState
from core.selections import (
    CustomizationSelections, SCRIPT_AFTER_MOUNT, SCRIPT_BEFORE_DISMOUNT, SCRIPT_ON_FINISH
)
from core.updates.catalog import CatalogSource, create_catalog_source
from core.updates.deployment import ApplyResult, PatchDeploymentEngine
from core.updates.models import MOUNT_APPLY_ORDER, UpdateClass
from core.updates.resolver import UpdateCatalogResolver
from core.version_resolver import VersionStatus, detect_os_family, resolve_version
from utils.file_utils import copy_file
from utils.logger import end_build_session, log_build_step, log_error, log_system_event, start_build_session

logger = logging.getLogger("WIMCustomizer")

StageAction = Callable[[ImageSession, CustomizationSelections], Tuple[bool, str]]
# 暂停回调：返回True继续，False放弃镜像
PauseHandler = Callable[[BuildStage, ImageSession], bool]


@dataclass
class PipelineStage:
    """可选阶段"""
    stage: BuildStage
    enabled: bool
    action: StageAction


class BuildPipeline:
    """构建流水线类"""

    def __init__(self, config_manager: ConfigManager, dism_manager: DismManager,
                 catalog: Optional[CatalogSource] = None,
                 pause_handler: Optional[PauseHandler] = None, fetcher=None):
        self.config = config_manager
        self.dism = dism_manager
        self.pause_handler = pause_handler
        self.fetcher = fetcher
        self._catalog = catalog

        self.guard = MountGuard(dism_manager)
        self.customizer = ImageCustomizer(config_manager, dism_manager, fetcher=fetcher)
        self.deployment = PatchDeploymentEngine(config_manager, dism_manager)
        self.media = MediaBuilder(config_manager, dism_manager, self.deployment)

    @property
    def catalog(self) -> CatalogSource:
        if self._catalog is None:
            self._catalog = create_catalog_source(self.config, self.dism)
        return self._catalog

    def create_session(self, selections: CustomizationSelections) -> ImageSession:
        source = Path(selections.source.image_path)
        mount_dir = Path(selections.mount.path) if selections.mount.path else self.config.get_path("mount")
        return ImageSession(
            source_path=source,
            index=selections.source.index,
            output_dir=Path(selections.output.path),
            output_name=selections.output.name or source.stem,
            mount_dir=mount_dir,
        )

    # === 主流程 ===

    def run(self, selections: CustomizationSelections) -> ImageSession:
        """执行一次完整构建

        Returns:
            ImageSession: 构建会话，state为终止状态
        """
        session = self.create_session(selections)
        start_build_session({
            "source": str(session.source_path),
            "index": session.index,
            "output": str(session.output_path),
            "mount": str(session.mount_dir),
        })

        try:
            self._run(session, selections)
        except Exception as e:
            log_error(e, f"构建阶段 {session.stage.value}")
            if not session.is_terminal:
                reason = f"{session.stage.value} 阶段发生错误: {str(e)}"
                if session.exported_image or session.stage in (BuildStage.DISMOUNT, BuildStage.EXPORT):
                    # 已经提交，不能再放弃
                    self._abort(session, reason)
                else:
                    self._discard(session, reason)
        finally:
            end_build_session(session.state is PipelineState.COMPLETED, session.message)

        return session

    def _run(self, session: ImageSession, selections: CustomizationSelections):
        # 挂载前
        session.enter(BuildStage.VALIDATE)
        success, message = self.validate(session, selections)
        if not success:
            self._discard(session, f"校验失败: {message}")
            return

        session.enter(BuildStage.COPY_SOURCE)
        success, message = self.copy_source(session)
        if not success:
            self._discard(session, message)
            return

        session.enter(BuildStage.TRIM_INDEXES)
        success, message = self.trim_indexes(session)
        if not success:
            self._discard(session, message)
            return

        session.enter(BuildStage.MOUNT)
        success, message = self.mount(session)
        if not success:
            self._discard(session, message)
            return

        # 挂载后
        if not self._pause(session, BuildStage.PAUSE_AFTER_MOUNT, selections.mount.pause_after_mount):
            self._discard(session, "用户在挂载后放弃了镜像")
            return

        self._run_script(session, selections, SCRIPT_AFTER_MOUNT)
        self._run_stages(session, selections, self.mounted_stages(selections))
        self._run_script(session, selections, SCRIPT_BEFORE_DISMOUNT)

        if not self._pause(session, BuildStage.PAUSE_BEFORE_DISMOUNT, selections.mount.pause_before_dismount):
            self._discard(session, "用户在卸载前放弃了镜像")
            return

        # 提交和导出失败时保留现场
        session.enter(BuildStage.DISMOUNT)
        log_build_step("提交并卸载镜像", str(session.mount_dir))
        success, message = self.guard.commit(session.mount_dir, mounted=session.mounted)
        if not success:
            self._abort(session, message)
            return
        session.mounted = False

        session.enter(BuildStage.EXPORT)
        success, message = self.export(session)
        if not success:
            self._abort(session, message)
            return

        # 导出后
        self._run_stages(session, selections, self.post_processing_stages(selections))
        self._run_script(session, selections, SCRIPT_ON_FINISH)

        self._cleanup_staging(session)
        session.enter(BuildStage.FINISHED)
        session.finish(PipelineState.COMPLETED, f"镜像已导出: {session.exported_image}")
        logger.info(f"🎉 构建完成: {session.exported_image}")
        log_system_event("构建完成", str(session.exported_image))

    # === 阶段列表 ===

    def mounted_stages(self, selections: CustomizationSelections) -> List[PipelineStage]:
        """挂载期间按顺序执行的阶段，注入类阶段都在补丁之前"""
        c = self.customizer
        return [
            PipelineStage(BuildStage.LANGUAGE_RESOURCES, selections.language.enabled,
                          lambda s, sel: c.add_language_resources(s, sel.language)),
            PipelineStage(BuildStage.DOTNET, selections.dotnet.enabled,
                          lambda s, sel: c.add_dotnet(s)),
            PipelineStage(BuildStage.PROVISIONING, selections.provisioning.enabled,
                          lambda s, sel: c.add_provisioning(s, sel.provisioning)),
            PipelineStage(BuildStage.DRIVERS, selections.drivers.enabled,
                          lambda s, sel: c.add_drivers(s, sel.drivers)),
            PipelineStage(BuildStage.APP_ASSOCIATIONS, selections.app_associations.enabled,
                          lambda s, sel: c.import_app_associations(s, sel.app_associations)),
            PipelineStage(BuildStage.START_LAYOUT, selections.start_layout.enabled,
                          lambda s, sel: c.apply_start_layout(s, sel.start_layout)),
            PipelineStage(BuildStage.REGISTRY, selections.registry.enabled,
                          lambda s, sel: c.apply_registry(s, sel.registry)),
            PipelineStage(BuildStage.UPDATES, selections.updates.enabled, self.apply_updates),
            PipelineStage(BuildStage.EXTERNAL_AGENT_REFRESH, selections.onedrive.enabled,
                          lambda s, sel: c.refresh_onedrive(s, sel.onedrive)),
            PipelineStage(BuildStage.PACKAGE_REMOVAL, selections.package_removal.enabled,
                          lambda s, sel: c.remove_packages(s, sel.package_removal)),
        ]

    def post_processing_stages(self, selections: CustomizationSelections) -> List[PipelineStage]:
        """导出后按顺序执行的阶段"""
        post = selections.post_processing
        m = self.media
        return [
            PipelineStage(BuildStage.PACKAGE_MANAGER_UPDATE, post.update_cm_package,
                          lambda s, sel: m.update_cm_package(s, sel.post_processing.cm_package_id)),
            PipelineStage(BuildStage.BOOT_IMAGE_UPDATE, post.update_boot_image,
                          lambda s, sel: m.update_boot_image(s)),
            PipelineStage(BuildStage.MEDIA_STAGING, post.stage_media or post.create_iso,
                          lambda s, sel: m.stage_media(s)),
            PipelineStage(BuildStage.ISO_CREATION, post.create_iso,
                          lambda s, sel: m.create_iso(s, sel.post_processing.iso_name)),
        ]

    def _run_stages(self, session: ImageSession, selections: CustomizationSelections,
                    stages: List[PipelineStage]):
        """依次执行阶段，单个阶段失败只记录警告"""
        for entry in stages:
            session.enter(entry.stage)
            if not entry.enabled:
                log_build_step(entry.stage.value, "已跳过（未启用）")
                session.record("跳过")
                continue

            log_build_step(entry.stage.value, "开始")
            try:
                success, message = entry.action(session, selections)
            except Exception as e:
                log_error(e, entry.stage.value)
                success, message = False, str(e)

            session.record(message)
            if success:
                logger.info(f"✅ {entry.stage.value}: {message}")
            else:
                log_build_step(entry.stage.value, f"失败，继续后续阶段: {message}", "warning")

    # === 挂载前阶段 ===

    def _requires_version(self, selections: CustomizationSelections) -> bool:
        """这些阶段的资源按版本标签存放，版本未知时无法执行"""
        post = selections.post_processing
        return any([
            selections.updates.enabled,
            selections.language.enabled,
            selections.dotnet.enabled,
            post.update_boot_image,
            post.stage_media,
            post.create_iso,
        ])

    def validate(self, session: ImageSession, selections: CustomizationSelections) -> Tuple[bool, str]:
        """挂载前的全部检查，失败时不会挂载任何镜像"""
        log_build_step("校验", str(session.source_path))

        if not session.source_path.is_file():
            return False, f"源镜像不存在: {session.source_path}"
        if session.source_path.suffix.lower() != ".wim":
            return False, f"只支持WIM格式的源镜像: {session.source_path.name}"

        if self.config.get("validation.require_admin", True) and not self.dism.check_admin_privileges():
            return False, "需要管理员权限"

        info = self.dism.get_image_info(session.source_path, session.index)
        if not info:
            return False, f"源镜像中不存在索引 {session.index}"
        session.image_name = info.get("name", "")
        session.edition = info.get("edition", "")
        session.architecture = info.get("architecture", "").lower()
        session.build = info.get("build", "")
        logger.info(f"源镜像: {session.image_name} ({session.edition}, {session.architecture}, {session.build})")

        session.os_family = detect_os_family(session.image_name, session.build)
        if not session.os_family:
            return False, f"无法识别的系统: {session.image_name}"

        version = resolve_version(session.build)
        if version.status is VersionStatus.UNSUPPORTED:
            return False, f"不再支持的系统版本: {session.build}"
        if version.status is VersionStatus.UNKNOWN:
            if self._requires_version(selections):
                return False, f"未知的系统版本 {session.build}，无法定位语言资源、补丁或安装介质"
            logger.warning(f"⚠️ 未知的系统版本 {session.build}，继续执行不依赖版本的定制")
        session.version = version.version
        logger.info(f"系统: {session.os_family} {session.version or '未知版本'}")

        if not selections.output.path or not session.output_dir.is_dir():
            return False, f"输出目录不存在: {session.output_dir}"
        if session.output_path.exists() and not selections.output.rename_existing:
            return False, f"输出文件已存在: {session.output_path}"

        success, message = self.check_free_space()
        if not success:
            return False, message

        result = self.guard.prepare(session.mount_dir, clean=selections.mount.clean)
        if result is not PrepareResult.READY:
            return False, f"挂载目录不可用 ({result.value}): {session.mount_dir}"

        return True, "校验通过"

    def check_free_space(self) -> Tuple[bool, str]:
        """检查工作空间所在磁盘的剩余空间"""
        min_free_gb = float(self.config.get("validation.min_free_gb", 20) or 0)
        if min_free_gb <= 0:
            return True, ""

        existing = self.config.get_path("staging")
        while not existing.exists() and existing.parent != existing:
            existing = existing.parent
        free_gb = psutil.disk_usage(str(existing)).free / 1024 ** 3
        if free_gb < min_free_gb:
            return False, f"磁盘剩余空间不足: {free_gb:.1f} GB，至少需要 {min_free_gb:.0f} GB"
        logger.info(f"磁盘剩余空间: {free_gb:.1f} GB")
        return True, ""

    def copy_source(self, session: ImageSession) -> Tuple[bool, str]:
        staging = self.config.get_path("staging") / session.source_path.name
        log_build_step("复制源镜像", f"{session.source_path} -> {staging}")
        try:
            session.staging_image = copy_file(session.source_path, staging)
            return True, "源镜像已复制"
        except OSError as e:
            return False, f"复制源镜像失败: {e}"

    def trim_indexes(self, session: ImageSession) -> Tuple[bool, str]:
        """删除暂存镜像中除选定索引以外的索引，完成后选定索引变为1"""
        indexes = self.dism.get_image_indexes(session.staging_image)
        if not indexes:
            return False, "无法读取暂存镜像的索引"

        # 从大到小删除，删除后后面的索引号会前移
        others = sorted((int(i["index"]) for i in indexes if int(i["index"]) != session.index), reverse=True)
        for index in others:
            success, stdout, stderr = self.dism.delete_image(session.staging_image, index)
            if not success:
                return False, f"删除索引 {index} 失败: {stderr}"
        logger.info(f"已删除 {len(others)} 个多余的索引")
        return True, ""

    def mount(self, session: ImageSession) -> Tuple[bool, str]:
        # 每次挂载前都必须检查挂载目录
        result = self.guard.prepare(session.mount_dir, clean=False)
        if result is not PrepareResult.READY:
            return False, f"挂载目录不可用 ({result.value}): {session.mount_dir}"

        session.mount_dir.mkdir(parents=True, exist_ok=True)
        log_build_step("挂载镜像", f"{session.staging_image} -> {session.mount_dir}")
        success, stdout, stderr = self.dism.mount_image(session.staging_image, 1, session.mount_dir)
        if not success:
            # 失败的挂载可能留下半挂载的记录
            try:
                session.mounted = self.guard.is_mounted(session.mount_dir)
            except MountQueryError as e:
                logger.warning(f"{e}，按已挂载处理")
                session.mounted = True
            return False, f"挂载镜像失败: {stderr}"
        session.mounted = True
        return True, "镜像已挂载"

    # === 挂载期间 ===

    def apply_updates(self, session: ImageSession, selections: CustomizationSelections) -> Tuple[bool, str]:
        """按类别顺序安装补丁，需要时先刷新本地补丁库"""
        sel = selections.updates
        if sel.refresh_catalog:
            resolver = UpdateCatalogResolver(self.config, self.dism, catalog=self.catalog, fetcher=self.fetcher)
            resolver.refresh_repository(
                session.os_family, session.version, session.architecture or "x64",
                include_optional=sel.optional, include_dynamic=sel.dynamic
            )

        toggles = {
            UpdateClass.SSU: sel.ssu,
            UpdateClass.LCU: sel.lcu,
            UpdateClass.ADOBE: sel.adobe,
            UpdateClass.DOTNET: sel.dotnet,
            UpdateClass.DOTNET_CU: sel.dotnet_cu,
            UpdateClass.OPTIONAL: sel.optional,
        }
        failed = []
        for update_class in MOUNT_APPLY_ORDER:
            if not toggles[update_class]:
                logger.info(f"{update_class.value} 类补丁未启用，跳过")
                continue
            if self.deployment.apply(session, update_class) is ApplyResult.FAILED:
                failed.append(update_class.value)

        if sel.dynamic:
            if selections.post_processing.stage_media or selections.post_processing.create_iso:
                success, message = self.media.prepare_media(session)
                if not success:
                    logger.warning(f"⚠️ {message}")
            if self.deployment.apply(session, UpdateClass.DYNAMIC) is ApplyResult.FAILED:
                failed.append(UpdateClass.DYNAMIC.value)

        if failed:
            return False, f"以下类别的补丁安装失败: {', '.join(failed)}"
        return True, "补丁安装完成"

    def _run_script(self, session: ImageSession, selections: CustomizationSelections, timing: str):
        script = selections.script
        if not script.enabled or script.timing != timing:
            return
        session.enter(BuildStage.SCRIPT, timing)
        log_build_step("自定义脚本", f"{timing}: {script.path}")
        try:
            success, message = self.customizer.run_script(script)
        except Exception as e:
            log_error(e, "自定义脚本")
            success, message = False, str(e)
        session.record(message)
        if not success:
            log_build_step("自定义脚本", message, "warning")

    def _pause(self, session: ImageSession, stage: BuildStage, enabled: bool) -> bool:
        """暂停点，只能继续或放弃"""
        if not enabled:
            return True
        session.enter(stage)
        if self.pause_handler is None:
            logger.warning(f"⚠️ 无人值守运行，忽略暂停点 {stage.value}")
            return True
        logger.info(f"⏸️ 在 {stage.value} 暂停，挂载目录: {session.mount_dir}")
        return bool(self.pause_handler(stage, session))

    # === 卸载后 ===

    def export(self, session: ImageSession) -> Tuple[bool, str]:
        """导出镜像，已有的输出文件在导出前才改名，之前的任何失败都不会动它"""
        if session.output_path.exists():
            renamed = session.output_path.with_name(
                f"{session.output_name}_{datetime.now().strftime('%Y%m%d%H%M%S')}.wim"
            )
            try:
                session.output_path.rename(renamed)
            except OSError as e:
                return False, f"无法改名已有的输出文件: {e}"
            logger.info(f"已有的输出文件已改名为: {renamed.name}")

        log_build_step("导出镜像", str(session.output_path))
        success, stdout, stderr = self.dism.export_image(
            session.staging_image, 1, session.output_path, session.output_name
        )
        if not success:
            return False, f"导出镜像失败: {stderr}"
        session.exported_image = session.output_path
        return True, "镜像已导出"

    # === 终止 ===

    def _discard(self, session: ImageSession, reason: str):
        """放弃镜像并结束，放弃失败时转为ABORTED"""
        session.discard = True
        logger.error(f"❌ {reason}")
        if session.mounted:
            success, message = self.guard.discard(session.mount_dir, mounted=True)
            if not success:
                self._abort(session, f"{reason}；{message}")
                return
            session.mounted = False

        self._cleanup_staging(session)
        session.finish(PipelineState.DISCARDED, reason)
        log_system_event("构建已放弃", reason, "warning")

    def _abort(self, session: ImageSession, reason: str):
        """保留挂载和暂存文件，交给管理员手动处理"""
        message = f"{reason}。挂载目录 {session.mount_dir} 和暂存镜像 {session.staging_image} 已保留，请手动清理"
        session.finish(PipelineState.ABORTED, message)
        log_system_event("构建中止", message, "error")

    def _cleanup_staging(self, session: ImageSession):
        if session.staging_image and session.staging_image.exists():
            try:
                session.staging_image.unlink()
            except OSError as e:
                logger.warning(f"删除暂存镜像失败: {e}")


def run_pipeline(selections_path: Union[str, Path], config_manager: Optional[ConfigManager] = None,
                 pause_handler: Optional[PauseHandler] = None) -> ImageSession:
    """从定制选项文件执行一次无人值守构建

    Raises:
        OSError: 选项文件无法读取
        ValueError: 选项文件格式错误
    """
    config_manager = config_manager or ConfigManager()
    selections = CustomizationSelections.load(selections_path)
    pipeline = BuildPipeline(config_manager, DismManager(config_manager), pause_handler=pause_handler)
    return pipeline.run(selections)
