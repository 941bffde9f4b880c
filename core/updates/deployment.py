#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
补丁安装模块
将本地补丁库中某一类别的补丁安装到已挂载的镜像
"""

import fnmatch
from enum import Enum
from pathlib import Path
from typing import List, Optional
import logging

from core.config_manager import LCU_CONVERT, LCU_SPLIT
from core.updates.models import UpdateClass
from core.updates.classification import ALLOWED_EXTENSIONS
from utils.file_utils import force_remove_tree
from utils.logger import log_build_step

logger = logging.getLogger("WIMCustomizer")

# 合并包中的服务堆栈更新和累积更新
SSU_CAB_PATTERN = "ssu-*.cab"
LCU_CAB_PATTERN = "windows*-kb*.cab"


class ApplyResult(Enum):
    """一个类别的安装结果"""
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class PatchDeploymentEngine:
    """补丁安装引擎"""

    def __init__(self, config_manager, dism_manager):
        self.config = config_manager
        self.dism = dism_manager

    def apply(self, session, update_class: UpdateClass, mount_dir: Optional[Path] = None) -> ApplyResult:
        """安装一个类别的全部补丁

        单个补丁失败只记录警告，继续安装同类别的其他补丁。

        Args:
            session: 镜像会话，提供系统家族、版本、挂载目录和介质目录
            update_class: 补丁类别
            mount_dir: 挂载目录，默认使用会话中的挂载目录

        Returns:
            ApplyResult: 类别目录为空时SKIPPED，任一补丁失败时FAILED
        """
        mount_dir = Path(mount_dir or session.mount_dir)
        class_dir = self.config.get_path("updates") / session.os_family / session.version / update_class.value
        artifact_dirs = sorted(p for p in class_dir.iterdir() if p.is_dir()) if class_dir.is_dir() else []

        if not artifact_dirs:
            logger.info(f"没有 {update_class.value} 类补丁，跳过")
            return ApplyResult.SKIPPED

        if update_class is UpdateClass.DYNAMIC:
            return self._apply_dynamic(session, artifact_dirs)

        log_build_step(f"安装{update_class.value}补丁", f"{len(artifact_dirs)} 个")
        handling = None
        if update_class is UpdateClass.LCU:
            handling = self.config.get_lcu_handling(session.os_family, session.version)
            logger.info(f"{session.os_family} {session.version} 的LCU处理方式: {handling}")

        failures = 0
        applied = 0
        for artifact_dir in artifact_dirs:
            files = self._package_files(artifact_dir)
            if not files:
                logger.warning(f"补丁目录中没有可安装的文件: {artifact_dir}")
                continue
            for package in files:
                if handling == LCU_SPLIT and package.suffix.lower() == ".msu":
                    success = self._apply_split(mount_dir, package)
                elif handling == LCU_CONVERT and package.suffix.lower() == ".msu":
                    success = self._apply_converted(mount_dir, package)
                else:
                    success = self._add_package(mount_dir, package)
                if success:
                    applied += 1
                else:
                    failures += 1

        if failures:
            logger.warning(f"{update_class.value} 类补丁有 {failures} 个安装失败")
            return ApplyResult.FAILED
        if not applied:
            return ApplyResult.SKIPPED
        return ApplyResult.APPLIED

    def _package_files(self, artifact_dir: Path) -> List[Path]:
        return sorted(
            p for p in artifact_dir.iterdir()
            if p.is_file() and p.suffix.lower() in ALLOWED_EXTENSIONS
        )

    def _add_package(self, mount_dir: Path, package: Path) -> bool:
        logger.info(f"安装补丁: {package.name}")
        success, stdout, stderr = self.dism.add_package(mount_dir, package)
        if not success:
            logger.warning(f"补丁安装失败: {package.name} - {stderr}")
        return success

    def _extract_dir(self, package: Path) -> Path:
        return self.config.get_path("staging") / "extract" / package.stem

    def _expand(self, package: Path) -> Optional[Path]:
        extract_dir = self._extract_dir(package)
        if extract_dir.exists():
            force_remove_tree(extract_dir)
        success, stdout, stderr = self.dism.expand_file(package, extract_dir)
        if not success:
            logger.warning(f"解包失败: {package.name} - {stderr}")
            return None
        return extract_dir

    @staticmethod
    def _find(extract_dir: Path, pattern: str) -> Optional[Path]:
        matches = sorted(p for p in extract_dir.iterdir() if fnmatch.fnmatchcase(p.name.lower(), pattern))
        return matches[0] if matches else None

    def _apply_split(self, mount_dir: Path, package: Path) -> bool:
        """拆开合并包，先装服务堆栈更新，再装累积更新

        服务堆栈更新失败时不安装累积更新，顺序颠倒可能损坏镜像。
        """
        extract_dir = self._expand(package)
        if extract_dir is None:
            return False
        try:
            ssu_cab = self._find(extract_dir, SSU_CAB_PATTERN)
            lcu_cab = self._find(extract_dir, LCU_CAB_PATTERN)
            if lcu_cab is None:
                logger.warning(f"合并包中没有找到累积更新，直接安装: {package.name}")
                return self._add_package(mount_dir, package)

            if ssu_cab is not None:
                if not self._add_package(mount_dir, ssu_cab):
                    logger.error(f"服务堆栈更新安装失败，不安装累积更新: {package.name}")
                    return False
            else:
                logger.info(f"合并包中没有服务堆栈更新: {package.name}")

            return self._add_package(mount_dir, lcu_cab)
        finally:
            force_remove_tree(extract_dir)

    def _apply_converted(self, mount_dir: Path, package: Path) -> bool:
        """从msu中取出累积更新cab后安装"""
        extract_dir = self._expand(package)
        if extract_dir is None:
            return False
        try:
            lcu_cab = self._find(extract_dir, LCU_CAB_PATTERN)
            if lcu_cab is None:
                logger.warning(f"msu中没有找到累积更新cab，直接安装: {package.name}")
                return self._add_package(mount_dir, package)
            return self._add_package(mount_dir, lcu_cab)
        finally:
            force_remove_tree(extract_dir)

    def _apply_dynamic(self, session, artifact_dirs: List[Path]) -> ApplyResult:
        """动态更新解到安装介质的sources目录，不安装到挂载镜像"""
        media_dir = getattr(session, "media_dir", None)
        if not media_dir or not Path(media_dir).is_dir():
            logger.info("没有安装介质暂存目录，跳过动态更新")
            return ApplyResult.SKIPPED

        sources_dir = Path(media_dir) / "sources"
        log_build_step("应用动态更新", str(sources_dir))
        failures = 0
        applied = 0
        for artifact_dir in artifact_dirs:
            for package in self._package_files(artifact_dir):
                logger.info(f"解出动态更新: {package.name}")
                success, stdout, stderr = self.dism.expand_file(package, sources_dir)
                if success:
                    applied += 1
                else:
                    failures += 1
                    logger.warning(f"动态更新解出失败: {package.name} - {stderr}")

        if failures:
            return ApplyResult.FAILED
        return ApplyResult.APPLIED if applied else ApplyResult.SKIPPED
