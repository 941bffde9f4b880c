#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
过期补丁清理模块
将本地补丁库与更新目录对比，删除已被取代或目录中已不存在的补丁
"""

from pathlib import Path
from typing import Dict
import logging

from core.updates.catalog import CatalogSource
from core.updates.models import UpdateClass, safe_folder_name
from utils.file_utils import force_remove_tree, remove_empty_dirs

logger = logging.getLogger("WIMCustomizer")


class SupersedencePruner:
    """过期补丁清理器"""

    def __init__(self, config_manager, catalog: CatalogSource):
        self.config = config_manager
        self.catalog = catalog

    def prune(self, os_family: str, version: str) -> int:
        """清理指定系统版本的本地补丁

        Returns:
            int: 删除的补丁数量；目录查询失败时不删除任何内容，返回0
        """
        version_dir = self.config.get_path("updates") / os_family / version
        if not version_dir.is_dir():
            logger.info(f"本地补丁库中没有 {os_family} {version} 的补丁")
            return 0

        status = self.catalog.supersedence_map(os_family, version)
        if status is None:
            logger.error(f"无法获取 {os_family} {version} 的取代信息，本次不清理补丁库")
            return 0

        # 本地目录名由标题转换而来，这里按同样的规则建立索引
        current: Dict[str, bool] = {}
        for title, superseded in status.items():
            key = safe_folder_name(title)
            current[key] = current.get(key, True) and superseded

        removed = 0
        known_classes = {cls.value for cls in UpdateClass}
        for class_dir in sorted(p for p in version_dir.iterdir() if p.is_dir()):
            if class_dir.name not in known_classes:
                logger.debug(f"跳过未知的补丁类别目录: {class_dir}")
                continue
            for artifact_dir in sorted(p for p in class_dir.iterdir() if p.is_dir()):
                if self._is_current(artifact_dir, current):
                    continue
                if self._remove(artifact_dir):
                    removed += 1

        remove_empty_dirs(version_dir)
        return removed

    def _is_current(self, artifact_dir: Path, current: Dict[str, bool]) -> bool:
        name = artifact_dir.name
        if name not in current:
            logger.info(f"补丁已不在目录中，删除: {name}")
            return False
        if current[name]:
            logger.info(f"补丁已被取代，删除: {name}")
            return False
        return True

    def _remove(self, artifact_dir: Path) -> bool:
        try:
            if force_remove_tree(artifact_dir):
                return True
            logger.warning(f"删除过期补丁失败: {artifact_dir}")
        except ValueError as e:
            logger.error(str(e))
        return False
