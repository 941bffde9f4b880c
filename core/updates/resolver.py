#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
补丁解析模块
查询更新目录，筛选出当前有效且可离线安装的补丁，并下载到本地补丁库：
<updates>/<系统家族>/<版本>/<类别>/<补丁名>/<文件>
"""

from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple
import fnmatch
import logging

import requests

from core.updates.catalog import CatalogSource, create_catalog_source
from core.updates.classification import classify_title, filter_content_files
from core.updates.models import ArtifactStatus, ContentFile, UpdateArtifact, UpdateClass
from utils.download import download_file
from utils.file_utils import force_remove_tree
from utils.logger import log_build_step

logger = logging.getLogger("WIMCustomizer")


class UpdateCatalogResolver:
    """补丁解析器类"""

    def __init__(self, config_manager, dism_manager, catalog: Optional[CatalogSource] = None, fetcher=None):
        """
        Args:
            config_manager: 配置管理器
            dism_manager: 镜像服务管理器，用于校验容器文件
            catalog: 更新目录源，为None时按配置创建
            fetcher: 提供 get(url, stream=True) 的HTTP客户端，默认为requests
        """
        self.config = config_manager
        self.dism = dism_manager
        self.catalog = catalog or create_catalog_source(config_manager, dism_manager)
        self.fetcher = fetcher or requests

    @property
    def repository(self) -> Path:
        return self.config.get_path("updates")

    def class_dir(self, os_family: str, version: str, update_class: UpdateClass) -> Path:
        """本地补丁库中某个类别的目录"""
        return self.repository / os_family / version / update_class.value

    def artifact_dir(self, artifact: UpdateArtifact) -> Path:
        return self.class_dir(artifact.os_family, artifact.version, artifact.update_class) / artifact.folder_name

    def resolve(self, os_family: str, version: str, arch: str,
                include_optional: bool = False, include_dynamic: bool = False,
                download: bool = True) -> List[UpdateArtifact]:
        """查询并筛选补丁

        Args:
            os_family: 系统家族
            version: 版本标签
            arch: 架构（x64 / x86 / arm64）
            include_optional: 是否包含未归类的可选补丁
            include_dynamic: 是否包含动态更新
            download: 是否下载到本地补丁库

        Returns:
            List[UpdateArtifact]: 补丁列表，下载和校验结果记录在每个补丁的status中
        """
        log_build_step("解析补丁", f"{os_family} {version} {arch}")
        records = self.catalog.query(os_family, version, arch)
        if records is None:
            logger.error(f"无法获取 {os_family} {version} 的补丁目录")
            return []

        artifacts: List[UpdateArtifact] = []
        seen_files: Dict[UpdateClass, Set[str]] = {}

        for record in records:
            if record.superseded:
                logger.debug(f"跳过已被取代的补丁: {record.title}")
                continue
            if record.arch and arch and record.arch.lower() != arch.lower():
                continue

            update_class = classify_title(record.title, record.group)
            if update_class is UpdateClass.OPTIONAL and not include_optional:
                logger.debug(f"跳过可选补丁: {record.title}")
                continue
            if update_class is UpdateClass.DYNAMIC and not include_dynamic:
                logger.debug(f"跳过动态更新: {record.title}")
                continue

            # 同一类别中同名文件只保留第一次出现的
            class_seen = seen_files.setdefault(update_class, set())
            usable = set(filter_content_files([f.name for f in record.files], arch))
            files: List[ContentFile] = []
            for content in record.files:
                key = content.name.lower()
                if content.name not in usable or key in class_seen:
                    continue
                class_seen.add(key)
                files.append(ContentFile(name=content.name, url=content.url))

            if not files:
                logger.debug(f"补丁没有可离线安装的文件: {record.title}")
                continue

            artifacts.append(UpdateArtifact(
                title=record.title,
                article_id=record.article_id,
                update_class=update_class,
                os_family=os_family,
                version=version,
                arch=arch,
                superseded=False,
                files=files,
            ))

        logger.info(f"共找到 {len(artifacts)} 个有效补丁")
        for artifact in artifacts:
            logger.info(f"  [{artifact.update_class.value}] {artifact.title}")

        if download:
            for artifact in artifacts:
                self.download_artifact(artifact)

        return artifacts

    def download_artifact(self, artifact: UpdateArtifact) -> bool:
        """下载补丁的全部文件，已存在的文件跳过

        Returns:
            bool: 补丁是否可用
        """
        target_dir = self.artifact_dir(artifact)
        downloaded_any = False

        for content in artifact.files:
            local_path = target_dir / content.name
            content.local_path = local_path

            if local_path.exists() and local_path.stat().st_size > 0:
                logger.debug(f"文件已存在，跳过下载: {local_path}")
                continue

            if not content.url:
                return self._reject(artifact, target_dir, ArtifactStatus.FAILED, f"缺少下载地址: {content.name}")

            success, message = download_file(content.url, local_path, fetcher=self.fetcher)
            if not success:
                return self._reject(artifact, target_dir, ArtifactStatus.FAILED, message)
            downloaded_any = True

            valid, message = self.validate_container(local_path, artifact.update_class)
            if not valid:
                return self._reject(artifact, target_dir, ArtifactStatus.INVALID, message)

        artifact.status = ArtifactStatus.DOWNLOADED if downloaded_any else ArtifactStatus.PRESENT
        return True

    def _reject(self, artifact: UpdateArtifact, target_dir: Path, status: ArtifactStatus, message: str) -> bool:
        """标记补丁不可用并删除整个补丁目录，不完整的补丁不能留给安装阶段"""
        artifact.status = status
        artifact.message = message
        logger.warning(f"补丁 {artifact.title} 不可用 ({status.value}): {message}")
        try:
            if not force_remove_tree(target_dir):
                logger.warning(f"补丁目录未能删除，请手动清理: {target_dir}")
        except ValueError as e:
            logger.error(str(e))
        return False

    def validate_container(self, file_path: Path, update_class: UpdateClass) -> Tuple[bool, str]:
        """检查容器文件是否包含安装所需的元数据

        msu必须包含xml清单和cab；非动态更新的cab必须包含update.mum。
        """
        names = self.dism.list_cabinet(file_path)
        if names is None:
            return False, f"无法打开容器文件: {file_path.name}"

        lowered = [name.lower() for name in names]
        suffix = file_path.suffix.lower()

        if suffix == ".msu":
            has_manifest = any(fnmatch.fnmatchcase(name, "*.xml") for name in lowered)
            has_cab = any(fnmatch.fnmatchcase(name, "*.cab") for name in lowered)
            if not (has_manifest and has_cab):
                return False, f"msu缺少xml清单或cab包: {file_path.name}"
        elif suffix == ".cab" and update_class is not UpdateClass.DYNAMIC:
            if "update.mum" not in [Path(name.replace("\\", "/")).name for name in lowered]:
                return False, f"cab缺少update.mum: {file_path.name}"

        return True, ""

    def refresh_repository(self, os_family: str, version: str, arch: str,
                           include_optional: bool = False, include_dynamic: bool = False) -> List[UpdateArtifact]:
        """清理过期补丁后重新解析并下载

        清理必须在解析之前完成，否则刚被取代的补丁可能与新补丁同时留在补丁库中。
        """
        from core.updates.pruner import SupersedencePruner

        removed = SupersedencePruner(self.config, self.catalog).prune(os_family, version)
        logger.info(f"补丁库清理完成，删除 {removed} 个过期补丁")
        return self.resolve(os_family, version, arch, include_optional, include_dynamic, download=True)
