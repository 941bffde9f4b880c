#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
挂载目录守护模块
挂载前检查挂载目录是否被占用，会话结束时提交或放弃挂载的镜像
"""

import os
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple, Union
import logging

from utils.file_utils import force_remove_tree, has_content

logger = logging.getLogger("WIMCustomizer")

PathLike = Union[str, Path]


class PrepareResult(Enum):
    """挂载目录检查结果"""
    READY = "ready"
    BUSY = "busy"
    FAILED = "failed"


def _normalize(path: PathLike) -> str:
    return os.path.normcase(os.path.abspath(str(path))).rstrip("\\/")


class MountQueryError(Exception):
    """无法获取挂载列表"""


class MountGuard:
    """挂载目录守护

    同一个挂载目录同时只能绑定一个镜像，这一点完全依靠每次挂载前调用 prepare 保证。
    """

    def __init__(self, dism_manager):
        self.dism = dism_manager

    def find_binding(self, path: PathLike) -> Optional[Dict[str, str]]:
        """查找挂载在该目录上的镜像"""
        mounted_images = self.dism.get_mounted_images()
        if mounted_images is None:
            raise MountQueryError(f"无法获取挂载列表，不能确认 {path} 的挂载状态")

        target = _normalize(path)
        for mounted in mounted_images:
            if mounted.get("mount_dir") and _normalize(mounted["mount_dir"]) == target:
                return mounted
        return None

    def is_mounted(self, path: PathLike) -> bool:
        return self.find_binding(path) is not None

    def prepare(self, path: PathLike, clean: bool = False) -> PrepareResult:
        """检查挂载目录是否可用

        Args:
            path: 挂载目录
            clean: 目录被占用时是否放弃现有挂载并清理残留文件

        Returns:
            PrepareResult: clean为False时不会修改目录；清理失败时目录保持原样
        """
        path = Path(path)
        try:
            binding = self.find_binding(path)
        except MountQueryError as e:
            logger.error(str(e))
            return PrepareResult.FAILED
        leftovers = has_content(path)

        if binding is None and not leftovers:
            logger.info(f"挂载目录可用: {path}")
            return PrepareResult.READY

        if not clean:
            if binding is not None:
                logger.warning(f"挂载目录已挂载镜像: {path} <- {binding.get('image_file', '')}")
            else:
                logger.warning(f"挂载目录中有残留文件: {path}")
            return PrepareResult.BUSY

        if binding is not None:
            logger.info(f"放弃挂载目录上的现有镜像: {path}")
            success, stdout, stderr = self.dism.unmount_image(path, commit=False)
            if not success:
                logger.error(f"放弃现有挂载失败: {stderr}")
                return PrepareResult.FAILED

        if has_content(path):
            # 先整体改名再删除，改名失败时原目录不受影响
            aside = path.with_name(f"{path.name}.old-{datetime.now().strftime('%Y%m%d%H%M%S')}")
            try:
                path.rename(aside)
            except OSError as e:
                logger.error(f"清理挂载目录失败，目录未改动: {path} - {e}")
                return PrepareResult.FAILED

            try:
                if not force_remove_tree(aside):
                    logger.warning(f"残留目录未能完全删除，请手动清理: {aside}")
            except ValueError as e:
                logger.warning(str(e))

        logger.info(f"挂载目录已清理: {path}")
        return PrepareResult.READY

    def commit(self, path: PathLike, mounted: bool = False) -> Tuple[bool, str]:
        """提交并卸载镜像，目录未挂载时直接返回成功

        Args:
            path: 挂载目录
            mounted: 调用方确知镜像已挂载时为True，此时不查询挂载列表直接卸载
        """
        return self._release(path, commit=True, mounted=mounted)

    def discard(self, path: PathLike, mounted: bool = False) -> Tuple[bool, str]:
        """放弃更改并卸载镜像，目录未挂载时直接返回成功"""
        return self._release(path, commit=False, mounted=mounted)

    def _release(self, path: PathLike, commit: bool, mounted: bool) -> Tuple[bool, str]:
        action = "提交" if commit else "放弃"
        if not mounted:
            try:
                mounted = self.is_mounted(path)
            except MountQueryError as e:
                logger.error(str(e))
                return False, f"{action}镜像失败: {e}"
        if not mounted:
            logger.debug(f"{path} 没有挂载的镜像，无需{action}")
            return True, "没有挂载的镜像"

        logger.info(f"{action}并卸载镜像: {path}")
        success, stdout, stderr = self.dism.unmount_image(path, commit=commit)
        if success:
            return True, f"镜像已{action}并卸载"
        return False, f"{action}镜像失败: {stderr}"
