#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
补丁数据模块
更新目录记录、补丁工件和内容文件的数据结构
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional


class UpdateClass(Enum):
    """补丁类别，值同时作为本地补丁库的目录名"""
    SSU = "SSU"
    LCU = "LCU"
    ADOBE = "AdobeSU"
    DOTNET = "DotNet"
    DOTNET_CU = "DotNetCU"
    OPTIONAL = "Optional"
    DYNAMIC = "Dynamic"


# 安装到挂载镜像时的顺序
MOUNT_APPLY_ORDER = [
    UpdateClass.SSU,
    UpdateClass.LCU,
    UpdateClass.ADOBE,
    UpdateClass.DOTNET,
    UpdateClass.DOTNET_CU,
    UpdateClass.OPTIONAL,
]


class ArtifactStatus(Enum):
    """补丁工件的处理状态"""
    PENDING = "pending"
    DOWNLOADED = "downloaded"
    PRESENT = "present"  # 本地已存在，跳过下载
    INVALID = "invalid"  # 容器校验失败，已删除
    FAILED = "failed"    # 下载失败


@dataclass
class ContentFile:
    """补丁的一个内容文件"""
    name: str
    url: str = ""
    local_path: Optional[Path] = None


@dataclass
class CatalogRecord:
    """更新目录返回的原始记录"""
    title: str
    article_id: str = ""
    superseded: bool = False
    group: str = ""  # 目录自带的分类提示，例如OSDSUS的UpdateGroup
    os_family: str = ""
    version: str = ""
    arch: str = ""
    files: List[ContentFile] = field(default_factory=list)


@dataclass
class UpdateArtifact:
    """已分类、已筛选的补丁工件

    每个工件只属于一个类别和一个 系统/版本/架构 组合。
    """
    title: str
    article_id: str
    update_class: UpdateClass
    os_family: str
    version: str
    arch: str
    superseded: bool = False
    files: List[ContentFile] = field(default_factory=list)
    status: ArtifactStatus = ArtifactStatus.PENDING
    message: str = ""

    @property
    def folder_name(self) -> str:
        """在本地补丁库中的目录名"""
        return safe_folder_name(self.title)


def safe_folder_name(title: str) -> str:
    """将补丁标题转换为合法的目录名"""
    invalid = '<>:"/\\|?*'
    cleaned = "".join("_" if ch in invalid else ch for ch in title).strip().rstrip(".")
    return cleaned or "untitled"
