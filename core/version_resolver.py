#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
系统版本解析模块
将镜像的内部版本号映射为对外发布的版本标签（如 22H2、24H2）
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple
import logging

logger = logging.getLogger("WIMCustomizer")

BUILD_PATTERN = re.compile(r'^(\d+)\.(\d+)\.(\d+)(?:\.(\d+))?$')

# 内部版本号前缀 -> 版本标签
SUPPORTED_BUILDS = {
    "10.0.14393": "1607",
    "10.0.17763": "1809",
    "10.0.20348": "21H2",
    "10.0.22000": "21H2",
    "10.0.22621": "22H2",
    "10.0.22631": "23H2",
    "10.0.26100": "24H2",
    "10.0.26200": "25H2",
}

# Windows 10 各子版本的ISO都报告 19041 附近的版本号，统一按 22H2 处理
WINDOWS10_COLLAPSED_RANGE: Tuple[int, int] = (19041, 19045)
WINDOWS10_COLLAPSED_TAG = "22H2"

# 已停止支持的版本
DEPRECATED_BUILDS = {
    "10.0.10240": "1507",
    "10.0.10586": "1511",
    "10.0.15063": "1703",
    "10.0.16299": "1709",
    "10.0.17134": "1803",
    "10.0.18362": "1903",
    "10.0.18363": "1909",
}


class VersionStatus(Enum):
    """版本解析结果状态"""
    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"
    UNKNOWN = "unknown"


@dataclass
class VersionResult:
    """版本解析结果"""
    status: VersionStatus
    build: str
    version: Optional[str] = None  # 仅SUPPORTED时有值

    @property
    def is_supported(self) -> bool:
        return self.status is VersionStatus.SUPPORTED


def resolve_version(build_string: str) -> VersionResult:
    """解析内部版本号

    Args:
        build_string: 形如 10.0.19045 或 10.0.19045.3803 的版本号

    Returns:
        VersionResult: 解析结果
    """
    build_string = (build_string or "").strip()
    match = BUILD_PATTERN.match(build_string)
    if not match:
        logger.warning(f"无法识别的版本号格式: {build_string!r}")
        return VersionResult(VersionStatus.UNKNOWN, build_string)

    major, minor, build = match.group(1), match.group(2), match.group(3)
    prefix = f"{int(major)}.{int(minor)}.{int(build)}"

    if prefix in DEPRECATED_BUILDS:
        logger.warning(f"版本 {DEPRECATED_BUILDS[prefix]} ({build_string}) 已不再支持")
        return VersionResult(VersionStatus.UNSUPPORTED, build_string)

    if prefix.startswith("10.0.") and WINDOWS10_COLLAPSED_RANGE[0] <= int(build) <= WINDOWS10_COLLAPSED_RANGE[1]:
        return VersionResult(VersionStatus.SUPPORTED, build_string, WINDOWS10_COLLAPSED_TAG)

    version = SUPPORTED_BUILDS.get(prefix)
    if version:
        return VersionResult(VersionStatus.SUPPORTED, build_string, version)

    logger.warning(f"未知的系统版本号: {build_string}")
    return VersionResult(VersionStatus.UNKNOWN, build_string)


# 只有服务器发行版使用的内部版本号
SERVER_BUILDS = frozenset([14393, 17763, 20348])


def detect_os_family(image_name: str, build_string: str = "") -> Optional[str]:
    """根据镜像名称判断系统家族

    Args:
        image_name: DISM报告的镜像名称，如 "Windows 11 Enterprise"
        build_string: 内部版本号，名称无法判断时使用

    Returns:
        Optional[str]: "Windows 10" / "Windows 11" / "Windows Server"，无法判断返回None
    """
    name = (image_name or "").lower()
    if "server" in name:
        return "Windows Server"
    if "windows 11" in name:
        return "Windows 11"
    if "windows 10" in name:
        return "Windows 10"

    match = BUILD_PATTERN.match((build_string or "").strip())
    if match:
        build = int(match.group(3))
        if build in SERVER_BUILDS:
            return "Windows Server"
        return "Windows 11" if build >= 22000 else "Windows 10"
    return None
