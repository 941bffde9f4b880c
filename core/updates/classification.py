#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
补丁分类与内容文件筛选模块
"""

import fnmatch
from pathlib import PurePath
from typing import Iterable, List, Optional, Tuple

from core.updates.models import UpdateClass

# 标题模式 -> 类别，按顺序匹配，第一个命中生效。
# 具体组件的规则必须排在通用的累积更新规则之前：
# "Dynamic Cumulative Update for Windows 11" 和 .NET 累积更新都包含 "Cumulative Update"。
CLASSIFICATION_RULES: List[Tuple[str, UpdateClass]] = [
    ("*servicing stack update*", UpdateClass.SSU),
    ("*dynamic*update*", UpdateClass.DYNAMIC),
    ("*cumulative update for .net framework*", UpdateClass.DOTNET_CU),
    ("*cumulative update for microsoft .net*", UpdateClass.DOTNET_CU),
    ("*cumulative update for windows*", UpdateClass.LCU),
    ("*cumulative update for microsoft server operating system*", UpdateClass.LCU),
    ("*adobe flash player*", UpdateClass.ADOBE),
    ("*.net framework*", UpdateClass.DOTNET),
]

# OSDSUS UpdateGroup 取值 -> 类别
GROUP_ALIASES = {
    "ssu": UpdateClass.SSU,
    "lcu": UpdateClass.LCU,
    "adobesu": UpdateClass.ADOBE,
    "dotnet": UpdateClass.DOTNET,
    "dotnetcu": UpdateClass.DOTNET_CU,
    "setupdu": UpdateClass.DYNAMIC,
    "componentdu": UpdateClass.DYNAMIC,
    "componentdu critical": UpdateClass.DYNAMIC,
    "componentdu safeos": UpdateClass.DYNAMIC,
}

ALLOWED_EXTENSIONS = (".cab", ".msu")

# 离线安装不可用的文件：express为在线差分包，baseless依赖基线，
# delta/psf为差分数据，featureonly只含功能元数据
OFFLINE_INCOMPATIBLE_PATTERNS = [
    "*express*",
    "*baseless*",
    "*delta*",
    "*.psf",
    "*featureonly*",
]

ARCH_TOKENS = {
    "x64": ("x64", "amd64"),
    "x86": ("x86",),
    "arm64": ("arm64",),
}


def classify_title(title: str, group_hint: Optional[str] = None) -> UpdateClass:
    """按规则表为补丁分类

    Args:
        title: 补丁标题
        group_hint: 目录源自带的分类，能识别时优先使用

    Returns:
        UpdateClass: 类别，规则都不匹配时为 OPTIONAL
    """
    if group_hint:
        hinted = GROUP_ALIASES.get(group_hint.strip().lower())
        if hinted:
            return hinted

    lowered = (title or "").lower()
    for pattern, update_class in CLASSIFICATION_RULES:
        if fnmatch.fnmatchcase(lowered, pattern):
            return update_class
    return UpdateClass.OPTIONAL


def is_offline_compatible(file_name: str) -> bool:
    """文件是否可以用于离线安装"""
    lowered = file_name.lower()
    if PurePath(lowered).suffix not in ALLOWED_EXTENSIONS:
        return False
    return not any(fnmatch.fnmatchcase(lowered, pattern) for pattern in OFFLINE_INCOMPATIBLE_PATTERNS)


def matches_architecture(file_name: str, arch: str) -> bool:
    """文件名没有指明其他架构

    不带架构标记的文件（如.NET和部分动态更新）视为匹配。
    """
    lowered = file_name.lower()
    wanted = ARCH_TOKENS.get(arch.lower(), (arch.lower(),))
    for other_arch, tokens in ARCH_TOKENS.items():
        if other_arch == arch.lower():
            continue
        for token in tokens:
            if _has_token(lowered, token) and not any(_has_token(lowered, w) for w in wanted):
                return False
    return True


def _has_token(name: str, token: str) -> bool:
    # x64 在 arm64 之类的名字里不能算命中，所以按分隔符切分
    separators = "-_. "
    for sep in separators:
        name = name.replace(sep, " ")
    return token in name.split()


def filter_content_files(file_names: Iterable[str], arch: str) -> List[str]:
    """筛选可离线安装且架构匹配的文件名，保持原有顺序"""
    return [
        name for name in file_names
        if is_offline_compatible(name) and matches_architecture(name, arch)
    ]
