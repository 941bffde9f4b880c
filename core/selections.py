#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
定制选项模块
保存一次构建所需的全部选项，可保存为JSON快照并在无人值守运行时重新加载
"""

import json
from dataclasses import dataclass, field, fields, asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Union
import logging

logger = logging.getLogger("WIMCustomizer")

# 自定义脚本执行时机
SCRIPT_AFTER_MOUNT = "after_mount"
SCRIPT_BEFORE_DISMOUNT = "before_dismount"
SCRIPT_ON_FINISH = "on_finish"
SCRIPT_TIMINGS = (SCRIPT_AFTER_MOUNT, SCRIPT_BEFORE_DISMOUNT, SCRIPT_ON_FINISH)


@dataclass
class SourceSelection:
    """源镜像"""
    image_path: str = ""
    index: int = 1


@dataclass
class OutputSelection:
    """输出镜像"""
    path: str = ""
    name: str = ""
    rename_existing: bool = True  # 目标已存在时改名保留，否则校验失败


@dataclass
class MountSelection:
    """挂载目录与交互暂停点"""
    path: str = ""  # 为空时使用配置中的挂载目录
    clean: bool = False  # 挂载目录被占用时是否强制清理
    pause_after_mount: bool = False
    pause_before_dismount: bool = False


@dataclass
class LanguageSelection:
    """语言包、本地体验包和按需功能"""
    enabled: bool = False
    language_packs: List[str] = field(default_factory=list)
    local_experience_packs: List[str] = field(default_factory=list)
    features_on_demand: List[str] = field(default_factory=list)


@dataclass
class DotNetSelection:
    """.NET Framework 3.5"""
    enabled: bool = False


@dataclass
class ProvisioningSelection:
    """Autopilot配置文件"""
    enabled: bool = False
    profile_path: str = ""


@dataclass
class DriverSelection:
    """驱动目录"""
    enabled: bool = False
    folders: List[str] = field(default_factory=list)


@dataclass
class FileSelection:
    """单个文件类定制（默认应用关联、开始菜单布局）"""
    enabled: bool = False
    path: str = ""


@dataclass
class RegistrySelection:
    """离线注册表导入"""
    enabled: bool = False
    files: List[str] = field(default_factory=list)


@dataclass
class ScriptSelection:
    """自定义PowerShell脚本"""
    enabled: bool = False
    path: str = ""
    parameters: str = ""
    timing: str = SCRIPT_AFTER_MOUNT


@dataclass
class UpdateSelection:
    """补丁类别开关"""
    enabled: bool = False
    refresh_catalog: bool = False  # 安装前先清理过期补丁并下载最新补丁
    ssu: bool = True
    lcu: bool = True
    adobe: bool = True
    dotnet: bool = True
    dotnet_cu: bool = True
    optional: bool = False
    dynamic: bool = False


@dataclass
class AgentSelection:
    """OneDrive客户端更新"""
    enabled: bool = False
    download: bool = False  # 先下载最新安装程序


@dataclass
class PackageRemovalSelection:
    """预配应用移除"""
    enabled: bool = False
    packages: List[str] = field(default_factory=list)


@dataclass
class PostProcessingSelection:
    """导出后的处理"""
    update_cm_package: bool = False
    cm_package_id: str = ""
    update_boot_image: bool = False
    stage_media: bool = False
    create_iso: bool = False
    iso_name: str = ""


@dataclass
class CustomizationSelections:
    """一次构建的全部定制选项"""
    source: SourceSelection = field(default_factory=SourceSelection)
    output: OutputSelection = field(default_factory=OutputSelection)
    mount: MountSelection = field(default_factory=MountSelection)
    language: LanguageSelection = field(default_factory=LanguageSelection)
    dotnet: DotNetSelection = field(default_factory=DotNetSelection)
    provisioning: ProvisioningSelection = field(default_factory=ProvisioningSelection)
    drivers: DriverSelection = field(default_factory=DriverSelection)
    app_associations: FileSelection = field(default_factory=FileSelection)
    start_layout: FileSelection = field(default_factory=FileSelection)
    registry: RegistrySelection = field(default_factory=RegistrySelection)
    updates: UpdateSelection = field(default_factory=UpdateSelection)
    onedrive: AgentSelection = field(default_factory=AgentSelection)
    package_removal: PackageRemovalSelection = field(default_factory=PackageRemovalSelection)
    script: ScriptSelection = field(default_factory=ScriptSelection)
    post_processing: PostProcessingSelection = field(default_factory=PostProcessingSelection)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CustomizationSelections':
        """从字典创建，缺失的键使用默认值，未知的键忽略"""
        return _build_dataclass(cls, data or {}, "")

    def save(self, path: Union[str, Path]) -> bool:
        """保存为JSON快照"""
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(self.to_dict(), f, ensure_ascii=False, indent=2)
            logger.info(f"定制选项已保存: {path}")
            return True
        except OSError as e:
            logger.error(f"保存定制选项失败: {str(e)}")
            return False

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'CustomizationSelections':
        """从JSON快照加载

        Raises:
            OSError: 文件无法读取
            ValueError: 内容不是有效的JSON对象
        """
        path = Path(path)
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"定制选项文件格式错误: {path}")
        logger.info(f"定制选项已加载: {path}")
        return cls.from_dict(data)


def _parse_bool(value: Any, key: str) -> bool:
    """手工编辑的快照里允许 "true"/"false" 字符串，其他写法报错"""
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValueError(f"选项 {key} 应为布尔值: {value!r}")


def _build_dataclass(cls, data: Dict[str, Any], prefix: str):
    kwargs = {}
    known = set()
    for f in fields(cls):
        known.add(f.name)
        if f.name not in data:
            continue
        value = data[f.name]
        nested_type = f.default_factory if f.default_factory is not list else None
        if nested_type is not None and isinstance(nested_type, type) and is_dataclass(nested_type):
            if not isinstance(value, dict):
                raise ValueError(f"选项 {prefix}{f.name} 应为对象")
            kwargs[f.name] = _build_dataclass(nested_type, value, f"{prefix}{f.name}.")
        elif f.default_factory is list:
            if not isinstance(value, list):
                raise ValueError(f"选项 {prefix}{f.name} 应为列表")
            kwargs[f.name] = [str(item) for item in value]
        elif isinstance(f.default, bool):
            kwargs[f.name] = _parse_bool(value, f"{prefix}{f.name}")
        elif isinstance(f.default, int):
            kwargs[f.name] = int(value)
        else:
            kwargs[f.name] = "" if value is None else str(value)

    for key in data:
        if key not in known:
            logger.warning(f"忽略未知的定制选项: {prefix}{key}")

    return cls(**kwargs)
