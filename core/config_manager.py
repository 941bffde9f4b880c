#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
配置管理模块
负责管理镜像定制过程中与单次构建无关的环境配置：
工作目录、更新目录源、工具路径、LCU处理方式等
"""

import copy
import json
from pathlib import Path
from typing import Dict, List, Any, Optional
import logging

logger = logging.getLogger("WIMCustomizer")

# LCU处理方式
LCU_SPLIT = "split"
LCU_CONVERT = "convert"
LCU_DIRECT = "direct"


class ConfigManager:
    """配置管理器类"""

    def __init__(self, config_file: Optional[Path] = None):
        self.project_root = Path(__file__).parent.parent
        self.config_file = Path(config_file) if config_file else self.project_root / "config" / "wim_customizer.json"
        self.config_dir = self.config_file.parent
        self.default_config = self._get_default_config()
        self.config = self._load_config()

    def _get_default_config(self) -> Dict[str, Any]:
        """获取默认配置"""
        return {
            "paths": {
                "workspace": "",   # 为空时使用 当前目录/workspace
                "staging": "staging",
                "mount": "mount",
                "imports": "imports",
                "updates": "updates",
                "media": "media",
                "boot": "boot",
                "logs": "logs"
            },
            "catalog": {
                "source": "osdsus",  # osdsus 或 configmgr
                "osdsus_module": "OSDSUS",
                "configmgr": {
                    "site_code": "",
                    "site_server": ""
                }
            },
            # 合并包（SSU+LCU）需要拆开按顺序安装的系统版本，其余版本转换后直接安装
            "lcu_handling": {
                "Windows 10": {
                    "21H2": LCU_SPLIT,
                    "22H2": LCU_SPLIT
                },
                "Windows 11": {
                    "21H2": LCU_CONVERT,
                    "22H2": LCU_CONVERT,
                    "23H2": LCU_CONVERT
                },
                "Windows Server": {
                    "21H2": LCU_SPLIT
                }
            },
            "tools": {
                "dism_path": "",
                "expand_path": "",
                "oscdimg_path": "",
                "powershell_path": ""
            },
            "validation": {
                "min_free_gb": 20,
                "require_admin": True
            },
            "onedrive": {
                "download_url": "https://go.microsoft.com/fwlink/?linkid=844652",
                "file_name": "OneDriveSetup.exe"
            }
        }

    def _load_config(self) -> Dict[str, Any]:
        """从文件加载配置"""
        try:
            if self.config_file.exists():
                with open(self.config_file, 'r', encoding='utf-8') as f:
                    config = json.load(f)
                logger.info(f"配置文件加载成功: {self.config_file}")
                return self._merge_config(self.default_config, config)
            else:
                logger.info("配置文件不存在，使用默认配置")
                return copy.deepcopy(self.default_config)
        except (OSError, ValueError) as e:
            logger.error(f"加载配置文件失败: {str(e)}")
            return copy.deepcopy(self.default_config)

    def _merge_config(self, default: Dict, loaded: Dict) -> Dict:
        """合并配置，确保所有必要的键都存在"""
        result = copy.deepcopy(default)
        for key, value in loaded.items():
            if key in result and isinstance(value, dict) and isinstance(result[key], dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def save_config(self) -> bool:
        """保存配置到文件"""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, ensure_ascii=False, indent=2)
            logger.info(f"配置文件保存成功: {self.config_file}")
            return True
        except OSError as e:
            logger.error(f"保存配置文件失败: {str(e)}")
            return False

    def get(self, key_path: str, default: Any = None) -> Any:
        """获取配置值，支持点号分隔的路径

        Args:
            key_path: 配置键路径，如 'catalog.source'
            default: 默认值
        """
        keys = key_path.split('.')
        value = self.config
        try:
            for key in keys:
                value = value[key]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key_path: str, value: Any) -> bool:
        """设置配置值

        Args:
            key_path: 配置键路径，如 'paths.workspace'
            value: 要设置的值
        """
        keys = key_path.split('.')
        config = self.config
        for key in keys[:-1]:
            if not isinstance(config.get(key), dict):
                config[key] = {}
            config = config[key]
        config[keys[-1]] = value
        logger.debug(f"配置更新: {key_path} = {value}")
        return True

    # === 路径 ===

    def get_workspace(self) -> Path:
        """获取工作空间根目录"""
        workspace = self.get("paths.workspace", "")
        return Path(workspace) if workspace else Path.cwd() / "workspace"

    def get_path(self, name: str) -> Path:
        """获取工作空间下的子目录，配置为绝对路径时直接使用

        Args:
            name: staging / mount / imports / updates / media / boot / logs
        """
        value = self.get(f"paths.{name}", name)
        path = Path(value)
        if path.is_absolute():
            return path
        return self.get_workspace() / path

    # === 更新 ===

    def get_lcu_handling(self, os_family: str, version: str) -> str:
        """获取指定系统版本的LCU处理方式

        Returns:
            str: split / convert / direct
        """
        table = self.get("lcu_handling", {}) or {}
        return table.get(os_family, {}).get(version, LCU_DIRECT)

    def get_catalog_source(self) -> str:
        """获取当前使用的更新目录源"""
        return str(self.get("catalog.source", "osdsus")).lower()

    def get_available_catalog_sources(self) -> List[str]:
        """获取可用的更新目录源"""
        return ["osdsus", "configmgr"]
