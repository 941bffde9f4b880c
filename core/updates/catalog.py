#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
更新目录源模块
两个可互换的补丁目录：
- OSDSUS 社区目录（通过PowerShell模块查询）
- Configuration Manager 站点的软件更新目录（通过SMS Provider查询）
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import logging

from core.updates.models import CatalogRecord, ContentFile

logger = logging.getLogger("WIMCustomizer")


def _ps_quote(value: str) -> str:
    """PowerShell单引号字符串转义"""
    return "'" + str(value).replace("'", "''") + "'"


def _parse_json_output(stdout: str) -> List[Dict[str, Any]]:
    """解析ConvertTo-Json的输出，单个对象也转换为列表"""
    text = (stdout or "").strip().lstrip("\ufeff")
    if not text:
        return []
    data = json.loads(text)
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    raise ValueError(f"无法识别的目录输出类型: {type(data).__name__}")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


class CatalogSource(ABC):
    """更新目录源基类"""

    name = "catalog"

    def __init__(self, dism_manager):
        self.dism = dism_manager

    @abstractmethod
    def query(self, os_family: str, version: str, arch: Optional[str] = None) -> Optional[List[CatalogRecord]]:
        """查询补丁记录

        Args:
            os_family: 系统家族，如 "Windows 10"
            version: 版本标签，如 "22H2"
            arch: 架构，None表示全部架构

        Returns:
            Optional[List[CatalogRecord]]: 记录列表（含已被取代的记录）；查询失败返回None
        """

    def supersedence_map(self, os_family: str, version: str) -> Optional[Dict[str, bool]]:
        """获取 标题 -> 是否已被取代 的映射，查询失败返回None"""
        records = self.query(os_family, version)
        if records is None:
            return None
        result: Dict[str, bool] = {}
        for record in records:
            # 同名记录只要有一条仍有效就视为有效
            result[record.title] = result.get(record.title, True) and record.superseded
        return result

    def _run_query_script(self, script: str) -> Optional[List[Dict[str, Any]]]:
        success, stdout, stderr = self.dism.run_powershell(script)
        if not success:
            logger.error(f"{self.name} 目录查询失败: {stderr}")
            return None
        try:
            return _parse_json_output(stdout)
        except ValueError as e:
            logger.error(f"{self.name} 目录输出解析失败: {e}")
            return None


class CommunityCatalog(CatalogSource):
    """OSDSUS 社区补丁目录

    目录按文件逐条返回，同一补丁的多个文件在这里按标题合并。
    """

    name = "OSDSUS"

    def __init__(self, dism_manager, module_name: str = "OSDSUS"):
        super().__init__(dism_manager)
        self.module_name = module_name

    def build_script(self, os_family: str, version: str, arch: Optional[str]) -> str:
        conditions = [
            f"$_.UpdateOS -eq {_ps_quote(os_family)}",
            f"$_.UpdateBuild -eq {_ps_quote(version)}",
        ]
        if arch:
            conditions.append(f"$_.UpdateArch -eq {_ps_quote(arch)}")
        where = " -and ".join(conditions)
        return (
            f"Import-Module {self.module_name} -ErrorAction Stop; "
            f"@(Get-OSDUpdate | Where-Object {{ {where} }}) | "
            "Select-Object Title, KBNumber, UpdateOS, UpdateBuild, UpdateArch, UpdateGroup, "
            "IsSuperseded, FileName, OriginUri | ConvertTo-Json -Depth 3 -Compress"
        )

    def query(self, os_family: str, version: str, arch: Optional[str] = None) -> Optional[List[CatalogRecord]]:
        logger.info(f"查询OSDSUS目录: {os_family} {version} {arch or '全部架构'}")
        rows = self._run_query_script(self.build_script(os_family, version, arch))
        if rows is None:
            return None

        records: Dict[str, CatalogRecord] = {}
        for row in rows:
            title = str(row.get("Title") or "").strip()
            if not title:
                continue
            record = records.get(title)
            if record is None:
                record = CatalogRecord(
                    title=title,
                    article_id=str(row.get("KBNumber") or ""),
                    superseded=_as_bool(row.get("IsSuperseded", False)),
                    group=str(row.get("UpdateGroup") or ""),
                    os_family=str(row.get("UpdateOS") or os_family),
                    version=str(row.get("UpdateBuild") or version),
                    arch=str(row.get("UpdateArch") or arch or ""),
                )
                records[title] = record
            file_name = str(row.get("FileName") or "").strip()
            if file_name:
                record.files.append(ContentFile(name=file_name, url=str(row.get("OriginUri") or "")))

        logger.info(f"OSDSUS目录返回 {len(records)} 个补丁")
        return list(records.values())


class ConfigMgrCatalog(CatalogSource):
    """Configuration Manager 软件更新目录"""

    name = "ConfigMgr"

    def __init__(self, dism_manager, site_code: str, site_server: str):
        super().__init__(dism_manager)
        self.site_code = site_code
        self.site_server = site_server

    @staticmethod
    def title_filter(os_family: str, version: str) -> str:
        """SMS_SoftwareUpdate 标题过滤条件

        Windows 10 标题为 "... Windows 10 Version 22H2 ..."，
        Windows 11 为 "... Windows 11, version 23H2 ..."，
        Server 为 "... Microsoft server operating system version 21H2 ..."。
        """
        if os_family == "Windows Server":
            return f"%server operating system%{version}%"
        return f"%{os_family}%{version}%"

    @staticmethod
    def arch_from_title(title: str) -> str:
        lowered = title.lower()
        if "arm64" in lowered:
            return "arm64"
        if "x64" in lowered:
            return "x64"
        if "x86" in lowered:
            return "x86"
        return ""

    def build_script(self, os_family: str, version: str) -> str:
        namespace = f"root\\SMS\\site_{self.site_code}"
        wql = (
            "SELECT * FROM SMS_SoftwareUpdate WHERE LocalizedDisplayName LIKE "
            f"'{self.title_filter(os_family, version)}' AND IsExpired = 0"
        ).replace("'", "''")
        return (
            f"$server = {_ps_quote(self.site_server)}; $ns = {_ps_quote(namespace)}; "
            f"$updates = Get-CimInstance -ComputerName $server -Namespace $ns -Query '{wql}' -ErrorAction Stop; "
            "@(foreach ($u in $updates) { "
            "$files = @(); "
            "foreach ($link in @(Get-CimInstance -ComputerName $server -Namespace $ns -ClassName SMS_CIToContent "
            "-Filter \"CI_ID = $($u.CI_ID)\")) { "
            "$files += @(Get-CimInstance -ComputerName $server -Namespace $ns -ClassName SMS_CIContentFiles "
            "-Filter \"ContentID = $($link.ContentID)\" | ForEach-Object { "
            "[pscustomobject]@{ FileName = $_.FileName; SourceURL = $_.SourceURL } }) }; "
            "[pscustomobject]@{ Title = $u.LocalizedDisplayName; ArticleID = $u.ArticleID; "
            "IsSuperseded = $u.IsSuperseded; Files = $files } "
            "}) | ConvertTo-Json -Depth 4 -Compress"
        )

    def query(self, os_family: str, version: str, arch: Optional[str] = None) -> Optional[List[CatalogRecord]]:
        if not self.site_code or not self.site_server:
            logger.error("未配置ConfigMgr站点代码或站点服务器")
            return None

        logger.info(f"查询ConfigMgr目录 ({self.site_server}/{self.site_code}): {os_family} {version}")
        rows = self._run_query_script(self.build_script(os_family, version))
        if rows is None:
            return None

        records = []
        for row in rows:
            title = str(row.get("Title") or "").strip()
            if not title:
                continue
            record_arch = self.arch_from_title(title)
            if arch and record_arch and record_arch != arch.lower():
                continue
            files = row.get("Files") or []
            if isinstance(files, dict):
                files = [files]
            records.append(CatalogRecord(
                title=title,
                article_id=str(row.get("ArticleID") or ""),
                superseded=_as_bool(row.get("IsSuperseded", False)),
                os_family=os_family,
                version=version,
                arch=record_arch or (arch or ""),
                files=[
                    ContentFile(name=str(f.get("FileName") or ""), url=str(f.get("SourceURL") or ""))
                    for f in files if isinstance(f, dict) and f.get("FileName")
                ],
            ))

        logger.info(f"ConfigMgr目录返回 {len(records)} 个补丁")
        return records


def create_catalog_source(config_manager, dism_manager) -> CatalogSource:
    """根据配置创建目录源"""
    source = config_manager.get_catalog_source()
    if source == "configmgr":
        return ConfigMgrCatalog(
            dism_manager,
            site_code=config_manager.get("catalog.configmgr.site_code", ""),
            site_server=config_manager.get("catalog.configmgr.site_server", ""),
        )
    if source != "osdsus":
        logger.warning(f"未知的目录源 {source}，使用OSDSUS")
    return CommunityCatalog(dism_manager, module_name=config_manager.get("catalog.osdsus_module", "OSDSUS"))
