#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
镜像定制模块
在已挂载的镜像上执行各项注入：语言资源、.NET 3.5、Autopilot配置、驱动、
默认应用关联、开始菜单布局、离线注册表、OneDrive更新、预配应用移除和自定义脚本。

所有方法都返回 (成功状态, 消息)；失败只影响当前定制项，由流水线决定是否继续。
"""

import json
import re
import shlex
import shutil
from pathlib import Path
from typing import List, Tuple
import logging

from utils.download import download_file
from utils.encoding import safe_decode
from utils.logger import log_error

logger = logging.getLogger("WIMCustomizer")

AUTOPILOT_RELATIVE_PATH = Path("Windows") / "Provisioning" / "Autopilot" / "AutopilotConfigurationFile.json"
AUTOPILOT_REQUIRED_KEYS = ("CloudAssignedTenantId", "CloudAssignedTenantDomain")
START_LAYOUT_RELATIVE_DIR = Path("Users") / "Default" / "AppData" / "Local" / "Microsoft" / "Windows" / "Shell"

# 离线注册表配置单元：挂载名 -> 镜像内的文件
OFFLINE_HIVES = {
    "OfflineDefaultUser": Path("Users") / "Default" / "NTUSER.DAT",
    "OfflineDefault": Path("Windows") / "System32" / "config" / "DEFAULT",
    "OfflineSoftware": Path("Windows") / "System32" / "config" / "SOFTWARE",
    "OfflineSystem": Path("Windows") / "System32" / "config" / "SYSTEM",
}

# .reg文件中的在线路径 -> 离线配置单元路径，按顺序替换
REGISTRY_PATH_REWRITES = [
    (r"HKEY_CURRENT_USER|HKCU", "HKEY_LOCAL_MACHINE\\OfflineDefaultUser"),
    (r"(?:HKEY_USERS|HKU)\\\.DEFAULT", "HKEY_LOCAL_MACHINE\\OfflineDefault"),
    (r"(?:HKEY_LOCAL_MACHINE|HKLM)\\SOFTWARE", "HKEY_LOCAL_MACHINE\\OfflineSoftware"),
    (r"(?:HKEY_LOCAL_MACHINE|HKLM)\\SYSTEM", "HKEY_LOCAL_MACHINE\\OfflineSystem"),
]


def rewrite_registry_paths(content: str) -> str:
    """将.reg文件中的键路径改写为离线配置单元路径

    只改写节标题（[HKEY_...] 和删除用的 [-HKEY_...]），值数据保持不变。
    """
    for source, target in REGISTRY_PATH_REWRITES:
        pattern = re.compile(r"^(\s*\[-?)(?:" + source + r")(?=[\\\]])", re.IGNORECASE | re.MULTILINE)
        content = pattern.sub(lambda m, t=target: m.group(1) + t, content)
    return content


def read_reg_file(path: Path) -> str:
    """读取.reg文件，regedit导出的文件为带BOM的UTF-16"""
    data = path.read_bytes()
    if data.startswith(b"\xff\xfe") or data.startswith(b"\xfe\xff"):
        return data.decode("utf-16")
    if data.startswith(b"\xef\xbb\xbf"):
        return data[3:].decode("utf-8")
    return safe_decode(data)


class ImageCustomizer:
    """镜像定制器类"""

    def __init__(self, config_manager, dism_manager, fetcher=None):
        self.config = config_manager
        self.dism = dism_manager
        self.fetcher = fetcher

    def _imports_dir(self, *parts: str) -> Path:
        return self.config.get_path("imports").joinpath(*parts)

    # === 语言资源 ===

    def add_language_resources(self, session, selection) -> Tuple[bool, str]:
        """安装语言包、本地体验包和按需功能

        资源从 imports/lang/<系统家族>/<版本>/ 下的 LP、LXP、FOD 目录读取。
        """
        try:
            base = self._imports_dir("lang", session.os_family, session.version)
            errors: List[str] = []
            installed = 0

            for name in selection.language_packs:
                package = base / "LP" / name
                if not package.exists():
                    errors.append(f"找不到语言包: {name}")
                    continue
                success, stdout, stderr = self.dism.add_package(session.mount_dir, package)
                if success:
                    installed += 1
                    logger.info(f"  ✅ 语言包: {name}")
                else:
                    errors.append(f"语言包 {name}: {stderr}")

            for name in selection.local_experience_packs:
                lxp_dir = base / "LXP" / name
                appx = sorted(lxp_dir.glob("*.appx")) if lxp_dir.is_dir() else []
                if not appx:
                    errors.append(f"找不到本地体验包: {name}")
                    continue
                license_file = lxp_dir / "License.xml"
                success, stdout, stderr = self.dism.add_provisioned_appx(
                    session.mount_dir, appx[0], license_file if license_file.exists() else None
                )
                if success:
                    installed += 1
                    logger.info(f"  ✅ 本地体验包: {name}")
                else:
                    errors.append(f"本地体验包 {name}: {stderr}")

            fod_source = base / "FOD"
            for capability in selection.features_on_demand:
                success, stdout, stderr = self.dism.add_capability(session.mount_dir, capability, fod_source)
                if success:
                    installed += 1
                    logger.info(f"  ✅ 按需功能: {capability}")
                else:
                    errors.append(f"按需功能 {capability}: {stderr}")

            for error in errors:
                logger.warning(f"  ⚠️ {error}")
            if errors:
                return False, f"已安装 {installed} 项，失败 {len(errors)} 项"
            return True, f"已安装 {installed} 项语言资源"

        except Exception as e:
            log_error(e, "安装语言资源")
            return False, f"安装语言资源时发生错误: {str(e)}"

    # === .NET 3.5 ===

    def add_dotnet(self, session) -> Tuple[bool, str]:
        """从 imports/DotNet/<系统家族>/<版本>/ 安装.NET 3.5"""
        source = self._imports_dir("DotNet", session.os_family, session.version)
        packages = sorted(source.glob("*.cab")) if source.is_dir() else []
        if not packages:
            return False, f"没有找到.NET 3.5安装包: {source}"

        for package in packages:
            success, stdout, stderr = self.dism.add_package(session.mount_dir, package)
            if not success:
                return False, f".NET 3.5安装失败: {package.name} - {stderr}"
        return True, f"已安装 {len(packages)} 个.NET 3.5包"

    # === Autopilot ===

    @staticmethod
    def validate_autopilot_profile(profile_path: Path) -> Tuple[bool, str]:
        """检查Autopilot配置文件"""
        try:
            with open(profile_path, 'r', encoding='utf-8-sig') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            return False, f"无法读取Autopilot配置文件: {e}"

        if not isinstance(data, dict):
            return False, "Autopilot配置文件格式错误"
        missing = [key for key in AUTOPILOT_REQUIRED_KEYS if not data.get(key)]
        if missing:
            return False, f"Autopilot配置文件缺少字段: {', '.join(missing)}"
        return True, ""

    def add_provisioning(self, session, selection) -> Tuple[bool, str]:
        """复制Autopilot配置文件到镜像"""
        profile = Path(selection.profile_path)
        valid, message = self.validate_autopilot_profile(profile)
        if not valid:
            return False, message

        target = Path(session.mount_dir) / AUTOPILOT_RELATIVE_PATH
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(profile, target)
            return True, f"Autopilot配置文件已复制到 {target}"
        except OSError as e:
            return False, f"复制Autopilot配置文件失败: {e}"

    # === 驱动 ===

    def add_drivers(self, session, selection) -> Tuple[bool, str]:
        """递归注入驱动目录"""
        added = 0
        errors = []
        for folder in selection.folders:
            folder_path = Path(folder)
            if not folder_path.is_dir():
                errors.append(f"驱动目录不存在: {folder}")
                continue
            logger.info(f"注入驱动: {folder_path}")
            success, stdout, stderr = self.dism.add_driver(session.mount_dir, folder_path, recurse=True)
            if success:
                added += 1
            else:
                errors.append(f"{folder}: {stderr}")

        for error in errors:
            logger.warning(f"  ⚠️ {error}")
        if errors:
            return False, f"{len(errors)} 个驱动目录注入失败"
        return True, f"已注入 {added} 个驱动目录"

    # === 默认应用关联 ===

    def import_app_associations(self, session, selection) -> Tuple[bool, str]:
        xml_path = Path(selection.path)
        if not xml_path.is_file():
            return False, f"默认应用关联文件不存在: {xml_path}"
        success, stdout, stderr = self.dism.import_app_associations(session.mount_dir, xml_path)
        if not success:
            return False, f"导入默认应用关联失败: {stderr}"
        return True, "默认应用关联已导入"

    # === 开始菜单布局 ===

    def apply_start_layout(self, session, selection) -> Tuple[bool, str]:
        """Windows 10 使用xml布局，Windows 11 使用json布局"""
        layout = Path(selection.path)
        if not layout.is_file():
            return False, f"开始菜单布局文件不存在: {layout}"

        expected = ".json" if session.os_family == "Windows 11" else ".xml"
        if layout.suffix.lower() != expected:
            return False, f"{session.os_family} 需要 {expected} 格式的开始菜单布局"

        target = Path(session.mount_dir) / START_LAYOUT_RELATIVE_DIR / f"LayoutModification{expected}"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(layout, target)
            return True, f"开始菜单布局已复制到 {target}"
        except OSError as e:
            return False, f"复制开始菜单布局失败: {e}"

    # === 离线注册表 ===

    def apply_registry(self, session, selection) -> Tuple[bool, str]:
        """加载离线配置单元，导入改写后的.reg文件，最后卸载配置单元"""
        work_dir = self.config.get_path("staging") / "registry"
        loaded: List[str] = []
        errors: List[str] = []
        imported = 0
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
            for hive_name, relative in OFFLINE_HIVES.items():
                hive_file = Path(session.mount_dir) / relative
                success, stdout, stderr = self.dism.run_command(["reg", "load", f"HKLM\\{hive_name}", str(hive_file)])
                if not success:
                    return False, f"加载配置单元失败 {hive_name}: {stderr}"
                loaded.append(hive_name)

            for reg_file in selection.files:
                reg_path = Path(reg_file)
                if not reg_path.is_file():
                    errors.append(f"注册表文件不存在: {reg_file}")
                    continue
                rewritten = work_dir / reg_path.name
                rewritten.write_text(rewrite_registry_paths(read_reg_file(reg_path)), encoding="utf-16")
                success, stdout, stderr = self.dism.run_command(["reg", "import", str(rewritten)])
                if success:
                    imported += 1
                    logger.info(f"  ✅ 已导入: {reg_path.name}")
                else:
                    errors.append(f"{reg_path.name}: {stderr}")

        except Exception as e:
            log_error(e, "导入离线注册表")
            errors.append(str(e))

        finally:
            for hive_name in reversed(loaded):
                success, stdout, stderr = self.dism.run_command(["reg", "unload", f"HKLM\\{hive_name}"])
                if not success:
                    errors.append(f"卸载配置单元失败 {hive_name}: {stderr}")

        for error in errors:
            logger.warning(f"  ⚠️ {error}")
        if errors:
            return False, f"已导入 {imported} 个注册表文件，失败 {len(errors)} 项"
        return True, f"已导入 {imported} 个注册表文件"

    # === OneDrive ===

    def refresh_onedrive(self, session, selection) -> Tuple[bool, str]:
        """用最新的OneDrive安装程序替换镜像中的旧版本"""
        file_name = self.config.get("onedrive.file_name", "OneDriveSetup.exe")
        installer = self._imports_dir("OneDrive", file_name)

        if selection.download:
            url = self.config.get("onedrive.download_url", "")
            success, message = download_file(url, installer, fetcher=self.fetcher)
            if not success:
                return False, f"下载OneDrive安装程序失败: {message}"

        if not installer.is_file():
            return False, f"没有找到OneDrive安装程序: {installer}"

        windows_dir = Path(session.mount_dir) / "Windows"
        targets = [d / file_name for d in (windows_dir / "SysWOW64", windows_dir / "System32") if (d / file_name).exists()]
        if not targets:
            default_dir = "System32" if session.architecture.lower() in ("x86", "arm64") else "SysWOW64"
            targets = [windows_dir / default_dir / file_name]

        for target in targets:
            if target.exists():
                # 镜像中的文件属于TrustedInstaller，先取得所有权
                self.dism.run_command(["takeown", "/f", str(target)])
                self.dism.run_command(["icacls", str(target), "/grant", "*S-1-5-32-544:F"])
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(installer, target)
                logger.info(f"  ✅ 已替换: {target}")
            except OSError as e:
                return False, f"替换OneDrive安装程序失败: {e}"

        return True, f"已更新 {len(targets)} 个OneDrive安装程序"

    # === 预配应用 ===

    def remove_packages(self, session, selection) -> Tuple[bool, str]:
        """移除预配应用，镜像中不存在的应用只记录日志"""
        provisioned = self.dism.get_provisioned_appx(session.mount_dir)
        removed = 0
        errors = []

        for wanted in selection.packages:
            matches = [
                p for p in provisioned
                if wanted in (p["display_name"], p["package_name"]) or p["package_name"].startswith(f"{wanted}_")
            ]
            if not matches:
                logger.info(f"镜像中没有预配应用: {wanted}")
                continue
            for package in matches:
                success, stdout, stderr = self.dism.remove_provisioned_appx(session.mount_dir, package["package_name"])
                if success:
                    removed += 1
                    logger.info(f"  ✅ 已移除: {package['display_name']}")
                else:
                    errors.append(f"{package['display_name']}: {stderr}")

        for error in errors:
            logger.warning(f"  ⚠️ 移除失败 {error}")
        if errors:
            return False, f"已移除 {removed} 个预配应用，失败 {len(errors)} 个"
        return True, f"已移除 {removed} 个预配应用"

    # === 自定义脚本 ===

    def run_script(self, selection) -> Tuple[bool, str]:
        """运行自定义PowerShell脚本"""
        script = Path(selection.path)
        if not script.is_file():
            return False, f"脚本文件不存在: {script}"

        cmd = [
            str(self.dism.get_powershell_path()),
            "-NoProfile", "-ExecutionPolicy", "Bypass", "-File", str(script)
        ]
        if selection.parameters:
            cmd.extend(shlex.split(selection.parameters, posix=False))

        success, stdout, stderr = self.dism.run_command(cmd)
        if not success:
            return False, f"脚本执行失败: {stderr}"
        return True, f"脚本执行完成: {script.name}"
