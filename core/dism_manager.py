#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
镜像服务管理模块
封装DISM及expand、reg、PowerShell等系统工具，负责离线镜像的挂载、卸载、
包安装、导出和信息查询
"""

import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import List, Dict, Tuple, Optional, Union
import logging

from utils.encoding import safe_decode
from utils.logger import log_command

logger = logging.getLogger("WIMCustomizer")

PathLike = Union[str, Path]

# 常见的ADK部署工具安装路径
COMMON_ADK_PATHS = [
    r"C:\Program Files (x86)\Windows Kits\10",
    r"C:\Program Files\Windows Kits\10",
]


def parse_dism_blocks(output: str, block_key: str) -> List[Dict[str, str]]:
    """将DISM的 "键 : 值" 输出按记录拆分

    Args:
        output: DISM标准输出
        block_key: 每条记录的第一个键，例如 "Index"、"Mount Dir"

    Returns:
        List[Dict[str, str]]: 记录列表，键保持DISM原样
    """
    blocks: List[Dict[str, str]] = []
    current: Optional[Dict[str, str]] = None
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if " : " not in line:
            continue
        key, value = line.split(" : ", 1)
        key = key.strip()
        value = value.strip()
        if key == block_key:
            current = {}
            blocks.append(current)
        if current is not None:
            current[key] = value
    return blocks


class DismManager:
    """镜像服务管理器类

    所有方法都是同步阻塞的，没有超时；长时间运行的DISM操作（导出、安装LCU）
    可能持续数十分钟。
    """

    def __init__(self, config_manager=None):
        self.config = config_manager
        self.command_callback = None  # 命令输出回调函数

    def set_command_callback(self, callback):
        """设置命令输出回调函数

        Args:
            callback: 回调函数，接收(command: str, output: str)参数
        """
        self.command_callback = callback

    def _emit_command_output(self, command: str, output: str):
        if self.command_callback:
            self.command_callback(command, output)

    # === 工具路径 ===

    def _configured_tool(self, key: str) -> Optional[Path]:
        if self.config:
            value = self.config.get(f"tools.{key}", "")
            if value:
                return Path(value)
        return None

    def _system32(self) -> Path:
        return Path(os.environ.get("SystemRoot", r"C:\Windows")) / "System32"

    def get_dism_path(self) -> Path:
        """获取DISM路径，优先使用配置，其次ADK部署工具，最后系统自带"""
        configured = self._configured_tool("dism_path")
        if configured:
            return configured

        for adk_path in COMMON_ADK_PATHS:
            candidate = Path(adk_path) / "Assessment and Deployment Kit" / "Deployment Tools" / "amd64" / "DISM" / "dism.exe"
            if candidate.exists():
                return candidate

        found = shutil.which("dism")
        return Path(found) if found else self._system32() / "Dism.exe"

    def get_expand_path(self) -> Path:
        """获取expand.exe路径"""
        configured = self._configured_tool("expand_path")
        if configured:
            return configured
        found = shutil.which("expand")
        return Path(found) if found else self._system32() / "expand.exe"

    def get_powershell_path(self) -> Path:
        """获取PowerShell路径"""
        configured = self._configured_tool("powershell_path")
        if configured:
            return configured
        found = shutil.which("powershell")
        return Path(found) if found else self._system32() / "WindowsPowerShell" / "v1.0" / "powershell.exe"

    def get_oscdimg_path(self) -> Optional[Path]:
        """获取Oscdimg工具路径"""
        configured = self._configured_tool("oscdimg_path")
        if configured:
            return configured

        for adk_path in COMMON_ADK_PATHS:
            candidate = Path(adk_path) / "Assessment and Deployment Kit" / "Deployment Tools" / "amd64" / "Oscdimg" / "oscdimg.exe"
            if candidate.exists():
                return candidate

        found = shutil.which("oscdimg")
        return Path(found) if found else None

    # === 命令执行 ===

    def run_command(self, cmd: List[str], cwd: Optional[PathLike] = None) -> Tuple[bool, str, str]:
        """运行外部命令

        Args:
            cmd: 命令及参数
            cwd: 工作目录

        Returns:
            Tuple[bool, str, str]: (成功状态, 标准输出, 错误输出)
        """
        cmd = [str(part) for part in cmd]
        command_str = ' '.join(cmd)
        log_command(command_str)

        try:
            start_time = time.time()
            result = subprocess.run(
                cmd,
                capture_output=True,
                cwd=str(cwd) if cwd else None,
                creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0)
            )
            duration = time.time() - start_time

            stdout = safe_decode(result.stdout)
            stderr = safe_decode(result.stderr)
            success = result.returncode == 0
            self._emit_command_output(command_str, stdout or stderr)

            if success:
                logger.debug(f"命令执行成功，耗时 {duration:.1f} 秒")
            else:
                # DISM把错误写到标准输出
                logger.error(f"命令执行失败，返回码: {result.returncode}")
                logger.error(f"执行的命令: {command_str}")
                if stderr:
                    logger.error(f"错误输出: {stderr[:500]}")
                if stdout:
                    logger.error(f"标准输出: {stdout[-500:]}")
                if not stderr:
                    stderr = stdout or f"返回码 {result.returncode}"

            return success, stdout, stderr

        except OSError as e:
            error_msg = f"执行命令时发生错误: {str(e)}"
            logger.error(error_msg)
            logger.error(f"执行的命令: {command_str}")
            return False, "", error_msg

    def run_dism_command(self, args: List[str]) -> Tuple[bool, str, str]:
        """运行DISM命令

        Args:
            args: DISM命令参数

        Returns:
            Tuple[bool, str, str]: (成功状态, 标准输出, 错误输出)
        """
        return self.run_command([str(self.get_dism_path()), "/English"] + list(args))

    def run_powershell(self, script: str) -> Tuple[bool, str, str]:
        """运行PowerShell脚本片段"""
        return self.run_command([
            str(self.get_powershell_path()),
            "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass",
            "-Command", script
        ])

    def check_admin_privileges(self) -> bool:
        """检查是否具有管理员权限"""
        try:
            import ctypes
            return ctypes.windll.shell32.IsUserAnAdmin() != 0
        except (AttributeError, OSError):
            return False

    # === 挂载 ===

    def get_mounted_images(self) -> Optional[List[Dict[str, str]]]:
        """获取当前已挂载的镜像列表

        Returns:
            Optional[List[Dict[str, str]]]: 每项包含 mount_dir、image_file、index、status，查询失败时返回None
        """
        success, stdout, stderr = self.run_dism_command(["/Get-MountedImageInfo"])
        if not success:
            logger.warning(f"获取挂载列表失败: {stderr}")
            return None

        mounted = []
        for block in parse_dism_blocks(stdout, "Mount Dir"):
            mounted.append({
                "mount_dir": block.get("Mount Dir", ""),
                "image_file": block.get("Image File", ""),
                "index": block.get("Image Index", ""),
                "status": block.get("Status", "")
            })
        return mounted

    def mount_image(self, image_file: PathLike, index: int, mount_dir: PathLike) -> Tuple[bool, str, str]:
        """挂载镜像索引到目录"""
        return self.run_dism_command([
            "/Mount-Image",
            f"/ImageFile:{image_file}",
            f"/Index:{index}",
            f"/MountDir:{mount_dir}"
        ])

    def unmount_image(self, mount_dir: PathLike, commit: bool) -> Tuple[bool, str, str]:
        """卸载镜像

        Args:
            mount_dir: 挂载目录
            commit: True提交更改，False放弃更改
        """
        return self.run_dism_command([
            "/Unmount-Image",
            f"/MountDir:{mount_dir}",
            "/Commit" if commit else "/Discard"
        ])

    def cleanup_mountpoints(self) -> Tuple[bool, str, str]:
        """清理失效的挂载记录"""
        return self.run_dism_command(["/Cleanup-Mountpoints"])

    # === 镜像文件 ===

    def get_image_indexes(self, image_file: PathLike) -> List[Dict[str, str]]:
        """获取WIM文件包含的所有索引

        Returns:
            List[Dict[str, str]]: 每项包含 index、name、description
        """
        success, stdout, stderr = self.run_dism_command(["/Get-ImageInfo", f"/ImageFile:{image_file}"])
        if not success:
            logger.error(f"读取镜像索引失败: {stderr}")
            return []

        return [
            {
                "index": block.get("Index", ""),
                "name": block.get("Name", ""),
                "description": block.get("Description", "")
            }
            for block in parse_dism_blocks(stdout, "Index")
        ]

    def get_image_info(self, image_file: PathLike, index: int) -> Optional[Dict[str, str]]:
        """获取指定索引的镜像元数据

        Returns:
            Optional[Dict[str, str]]: name、edition、architecture、version、build；失败返回None
        """
        success, stdout, stderr = self.run_dism_command([
            "/Get-ImageInfo", f"/ImageFile:{image_file}", f"/Index:{index}"
        ])
        if not success:
            logger.error(f"读取镜像信息失败: {stderr}")
            return None

        blocks = parse_dism_blocks(stdout, "Index")
        if not blocks:
            logger.error(f"无法解析镜像信息输出: {stdout[:200]}")
            return None

        block = blocks[0]
        version = block.get("Version", "")
        sp_build = block.get("ServicePack Build", "")
        return {
            "index": block.get("Index", str(index)),
            "name": block.get("Name", ""),
            "description": block.get("Description", ""),
            "edition": block.get("Edition", ""),
            "architecture": block.get("Architecture", ""),
            "version": version,
            "build": f"{version}.{sp_build}" if version and sp_build else version
        }

    def delete_image(self, image_file: PathLike, index: int) -> Tuple[bool, str, str]:
        """从WIM文件中删除索引"""
        return self.run_dism_command(["/Delete-Image", f"/ImageFile:{image_file}", f"/Index:{index}"])

    def export_image(self, source_file: PathLike, source_index: int,
                     destination_file: PathLike, destination_name: str) -> Tuple[bool, str, str]:
        """导出镜像索引到新的WIM文件"""
        return self.run_dism_command([
            "/Export-Image",
            f"/SourceImageFile:{source_file}",
            f"/SourceIndex:{source_index}",
            f"/DestinationImageFile:{destination_file}",
            f"/DestinationName:{destination_name}",
            "/Compress:max",
            "/CheckIntegrity"
        ])

    # === 离线镜像修改 ===

    def add_package(self, mount_dir: PathLike, package_path: PathLike) -> Tuple[bool, str, str]:
        """向已挂载镜像安装cab/msu包"""
        return self.run_dism_command([
            f"/Image:{mount_dir}", "/Add-Package", f"/PackagePath:{package_path}"
        ])

    def add_driver(self, mount_dir: PathLike, driver_path: PathLike, recurse: bool = True) -> Tuple[bool, str, str]:
        """向已挂载镜像添加驱动"""
        args = [f"/Image:{mount_dir}", "/Add-Driver", f"/Driver:{driver_path}"]
        if recurse:
            args.append("/Recurse")
        return self.run_dism_command(args)

    def add_capability(self, mount_dir: PathLike, capability_name: str, source: PathLike) -> Tuple[bool, str, str]:
        """从本地源安装按需功能"""
        return self.run_dism_command([
            f"/Image:{mount_dir}", "/Add-Capability",
            f"/CapabilityName:{capability_name}", f"/Source:{source}", "/LimitAccess"
        ])

    def enable_feature(self, mount_dir: PathLike, feature_name: str, source: PathLike) -> Tuple[bool, str, str]:
        """启用Windows功能"""
        return self.run_dism_command([
            f"/Image:{mount_dir}", "/Enable-Feature", f"/FeatureName:{feature_name}",
            "/All", "/LimitAccess", f"/Source:{source}"
        ])

    def add_provisioned_appx(self, mount_dir: PathLike, package_path: PathLike,
                             license_path: Optional[PathLike] = None) -> Tuple[bool, str, str]:
        """添加预配应用包"""
        args = [f"/Image:{mount_dir}", "/Add-ProvisionedAppxPackage", f"/PackagePath:{package_path}"]
        if license_path:
            args.append(f"/LicensePath:{license_path}")
        else:
            args.append("/SkipLicense")
        return self.run_dism_command(args)

    def get_provisioned_appx(self, mount_dir: PathLike) -> List[Dict[str, str]]:
        """获取镜像中的预配应用

        Returns:
            List[Dict[str, str]]: 每项包含 display_name、package_name
        """
        success, stdout, stderr = self.run_dism_command([f"/Image:{mount_dir}", "/Get-ProvisionedAppxPackages"])
        if not success:
            logger.error(f"获取预配应用列表失败: {stderr}")
            return []

        return [
            {"display_name": block.get("DisplayName", ""), "package_name": block.get("PackageName", "")}
            for block in parse_dism_blocks(stdout, "DisplayName")
        ]

    def remove_provisioned_appx(self, mount_dir: PathLike, package_name: str) -> Tuple[bool, str, str]:
        """移除预配应用"""
        return self.run_dism_command([
            f"/Image:{mount_dir}", "/Remove-ProvisionedAppxPackage", f"/PackageName:{package_name}"
        ])

    def import_app_associations(self, mount_dir: PathLike, xml_path: PathLike) -> Tuple[bool, str, str]:
        """导入默认应用关联"""
        return self.run_dism_command([f"/Image:{mount_dir}", f"/Import-DefaultAppAssociations:{xml_path}"])

    # === 压缩包 ===

    def expand_file(self, source: PathLike, destination: PathLike, pattern: str = "*") -> Tuple[bool, str, str]:
        """用expand.exe解开msu/cab

        Args:
            source: msu或cab文件
            destination: 目标目录
            pattern: 要解出的文件名模式
        """
        Path(destination).mkdir(parents=True, exist_ok=True)
        return self.run_command([str(self.get_expand_path()), f"-F:{pattern}", str(source), str(destination)])

    def list_cabinet(self, source: PathLike) -> Optional[List[str]]:
        """列出msu/cab中包含的文件名

        Returns:
            Optional[List[str]]: 文件名列表；无法打开时返回None
        """
        success, stdout, stderr = self.run_command([str(self.get_expand_path()), "-D", str(source)])
        if not success:
            logger.warning(f"无法打开容器文件 {source}: {stderr}")
            return None

        names = []
        for line in stdout.splitlines():
            line = line.strip()
            # 形如 "C:\updates\kb.msu: Windows10.0-KB5034122-x64.cab"
            if ": " not in line:
                continue
            container, name = line.rsplit(": ", 1)
            if "total" in container.lower():
                continue
            name = name.strip()
            if name:
                names.append(name)
        return names
