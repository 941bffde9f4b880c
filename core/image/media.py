#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
安装介质后处理模块
导出镜像后的可选步骤：刷新ConfigMgr操作系统镜像包、更新boot.wim、
暂存安装介质和生成ISO
"""

import shutil
from datetime import datetime
from pathlib import Path
from typing import Tuple
import logging

from core.image.mount_guard import MountGuard, PrepareResult
from core.updates.models import UpdateClass
from utils.file_utils import copy_file, force_remove_tree
from utils.logger import log_build_step, log_error

logger = logging.getLogger("WIMCustomizer")

# boot.wim 只需要服务堆栈更新和累积更新
BOOT_IMAGE_UPDATE_CLASSES = [UpdateClass.SSU, UpdateClass.LCU]


class MediaBuilder:
    """安装介质构建器类"""

    def __init__(self, config_manager, dism_manager, deployment_engine):
        self.config = config_manager
        self.dism = dism_manager
        self.deployment = deployment_engine
        self.guard = MountGuard(dism_manager)

    def iso_source_dir(self, session) -> Path:
        """导入的原始ISO内容目录 imports/iso/<系统家族>/<版本>"""
        return self.config.get_path("imports") / "iso" / session.os_family / session.version

    def media_dir(self, session) -> Path:
        return self.config.get_path("media") / session.os_family / session.version

    # === 安装介质 ===

    def prepare_media(self, session) -> Tuple[bool, str]:
        """把导入的ISO内容复制到介质暂存目录

        动态更新在导出前就需要写入 sources 目录，所以这一步可能先于介质暂存阶段执行。
        """
        if session.media_dir and Path(session.media_dir).is_dir():
            return True, "安装介质已暂存"

        source = self.iso_source_dir(session)
        if not (source / "sources").is_dir():
            return False, f"没有导入的安装介质: {source}"

        target = self.media_dir(session)
        try:
            if target.exists():
                force_remove_tree(target)
            logger.info(f"复制安装介质: {source} -> {target}")
            shutil.copytree(source, target)
            session.media_dir = target
            return True, f"安装介质已复制到 {target}"
        except (OSError, ValueError) as e:
            log_error(e, "复制安装介质")
            return False, f"复制安装介质失败: {str(e)}"

    def stage_media(self, session) -> Tuple[bool, str]:
        """用导出的镜像替换介质中的install.wim"""
        if not session.exported_image or not Path(session.exported_image).exists():
            return False, "没有导出的镜像"

        success, message = self.prepare_media(session)
        if not success:
            return False, message

        install_wim = Path(session.media_dir) / "sources" / "install.wim"
        try:
            for old in (install_wim, install_wim.with_suffix(".esd")):
                if old.exists():
                    old.unlink()
            copy_file(session.exported_image, install_wim)
            return True, f"安装介质已更新: {session.media_dir}"
        except OSError as e:
            return False, f"复制install.wim失败: {e}"

    def create_iso(self, session, iso_name: str = "") -> Tuple[bool, str]:
        """用Oscdimg生成同时支持BIOS和UEFI启动的ISO"""
        if not session.media_dir or not Path(session.media_dir).is_dir():
            return False, "安装介质尚未暂存，无法生成ISO"

        oscdimg = self.dism.get_oscdimg_path()
        if not oscdimg:
            return False, "找不到Oscdimg工具，请安装Windows ADK部署工具"

        media_dir = Path(session.media_dir)
        etfsboot = media_dir / "boot" / "etfsboot.com"
        efisys = media_dir / "efi" / "microsoft" / "boot" / "efisys.bin"
        for required in (etfsboot, efisys):
            if not required.exists():
                return False, f"安装介质缺少引导文件: {required}"

        if not iso_name:
            iso_name = f"{session.output_name}.iso"
        elif not iso_name.lower().endswith(".iso"):
            iso_name += ".iso"
        iso_path = Path(session.output_dir) / iso_name
        if iso_path.exists():
            iso_path.unlink()

        label = f"{session.os_family}_{session.version}".replace(" ", "")[:32]
        args = [
            str(oscdimg),
            "-m", "-o", "-u2", "-udfver102",
            f"-l{label}",
            f"-bootdata:2#p0,e,b{etfsboot}#pEF,e,b{efisys}",
            str(media_dir),
            str(iso_path)
        ]
        log_build_step("生成ISO", str(iso_path))
        success, stdout, stderr = self.dism.run_command(args)
        if not success:
            return False, f"生成ISO失败: {stderr}"
        return True, f"ISO已生成: {iso_path}"

    # === boot.wim ===

    def update_boot_image(self, session) -> Tuple[bool, str]:
        """为介质中的boot.wim每个索引安装服务堆栈更新和累积更新"""
        success, message = self.prepare_media(session)
        if not success:
            return False, message

        boot_wim = Path(session.media_dir) / "sources" / "boot.wim"
        if not boot_wim.exists():
            return False, f"安装介质中没有boot.wim: {boot_wim}"

        mount_dir = self.config.get_path("boot") / "mount"
        if self.guard.prepare(mount_dir, clean=True) is not PrepareResult.READY:
            return False, f"boot.wim挂载目录不可用: {mount_dir}"
        mount_dir.mkdir(parents=True, exist_ok=True)

        indexes = self.dism.get_image_indexes(boot_wim)
        if not indexes:
            return False, "无法读取boot.wim索引"

        for entry in indexes:
            index = int(entry["index"])
            log_build_step("更新boot.wim", f"索引 {index}")
            success, stdout, stderr = self.dism.mount_image(boot_wim, index, mount_dir)
            if not success:
                return False, f"挂载boot.wim索引 {index} 失败: {stderr}"

            for update_class in BOOT_IMAGE_UPDATE_CLASSES:
                result = self.deployment.apply(session, update_class, mount_dir=mount_dir)
                logger.info(f"  boot.wim 索引 {index} {update_class.value}: {result.value}")

            success, message = self.guard.commit(mount_dir, mounted=True)
            if not success:
                return False, f"提交boot.wim索引 {index} 失败: {message}"

        return True, f"boot.wim已更新 ({len(indexes)} 个索引)"

    # === ConfigMgr ===

    def update_cm_package(self, session, package_id: str) -> Tuple[bool, str]:
        """刷新ConfigMgr操作系统镜像包的分发点内容"""
        site_code = self.config.get("catalog.configmgr.site_code", "")
        if not site_code or not package_id:
            return False, "未配置ConfigMgr站点代码或镜像包ID"

        script = (
            "Import-Module (Join-Path (Split-Path $env:SMS_ADMIN_UI_PATH) 'ConfigurationManager.psd1') -ErrorAction Stop; "
            f"Set-Location '{site_code}:'; "
            f"Update-CMDistributionPoint -OperatingSystemImageId '{package_id}' -ErrorAction Stop; "
            f"Set-CMOperatingSystemImage -Id '{package_id}' "
            f"-Description 'Updated {datetime.now().strftime('%Y-%m-%d %H:%M')}' -ErrorAction Stop"
        )
        log_build_step("刷新ConfigMgr镜像包", package_id)
        success, stdout, stderr = self.dism.run_powershell(script)
        if not success:
            return False, f"刷新ConfigMgr镜像包失败: {stderr}"
        return True, f"ConfigMgr镜像包 {package_id} 已刷新"
