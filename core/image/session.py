#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
镜像会话模块
一次构建的运行状态，由构建流水线独占
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple


class BuildStage(Enum):
    """构建阶段"""
    VALIDATE = "Validate"
    COPY_SOURCE = "CopySource"
    TRIM_INDEXES = "TrimIndexes"
    MOUNT = "Mount"
    PAUSE_AFTER_MOUNT = "PauseAfterMount"
    LANGUAGE_RESOURCES = "LanguageResources"
    DOTNET = "DotNet"
    PROVISIONING = "Provisioning"
    DRIVERS = "Drivers"
    APP_ASSOCIATIONS = "AppAssociations"
    START_LAYOUT = "StartLayout"
    REGISTRY = "Registry"
    UPDATES = "Updates"
    EXTERNAL_AGENT_REFRESH = "ExternalAgentRefresh"
    PACKAGE_REMOVAL = "PackageRemoval"
    SCRIPT = "Script"
    PAUSE_BEFORE_DISMOUNT = "PauseBeforeDismount"
    DISMOUNT = "Dismount"
    EXPORT = "Export"
    PACKAGE_MANAGER_UPDATE = "PackageManagerUpdate"
    BOOT_IMAGE_UPDATE = "BootImageUpdate"
    MEDIA_STAGING = "MediaStaging"
    ISO_CREATION = "ISOCreation"
    FINISHED = "Finished"


class PipelineState(Enum):
    """构建状态"""
    RUNNING = "running"
    COMPLETED = "completed"
    DISCARDED = "discarded"  # 镜像已放弃，没有导出
    ABORTED = "aborted"      # 挂载保留，需要手动清理


@dataclass
class ImageSession:
    """镜像会话"""
    source_path: Path
    index: int
    output_dir: Path
    output_name: str
    mount_dir: Path
    os_family: Optional[str] = None
    version: Optional[str] = None
    build: str = ""
    architecture: str = ""
    image_name: str = ""
    edition: str = ""
    staging_image: Optional[Path] = None
    media_dir: Optional[Path] = None
    stage: BuildStage = BuildStage.VALIDATE
    discard: bool = False
    mounted: bool = False
    state: PipelineState = PipelineState.RUNNING
    exported_image: Optional[Path] = None
    message: str = ""
    history: List[Tuple[str, BuildStage, str]] = field(default_factory=list)

    @property
    def output_path(self) -> Path:
        return self.output_dir / f"{self.output_name}.wim"

    @property
    def is_terminal(self) -> bool:
        return self.state is not PipelineState.RUNNING

    def enter(self, stage: BuildStage, message: str = ""):
        """记录进入新阶段"""
        self.stage = stage
        self.record(message or "开始")

    def record(self, message: str):
        self.history.append((datetime.now().strftime("%H:%M:%S"), self.stage, message))

    def finish(self, state: PipelineState, message: str = ""):
        self.state = state
        self.message = message
        self.record(f"{state.value}: {message}" if message else state.value)
