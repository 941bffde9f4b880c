# -*- coding: utf-8 -*-
"""
镜像模块
负责挂载目录守护、构建会话、镜像定制和安装介质后处理
"""

from .mount_guard import MountGuard, MountQueryError, PrepareResult
from .session import ImageSession, BuildStage, PipelineState
from .customizations import ImageCustomizer
from .media import MediaBuilder

__all__ = [
    'MountGuard',
    'MountQueryError',
    'PrepareResult',
    'ImageSession',
    'BuildStage',
    'PipelineState',
    'ImageCustomizer',
    'MediaBuilder'
]
