#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
日志工具模块
提供统一的日志记录功能，支持系统日志和构建日志
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Dict, Any
from logging.handlers import RotatingFileHandler

from utils.system_logger import (
    BuildLogHandler,
    ContextFilter,
    create_system_logger,
    create_build_logger
)

APP_LOGGER_NAME = "WIMCustomizer"


class EnhancedLogger:
    """增强的日志管理器"""

    def __init__(self, name: str = APP_LOGGER_NAME):
        self.name = name
        self.logger = logging.getLogger(name)
        self.system_handler = None
        self.build_handler: Optional[BuildLogHandler] = None
        self.context_filter = None

    def setup_enhanced_logging(
        self,
        log_file_path: Path,
        enable_system_log: bool = True,
        enable_build_log: bool = True,
        build_log_path: Optional[Path] = None,
        app_name: str = APP_LOGGER_NAME,
        context: Dict[str, Any] = None,
        console_level: int = logging.INFO
    ) -> logging.Logger:
        """设置增强的日志系统

        Args:
            log_file_path: 主日志文件路径
            enable_system_log: 是否启用Windows事件日志
            enable_build_log: 是否为每次构建写入独立的构建日志
            build_log_path: 构建日志目录
            app_name: 应用程序名称（用于系统日志）
            context: 上下文信息
            console_level: 控制台输出级别
        """
        log_file_path = Path(log_file_path)
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        self.logger.setLevel(logging.DEBUG)

        # 清除现有处理器
        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)
            handler.close()
        for existing_filter in self.logger.filters[:]:
            self.logger.removeFilter(existing_filter)

        self.context_filter = ContextFilter(context or {})
        self.logger.addFilter(self.context_filter)

        # 1. 主日志文件，限制2M
        file_handler = RotatingFileHandler(
            log_file_path,
            maxBytes=2 * 1024 * 1024,
            backupCount=3,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        self.logger.addHandler(file_handler)

        # 2. 控制台
        if hasattr(sys.stdout, 'reconfigure'):
            try:
                sys.stdout.reconfigure(encoding='utf-8')
            except (OSError, ValueError):
                pass

        console_handler = logging.StreamHandler()
        console_handler.setLevel(console_level)
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        ))
        self.logger.addHandler(console_handler)

        # 3. Windows事件日志，只记录警告及以上
        if enable_system_log:
            self.system_handler = create_system_logger(app_name)
            if self.system_handler and self.system_handler.enabled:
                self.system_handler.setLevel(logging.WARNING)
                self.system_handler.setFormatter(logging.Formatter('%(name)s - %(levelname)s - %(message)s'))
                self.logger.addHandler(self.system_handler)
                self.logger.info("系统日志处理器已启用")
            else:
                self.logger.debug("系统日志处理器不可用，跳过")

        # 4. 构建日志：每次构建一个文件
        if enable_build_log:
            self.build_handler = create_build_logger(build_log_path or log_file_path.parent / "build_logs")
            self.build_handler.setLevel(logging.INFO)
            self.build_handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(self.build_handler)

        self.logger.info("日志系统初始化完成")
        return self.logger

    def start_build_session(self, build_info: Dict[str, Any]):
        """开始构建会话"""
        if self.build_handler:
            self.build_handler.start_build_session(build_info)
            self.logger.info(f"构建会话开始: {build_info}")

    def end_build_session(self, success: bool, message: str = ""):
        """结束构建会话"""
        if self.build_handler:
            status = "成功" if success else "失败"
            self.logger.info(f"构建会话结束: {status} - {message}")
            self.build_handler.end_build_session(success, message)

    def get_build_log_path(self) -> Optional[Path]:
        """获取当前构建日志路径"""
        if self.build_handler:
            return self.build_handler.get_current_log_path()
        return None

    def update_context(self, **kwargs):
        """更新上下文信息"""
        if self.context_filter:
            self.context_filter.update_context(**kwargs)


# 全局增强日志管理器实例
_enhanced_logger: Optional[EnhancedLogger] = None


def setup_logger(
    log_file_path: Path,
    enable_system_log: bool = True,
    enable_build_log: bool = True,
    build_log_path: Optional[Path] = None,
    app_name: str = APP_LOGGER_NAME,
    context: Dict[str, Any] = None,
    console_level: int = logging.INFO
) -> logging.Logger:
    """设置日志记录器

    Args:
        log_file_path: 日志文件路径
        enable_system_log: 是否启用系统日志
        enable_build_log: 是否启用构建日志
        build_log_path: 构建日志路径
        app_name: 应用程序名称
        context: 上下文信息
        console_level: 控制台输出级别

    Returns:
        logging.Logger: 配置好的日志记录器
    """
    global _enhanced_logger

    _enhanced_logger = EnhancedLogger()
    return _enhanced_logger.setup_enhanced_logging(
        log_file_path=log_file_path,
        enable_system_log=enable_system_log,
        enable_build_log=enable_build_log,
        build_log_path=build_log_path,
        app_name=app_name,
        context=context,
        console_level=console_level
    )


def start_build_session(build_info: Dict[str, Any]):
    """开始构建会话"""
    if _enhanced_logger:
        _enhanced_logger.start_build_session(build_info)


def end_build_session(success: bool, message: str = ""):
    """结束构建会话"""
    if _enhanced_logger:
        _enhanced_logger.end_build_session(success, message)


def get_build_log_path() -> Optional[Path]:
    """获取当前构建日志路径"""
    if _enhanced_logger:
        return _enhanced_logger.get_build_log_path()
    return None


def update_log_context(**kwargs):
    """更新日志上下文"""
    if _enhanced_logger:
        _enhanced_logger.update_context(**kwargs)


def log_command(command: str, description: str = ""):
    """记录执行的命令

    Args:
        command: 执行的命令
        description: 命令描述
    """
    logger = logging.getLogger(APP_LOGGER_NAME)
    message = f"执行命令: {command}"
    if description:
        message += f" ({description})"
    logger.info(message)


def log_error(error: Exception, context: str = ""):
    """记录错误信息

    Args:
        error: 异常对象
        context: 错误上下文
    """
    logger = logging.getLogger(APP_LOGGER_NAME)
    message = f"发生错误: {str(error)}"
    if context:
        message += f" (上下文: {context})"
    logger.error(message, exc_info=True)


def log_build_step(step_name: str, details: str = "", level: str = "info"):
    """记录构建步骤

    Args:
        step_name: 步骤名称
        details: 详细信息
        level: 日志级别 (info, warning, error)
    """
    logger = logging.getLogger(APP_LOGGER_NAME)
    message = f"构建步骤: {step_name}"
    if details:
        message += f" - {details}"

    if level.lower() == "error":
        logger.error(message)
    elif level.lower() == "warning":
        logger.warning(message)
    else:
        logger.info(message)


def log_system_event(event_type: str, message: str, level: str = "info"):
    """记录系统事件（警告及以上会同时写入Windows事件日志）

    Args:
        event_type: 事件类型
        message: 事件消息
        level: 日志级别
    """
    logger = logging.getLogger(APP_LOGGER_NAME)
    full_message = f"[{event_type}] {message}"

    if level.lower() == "error":
        logger.error(full_message)
    elif level.lower() == "warning":
        logger.warning(full_message)
    else:
        logger.info(full_message)


def get_logger(name: str = APP_LOGGER_NAME) -> logging.Logger:
    """获取日志记录器

    子模块名会挂在应用日志记录器下，共用同一组处理器。
    """
    if name == APP_LOGGER_NAME:
        return logging.getLogger(name)
    return logging.getLogger(f"{APP_LOGGER_NAME}.{name}")
