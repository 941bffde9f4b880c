#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
系统日志处理器模块
提供Windows事件日志集成和按构建会话划分的构建日志
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Dict, Any
from datetime import datetime

try:
    import win32evtlog
    import win32evtlogutil
    WIN32_AVAILABLE = True
except ImportError:
    WIN32_AVAILABLE = False


class SystemLogHandler(logging.Handler):
    """Windows系统日志处理器"""

    def __init__(self, app_name: str = "WIMCustomizer", log_type: str = "Application"):
        """
        初始化系统日志处理器

        Args:
            app_name: 应用程序名称（事件源）
            log_type: 日志类型 (Application, System)
        """
        super().__init__()
        self.app_name = app_name
        self.log_type = log_type
        self.enabled = WIN32_AVAILABLE

        if not self.enabled:
            return

        try:
            self._register_event_source()
        except Exception as e:
            print(f"注册事件源失败: {e}", file=sys.stderr)
            self.enabled = False

    def _register_event_source(self):
        """注册事件源（已注册或权限不足时跳过）"""
        try:
            win32evtlogutil.AddSourceToRegistry(self.app_name, self.log_type)
        except Exception as e:
            if "already exists" not in str(e).lower():
                print(f"注册事件源时出现警告: {e}", file=sys.stderr)

    def emit(self, record: logging.LogRecord):
        """发送日志记录到系统事件日志"""
        if not self.enabled:
            return

        try:
            message = self.format(record)
            if record.exc_info:
                message += f"\n异常信息: {self.formatException(record.exc_info)}"

            win32evtlogutil.ReportEvent(
                self.app_name,
                self._get_event_type(record.levelno),
                0,  # 事件类别
                0,  # 事件ID
                strings=[message]
            )
        except Exception:
            self.handleError(record)

    def _get_event_type(self, level: int) -> int:
        """将Python日志级别转换为Windows事件类型"""
        if level >= logging.ERROR:
            return win32evtlog.EVENTLOG_ERROR_TYPE
        elif level >= logging.WARNING:
            return win32evtlog.EVENTLOG_WARNING_TYPE
        return win32evtlog.EVENTLOG_INFORMATION_TYPE


class BuildLogHandler(logging.Handler):
    """构建日志专用处理器，每个构建会话写入一个独立文件"""

    def __init__(self, build_log_path: Optional[Path] = None):
        super().__init__()

        if build_log_path is None:
            build_log_path = Path.cwd() / "logs" / "build_logs"

        self.build_log_path = Path(build_log_path)
        self.current_log_file: Optional[Path] = None
        self.build_session_id = self._generate_session_id()

        self.build_log_path.mkdir(parents=True, exist_ok=True)

    def _generate_session_id(self) -> str:
        """生成构建会话ID"""
        return datetime.now().strftime("%Y%m%d_%H%M%S")

    def start_build_session(self, build_info: Dict[str, Any]):
        """开始新的构建会话"""
        self.build_session_id = self._generate_session_id()
        self.current_log_file = self.build_log_path / f"build_{self.build_session_id}.log"

        with open(self.current_log_file, 'a', encoding='utf-8') as f:
            f.write("=" * 80 + "\n")
            f.write(f"镜像构建会话开始: {self.build_session_id}\n")
            f.write(f"构建信息: {build_info}\n")
            f.write("=" * 80 + "\n\n")

    def end_build_session(self, success: bool, message: str = ""):
        """结束构建会话"""
        if self.current_log_file and self.current_log_file.exists():
            with open(self.current_log_file, 'a', encoding='utf-8') as f:
                f.write("\n" + "=" * 80 + "\n")
                f.write(f"构建会话结束: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
                f.write(f"构建结果: {'成功' if success else '失败'}\n")
                if message:
                    f.write(f"结束信息: {message}\n")
                f.write("=" * 80 + "\n")

    def emit(self, record: logging.LogRecord):
        """发送日志记录到构建日志文件"""
        if not self.current_log_file:
            return

        try:
            timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
            message = self.format(record)

            with open(self.current_log_file, 'a', encoding='utf-8') as f:
                f.write(f"[{timestamp}] {record.levelname}: {message}\n")
                if record.exc_info:
                    f.write(f"异常详情: {self.formatException(record.exc_info)}\n")
        except Exception:
            self.handleError(record)

    def get_current_log_path(self) -> Optional[Path]:
        """获取当前构建日志文件路径"""
        return self.current_log_file


class ContextFilter(logging.Filter):
    """上下文过滤器，用于添加额外的上下文信息"""

    def __init__(self, context: Dict[str, Any] = None):
        super().__init__()
        self.context = context or {}

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            setattr(record, key, value)
        return True

    def update_context(self, **kwargs):
        """更新上下文信息"""
        self.context.update(kwargs)


def create_system_logger(app_name: str = "WIMCustomizer") -> Optional[SystemLogHandler]:
    """创建系统日志处理器"""
    try:
        return SystemLogHandler(app_name)
    except Exception as e:
        print(f"创建系统日志处理器失败: {e}", file=sys.stderr)
        return None


def create_build_logger(build_log_path: Optional[Path] = None) -> BuildLogHandler:
    """创建构建日志处理器"""
    return BuildLogHandler(build_log_path)
