#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
文件操作工具函数
处理Windows文件系统特殊情况，如只读属性、文件锁定等
"""

import os
import shutil
import stat
import time
from pathlib import Path
from typing import Optional, Callable, Union

PathLike = Union[str, Path]

# 绝不允许递归删除的目录名
PROTECTED_DIR_NAMES = {
    "windows", "system32", "syswow64", "program files", "program files (x86)",
    "programdata", "users", "documents and settings", "$recycle.bin",
    "system volume information",
}


def has_content(directory_path: PathLike) -> bool:
    """目录存在且非空"""
    path = Path(directory_path)
    if not path.is_dir():
        return False
    return any(path.iterdir())


def force_remove_tree(directory_path: PathLike, max_retries: int = 3, delay: float = 1.0,
                      progress_callback: Optional[Callable[[str], None]] = None) -> bool:
    """
    强制删除目录树，处理Windows只读属性和短暂的文件锁定

    Args:
        directory_path: 要删除的目录路径
        max_retries: 最大重试次数
        delay: 重试间隔（秒）
        progress_callback: 进度回调函数

    Returns:
        bool: 目录是否已不存在

    Raises:
        ValueError: 尝试删除受保护的目录
    """
    path = Path(directory_path)
    if not path.exists():
        return True

    if not _is_safe_to_delete(path):
        raise ValueError(f"拒绝删除受保护的目录: {path}")

    def on_error(func, failed_path, exc_info):
        """只读文件先去掉只读属性再删除"""
        if isinstance(exc_info[1], PermissionError):
            os.chmod(failed_path, stat.S_IWRITE)
            func(failed_path)
        else:
            raise exc_info[1]

    for attempt in range(max_retries):
        try:
            shutil.rmtree(path, onerror=on_error)
            return True
        except OSError as e:
            if attempt == max_retries - 1:
                if progress_callback:
                    progress_callback(f"删除失败: {path} - {e}")
                return not path.exists()
            if progress_callback:
                progress_callback(f"重试删除 {path} (尝试 {attempt + 2}/{max_retries})")
            time.sleep(delay)

    return not path.exists()


def remove_empty_dirs(root: PathLike, remove_root: bool = False) -> int:
    """
    自底向上删除空目录

    Args:
        root: 起始目录
        remove_root: 起始目录本身为空时是否一并删除

    Returns:
        int: 删除的目录数量
    """
    root = Path(root)
    if not root.is_dir():
        return 0

    removed = 0
    for current, dirs, files in os.walk(root, topdown=False):
        current_path = Path(current)
        if current_path == root and not remove_root:
            continue
        if not any(current_path.iterdir()):
            current_path.rmdir()
            removed += 1
    return removed


def copy_file(src: PathLike, dst: PathLike, chunk_size: int = 8 * 1024 * 1024,
              progress_callback: Optional[Callable[[int, int], None]] = None) -> Path:
    """
    分块复制大文件（WIM文件通常有数GB）

    Args:
        src: 源文件
        dst: 目标文件
        chunk_size: 块大小
        progress_callback: 进度回调，接收(已复制字节, 总字节)

    Returns:
        Path: 目标文件路径
    """
    src = Path(src)
    dst = Path(dst)
    dst.parent.mkdir(parents=True, exist_ok=True)

    total = src.stat().st_size
    copied = 0
    with open(src, 'rb') as fin, open(dst, 'wb') as fout:
        while True:
            chunk = fin.read(chunk_size)
            if not chunk:
                break
            fout.write(chunk)
            copied += len(chunk)
            if progress_callback:
                progress_callback(copied, total)

    shutil.copystat(src, dst)
    # 复制的WIM不能保留只读属性，否则DISM无法删除索引
    os.chmod(dst, stat.S_IREAD | stat.S_IWRITE)
    return dst


def _is_safe_to_delete(path: Path) -> bool:
    """
    安全检查：防止删除根目录和系统目录

    Args:
        path: 要检查的目录路径

    Returns:
        bool: 是否可以安全删除
    """
    resolved = path.resolve()

    # 根目录或盘符根目录
    if len(resolved.parts) <= 2:
        return False

    if resolved == Path.home().resolve() or resolved == Path.cwd().resolve():
        return False

    return resolved.name.lower() not in PROTECTED_DIR_NAMES
