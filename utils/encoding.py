#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
编码处理工具
DISM、expand等控制台工具的输出编码随系统区域变化，这里统一解码
"""

import locale


def safe_decode(data: bytes, fallback_encoding: str = 'gbk') -> str:
    """
    安全解码字节数据

    Args:
        data: 要解码的字节数据
        fallback_encoding: 备用编码，默认为gbk

    Returns:
        str: 解码后的字符串
    """
    if not data:
        return ""

    try:
        return data.decode('utf-8')
    except UnicodeDecodeError:
        pass

    # 控制台工具使用OEM代码页
    system_encoding = get_system_encoding()
    if system_encoding.lower() not in ('utf-8', 'utf8'):
        try:
            return data.decode(system_encoding)
        except (UnicodeDecodeError, LookupError):
            pass

    try:
        return data.decode(fallback_encoding)
    except (UnicodeDecodeError, LookupError):
        pass

    # latin-1不会失败
    return data.decode('latin-1', errors='replace')


def get_system_encoding() -> str:
    """获取系统编码"""
    return locale.getpreferredencoding(False) or 'utf-8'
