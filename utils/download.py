#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
文件下载工具函数
"""

from pathlib import Path
from typing import Callable, Optional, Tuple, Union
import logging

import requests

logger = logging.getLogger("WIMCustomizer")

DOWNLOAD_CHUNK_SIZE = 4 * 1024 * 1024


def download_file(url: str, destination: Union[str, Path], fetcher=None,
                  progress_callback: Optional[Callable[[int, int], None]] = None) -> Tuple[bool, str]:
    """
    流式下载文件

    下载先写入 .part 临时文件，完成后再改名，中断的下载不会被当作已存在的文件。
    没有超时和重试，网络错误直接返回失败。

    Args:
        url: 下载地址
        destination: 目标文件
        fetcher: 提供 get(url, stream=True) 的HTTP客户端，默认为requests
        progress_callback: 进度回调，接收(已下载字节, 总字节)，总字节未知时为0

    Returns:
        Tuple[bool, str]: (成功状态, 错误消息)
    """
    fetcher = fetcher or requests
    destination = Path(destination)
    partial = destination.with_name(destination.name + ".part")
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"下载: {url}")
        response = fetcher.get(url, stream=True, allow_redirects=True)
        if not response.ok:
            return False, f"HTTP {response.status_code}: {url}"

        length = int(response.headers.get("content-length", 0) or 0)
        fetched = 0
        with open(partial, 'wb') as f:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if chunk:
                    f.write(chunk)
                    fetched += len(chunk)
                    if progress_callback:
                        progress_callback(fetched, length)

        partial.replace(destination)
        logger.info(f"下载完成: {destination.name} ({fetched / 1024 / 1024:.1f} MB)")
        return True, ""

    except (requests.RequestException, OSError) as e:
        if partial.exists():
            partial.unlink()
        return False, str(e)
