"""
Data Sync引擎的实用函数。

提供重试、格式化和取消检查的通用工具。
"""

import re
import time
import logging
import functools
import threading
from typing import Callable, Optional, Tuple, Type

from .exceptions import SyncCancelledError

logger = logging.getLogger(__name__)


def retry_on_exception(max_retries: int = 3, delay: float = 1.0, backoff: float = 2.0,
                       exceptions: Tuple[Type[BaseException], ...] = (Exception,)):
    """
    连接类操作的重试装饰器，延迟按 backoff 倍数递增。

    参数:
        max_retries: 首次失败后的重试次数
        delay: 第一次重试前的等待秒数
        backoff: 延迟倍增因子
        exceptions: 触发重试的异常类型，其它异常直接抛出
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            wait = delay
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    attempt += 1
                    if attempt > max_retries:
                        logger.error(f"❌ {func.__name__} 重试 {max_retries} 次后放弃: {e}")
                        raise
                    logger.warning(f"🔄 {func.__name__} 第 {attempt} 次重试，{wait:.1f}s 后: {e}")
                    if wait > 0:
                        time.sleep(wait)
                    wait *= backoff
        return wrapper
    return decorator


def format_bytes(bytes_value: int) -> str:
    """按 1024 进制格式化字节数，例如 "1.5 MB"。"""
    unit = 1024
    if bytes_value < unit:
        return f"{int(bytes_value)} B"

    div, exp = unit, 0
    n = bytes_value // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{bytes_value / div:.1f} {'KMGTPE'[exp]}B"


def format_speed(bytes_per_sec: float) -> str:
    """格式化传输速度，例如 "1.5 MB/s"。"""
    return format_bytes(int(bytes_per_sec)) + "/s"


def format_duration(seconds: float) -> str:
    """
    格式化持续时间为可读格式。

    参数:
        seconds: 持续时间（秒）

    返回:
        格式化的字符串（例如："45s"、"1m 30s"、"2h 5m"）
    """
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"

    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"

    return f"{seconds // 3600}h {(seconds // 60) % 60}m"


_UNSAFE_NAME = re.compile(r"[^a-zA-Z0-9_]")


def sanitize_name(name: str) -> str:
    """将主机名等转换为可用于远程/别名的安全名称。"""
    return _UNSAFE_NAME.sub("_", name)


def check_cancelled(cancel_event: Optional[threading.Event]):
    """取消令牌已触发时抛出 SyncCancelledError。"""
    if cancel_event is not None and cancel_event.is_set():
        raise SyncCancelledError()


def wait_or_cancel(cancel_event: Optional[threading.Event], seconds: float) -> bool:
    """
    可取消的等待。

    返回:
        等待期间是否被取消
    """
    if cancel_event is None:
        time.sleep(seconds)
        return False
    return cancel_event.wait(seconds)
