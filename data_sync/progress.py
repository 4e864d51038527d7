"""
同步进度

Progress 保存一次同步调用的可变进度状态；ProgressReporter 在内部锁的
保护下修改它，并把副本以非阻塞方式投递到有界队列中。队列已满时丢弃
本次更新，进度仅供参考，永远不能拖慢传输本身。
"""

import copy
import queue
import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from .utils import format_bytes, format_speed, format_duration

logger = logging.getLogger(__name__)


@dataclass
class Progress:
    """单个同步任务的进度快照。"""
    task_id: str = ""
    bytes_total: int = 0
    bytes_done: int = 0
    items_total: int = 0
    items_done: int = 0
    started_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    eta_seconds: float = 0.0
    speed: float = 0.0
    message: str = ""
    phase: str = ""
    current_item: str = ""
    errors: int = 0
    warnings: int = 0

    def percentage(self) -> float:
        """按字节计算的完成百分比，总量未知时为 0，结果限定在 [0, 100]。"""
        if self.bytes_total <= 0:
            return 0.0
        pct = self.bytes_done / self.bytes_total * 100
        return max(0.0, min(100.0, pct))

    def item_percentage(self) -> float:
        if self.items_total <= 0:
            return 0.0
        pct = self.items_done / self.items_total * 100
        return max(0.0, min(100.0, pct))

    def calculate_speed(self) -> float:
        elapsed = time.time() - self.started_at
        if elapsed <= 0:
            self.speed = 0.0
        else:
            self.speed = self.bytes_done / elapsed
        return self.speed

    def calculate_eta(self) -> float:
        if self.bytes_done == 0 or self.speed <= 0:
            return 0.0
        remaining = self.bytes_total - self.bytes_done
        if remaining <= 0:
            return 0.0
        return remaining / self.speed

    def elapsed(self) -> float:
        return time.time() - self.started_at

    def is_complete(self) -> bool:
        return self.bytes_total > 0 and self.bytes_done >= self.bytes_total

    def remaining_bytes(self) -> int:
        return max(0, self.bytes_total - self.bytes_done)

    def remaining_items(self) -> int:
        return max(0, self.items_total - self.items_done)

    def clone(self) -> 'Progress':
        return copy.copy(self)

    def _touch(self):
        self.updated_at = time.time()

    def _refresh_rate(self):
        self._touch()
        self.calculate_speed()
        self.eta_seconds = self.calculate_eta()

    def __str__(self) -> str:
        if self.bytes_total == 0:
            return f"[{self.phase}] {self.message} - {self.items_done} items done"
        return (f"[{self.phase}] {self.percentage():.1f}% - "
                f"{format_bytes(self.bytes_done)}/{format_bytes(self.bytes_total)} "
                f"@ {format_speed(self.speed)} - ETA: {format_duration(self.eta_seconds)}")


class ProgressReporter:
    """
    线程安全的进度修改器。

    每个 ProgressReporter 只服务于一次 sync 调用，不跨任务共享。
    """

    def __init__(self, task_id: str, out: Optional[queue.Queue] = None):
        """
        参数:
            task_id: 任务ID
            out: 进度输出队列，由调用方拥有；为 None 时只维护内部状态
        """
        self._progress = Progress(task_id=task_id)
        self._out = out
        self._lock = threading.Lock()
        self.dropped = 0

    def _report(self):
        # 必须在持有锁时调用
        if self._out is None:
            return
        try:
            self._out.put_nowait(self._progress.clone())
        except queue.Full:
            self.dropped += 1

    def set_totals(self, bytes_total: int, items_total: int):
        with self._lock:
            self._progress.bytes_total = bytes_total
            self._progress.items_total = items_total
            self._progress._touch()
            self._report()

    def set_phase(self, phase: str):
        with self._lock:
            self._progress.phase = phase
            self._progress._touch()
            self._report()

    def update(self, bytes_done: int, items_done: int, message: str = ""):
        with self._lock:
            self._progress.bytes_done = bytes_done
            self._progress.items_done = items_done
            self._progress.message = message
            self._progress._refresh_rate()
            self._report()

    def increment_bytes(self, n: int):
        with self._lock:
            self._progress.bytes_done += n
            self._progress._refresh_rate()
            self._report()

    def increment_items(self, n: int = 1):
        with self._lock:
            self._progress.items_done += n
            self._progress._touch()
            self._report()

    def set_current_item(self, item: str):
        with self._lock:
            self._progress.current_item = item
            self._progress._touch()
            self._report()

    def warning(self, message: str):
        with self._lock:
            self._progress.warnings += 1
            self._progress.message = message
            self._progress._touch()
            self._report()

    def error(self, message: str):
        with self._lock:
            self._progress.errors += 1
            self._progress.message = message
            self._progress._touch()
            self._report()

    def get_progress(self) -> Progress:
        """返回进度的防御性副本。"""
        with self._lock:
            return self._progress.clone()
