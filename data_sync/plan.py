"""
同步计划与任务

SyncPlan 是一个有序的 SyncTask 列表，列表顺序即执行顺序。
任务的状态只由执行引擎修改。
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, List

from .endpoint import Endpoint
from .progress import Progress
from .strategy import SyncType, SyncStatus
from .exceptions import ConfigurationError


def new_id() -> str:
    """生成8位短ID。"""
    return str(uuid.uuid4())[:8]


@dataclass
class SyncTask:
    """一次同步操作：源端点、目标端点和策略名称。"""
    name: str
    type: SyncType
    source: Endpoint
    target: Endpoint
    strategy: str = ""
    id: str = field(default_factory=new_id)
    status: SyncStatus = SyncStatus.PENDING
    progress: Optional[Progress] = None
    error: Optional[BaseException] = None
    error_message: str = ""
    estimated_size: int = 0
    depends_on: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    retry_count: int = 0
    max_retries: int = 3

    def start(self):
        """标记为运行中，并创建新的进度。"""
        now = time.time()
        self.status = SyncStatus.RUNNING
        self.started_at = now
        self.progress = Progress(task_id=self.id, started_at=now, updated_at=now)

    def complete(self):
        now = time.time()
        self.status = SyncStatus.COMPLETED
        self.completed_at = now
        if self.progress is not None:
            self.progress.updated_at = now

    def fail(self, error: Optional[BaseException]):
        self.status = SyncStatus.FAILED
        self.completed_at = time.time()
        self.error = error
        if error is not None:
            self.error_message = str(error)

    def pause(self):
        self.status = SyncStatus.PAUSED
        if self.progress is not None:
            self.progress.updated_at = time.time()

    def resume(self):
        if self.status == SyncStatus.PAUSED:
            self.status = SyncStatus.RUNNING
            if self.progress is not None:
                self.progress.updated_at = time.time()

    def can_retry(self) -> bool:
        return self.status == SyncStatus.FAILED and self.retry_count < self.max_retries

    def retry(self):
        """
        重置任务以便再次尝试。

        异常:
            ConfigurationError: 任务未失败或已超过最大重试次数
        """
        if not self.can_retry():
            raise ConfigurationError(
                "task cannot be retried: max retries exceeded or not in failed state")
        self.retry_count += 1
        self.status = SyncStatus.PENDING
        self.error = None
        self.error_message = ""
        self.started_at = None
        self.completed_at = None
        self.progress = None

    def duration(self) -> float:
        """已用时间（秒），未开始时为 0。"""
        if self.started_at is None:
            return 0.0
        end = self.completed_at if self.completed_at is not None else time.time()
        return end - self.started_at


@dataclass
class SyncPlan:
    """有序的同步任务列表。"""
    id: str = field(default_factory=new_id)
    tasks: List[SyncTask] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def add_task(self, task: SyncTask):
        self.tasks.append(task)
        self.updated_at = time.time()

    def get_task(self, task_id: str) -> Optional[SyncTask]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def get_tasks_by_type(self, sync_type: SyncType) -> List[SyncTask]:
        return [t for t in self.tasks if t.type == sync_type]

    def get_tasks_by_status(self, status: SyncStatus) -> List[SyncTask]:
        return [t for t in self.tasks if t.status == status]

    def get_pending_tasks(self) -> List[SyncTask]:
        return self.get_tasks_by_status(SyncStatus.PENDING)

    def get_active_tasks(self) -> List[SyncTask]:
        return [t for t in self.tasks if t.status.is_active()]

    def is_complete(self) -> bool:
        return all(t.status.is_terminal() for t in self.tasks)

    def has_failed(self) -> bool:
        return any(t.status == SyncStatus.FAILED for t in self.tasks)

    def get_overall_progress(self) -> Optional[Progress]:
        """汇总所有任务的进度；尚无进度的任务以估算大小计入总量。"""
        if not self.tasks:
            return None

        overall = Progress(task_id=self.id)
        for task in self.tasks:
            if task.progress is not None:
                overall.bytes_total += task.progress.bytes_total
                overall.bytes_done += task.progress.bytes_done
                overall.items_total += task.progress.items_total
                overall.items_done += task.progress.items_done
            else:
                overall.bytes_total += task.estimated_size
        overall.updated_at = time.time()
        return overall
