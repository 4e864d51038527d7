"""
同步策略抽象与注册表

定义所有策略共享的能力接口（大小估算、同步、验证、能力标志），
验证结果，以及按名称/端点类型别名查找策略的注册表。
"""

import queue
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List

from .endpoint import Endpoint

logger = logging.getLogger(__name__)


class SyncType(Enum):
    """同步的数据类别。"""
    DATABASE = "database"
    STORAGE = "storage"
    CACHE = "cache"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in {t.value for t in cls}


class SyncStatus(Enum):
    """任务与计划的执行状态。"""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED)

    def is_active(self) -> bool:
        return self in (SyncStatus.RUNNING, SyncStatus.PAUSED)


@dataclass
class VerifyResult:
    """
    同步后的比较报告。

    不一致是数据而不是异常：valid 始终等价于 mismatches 为空。
    """
    source_count: int = 0
    target_count: int = 0
    mismatches: List[str] = field(default_factory=list)
    source_checksum: str = ""
    target_checksum: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return len(self.mismatches) == 0

    def add_mismatch(self, description: str):
        self.mismatches.append(description)

    def is_complete(self) -> bool:
        return self.source_count == self.target_count

    def mismatch_count(self) -> int:
        return len(self.mismatches)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'source_count': self.source_count,
            'target_count': self.target_count,
            'mismatches': list(self.mismatches),
            'source_checksum': self.source_checksum,
            'target_checksum': self.target_checksum,
            'details': dict(self.details),
        }

    def __str__(self) -> str:
        if self.valid:
            return f"Verification passed: {self.source_count}/{self.target_count} items synced"
        return (f"Verification failed: {len(self.mismatches)} mismatches, "
                f"{self.source_count}/{self.target_count} items synced")


@dataclass
class StrategyCapabilities:
    """策略能力描述。"""
    name: str
    type: SyncType
    supports_incremental: bool
    supports_resume: bool


class SyncStrategy(ABC):
    """
    同步策略接口。

    sync() 必须把进度推送到 progress 队列但不能关闭或清空它（队列由调用方
    拥有）；遇到致命错误时抛出异常，并在此之前尽力清理自己打开的进程/连接。
    verify() 与 sync() 相互独立，可以在没有先调用 sync() 的情况下调用。
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def type(self) -> SyncType:
        ...

    @abstractmethod
    def estimate_size(self, source: Endpoint) -> int:
        """尽力估算源的字节数，调用方必须容忍失败。"""

    @abstractmethod
    def sync(self, source: Endpoint, target: Endpoint,
             progress: Optional[queue.Queue] = None,
             cancel_event: Optional[threading.Event] = None):
        """执行传输，失败时抛出异常。"""

    @abstractmethod
    def verify(self, source: Endpoint, target: Endpoint) -> VerifyResult:
        """比较源和目标，返回验证结果。"""

    @abstractmethod
    def supports_incremental(self) -> bool:
        ...

    @abstractmethod
    def supports_resume(self) -> bool:
        ...


class BaseStrategy(SyncStrategy):
    """提供名称、类型和能力标志的通用实现。"""

    def __init__(self, name: str, sync_type: SyncType,
                 incremental: bool = False, resume: bool = False):
        self._name = name
        self._type = sync_type
        self._incremental = incremental
        self._resume = resume

    @property
    def name(self) -> str:
        return self._name

    @property
    def type(self) -> SyncType:
        return self._type

    def supports_incremental(self) -> bool:
        return self._incremental

    def supports_resume(self) -> bool:
        return self._resume

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self._name!r} type={self._type.value}>"


# 端点类型别名 -> 策略名称
ENDPOINT_ALIASES = {
    "postgresql": "postgres",
    "mariadb": "mysql",
    "valkey": "redis",
    "s3": "minio",
    "gcs": "minio",
    "azure-blob": "minio",
}


class StrategyRegistry:
    """按名称查找同步策略的注册表，需显式构造并传给引擎。"""

    def __init__(self):
        self._strategies: Dict[str, SyncStrategy] = {}

    def register(self, strategy: SyncStrategy):
        if strategy.name in self._strategies:
            logger.warning(f"⚠️  覆盖已注册的策略: {strategy.name}")
        self._strategies[strategy.name] = strategy
        logger.debug(f"注册同步策略: {strategy.name} ({strategy.type.value})")

    def get(self, name: str) -> Optional[SyncStrategy]:
        """按精确名称查找，找不到时返回 None。"""
        return self._strategies.get(name)

    def get_for_endpoint(self, endpoint_type: str) -> Optional[SyncStrategy]:
        """
        按端点类型查找策略。

        先尝试精确匹配，再尝试常见别名；找不到时返回 None。
        """
        strategy = self._strategies.get(endpoint_type)
        if strategy is not None:
            return strategy
        alias = ENDPOINT_ALIASES.get(endpoint_type)
        if alias is None:
            return None
        return self._strategies.get(alias)

    def list(self) -> List[str]:
        return sorted(self._strategies)

    def list_by_type(self, sync_type: SyncType) -> List[SyncStrategy]:
        return [s for _, s in sorted(self._strategies.items()) if s.type == sync_type]

    def get_capabilities(self, name: str) -> Optional[StrategyCapabilities]:
        strategy = self._strategies.get(name)
        if strategy is None:
            return None
        return StrategyCapabilities(
            name=strategy.name,
            type=strategy.type,
            supports_incremental=strategy.supports_incremental(),
            supports_resume=strategy.supports_resume(),
        )

    def __contains__(self, name: str) -> bool:
        return name in self._strategies

    def __len__(self) -> int:
        return len(self._strategies)
