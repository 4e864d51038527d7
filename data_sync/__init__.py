"""
Data Sync - 异构存储之间的数据同步引擎

此包提供了在对象存储、关系数据库和缓存之间迁移数据的可插拔策略，
以及支持暂停、恢复和取消的计划执行引擎。
"""

__version__ = "1.0.0"
__author__ = "Data Sync Tool"

from .endpoint import Endpoint, Credentials
from .progress import Progress, ProgressReporter
from .strategy import (
    SyncType,
    SyncStatus,
    SyncStrategy,
    BaseStrategy,
    StrategyRegistry,
    StrategyCapabilities,
    VerifyResult
)
from .plan import SyncTask, SyncPlan
from .config import SyncOptions, EngineSettings, Config, load_config, setup_logging
from .registry import create_default_registry
from .sync_service import SyncService, SyncEvent, SyncExecution
from .rclone_strategy import RcloneStrategy
from .minio_strategy import MinioStrategy
from .parallel_sync import ParallelObjectSync, ObjectStore, S3ObjectStore
from .postgres_strategy import PostgresStrategy, PostgresTableSync
from .mysql_strategy import MySQLStrategy, MySQLTableSync
from .redis_strategy import RedisStrategy, RedisReplicationStrategy

__all__ = [
    "Endpoint",
    "Credentials",
    "Progress",
    "ProgressReporter",
    "SyncType",
    "SyncStatus",
    "SyncStrategy",
    "BaseStrategy",
    "StrategyRegistry",
    "StrategyCapabilities",
    "VerifyResult",
    "SyncTask",
    "SyncPlan",
    "SyncOptions",
    "EngineSettings",
    "Config",
    "load_config",
    "setup_logging",
    "create_default_registry",
    "SyncService",
    "SyncEvent",
    "SyncExecution",
    "RcloneStrategy",
    "MinioStrategy",
    "ParallelObjectSync",
    "ObjectStore",
    "S3ObjectStore",
    "PostgresStrategy",
    "PostgresTableSync",
    "MySQLStrategy",
    "MySQLTableSync",
    "RedisStrategy",
    "RedisReplicationStrategy"
]
