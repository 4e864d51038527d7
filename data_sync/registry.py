"""
默认策略注册表

在启动时显式构造一次，再传给 SyncService。
"""

import logging
from typing import Optional

from .config import SyncOptions
from .minio_strategy import MinioStrategy
from .mysql_strategy import MySQLStrategy, MySQLTableSync
from .parallel_sync import ParallelObjectSync
from .postgres_strategy import PostgresStrategy, PostgresTableSync
from .rclone_strategy import RcloneStrategy
from .redis_strategy import RedisStrategy, RedisReplicationStrategy
from .strategy import StrategyRegistry

logger = logging.getLogger(__name__)


def create_default_registry(options: Optional[SyncOptions] = None) -> StrategyRegistry:
    """
    创建包含全部内置策略的注册表。

    参数:
        options: 所有策略共享的同步选项

    返回:
        StrategyRegistry
    """
    options = options or SyncOptions()
    registry = StrategyRegistry()

    rclone = RcloneStrategy(options)
    registry.register(rclone)
    registry.register(MinioStrategy(options, rclone=rclone))
    registry.register(ParallelObjectSync(options))

    registry.register(PostgresStrategy(options))
    registry.register(PostgresTableSync(options))
    registry.register(MySQLStrategy(options))
    registry.register(MySQLTableSync(options))

    registry.register(RedisStrategy(options))
    registry.register(RedisStrategy(options, use_snapshot=True, name="redis-snapshot"))
    registry.register(RedisReplicationStrategy(options))

    logger.info(f"📋 已注册 {len(registry)} 个同步策略: {', '.join(registry.list())}")
    return registry
