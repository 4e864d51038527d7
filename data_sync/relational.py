"""
关系型数据库同步的通用部分

使用厂商自己的转储/恢复命令行工具，通过进程内单管道首尾相连，
数据集不会落到本地磁盘。驱动连接（SQLAlchemy）只用于估算大小、
创建目标库和按表计数验证，不用于传输。
"""

import queue
import logging
import threading
from contextlib import contextmanager
from typing import Optional, List, Dict, Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from .config import SyncOptions
from .endpoint import Endpoint
from .exceptions import (ConnectionError, ConfigurationError, TransferError, SyncCancelledError,
                         VerificationError)
from .process import pipe_processes
from .progress import ProgressReporter
from .strategy import BaseStrategy, SyncType, VerifyResult
from .utils import check_cancelled, format_bytes

logger = logging.getLogger(__name__)

# 没有字节级输出时假定的吞吐量，用于外推进度
ASSUMED_THROUGHPUT = 10 * 1024 * 1024
PROGRESS_TICK_SECONDS = 2.0


class RelationalStrategy(BaseStrategy):
    """关系型数据库管道同步的基类，子类提供厂商相关的命令和查询。"""

    size_query = ""

    def __init__(self, name: str, options: Optional[SyncOptions] = None,
                 incremental: bool = False, resume: bool = False):
        super().__init__(name, SyncType.DATABASE, incremental=incremental, resume=resume)
        self.options = options or SyncOptions()
        self.tick_interval = PROGRESS_TICK_SECONDS
        self.assumed_throughput = ASSUMED_THROUGHPUT

    # ---- 子类接口 ----

    def build_url(self, endpoint: Endpoint) -> URL:
        raise NotImplementedError

    def admin_endpoint(self, target: Endpoint) -> Endpoint:
        raise NotImplementedError

    def ensure_database(self, conn: Connection, database: str):
        raise NotImplementedError

    def list_tables(self, conn: Connection, endpoint: Endpoint) -> List[str]:
        raise NotImplementedError

    def count_query(self, table: str) -> str:
        raise NotImplementedError

    def build_dump_command(self, source: Endpoint) -> List[str]:
        raise NotImplementedError

    def build_restore_command(self, target: Endpoint) -> List[str]:
        raise NotImplementedError

    def build_env(self, endpoint: Endpoint) -> Dict[str, str]:
        return {}

    def parse_dump_line(self, line: str):
        """返回 (表名, 阶段)，无法识别时均为空字符串。"""
        return "", ""

    def size_params(self, endpoint: Endpoint) -> Dict[str, Any]:
        return {}

    # ---- 连接 ----

    @contextmanager
    def connection(self, endpoint: Endpoint, autocommit: bool = False):
        """
        打开驱动连接的上下文管理器。

        异常:
            ConnectionError: 连接失败
        """
        engine = create_engine(self.build_url(endpoint), poolclass=NullPool)
        try:
            try:
                conn = engine.connect()
            except SQLAlchemyError as e:
                raise ConnectionError(f"failed to connect to {endpoint.host}:{endpoint.port}/"
                                      f"{endpoint.database}: {e}") from e
            if autocommit:
                conn = conn.execution_options(isolation_level="AUTOCOMMIT")
            try:
                yield conn
            finally:
                conn.close()
        finally:
            engine.dispose()

    def _require_database(self, endpoint: Endpoint, side: str):
        if not endpoint.database:
            raise ConfigurationError(f"{side} database is required")

    # ---- 大小估算 ----

    def estimate_size(self, source: Endpoint) -> int:
        self._require_database(source, "source")
        with self.connection(source) as conn:
            try:
                size = conn.execute(text(self.size_query), self.size_params(source)).scalar()
            except SQLAlchemyError as e:
                raise TransferError(f"failed to query database size: {e}") from e
        return int(size or 0)

    def create_target_database(self, target: Endpoint):
        """连接管理库（目标库可能还不存在），检查存在性，不存在时创建。"""
        self._require_database(target, "target")
        with self.connection(self.admin_endpoint(target), autocommit=True) as conn:
            try:
                self.ensure_database(conn, target.database)
            except SQLAlchemyError as e:
                raise TransferError(f"failed to create database {target.database}: {e}") from e

    # ---- 同步 ----

    def sync(self, source: Endpoint, target: Endpoint,
             progress: Optional[queue.Queue] = None,
             cancel_event: Optional[threading.Event] = None):
        self._require_database(source, "source")
        self._require_database(target, "target")

        reporter = ProgressReporter(f"{self.name}-sync", progress)
        reporter.set_phase("initializing")

        try:
            size = self.estimate_size(source)
        except Exception as e:
            reporter.error(f"failed to estimate size: {e}")
            raise
        reporter.set_totals(size, 0)
        logger.info(f"📊 源数据库 {source.database} 大小: {format_bytes(size)}")

        check_cancelled(cancel_event)
        reporter.set_phase("preparing target")
        try:
            self.create_target_database(target)
        except Exception as e:
            reporter.error(f"failed to create target database: {e}")
            raise

        reporter.set_phase("dumping and restoring")
        self.run_pipe(self.build_dump_command(source), self.build_restore_command(target),
                      source, target, reporter, size, cancel_event)

        reporter.set_phase("completed")
        reporter.update(size, 0, "Database sync completed successfully")
        logger.info(f"✅ 数据库 {source.database} -> {target.database} 同步完成")

    def run_pipe(self, dump_args: List[str], restore_args: List[str],
                 source: Endpoint, target: Endpoint, reporter: ProgressReporter,
                 size: int = 0, cancel_event: Optional[threading.Event] = None,
                 extrapolate: bool = True):
        """运行转储|恢复管道，按假定吞吐量外推进度并钳制到估算总量。"""

        def on_tick(elapsed: float):
            estimated = int(elapsed * self.assumed_throughput)
            if size > 0:
                estimated = min(estimated, size)
            reporter.update(estimated, 0, "Syncing database...")

        def on_dump_line(line: str):
            table, phase = self.parse_dump_line(line)
            if table:
                reporter.set_current_item(table)
            if "ERROR" in line or "error:" in line:
                logger.warning(f"⚠️  {line}")
                reporter.error(line.strip())

        try:
            pipe_processes(dump_args, restore_args,
                           dump_env=self.build_env(source),
                           restore_env=self.build_env(target),
                           cancel_event=cancel_event,
                           on_dump_stderr=on_dump_line,
                           on_tick=on_tick if extrapolate else None,
                           tick_interval=self.tick_interval)
        except TransferError as e:
            reporter.error(str(e))
            raise

    # ---- 验证 ----

    def row_count(self, conn: Connection, table: str) -> int:
        return int(conn.execute(text(self.count_query(table))).scalar() or 0)

    def verify(self, source: Endpoint, target: Endpoint) -> VerifyResult:
        """枚举源中所有用户表，按表精确 COUNT(*) 比较两端。"""
        result = VerifyResult()
        table_details: Dict[str, Dict[str, int]] = {}

        with self.connection(source) as src, self.connection(target) as dst:
            try:
                tables = self.list_tables(src, source)
            except SQLAlchemyError as e:
                raise VerificationError(f"failed to get source tables: {e}") from e

            for table in tables:
                try:
                    source_count = self.row_count(src, table)
                except SQLAlchemyError as e:
                    src.rollback()
                    result.add_mismatch(f"failed to count source table {table}: {e}")
                    continue

                try:
                    target_count = self.row_count(dst, table)
                except SQLAlchemyError as e:
                    dst.rollback()
                    result.add_mismatch(f"table {table} missing in target or count failed: {e}")
                    continue

                result.source_count += source_count
                result.target_count += target_count
                if source_count != target_count:
                    result.add_mismatch(f"table {table}: source={source_count}, target={target_count}")
                table_details[table] = {"source": source_count, "target": target_count}

        result.details["tables"] = table_details
        result.details["table_count"] = len(tables)
        logger.info(f"🔍 {result}")
        return result


class TableByTableMixin:
    """
    逐表同步变体：每张表一个转储|恢复管道。

    以整体吞吐量换取按表的状态可见性。
    """

    def build_table_pipe(self, source: Endpoint, target: Endpoint, table: str):
        """返回 (转储命令, 恢复命令)。"""
        raise NotImplementedError

    def prepare_target_schema(self, source: Endpoint, target: Endpoint, tables: List[str],
                              reporter: ProgressReporter,
                              cancel_event: Optional[threading.Event] = None):
        """在逐表复制之前建好目标表结构；表转储自带建表语句时无需处理。"""

    def finalize_target_schema(self, source: Endpoint, target: Endpoint,
                               reporter: ProgressReporter,
                               cancel_event: Optional[threading.Event] = None):
        """所有表复制完成后补齐索引、约束等。"""

    def sync(self, source: Endpoint, target: Endpoint,
             progress: Optional[queue.Queue] = None,
             cancel_event: Optional[threading.Event] = None):
        self._require_database(source, "source")
        self._require_database(target, "target")

        reporter = ProgressReporter(f"{self.name}-sync", progress)
        reporter.set_phase("scanning")

        with self.connection(source) as conn:
            tables = self.list_tables(conn, source)

        reporter.set_totals(0, len(tables))
        self.create_target_database(target)
        reporter.set_phase("preparing target")
        self.prepare_target_schema(source, target, tables, reporter, cancel_event)
        reporter.set_phase("syncing")
        logger.info(f"🔄 逐表同步 {len(tables)} 张表")

        for i, table in enumerate(tables):
            check_cancelled(cancel_event)
            reporter.set_current_item(table)
            dump_args, restore_args = self.build_table_pipe(source, target, table)
            try:
                self.run_pipe(dump_args, restore_args, source, target, reporter,
                              cancel_event=cancel_event, extrapolate=False)
            except SyncCancelledError:
                raise
            except TransferError as e:
                logger.error(f"❌ 表 {table} 同步失败: {e}")
                raise TransferError(f"failed to sync table {table}: {e}") from e
            reporter.update(0, i + 1, f"Synced table {table}")

        check_cancelled(cancel_event)
        reporter.set_phase("finalizing")
        self.finalize_target_schema(source, target, reporter, cancel_event)
        reporter.set_phase("completed")
