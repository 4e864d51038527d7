"""
缓存同步策略

通过最小RESP客户端直接与缓存服务器通信来迁移数据：
- 快照路径：BGSAVE 后等待 LASTSAVE 前进，把 RDB 转成命令流经 redis-cli --pipe 导入目标
- 逐键路径：SCAN + DUMP + PTTL + RESTORE REPLACE，精确保留每个键的剩余过期时间
- 复制变体：REPLICAOF 追上主库后提升为独立实例
"""

import os
import time
import queue
import logging
import threading
from typing import Optional, List, Tuple

from .config import SyncOptions
from .endpoint import Endpoint
from .exceptions import (ConfigurationError, ConnectionError, TransferError, ProtocolError,
                         TimeoutError, SyncCancelledError, VerificationError)
from .process import pipe_processes
from .progress import ProgressReporter
from .resp import RESPClient, parse_info, parse_keyspace, DEFAULT_PORT
from .strategy import BaseStrategy, SyncType, VerifyResult
from .utils import check_cancelled, wait_or_cancel, format_bytes

logger = logging.getLogger(__name__)

SCAN_COUNT = 1000
PROGRESS_EVERY_KEYS = 100
VERIFY_SAMPLE_SIZE = 100
SNAPSHOT_POLL_INTERVAL = 1.0

# rdbtools: 把 RDB 文件转换为 RESP 命令流
DEFAULT_CONVERTER = ["rdb", "--command", "protocol"]


def _text(value) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return "" if value is None else str(value)


class RedisStrategy(BaseStrategy):
    """缓存（Redis/Valkey）同步策略。"""

    def __init__(self, options: Optional[SyncOptions] = None, use_snapshot: bool = False,
                 name: str = "redis", socket_timeout: Optional[float] = None,
                 cli: str = "redis-cli", converter: Optional[List[str]] = None):
        """
        初始化缓存同步策略

        参数:
            options: 同步选项
            use_snapshot: 是否使用 BGSAVE 快照路径（需要能访问源的 RDB 文件）
            name: 注册名称
            socket_timeout: 套接字超时（秒），None 表示使用传输层默认值
            cli: redis-cli 可执行文件，快照路径用 --pipe 模式导入
            converter: RDB 转命令流的工具，默认 rdbtools 的 protocol 输出
        """
        super().__init__(name, SyncType.CACHE, incremental=False, resume=False)
        self.options = options or SyncOptions()
        self.use_snapshot = use_snapshot
        self.socket_timeout = socket_timeout
        self.cli = cli
        self.converter = list(converter or DEFAULT_CONVERTER)
        self.scan_count = SCAN_COUNT
        self.snapshot_poll_interval = SNAPSHOT_POLL_INTERVAL
        self.snapshot_timeout = float(self.options.timeout_seconds)

    def connect(self, endpoint: Endpoint) -> RESPClient:
        return RESPClient.from_endpoint(endpoint, timeout=self.socket_timeout)

    # ---- 大小估算 ----

    def estimate_size(self, source: Endpoint) -> int:
        """用 INFO memory 中的 used_memory 估算数据量。"""
        with self.connect(source) as client:
            info = parse_info(client.info("memory"))
        try:
            return int(info.get("used_memory", "0"))
        except ValueError:
            return 0

    def get_key_count(self, endpoint: Endpoint, client: Optional[RESPClient] = None) -> int:
        """
        从 INFO keyspace 统计键数量。

        只统计端点选择的库，未指定时为 db0，与逐键迁移扫描的范围一致。
        """
        if client is None:
            with self.connect(endpoint) as own:
                return self.get_key_count(endpoint, own)

        counts = parse_keyspace(client.info("keyspace"))
        return counts.get(f"db{endpoint.database or '0'}", 0)

    def get_memory_usage(self, client: RESPClient) -> int:
        try:
            return int(parse_info(client.info("memory")).get("used_memory", "0"))
        except ValueError:
            return 0

    # ---- 同步 ----

    def sync(self, source: Endpoint, target: Endpoint,
             progress: Optional[queue.Queue] = None,
             cancel_event: Optional[threading.Event] = None):
        reporter = ProgressReporter(f"{self.name}-sync", progress)
        reporter.set_phase("initializing")

        if self.use_snapshot:
            self.sync_snapshot(source, target, reporter, cancel_event)
        else:
            self.sync_pipeline(source, target, reporter, cancel_event)

    def sync_snapshot(self, source: Endpoint, target: Endpoint,
                      reporter: ProgressReporter,
                      cancel_event: Optional[threading.Event] = None):
        """
        快照路径：BGSAVE 后把 RDB 转成命令流导入目标，导入后核对键数量。

        RDB 命令流自带 SELECT，因此两端必须使用相同的库号。
        """
        if (source.database or "0") != (target.database or "0"):
            raise ConfigurationError("snapshot sync requires the same database number on "
                                     "source and target")
        try:
            size = self.estimate_size(source)
        except Exception as e:
            reporter.error(f"failed to estimate size: {e}")
            raise
        reporter.set_totals(size, 0)

        reporter.set_phase("creating snapshot")
        try:
            rdb_path = self.create_snapshot(source, reporter, cancel_event)
        except SyncCancelledError:
            raise
        except Exception as e:
            reporter.error(f"failed to create snapshot: {e}")
            raise

        key_count = self.get_key_count(source)
        reporter.set_totals(size, key_count)

        reporter.set_phase("restoring")
        try:
            self.restore_snapshot(source, target, rdb_path, cancel_event)
        except SyncCancelledError:
            raise
        except Exception as e:
            reporter.error(f"failed to restore snapshot: {e}")
            raise

        loaded = self.get_key_count(target)
        if loaded != key_count:
            message = f"snapshot restore incomplete: source has {key_count} keys, target has {loaded}"
            reporter.error(message)
            raise TransferError(message)

        reporter.set_phase("completed")
        reporter.update(size, key_count, "Redis sync completed successfully")
        logger.info(f"✅ 快照同步完成: {format_bytes(size)}, {key_count} 个键")

    def create_snapshot(self, source: Endpoint, reporter: ProgressReporter,
                        cancel_event: Optional[threading.Event] = None) -> str:
        """
        触发 BGSAVE 并等待 LASTSAVE 时间戳前进。

        返回:
            源端 RDB 文件路径
        """
        with self.connect(source) as client:
            last_save = int(client.execute("LASTSAVE"))

            reply = _text(client.execute("BGSAVE"))
            if "started" not in reply and "progress" not in reply:
                raise TransferError(f"unexpected BGSAVE response: {reply}")
            logger.info(f"📸 BGSAVE 已触发: {reply}")
            reporter.update(0, 0, "Waiting for background save to complete...")

            deadline = time.time() + self.snapshot_timeout
            while True:
                if wait_or_cancel(cancel_event, self.snapshot_poll_interval):
                    raise SyncCancelledError()
                if int(client.execute("LASTSAVE")) > last_save:
                    break
                if time.time() > deadline:
                    raise TimeoutError(f"BGSAVE did not finish within {self.snapshot_timeout:.0f}s")
                reporter.update(0, 0, "Background save in progress...")

            data_dir = client.config_get("dir")
            filename = client.config_get("dbfilename")

        if not data_dir or not filename:
            raise TransferError("could not resolve snapshot path from CONFIG GET dir/dbfilename")
        rdb_path = os.path.join(data_dir, filename)
        logger.info(f"📸 快照完成: {rdb_path}")
        return rdb_path

    def build_loader_args(self, endpoint: Endpoint) -> List[str]:
        """构建 redis-cli 的连接参数。"""
        args = [self.cli, "-h", endpoint.host or "localhost"]
        if endpoint.port > 0:
            args += ["-p", str(endpoint.port)]
        if endpoint.credentials is not None:
            if endpoint.credentials.username:
                args += ["--user", endpoint.credentials.username]
            if endpoint.credentials.password:
                args += ["-a", endpoint.credentials.password]
        if endpoint.database:
            args += ["-n", endpoint.database]
        return args

    def build_converter_args(self, source: Endpoint, rdb_path: str) -> List[str]:
        """构建 RDB 转命令流的参数，只导出源端选择的库。"""
        return self.converter + ["--db", source.database or "0", rdb_path]

    def restore_snapshot(self, source: Endpoint, target: Endpoint, rdb_path: str,
                         cancel_event: Optional[threading.Event] = None):
        """清空目标库，然后 转换工具 | redis-cli --pipe 导入快照。"""
        with self.connect(target) as client:
            client.execute("FLUSHDB")

        pipe_processes(self.build_converter_args(source, rdb_path),
                       self.build_loader_args(target) + ["--pipe"],
                       cancel_event=cancel_event)
        logger.info(f"📥 快照已导入 {target.host}:{target.port}")

    def sync_pipeline(self, source: Endpoint, target: Endpoint,
                      reporter: ProgressReporter,
                      cancel_event: Optional[threading.Event] = None) -> int:
        """
        逐键迁移。

        单个键失败只记录警告，不中断扫描；只有连接和 SCAN 失败是致命的。

        返回:
            成功迁移的键数量
        """
        with self.connect(source) as src, self.connect(target) as dst:
            key_count = self.get_key_count(source, src)
            reporter.set_totals(0, key_count)

            dst.execute("FLUSHDB")
            reporter.set_phase("syncing")
            logger.info(f"🔄 开始逐键迁移，源共有 {key_count} 个键")

            cursor = b"0"
            processed = 0
            failed = 0
            while True:
                check_cancelled(cancel_event)
                try:
                    cursor, keys = src.scan(cursor, count=self.scan_count)
                except ProtocolError as e:
                    raise TransferError(f"SCAN failed: {e}") from e

                for key in keys:
                    migrated = self._migrate_key(src, dst, key, reporter)
                    if migrated:
                        processed += 1
                        if processed % PROGRESS_EVERY_KEYS == 0:
                            reporter.update(0, processed, f"Synced {processed} keys")
                    elif migrated is False:
                        failed += 1

                if _text(cursor) == "0":
                    break

        reporter.set_phase("completed")
        reporter.update(0, processed, "Redis sync completed")
        if failed:
            logger.warning(f"⚠️  逐键迁移完成: {processed} 个成功, {failed} 个失败")
        else:
            logger.info(f"✅ 逐键迁移完成: {processed} 个键")
        return processed

    def _migrate_key(self, src: RESPClient, dst: RESPClient, key: bytes,
                     reporter: ProgressReporter) -> Optional[bool]:
        """
        迁移单个键。

        返回:
            True 已迁移，False 失败，None 键在扫描后已消失而被跳过
        """
        name = _text(key)
        try:
            payload = src.execute("DUMP", key)
        except ProtocolError as e:
            reporter.warning(f"failed to dump key {name}: {e}")
            logger.warning(f"⚠️  DUMP {name} 失败: {e}")
            return False
        if payload is None:
            # 扫描之后键已过期或被删除
            return None

        try:
            ttl = int(src.execute("PTTL", key))
        except (ProtocolError, ValueError, TypeError):
            ttl = -1
        if ttl == -2:
            # DUMP 与 PTTL 之间过期，不能当作永久键写入
            logger.debug(f"键 {name} 在迁移过程中过期，跳过")
            return None
        ttl = ttl if ttl > 0 else 0

        try:
            dst.execute("RESTORE", key, ttl, payload, "REPLACE")
        except ProtocolError as e:
            reporter.warning(f"failed to restore key {name}: {e}")
            logger.warning(f"⚠️  RESTORE {name} 失败: {e}")
            return False
        return True

    # ---- 验证 ----

    def verify(self, source: Endpoint, target: Endpoint) -> VerifyResult:
        """
        比较键数量和内存使用，然后抽样检查键是否存在以及类型是否一致。

        抽样失败只记录在 details["sample_error"]，仍返回数量比较结果。

        异常:
            VerificationError: 无法读取任一端的键数量
        """
        result = VerifyResult()

        with self.connect(source) as src, self.connect(target) as dst:
            try:
                result.source_count = self.get_key_count(source, src)
                result.target_count = self.get_key_count(target, dst)
            except ProtocolError as e:
                raise VerificationError(f"failed to read key counts: {e}") from e
            if result.source_count != result.target_count:
                result.add_mismatch(f"key count mismatch: source={result.source_count}, "
                                    f"target={result.target_count}")

            result.details["source_memory"] = self.get_memory_usage(src)
            result.details["target_memory"] = self.get_memory_usage(dst)

            try:
                for mismatch in self.sample_verify(src, dst, VERIFY_SAMPLE_SIZE):
                    result.add_mismatch(mismatch)
            except (ProtocolError, ConnectionError) as e:
                logger.warning(f"⚠️  抽样验证失败: {e}")
                result.details["sample_error"] = str(e)

        logger.info(f"🔍 {result}")
        return result

    def sample_verify(self, src: RESPClient, dst: RESPClient, sample_size: int) -> List[str]:
        """抽样随机键，比较目标中的存在性和值类型。"""
        mismatches = []
        seen = set()
        for _ in range(sample_size):
            key = src.execute("RANDOMKEY")
            if key is None:
                break
            if key in seen:
                continue
            seen.add(key)

            source_type = _text(src.execute("TYPE", key))
            target_type = _text(dst.execute("TYPE", key))
            name = _text(key)
            if target_type == "none":
                mismatches.append(f"key {name}: missing in target")
            elif source_type != target_type:
                mismatches.append(f"key {name}: type mismatch source={source_type} target={target_type}")
        return mismatches


class RedisReplicationStrategy(RedisStrategy):
    """
    复制变体：让目标成为源的副本，追上后提升为独立实例。

    适用于最小停机切换，而不是一次性迁移。
    """

    def __init__(self, options: Optional[SyncOptions] = None,
                 socket_timeout: Optional[float] = None,
                 poll_interval: float = 1.0, max_lag_seconds: int = 1):
        super().__init__(options, use_snapshot=False, name="redis-replication",
                         socket_timeout=socket_timeout)
        self._incremental = True
        self._resume = True
        self.poll_interval = poll_interval
        self.max_lag_seconds = max_lag_seconds

    def sync(self, source: Endpoint, target: Endpoint,
             progress: Optional[queue.Queue] = None,
             cancel_event: Optional[threading.Event] = None):
        reporter = ProgressReporter(f"{self.name}-sync", progress)
        reporter.set_phase("initializing")

        self.setup_replication(source, target)
        try:
            self.wait_for_sync(target, reporter, cancel_event)
        finally:
            # 无论追赶成功与否都不把目标留在副本状态
            self.promote_to_master(target)
        reporter.set_phase("completed")

    def setup_replication(self, source: Endpoint, target: Endpoint):
        port = source.port or DEFAULT_PORT
        with self.connect(target) as client:
            try:
                client.execute("REPLICAOF", source.host, port)
            except ProtocolError as e:
                raise TransferError(f"failed to set up replication: {e}") from e
        logger.info(f"🔗 {target.host}:{target.port} 已设置为 {source.host}:{port} 的副本")

    def replication_state(self, target: Endpoint) -> Tuple[str, int, int, bool]:
        """
        读取目标的 INFO replication。

        返回:
            (link 状态, 复制偏移量, 距上次IO秒数, 是否仍在全量同步)
        """
        with self.connect(target) as client:
            info = parse_info(client.info("replication"))

        def _int(name: str, default: int) -> int:
            try:
                return int(info.get(name, default))
            except ValueError:
                return default

        link = info.get("master_link_status", "").strip()
        offset = _int("slave_repl_offset", 0)
        lag = _int("master_last_io_seconds_ago", -1)
        in_progress = info.get("master_sync_in_progress", "0").strip() == "1"
        return link, offset, lag, in_progress

    def wait_for_sync(self, target: Endpoint, reporter: ProgressReporter,
                      cancel_event: Optional[threading.Event] = None):
        """轮询直到复制链路为 up 且延迟不超过阈值，受 timeout_seconds 限制。"""
        reporter.set_phase("replicating")
        deadline = time.time() + self.options.timeout_seconds

        while True:
            if wait_or_cancel(cancel_event, self.poll_interval):
                raise SyncCancelledError()

            link, offset, lag, in_progress = self.replication_state(target)
            reporter.update(offset, 0, f"Replication status: {link}")

            if link == "up" and not in_progress and 0 <= lag <= self.max_lag_seconds:
                logger.info(f"✅ 复制已追上，偏移量 {offset}")
                return
            if time.time() > deadline:
                raise TimeoutError(f"replication did not catch up within "
                                   f"{self.options.timeout_seconds}s (link={link}, lag={lag})")

    def promote_to_master(self, target: Endpoint):
        with self.connect(target) as client:
            try:
                client.execute("REPLICAOF", "NO", "ONE")
            except ProtocolError as e:
                raise TransferError(f"failed to promote to master: {e}") from e
        logger.info(f"⬆️  {target.host}:{target.port} 已提升为独立实例")
