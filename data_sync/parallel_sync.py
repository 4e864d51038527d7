"""
并行对象同步

不依赖外部复制工具的工作池实现：先列出源端全部对象，再由固定数量的
工作线程从有界队列中取对象逐个复制。每个工作线程只写自己的计数槽，
报告线程每秒汇总一次，因此计数不需要锁。
"""

import queue
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import SyncOptions
from .endpoint import Endpoint
from .exceptions import ConfigurationError, TransferError, SyncCancelledError
from .minio_strategy import ObjectInfo
from .progress import ProgressReporter
from .strategy import BaseStrategy, SyncType, VerifyResult
from .utils import wait_or_cancel

logger = logging.getLogger(__name__)

QUEUE_FACTOR = 10
REPORT_INTERVAL = 1.0


class ObjectStore(ABC):
    """对象存储访问接口：列出对象并复制单个对象。"""

    @abstractmethod
    def list_objects(self, endpoint: Endpoint) -> List[ObjectInfo]:
        """列出端点 bucket/path 下的全部对象，key 相对于 path。"""

    @abstractmethod
    def copy_object(self, source: Endpoint, target: Endpoint, key: str) -> int:
        """复制一个对象，返回复制的字节数。"""


def _join_key(prefix: str, key: str) -> str:
    prefix = prefix.strip("/")
    if not prefix:
        return key
    return f"{prefix}/{key}"


class S3ObjectStore(ObjectStore):
    """基于 boto3 的 S3 兼容对象存储访问。"""

    def __init__(self, connect_timeout: int = 10, read_timeout: int = 60, max_attempts: int = 3):
        self._boto_config = BotoConfig(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": max_attempts, "mode": "standard"},
        )
        self._clients: Dict[Tuple, Any] = {}
        self._lock = threading.Lock()

    def endpoint_url(self, endpoint: Endpoint) -> Optional[str]:
        """AWS 使用默认地址（None），其他 S3 兼容服务使用显式地址。"""
        t = endpoint.type
        if t == "s3":
            return None
        if t == "gcs":
            return "https://storage.googleapis.com"
        if t == "minio":
            scheme = "https" if endpoint.ssl else "http"
            url = f"{scheme}://{endpoint.host}"
            if endpoint.port > 0:
                url = f"{url}:{endpoint.port}"
            return url
        raise ConfigurationError(f"unsupported endpoint type for S3 access: {t}")

    def client(self, endpoint: Endpoint):
        creds = endpoint.credentials
        access_key = creds.access_key if creds is not None else ""
        secret_key = creds.secret_key if creds is not None else ""
        token = creds.token if creds is not None else ""
        url = self.endpoint_url(endpoint)
        cache_key = (url, endpoint.region, access_key)

        # boto3 客户端是线程安全的，但创建过程不是
        with self._lock:
            client = self._clients.get(cache_key)
            if client is None:
                kwargs: Dict[str, Any] = {"config": self._boto_config}
                if url:
                    kwargs["endpoint_url"] = url
                if endpoint.region:
                    kwargs["region_name"] = endpoint.region
                if access_key and secret_key:
                    kwargs["aws_access_key_id"] = access_key
                    kwargs["aws_secret_access_key"] = secret_key
                    if token:
                        kwargs["aws_session_token"] = token
                if endpoint.ssl and endpoint.credentials is not None and endpoint.credentials.ca_file:
                    kwargs["verify"] = endpoint.credentials.ca_file
                client = boto3.client("s3", **kwargs)
                self._clients[cache_key] = client
        return client

    def list_objects(self, endpoint: Endpoint) -> List[ObjectInfo]:
        prefix = endpoint.path.strip("/")
        if prefix:
            prefix += "/"
        paginator = self.client(endpoint).get_paginator("list_objects_v2")
        objects = []
        try:
            for page in paginator.paginate(Bucket=endpoint.bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    key = item["Key"][len(prefix):]
                    if not key or key.endswith("/"):
                        continue
                    objects.append(ObjectInfo(
                        key=key,
                        size=int(item.get("Size", 0)),
                        etag=item.get("ETag", "").strip('"'),
                        last_modified=str(item.get("LastModified", "")),
                    ))
        except (BotoCoreError, ClientError) as e:
            raise TransferError(f"failed to list {endpoint.bucket}: {e}") from e
        return objects

    def copy_object(self, source: Endpoint, target: Endpoint, key: str) -> int:
        source_key = _join_key(source.path, key)
        target_key = _join_key(target.path, key)
        try:
            response = self.client(source).get_object(Bucket=source.bucket, Key=source_key)
            body = response["Body"]
            try:
                extra = {}
                if response.get("ContentType"):
                    extra["ContentType"] = response["ContentType"]
                self.client(target).upload_fileobj(body, target.bucket, target_key,
                                                   ExtraArgs=extra or None)
            finally:
                body.close()
        except (BotoCoreError, ClientError) as e:
            raise TransferError(f"failed to copy {key}: {e}") from e
        return int(response.get("ContentLength", 0))


class _WorkerStats:
    """单个工作线程的计数槽，只由所属线程写入。"""

    __slots__ = ("bytes_done", "items_done", "errors")

    def __init__(self):
        self.bytes_done = 0
        self.items_done = 0
        self.errors = 0


class ParallelObjectSync(BaseStrategy):
    """固定工作池的对象并行复制。"""

    def __init__(self, options: Optional[SyncOptions] = None,
                 store: Optional[ObjectStore] = None, workers: Optional[int] = None,
                 name: str = "s3-parallel"):
        """
        参数:
            options: 同步选项
            store: 对象存储访问实现，默认使用 boto3
            workers: 工作线程数，默认取 options.parallel
            name: 注册名称
        """
        super().__init__(name, SyncType.STORAGE)
        self.options = options or SyncOptions()
        self.store = store or S3ObjectStore()
        self.workers = max(1, workers or self.options.parallel)

    def estimate_size(self, source: Endpoint) -> int:
        return sum(obj.size for obj in self.store.list_objects(source))

    def sync(self, source: Endpoint, target: Endpoint,
             progress: Optional[queue.Queue] = None,
             cancel_event: Optional[threading.Event] = None):
        if not source.bucket:
            raise ConfigurationError("source bucket is required")
        if not target.bucket:
            raise ConfigurationError("target bucket is required")

        cancel_event = cancel_event or threading.Event()
        reporter = ProgressReporter("parallel-sync", progress)
        reporter.set_phase("listing")

        objects = self.store.list_objects(source)
        total_bytes = sum(obj.size for obj in objects)
        reporter.set_totals(total_bytes, len(objects))
        logger.info(f"📦 待复制对象 {len(objects)} 个，工作线程 {self.workers}")

        if self.options.dry_run:
            logger.info("🔍 试运行模式，跳过对象复制")
            reporter.set_phase("completed")
            return

        reporter.set_phase("syncing")
        work: "queue.Queue[Optional[ObjectInfo]]" = queue.Queue(maxsize=self.workers * QUEUE_FACTOR)
        stats = [_WorkerStats() for _ in range(self.workers)]
        done = threading.Event()

        threads = [threading.Thread(target=self._worker, args=(source, target, work, slot, cancel_event),
                                    name=f"{self.name}-worker-{i}", daemon=True)
                   for i, slot in enumerate(stats)]
        for t in threads:
            t.start()
        ticker = threading.Thread(target=self._report_loop,
                                  args=(reporter, stats, len(objects), done),
                                  name=f"{self.name}-reporter", daemon=True)
        ticker.start()

        try:
            self._feed(work, objects, cancel_event)
        finally:
            for _ in threads:
                self._put(work, None, cancel_event, force=True)
            for t in threads:
                t.join()
            done.set()
            ticker.join()

        bytes_done, items_done, errors = self._totals(stats)
        reporter.update(bytes_done, items_done, f"{items_done}/{len(objects)} objects")

        if cancel_event.is_set():
            raise SyncCancelledError()

        reporter.set_phase("completed")
        if errors:
            raise TransferError(f"sync completed with {errors} errors")
        logger.info(f"✅ 并行复制完成: {items_done} 个对象")

    def _put(self, work: queue.Queue, item: Optional[ObjectInfo],
             cancel_event: threading.Event, force: bool = False) -> bool:
        # 队列满时阻塞，但要能响应取消；结束标记在取消后也必须送达
        while True:
            if cancel_event.is_set() and not force:
                return False
            try:
                work.put(item, timeout=0.2)
                return True
            except queue.Full:
                continue

    def _feed(self, work: queue.Queue, objects: List[ObjectInfo], cancel_event: threading.Event):
        for obj in objects:
            if not self._put(work, obj, cancel_event):
                return

    def _worker(self, source: Endpoint, target: Endpoint, work: queue.Queue,
                slot: _WorkerStats, cancel_event: threading.Event):
        while True:
            obj = work.get()
            if obj is None:
                return
            if cancel_event.is_set():
                continue
            try:
                copied = self.store.copy_object(source, target, obj.key)
            except Exception as e:
                slot.errors += 1
                logger.warning(f"⚠️  复制对象失败 {obj.key}: {e}")
                continue
            slot.bytes_done += copied or obj.size
            slot.items_done += 1

    @staticmethod
    def _totals(stats: List[_WorkerStats]) -> Tuple[int, int, int]:
        return (sum(s.bytes_done for s in stats),
                sum(s.items_done for s in stats),
                sum(s.errors for s in stats))

    def _report_loop(self, reporter: ProgressReporter, stats: List[_WorkerStats],
                     total: int, done: threading.Event):
        while not wait_or_cancel(done, REPORT_INTERVAL):
            bytes_done, items_done, _ = self._totals(stats)
            reporter.update(bytes_done, items_done, f"{items_done}/{total} objects")

    def verify(self, source: Endpoint, target: Endpoint) -> VerifyResult:
        result = VerifyResult()
        source_objects = {obj.key: obj for obj in self.store.list_objects(source)}
        target_objects = {obj.key: obj for obj in self.store.list_objects(target)}
        result.source_count = len(source_objects)
        result.target_count = len(target_objects)

        if result.source_count != result.target_count:
            result.add_mismatch(f"object count mismatch: source={result.source_count}, "
                                f"target={result.target_count}")
        for key in sorted(source_objects):
            other = target_objects.get(key)
            if other is None:
                result.add_mismatch(f"object {key}: missing in target")
            elif other.size != source_objects[key].size:
                result.add_mismatch(f"object {key}: size mismatch source={source_objects[key].size} "
                                    f"target={other.size}")

        result.details["source_bytes"] = sum(o.size for o in source_objects.values())
        result.details["target_bytes"] = sum(o.size for o in target_objects.values())
        logger.info(f"🔍 {result}")
        return result
