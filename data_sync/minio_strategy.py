"""
MinIO / S3 兼容对象存储同步策略

默认委托给 rclone；也可以改用 MinIO 客户端 mc（alias + mirror）。
"""

import re
import json
import queue
import logging
import threading
from dataclasses import dataclass
from typing import Optional, List

from .config import SyncOptions
from .endpoint import Endpoint
from .exceptions import ConfigurationError, TransferError
from .process import run_tool
from .progress import ProgressReporter
from .rclone_strategy import RcloneStrategy
from .strategy import BaseStrategy, SyncType, VerifyResult
from .utils import sanitize_name

logger = logging.getLogger(__name__)

MC_CURRENT_ITEM = re.compile(r"`([^`]+)`")


@dataclass
class ObjectInfo:
    """对象存储中的一个对象。"""
    key: str
    size: int = 0
    etag: str = ""
    last_modified: str = ""
    content_type: str = ""


class MinioStrategy(BaseStrategy):
    """MinIO 与 S3 兼容存储之间的同步。"""

    def __init__(self, options: Optional[SyncOptions] = None,
                 use_rclone: bool = True, rclone: Optional[RcloneStrategy] = None,
                 mc_binary: str = "mc"):
        """
        参数:
            options: 同步选项
            use_rclone: True 时走 rclone，否则走 mc
            rclone: 共享的 rclone 策略实例（复用已配置的远程）
            mc_binary: mc 可执行文件
        """
        super().__init__("minio", SyncType.STORAGE, incremental=True, resume=True)
        self.options = options or SyncOptions()
        self.use_rclone = use_rclone
        self.rclone = rclone or RcloneStrategy(self.options)
        self.mc_binary = mc_binary
        self._aliases = set()
        self._alias_lock = threading.Lock()

    # ---- mc 别名 ----

    def alias_name(self, endpoint: Endpoint) -> str:
        return sanitize_name(f"{endpoint.type}_{endpoint.host or endpoint.region}_{endpoint.port}")

    def endpoint_url(self, endpoint: Endpoint) -> str:
        """
        返回端点的 S3 兼容访问地址。

        异常:
            ConfigurationError: 端点类型没有 S3 兼容地址
        """
        t = endpoint.type
        if t == "s3":
            if endpoint.region:
                return f"https://s3.{endpoint.region}.amazonaws.com"
            return "https://s3.amazonaws.com"
        if t == "gcs":
            return "https://storage.googleapis.com"
        if t == "azure-blob":
            return f"https://{endpoint.host}.blob.core.windows.net"
        if t == "minio":
            scheme = "https" if endpoint.ssl else "http"
            url = f"{scheme}://{endpoint.host}"
            if endpoint.port > 0:
                url = f"{url}:{endpoint.port}"
            return url
        raise ConfigurationError(f"unsupported endpoint type for mc: {t}")

    def configure_alias(self, endpoint: Endpoint, cancel_event: Optional[threading.Event] = None) -> str:
        alias = self.alias_name(endpoint)
        with self._alias_lock:
            if alias in self._aliases:
                return alias
            args = [self.mc_binary, "alias", "set", alias, self.endpoint_url(endpoint)]
            creds = endpoint.credentials
            if creds is not None and creds.has_access_keys():
                args += [creds.access_key, creds.secret_key]
            try:
                run_tool(args, cancel_event=cancel_event)
            except TransferError as e:
                raise ConfigurationError(f"failed to configure mc alias {alias}: {e}") from e
            self._aliases.add(alias)
            logger.info(f"🔧 已配置 mc 别名 {alias}")
        return alias

    def mc_path(self, endpoint: Endpoint) -> str:
        path = f"{self.alias_name(endpoint)}/{endpoint.bucket}"
        if endpoint.path:
            path = f"{path}/{endpoint.path.lstrip('/')}"
        return path

    # ---- 大小 ----

    def estimate_size(self, source: Endpoint) -> int:
        if self.use_rclone:
            return self.rclone.estimate_size(source)
        self.configure_alias(source)
        result = run_tool([self.mc_binary, "du", "--recursive", "--json", self.mc_path(source)])
        total = 0
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                total += int(json.loads(line).get("size", 0))
            except ValueError:
                logger.debug(f"忽略无法解析的 mc du 输出: {line}")
        return total

    def count_objects(self, endpoint: Endpoint) -> int:
        if self.use_rclone:
            return self.rclone.count_objects(endpoint)
        return len(self.list_objects(endpoint))

    # ---- 同步 ----

    def sync(self, source: Endpoint, target: Endpoint,
             progress: Optional[queue.Queue] = None,
             cancel_event: Optional[threading.Event] = None):
        if not source.bucket:
            raise ConfigurationError("source bucket is required")
        if not target.bucket:
            raise ConfigurationError("target bucket is required")

        reporter = ProgressReporter("minio-sync", progress)
        reporter.set_phase("initializing")

        if self.use_rclone:
            self.rclone.configure_remote(source, cancel_event)
            self.rclone.configure_remote(target, cancel_event)
            self.rclone.sync_configured(source, target, reporter, cancel_event)
            return

        self.sync_with_mc(source, target, reporter, cancel_event)

    def build_mirror_args(self, source: Endpoint, target: Endpoint) -> List[str]:
        args = [self.mc_binary, "mirror"]
        if self.options.delete_extraneous:
            args.append("--remove")
        if self.options.dry_run:
            args.append("--fake")
        return args + [self.mc_path(source), self.mc_path(target)]

    def parse_mc_line(self, line: str, reporter: ProgressReporter):
        """mc mirror 每完成一个对象输出一行，形如 `src` -> `dst`  1.2 MiB"""
        if "/" in line and "iB" in line:
            reporter.increment_items(1)
            match = MC_CURRENT_ITEM.search(line)
            if match:
                reporter.set_current_item(match.group(1))
        elif "ERROR" in line:
            logger.warning(f"⚠️  mc: {line.strip()}")
            reporter.error(line.strip())

    def sync_with_mc(self, source: Endpoint, target: Endpoint,
                     reporter: ProgressReporter,
                     cancel_event: Optional[threading.Event] = None):
        self.configure_alias(source, cancel_event)
        self.configure_alias(target, cancel_event)

        try:
            size = self.estimate_size(source)
            reporter.set_totals(size, 0)
        except TransferError as e:
            reporter.warning(f"could not estimate size: {e}")

        try:
            run_tool([self.mc_binary, "mb", "--ignore-existing",
                      f"{self.alias_name(target)}/{target.bucket}"], cancel_event=cancel_event)
        except TransferError as e:
            logger.warning(f"⚠️  创建目标桶失败: {e}")
            reporter.warning(f"could not create target bucket: {e}")

        reporter.set_phase("syncing")
        try:
            run_tool(self.build_mirror_args(source, target), cancel_event=cancel_event,
                     on_line=lambda line: self.parse_mc_line(line, reporter))
        except TransferError as e:
            raise TransferError(f"mc mirror failed: {e}") from e
        reporter.set_phase("completed")
        logger.info(f"✅ mc mirror 完成: {self.mc_path(target)}")

    # ---- 验证 ----

    def verify(self, source: Endpoint, target: Endpoint) -> VerifyResult:
        result = VerifyResult()
        result.source_count = self.count_objects(source)
        result.target_count = self.count_objects(target)
        if result.source_count != result.target_count:
            result.add_mismatch(f"object count mismatch: source={result.source_count}, "
                                f"target={result.target_count}")

        if self.use_rclone and self.options.checksum_verify:
            for line in self.rclone.check_differences(source, target):
                if "ERROR" in line or "differ" in line or line.startswith("*") or line.startswith("-"):
                    result.add_mismatch(line)

        logger.info(f"🔍 {result}")
        return result

    # ---- 单对象操作 ----

    def list_objects(self, endpoint: Endpoint) -> List[ObjectInfo]:
        if self.use_rclone:
            return [ObjectInfo(key=f.path, size=f.size, etag=f.hashes.get("md5", ""),
                               last_modified=f.mod_time, content_type=f.mime_type)
                    for f in self.rclone.list_files(endpoint) if not f.is_dir]

        self.configure_alias(endpoint)
        result = run_tool([self.mc_binary, "ls", "--recursive", "--json", self.mc_path(endpoint)])
        objects = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except ValueError:
                logger.debug(f"忽略无法解析的 mc ls 输出: {line}")
                continue
            if data.get("type") == "folder":
                continue
            objects.append(ObjectInfo(key=data.get("key", ""), size=int(data.get("size", 0)),
                                      etag=data.get("etag", ""),
                                      last_modified=data.get("lastModified", "")))
        return objects

    def copy_object(self, source: Endpoint, target: Endpoint, key: str,
                    cancel_event: Optional[threading.Event] = None):
        if self.use_rclone:
            self.rclone.copy_file(source, target, key, cancel_event)
            return
        self.configure_alias(source)
        self.configure_alias(target)
        run_tool([self.mc_binary, "cp",
                  f"{self.alias_name(source)}/{source.bucket}/{key}",
                  f"{self.alias_name(target)}/{target.bucket}/{key}"],
                 cancel_event=cancel_event)
