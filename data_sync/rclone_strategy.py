"""
rclone对象存储同步策略

通过 rclone 子进程在云对象存储（S3、GCS、Azure Blob）和自托管对象存储
之间做单向镜像，逐行扫描工具输出解析传输统计。
"""

import re
import json
import queue
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Set

from .config import SyncOptions
from .endpoint import Endpoint
from .exceptions import ConfigurationError, TransferError
from .process import run_tool
from .progress import ProgressReporter
from .strategy import BaseStrategy, SyncType, VerifyResult
from .utils import sanitize_name

logger = logging.getLogger(__name__)

# 例如 "Transferred:   1.234 GiB / 10.000 GiB, 12%, 50.000 MiB/s, ETA 3m15s"
TRANSFERRED_BYTES = re.compile(r"Transferred:\s+([0-9.]+)\s*([a-zA-Z]+)\s*/\s*([0-9.]+)\s*([a-zA-Z]+),\s*([0-9]+)%")
# 例如 "Transferred:   100 / 1000, 10%"
TRANSFERRED_COUNT = re.compile(r"Transferred:\s+(\d+)\s*/\s*(\d+),\s*(\d+)%")


@dataclass
class RcloneFile:
    """rclone lsjson 输出中的一个对象。"""
    path: str
    name: str = ""
    size: int = 0
    mime_type: str = ""
    mod_time: str = ""
    is_dir: bool = False
    hashes: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'RcloneFile':
        return cls(
            path=data.get("Path", ""),
            name=data.get("Name", ""),
            size=int(data.get("Size", 0) or 0),
            mime_type=data.get("MimeType", ""),
            mod_time=data.get("ModTime", ""),
            is_dir=bool(data.get("IsDir", False)),
            hashes=dict(data.get("Hashes") or {}),
        )


class RcloneStrategy(BaseStrategy):
    """基于 rclone 的对象存储同步。"""

    def __init__(self, options: Optional[SyncOptions] = None,
                 config_path: Optional[str] = None, binary: str = "rclone"):
        """
        参数:
            options: 同步选项（并发、校验、删除多余对象、带宽、试运行）
            config_path: rclone 配置文件路径，None 使用 rclone 默认位置
            binary: rclone 可执行文件
        """
        super().__init__("rclone", SyncType.STORAGE, incremental=True, resume=True)
        self.options = options or SyncOptions()
        self.config_path = config_path
        self.binary = binary
        self.checkers = 8
        self.buffer_size = "16M"
        self.verbose = True
        self.retries = 3
        self.low_level_retries = 10
        self._configured: Set[str] = set()
        self._config_lock = threading.Lock()

    def supported_providers(self) -> List[str]:
        return ["s3", "gcs", "azure-blob", "minio", "b2", "wasabi", "digitalocean", "local"]

    def _command(self, *args: str) -> List[str]:
        cmd = [self.binary]
        if self.config_path:
            cmd += ["--config", self.config_path]
        return cmd + list(args)

    # ---- 远程配置 ----

    def remote_name(self, endpoint: Endpoint) -> str:
        """为端点生成唯一的远程名称。"""
        t = endpoint.type
        if t == "s3":
            return f"s3_{endpoint.region}"
        if t == "gcs":
            return "gcs"
        if t == "azure-blob":
            return f"azure_{endpoint.host}"
        if t == "minio":
            return f"minio_{sanitize_name(endpoint.host)}_{endpoint.port}"
        if t == "local":
            return "local"
        return f"{t}_remote"

    def build_path(self, remote: str, bucket: str, prefix: str = "") -> str:
        path = f"{remote}:{bucket}"
        if prefix:
            path = f"{path}/{prefix.lstrip('/')}"
        return path

    def endpoint_path(self, endpoint: Endpoint) -> str:
        return self.build_path(self.remote_name(endpoint), endpoint.bucket, endpoint.path)

    def build_config_args(self, endpoint: Endpoint) -> List[str]:
        """
        构建 rclone config create 的参数。

        返回:
            参数列表；本地端点不需要配置时返回空列表

        异常:
            ConfigurationError: 不支持的端点类型
        """
        remote = self.remote_name(endpoint)
        creds = endpoint.credentials
        t = endpoint.type

        if t == "local":
            return []

        if t == "s3":
            args = ["config", "create", remote, "s3", "provider=AWS"]
            if endpoint.region:
                args.append(f"region={endpoint.region}")
            if creds is not None:
                if creds.access_key:
                    args.append(f"access_key_id={creds.access_key}")
                if creds.secret_key:
                    args.append(f"secret_access_key={creds.secret_key}")
            else:
                args.append("env_auth=true")
            return args

        if t == "gcs":
            args = ["config", "create", remote, "gcs", "bucket_policy_only=true"]
            if creds is not None and creds.key_file:
                args.append(f"service_account_file={creds.key_file}")
            if "project" in endpoint.options:
                args.append(f"project_number={endpoint.options['project']}")
            return args

        if t == "azure-blob":
            args = ["config", "create", remote, "azureblob"]
            if endpoint.host:
                args.append(f"account={endpoint.host}")
            if creds is not None:
                if creds.secret_key:
                    args.append(f"key={creds.secret_key}")
                if creds.token:
                    args.append(f"sas_url={creds.token}")
            return args

        if t == "minio":
            scheme = "https" if endpoint.ssl else "http"
            url = f"{scheme}://{endpoint.host}"
            if endpoint.port > 0:
                url = f"{url}:{endpoint.port}"
            args = ["config", "create", remote, "s3", "provider=Minio", f"endpoint={url}"]
            if creds is not None:
                if creds.access_key:
                    args.append(f"access_key_id={creds.access_key}")
                if creds.secret_key:
                    args.append(f"secret_access_key={creds.secret_key}")
            return args

        raise ConfigurationError(f"unsupported endpoint type: {t}")

    def configure_remote(self, endpoint: Endpoint, cancel_event: Optional[threading.Event] = None):
        remote = self.remote_name(endpoint)
        with self._config_lock:
            if remote in self._configured:
                return
            args = self.build_config_args(endpoint)
            if args:
                try:
                    run_tool(self._command(*args), cancel_event=cancel_event)
                except TransferError as e:
                    raise ConfigurationError(f"failed to configure {endpoint.type} remote {remote}: {e}") from e
                logger.info(f"🔧 已配置 rclone 远程 {remote}")
            self._configured.add(remote)

    # ---- 大小 ----

    def size_info(self, endpoint: Endpoint, cancel_event: Optional[threading.Event] = None) -> Dict[str, int]:
        """rclone size --json，返回 {"count": ..., "bytes": ...}。"""
        self.configure_remote(endpoint, cancel_event)
        result = run_tool(self._command("size", self.endpoint_path(endpoint), "--json"),
                          cancel_event=cancel_event)
        try:
            data = json.loads(result.stdout)
        except ValueError as e:
            raise TransferError(f"failed to parse size info: {e}") from e
        return {"count": int(data.get("count", 0)), "bytes": int(data.get("bytes", 0))}

    def estimate_size(self, source: Endpoint) -> int:
        return self.size_info(source)["bytes"]

    def count_objects(self, source: Endpoint) -> int:
        return self.size_info(source)["count"]

    # ---- 同步 ----

    def build_sync_args(self, source_path: str, target_path: str) -> List[str]:
        opts = self.options
        args = ["sync", source_path, target_path,
                f"--transfers={opts.parallel}",
                f"--checkers={self.checkers}",
                "--progress", "--stats=1s", "--stats-one-line"]
        if self.buffer_size:
            args.append(f"--buffer-size={self.buffer_size}")
        if opts.checksum_verify:
            args.append("--checksum")
        if opts.delete_extraneous:
            args.append("--delete-during")
        bw = opts.bandwidth_limit()
        if bw:
            args.append(f"--bwlimit={bw}")
        if opts.dry_run:
            args.append("--dry-run")
        if self.verbose:
            args.append("-v")
        args += [f"--retries={self.retries}",
                 f"--low-level-retries={self.low_level_retries}",
                 "--s3-no-check-bucket"]
        return args

    def parse_progress_line(self, line: str, reporter: ProgressReporter):
        """解析 rclone 的一行统计输出并更新进度。"""
        match = TRANSFERRED_BYTES.search(line)
        if match:
            pct = float(match.group(5))
            current = reporter.get_progress()
            if current.bytes_total > 0:
                done = int(current.bytes_total * pct / 100)
                reporter.update(done, current.items_done, f"{pct:.1f}% complete")

        match = TRANSFERRED_COUNT.search(line)
        if match:
            done, total, pct = int(match.group(1)), int(match.group(2)), float(match.group(3))
            current = reporter.get_progress()
            reporter.update(current.bytes_done, done, f"{done}/{total} objects ({pct:.1f}%)")

        if "ERROR" in line:
            logger.warning(f"⚠️  rclone: {line.strip()}")
            reporter.error(line.strip())

    def _require_buckets(self, source: Endpoint, target: Endpoint):
        if source.type != "local" and not source.bucket:
            raise ConfigurationError("source bucket is required")
        if target.type != "local" and not target.bucket:
            raise ConfigurationError("target bucket is required")

    def sync(self, source: Endpoint, target: Endpoint,
             progress: Optional[queue.Queue] = None,
             cancel_event: Optional[threading.Event] = None):
        self._require_buckets(source, target)
        reporter = ProgressReporter("rclone-sync", progress)
        reporter.set_phase("initializing")
        self.configure_remote(source, cancel_event)
        self.configure_remote(target, cancel_event)
        self.sync_configured(source, target, reporter, cancel_event)

    def sync_configured(self, source: Endpoint, target: Endpoint,
                        reporter: ProgressReporter,
                        cancel_event: Optional[threading.Event] = None):
        """在远程已配置的前提下执行 rclone sync。"""
        try:
            info = self.size_info(source, cancel_event)
            reporter.set_totals(info["bytes"], info["count"])
        except TransferError as e:
            reporter.warning(f"could not estimate size: {e}")

        reporter.set_phase("syncing")
        source_path = self.endpoint_path(source)
        target_path = self.endpoint_path(target)
        logger.info(f"🔄 rclone sync {source_path} -> {target_path}")

        try:
            run_tool(self._command(*self.build_sync_args(source_path, target_path)),
                     cancel_event=cancel_event,
                     on_line=lambda line: self.parse_progress_line(line, reporter))
        except TransferError as e:
            raise TransferError(f"rclone sync failed: {e}") from e

        reporter.set_phase("completed")
        logger.info(f"✅ rclone sync 完成: {target_path}")

    # ---- 验证 ----

    def check_differences(self, source: Endpoint, target: Endpoint) -> List[str]:
        """rclone check --one-way --combined -，返回有差异的行。"""
        result = run_tool(self._command("check", self.endpoint_path(source), self.endpoint_path(target),
                                        "--one-way", "--combined", "-"),
                          on_line=None, check=False)
        if result.returncode == 0:
            return []
        differences = []
        for line in (result.stdout + "\n" + result.stderr).splitlines():
            line = line.strip()
            if line and (line.startswith("-") or line.startswith("*")):
                differences.append(line)
        return differences

    def verify(self, source: Endpoint, target: Endpoint) -> VerifyResult:
        result = VerifyResult()
        self.configure_remote(source)
        self.configure_remote(target)

        source_info = self.size_info(source)
        target_info = self.size_info(target)
        result.source_count = source_info["count"]
        result.target_count = target_info["count"]

        if source_info["count"] != target_info["count"]:
            result.add_mismatch(f"object count mismatch: source={source_info['count']}, "
                                f"target={target_info['count']}")
        if source_info["bytes"] != target_info["bytes"]:
            result.add_mismatch(f"total size mismatch: source={source_info['bytes']} bytes, "
                                f"target={target_info['bytes']} bytes")

        if self.options.checksum_verify:
            for line in self.check_differences(source, target):
                result.add_mismatch(line)

        result.details["source_bytes"] = source_info["bytes"]
        result.details["target_bytes"] = target_info["bytes"]
        logger.info(f"🔍 {result}")
        return result

    # ---- 单对象操作 ----

    def list_files(self, endpoint: Endpoint) -> List[RcloneFile]:
        self.configure_remote(endpoint)
        result = run_tool(self._command("lsjson", self.endpoint_path(endpoint), "--recursive"))
        try:
            return [RcloneFile.from_json(item) for item in json.loads(result.stdout or "[]")]
        except ValueError as e:
            raise TransferError(f"failed to parse file list: {e}") from e

    def copy_file(self, source: Endpoint, target: Endpoint, file_path: str,
                  cancel_event: Optional[threading.Event] = None):
        self.configure_remote(source)
        self.configure_remote(target)
        src = f"{self.remote_name(source)}:{source.bucket}/{file_path}"
        dst = f"{self.remote_name(target)}:{target.bucket}/{file_path}"
        args = ["copyto", src, dst]
        if self.options.checksum_verify:
            args.append("--checksum")
        run_tool(self._command(*args), cancel_event=cancel_event)

    def delete_file(self, endpoint: Endpoint, file_path: str):
        self.configure_remote(endpoint)
        run_tool(self._command("deletefile", f"{self.remote_name(endpoint)}:{endpoint.bucket}/{file_path}"))

    def create_bucket(self, endpoint: Endpoint):
        self.configure_remote(endpoint)
        run_tool(self._command("mkdir", f"{self.remote_name(endpoint)}:{endpoint.bucket}"))
