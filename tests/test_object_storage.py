"""Tests for rclone, MinIO and the parallel object worker pool."""

import queue
import threading

import pytest
from conftest import MemoryObjectStore

from data_sync.config import SyncOptions
from data_sync.endpoint import Credentials, Endpoint
from data_sync.exceptions import ConfigurationError, SyncCancelledError, TransferError
from data_sync.minio_strategy import MinioStrategy
from data_sync.parallel_sync import ParallelObjectSync, S3ObjectStore
from data_sync.progress import ProgressReporter
from data_sync.rclone_strategy import RcloneFile, RcloneStrategy

S3 = Endpoint(type="s3", bucket="prod-assets", region="eu-west-1",
              credentials=Credentials(access_key="AK", secret_key="SK"))
MINIO = Endpoint(type="minio", host="minio.local", port=9000, bucket="assets",
                 credentials=Credentials(access_key="mk", secret_key="ms"))


class TestRcloneStrategy:
    """Tests for rclone argument building and output parsing."""

    def test_remote_names(self) -> None:
        """Should derive one remote name per provider."""
        strategy = RcloneStrategy()
        assert strategy.remote_name(S3) == "s3_eu-west-1"
        assert strategy.remote_name(Endpoint(type="gcs")) == "gcs"
        assert strategy.remote_name(Endpoint(type="azure-blob", host="acct")) == "azure_acct"
        assert strategy.remote_name(MINIO) == "minio_minio_local_9000"
        assert strategy.remote_name(Endpoint(type="local")) == "local"
        assert strategy.remote_name(Endpoint(type="b2")) == "b2_remote"

    def test_build_path(self) -> None:
        """Should strip the leading slash of the prefix."""
        strategy = RcloneStrategy()
        assert strategy.build_path("r", "bucket") == "r:bucket"
        assert strategy.build_path("r", "bucket", "/a/b") == "r:bucket/a/b"

    def test_config_args(self) -> None:
        """Should build provider-specific config create arguments."""
        strategy = RcloneStrategy()
        assert strategy.build_config_args(S3) == [
            "config", "create", "s3_eu-west-1", "s3", "provider=AWS", "region=eu-west-1",
            "access_key_id=AK", "secret_access_key=SK"]
        assert "env_auth=true" in strategy.build_config_args(Endpoint(type="s3", region="us-east-1"))
        assert "endpoint=http://minio.local:9000" in strategy.build_config_args(MINIO)
        assert "provider=Minio" in strategy.build_config_args(MINIO)
        assert strategy.build_config_args(Endpoint(type="local")) == []
        with pytest.raises(ConfigurationError):
            strategy.build_config_args(Endpoint(type="ftp"))

    def test_sync_args(self) -> None:
        """Should map options onto rclone flags."""
        options = SyncOptions(parallel=8, delete_extraneous=True, dry_run=True,
                              bandwidth_bytes_per_sec=20 * 1024 * 1024)
        args = RcloneStrategy(options).build_sync_args("a:x", "b:y")
        assert args[:3] == ["sync", "a:x", "b:y"]
        for flag in ("--transfers=8", "--checkers=8", "--checksum", "--delete-during",
                     "--bwlimit=20M", "--dry-run", "--s3-no-check-bucket"):
            assert flag in args

    def test_sync_args_defaults(self) -> None:
        """Should leave out optional flags by default."""
        args = RcloneStrategy(SyncOptions(checksum_verify=False)).build_sync_args("a:x", "b:y")
        assert "--checksum" not in args
        assert "--delete-during" not in args
        assert not any(a.startswith("--bwlimit") for a in args)

    def test_config_path(self) -> None:
        """Should pass an explicit config file to every command."""
        strategy = RcloneStrategy(config_path="/tmp/rclone.conf", binary="rc")
        assert strategy._command("version") == ["rc", "--config", "/tmp/rclone.conf", "version"]

    def test_parse_bytes_progress(self) -> None:
        """Should derive bytes done from the reported percentage."""
        reporter = ProgressReporter("t")
        reporter.set_totals(1000, 10)
        RcloneStrategy().parse_progress_line(
            "Transferred:   500 B / 1000 B, 50%, 10 B/s, ETA 1s", reporter)
        progress = reporter.get_progress()
        assert progress.bytes_done == 500
        assert progress.message == "50.0% complete"

    def test_parse_count_progress(self) -> None:
        """Should read object counts."""
        reporter = ProgressReporter("t")
        RcloneStrategy().parse_progress_line("Transferred:            5 / 10, 50%", reporter)
        progress = reporter.get_progress()
        assert progress.items_done == 5
        assert progress.message == "5/10 objects (50.0%)"

    def test_parse_error_line(self) -> None:
        """Should count ERROR lines."""
        reporter = ProgressReporter("t")
        RcloneStrategy().parse_progress_line("ERROR : a.txt: Failed to copy", reporter)
        assert reporter.get_progress().errors == 1

    def test_requires_buckets(self) -> None:
        """Should reject object endpoints without a bucket."""
        with pytest.raises(ConfigurationError, match="source bucket is required"):
            RcloneStrategy().sync(Endpoint(type="s3"), MINIO)

    def test_rclone_file(self) -> None:
        """Should parse lsjson entries."""
        item = RcloneFile.from_json({"Path": "a/b.txt", "Name": "b.txt", "Size": 12,
                                     "IsDir": False, "Hashes": {"md5": "abc"}})
        assert item.path == "a/b.txt"
        assert item.size == 12
        assert item.hashes == {"md5": "abc"}


class TestMinioStrategy:
    """Tests for the MinIO strategy."""

    def test_endpoint_urls(self) -> None:
        """Should resolve S3-compatible URLs per provider."""
        strategy = MinioStrategy(use_rclone=False)
        assert strategy.endpoint_url(S3) == "https://s3.eu-west-1.amazonaws.com"
        assert strategy.endpoint_url(Endpoint(type="s3")) == "https://s3.amazonaws.com"
        assert strategy.endpoint_url(Endpoint(type="gcs")) == "https://storage.googleapis.com"
        assert strategy.endpoint_url(Endpoint(type="azure-blob", host="acct")) == \
            "https://acct.blob.core.windows.net"
        assert strategy.endpoint_url(MINIO) == "http://minio.local:9000"
        with pytest.raises(ConfigurationError):
            strategy.endpoint_url(Endpoint(type="ftp"))

    def test_mirror_args(self) -> None:
        """Should map delete and dry-run onto mc mirror flags."""
        strategy = MinioStrategy(SyncOptions(delete_extraneous=True, dry_run=True), use_rclone=False)
        args = strategy.build_mirror_args(S3, MINIO)
        assert args[:4] == ["mc", "mirror", "--remove", "--fake"]
        assert args[-1] == f"{strategy.alias_name(MINIO)}/assets"

    def test_parse_mc_line(self) -> None:
        """Should count finished objects and track the current one."""
        reporter = ProgressReporter("t")
        strategy = MinioStrategy(use_rclone=False)
        strategy.parse_mc_line("`s3/prod-assets/a.png` -> `minio/assets/a.png`  1.20 MiB", reporter)
        progress = reporter.get_progress()
        assert progress.items_done == 1
        assert progress.current_item == "s3/prod-assets/a.png"

    def test_requires_buckets(self) -> None:
        """Should reject missing buckets before any tool runs."""
        with pytest.raises(ConfigurationError, match="target bucket is required"):
            MinioStrategy().sync(S3, Endpoint(type="minio", host="m"))

    def test_capabilities(self) -> None:
        """Should support incremental and resumable sync."""
        strategy = MinioStrategy()
        assert strategy.name == "minio"
        assert strategy.supports_incremental()
        assert strategy.supports_resume()


def bucket(name: str, kind: str = "minio") -> Endpoint:
    return Endpoint(type=kind, host="store", bucket=name)


class TestParallelObjectSync:
    """Tests for the worker-pool strategy."""

    def test_copies_all_objects(self, memory_store: MemoryObjectStore) -> None:
        """Should copy 3 objects totaling 300 bytes and verify counts."""
        for key in ("a", "b", "c"):
            memory_store.put("src", key, b"x" * 100)
        strategy = ParallelObjectSync(SyncOptions(parallel=2), store=memory_store)

        strategy.sync(bucket("src", "s3"), bucket("dst"))

        assert sorted(memory_store.buckets["dst"]) == ["a", "b", "c"]
        result = strategy.verify(bucket("src", "s3"), bucket("dst"))
        assert result.valid
        assert result.source_count == result.target_count == 3
        assert result.details["target_bytes"] == 300

    def test_final_progress(self, memory_store: MemoryObjectStore) -> None:
        """Should publish the final byte and item totals."""
        for key in ("a", "b", "c"):
            memory_store.put("src", key, b"x" * 100)
        out: queue.Queue = queue.Queue(maxsize=100)
        ParallelObjectSync(store=memory_store, workers=3).sync(bucket("src"), bucket("dst"), out)

        snapshots = []
        while not out.empty():
            snapshots.append(out.get_nowait())
        last = snapshots[-1]
        assert last.phase == "completed"
        assert (last.bytes_done, last.items_done) == (300, 3)
        assert (last.bytes_total, last.items_total) == (300, 3)

    def test_failures_counted_not_fatal_to_siblings(self, memory_store: MemoryObjectStore) -> None:
        """Should copy the other objects and then report the failure count."""
        for key in ("a", "b", "c", "d"):
            memory_store.put("src", key, b"data")
        memory_store.fail_keys = {"b"}
        strategy = ParallelObjectSync(store=memory_store, workers=2)

        with pytest.raises(TransferError, match="sync completed with 1 errors"):
            strategy.sync(bucket("src"), bucket("dst"))
        assert sorted(memory_store.buckets["dst"]) == ["a", "c", "d"]

    def test_many_objects_through_bounded_queue(self, memory_store: MemoryObjectStore) -> None:
        """Should handle more objects than the work queue can hold."""
        for i in range(200):
            memory_store.put("src", f"obj-{i:03d}", b"z")
        ParallelObjectSync(store=memory_store, workers=2).sync(bucket("src"), bucket("dst"))
        assert len(memory_store.buckets["dst"]) == 200

    def test_dry_run(self, memory_store: MemoryObjectStore) -> None:
        """Should list without copying in dry-run mode."""
        memory_store.put("src", "a", b"1")
        ParallelObjectSync(SyncOptions(dry_run=True), store=memory_store).sync(bucket("src"), bucket("dst"))
        assert "dst" not in memory_store.buckets

    def test_cancelled(self, memory_store: MemoryObjectStore) -> None:
        """Should stop copying once cancelled."""
        memory_store.put("src", "a", b"1")
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(SyncCancelledError):
            ParallelObjectSync(store=memory_store).sync(bucket("src"), bucket("dst"),
                                                        cancel_event=cancel)
        assert "dst" not in memory_store.buckets

    def test_verify_reports_differences(self, memory_store: MemoryObjectStore) -> None:
        """Should report missing objects and size differences."""
        memory_store.put("src", "a", b"12345")
        memory_store.put("src", "b", b"1")
        memory_store.put("dst", "a", b"123")
        result = ParallelObjectSync(store=memory_store).verify(bucket("src"), bucket("dst"))
        assert not result.valid
        assert "object count mismatch: source=2, target=1" in result.mismatches
        assert "object a: size mismatch source=5 target=3" in result.mismatches
        assert "object b: missing in target" in result.mismatches

    def test_estimate_size(self, memory_store: MemoryObjectStore) -> None:
        """Should sum object sizes."""
        memory_store.put("src", "a", b"12345")
        assert ParallelObjectSync(store=memory_store).estimate_size(bucket("src")) == 5


class TestS3ObjectStore:
    """Tests for S3ObjectStore endpoint resolution."""

    def test_endpoint_url(self) -> None:
        """Should use the AWS default for s3 and explicit URLs otherwise."""
        store = S3ObjectStore()
        assert store.endpoint_url(S3) is None
        assert store.endpoint_url(MINIO) == "http://minio.local:9000"
        assert store.endpoint_url(Endpoint(type="gcs")) == "https://storage.googleapis.com"
        with pytest.raises(ConfigurationError):
            store.endpoint_url(Endpoint(type="azure-blob"))

    def test_client_is_cached(self) -> None:
        """Should reuse one boto3 client per endpoint."""
        store = S3ObjectStore()
        assert store.client(MINIO) is store.client(MINIO)
