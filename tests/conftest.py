"""Shared fixtures: fake strategies, an in-memory object store and a tiny RESP server."""

import socketserver
import threading
import time
from typing import Dict, List, Optional, Tuple

import pytest

from data_sync.endpoint import Endpoint
from data_sync.minio_strategy import ObjectInfo
from data_sync.parallel_sync import ObjectStore
from data_sync.progress import ProgressReporter
from data_sync.strategy import BaseStrategy, StrategyRegistry, SyncType, VerifyResult
from data_sync.utils import check_cancelled


class FakeStrategy(BaseStrategy):
    """Strategy double that records calls and can block or fail on demand."""

    def __init__(self, name: str = "fake", sync_type: SyncType = SyncType.STORAGE,
                 fail_on: Tuple[str, ...] = (), updates: int = 3) -> None:
        super().__init__(name, sync_type)
        self.fail_on = set(fail_on)
        self.updates = updates
        self.calls: List[str] = []
        self.started: Dict[str, threading.Event] = {}
        self.release: Dict[str, threading.Event] = {}
        self.unwind_delay = 0.0
        self.active = 0
        self.max_active = 0
        self._calls_lock = threading.Lock()

    def block(self, source_host: str) -> Tuple[threading.Event, threading.Event]:
        """Make sync for the given source host wait until released."""
        self.started[source_host] = threading.Event()
        self.release[source_host] = threading.Event()
        return self.started[source_host], self.release[source_host]

    def estimate_size(self, source: Endpoint) -> int:
        return 100

    def sync(self, source, target, progress=None, cancel_event=None) -> None:
        with self._calls_lock:
            self.calls.append(source.host)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self._sync(source, progress, cancel_event)
        finally:
            with self._calls_lock:
                self.active -= 1

    def _sync(self, source, progress, cancel_event) -> None:
        reporter = ProgressReporter(source.host, progress)
        reporter.set_totals(100, self.updates)
        if source.host in self.started:
            self.started[source.host].set()
            while not self.release[source.host].wait(0.05):
                if cancel_event is not None and cancel_event.is_set():
                    time.sleep(self.unwind_delay)
                    check_cancelled(cancel_event)
        for i in range(self.updates):
            reporter.update((i + 1) * 100 // self.updates, i + 1, f"step {i + 1}")
        if source.host in self.fail_on:
            raise RuntimeError(f"sync of {source.host} failed")

    def verify(self, source, target) -> VerifyResult:
        return VerifyResult(source_count=1, target_count=1)


@pytest.fixture
def fake_strategy() -> FakeStrategy:
    return FakeStrategy()


@pytest.fixture
def fake_registry(fake_strategy: FakeStrategy) -> StrategyRegistry:
    registry = StrategyRegistry()
    registry.register(fake_strategy)
    return registry


class MemoryObjectStore(ObjectStore):
    """In-memory buckets keyed by bucket name."""

    def __init__(self) -> None:
        self.buckets: Dict[str, Dict[str, bytes]] = {}
        self.fail_keys: set = set()
        self._lock = threading.Lock()

    def put(self, bucket: str, key: str, data: bytes) -> None:
        self.buckets.setdefault(bucket, {})[key] = data

    def list_objects(self, endpoint: Endpoint) -> List[ObjectInfo]:
        with self._lock:
            items = sorted(self.buckets.get(endpoint.bucket, {}).items())
        return [ObjectInfo(key=k, size=len(v)) for k, v in items]

    def copy_object(self, source: Endpoint, target: Endpoint, key: str) -> int:
        if key in self.fail_keys:
            raise IOError(f"cannot copy {key}")
        with self._lock:
            data = self.buckets[source.bucket][key]
            self.buckets.setdefault(target.bucket, {})[key] = data
        return len(data)


@pytest.fixture
def memory_store() -> MemoryObjectStore:
    return MemoryObjectStore()


class _KeyStore:
    """Keys with optional absolute expiry in milliseconds."""

    def __init__(self) -> None:
        self.data: Dict[bytes, Tuple[bytes, Optional[float]]] = {}
        self.lock = threading.Lock()

    def _alive(self, key: bytes) -> bool:
        entry = self.data.get(key)
        if entry is None:
            return False
        expire_at = entry[1]
        if expire_at is not None and time.time() * 1000 >= expire_at:
            del self.data[key]
            return False
        return True

    def set(self, key: bytes, value: bytes, px: Optional[int] = None) -> None:
        expire_at = time.time() * 1000 + px if px else None
        self.data[key] = (value, expire_at)

    def pttl(self, key: bytes) -> int:
        if not self._alive(key):
            return -2
        expire_at = self.data[key][1]
        if expire_at is None:
            return -1
        return int(expire_at - time.time() * 1000)

    def keys(self) -> List[bytes]:
        return [k for k in list(self.data) if self._alive(k)]


def _bulk(value: Optional[bytes]) -> bytes:
    if value is None:
        return b"$-1\r\n"
    return b"$%d\r\n%s\r\n" % (len(value), value)


class _RESPHandler(socketserver.StreamRequestHandler):

    def read_command(self) -> Optional[List[bytes]]:
        line = self.rfile.readline()
        if not line:
            return None
        count = int(line[1:].strip())
        args = []
        for _ in range(count):
            length = int(self.rfile.readline()[1:].strip())
            args.append(self.rfile.read(length + 2)[:-2])
        return args

    def handle(self) -> None:
        store: _KeyStore = self.server.store
        while True:
            args = self.read_command()
            if args is None:
                return
            with store.lock:
                reply = self.dispatch(store, args[0].upper(), args[1:])
            self.wfile.write(reply)

    def dispatch(self, store: _KeyStore, cmd: bytes, args: List[bytes]) -> bytes:
        if cmd in self.server.fail_commands:
            return b"-ERR injected failure\r\n"
        if cmd in (b"AUTH", b"SELECT", b"FLUSHDB", b"FLUSHALL"):
            if cmd.startswith(b"FLUSH"):
                store.data.clear()
            if cmd == b"AUTH" and args[-1] != self.server.password:
                return b"-WRONGPASS invalid password\r\n"
            return b"+OK\r\n"
        if cmd == b"INFO":
            keys = store.keys()
            expires = sum(1 for k in keys if store.data[k][1] is not None)
            text = "# Memory\r\nused_memory:%d\r\n" % (1024 * len(keys))
            if keys or self.server.extra_keyspace:
                text += "# Keyspace\r\n"
            if keys:
                text += "db0:keys=%d,expires=%d,avg_ttl=0\r\n" % (len(keys), expires)
            text += "".join(line + "\r\n" for line in self.server.extra_keyspace)
            if self.server.master is not None:
                text += ("# Replication\r\nrole:slave\r\nmaster_link_status:up\r\n"
                         "master_last_io_seconds_ago:0\r\nmaster_sync_in_progress:0\r\n"
                         "slave_repl_offset:42\r\n")
            return _bulk(text.encode())
        if cmd == b"SET":
            px = int(args[3]) if len(args) > 3 and args[2].upper() == b"PX" else None
            store.set(args[0], args[1], px)
            return b"+OK\r\n"
        if cmd == b"SCAN":
            keys = store.keys()
            return b"*2\r\n" + _bulk(b"0") + b"*%d\r\n" % len(keys) + b"".join(_bulk(k) for k in keys)
        if cmd == b"DUMP":
            if not store._alive(args[0]):
                return _bulk(None)
            return _bulk(b"dump:" + store.data[args[0]][0])
        if cmd == b"PTTL":
            if args[0] in self.server.expire_on_pttl:
                store.data.pop(args[0], None)
            return b":%d\r\n" % store.pttl(args[0])
        if cmd == b"RESTORE":
            key, ttl, payload = args[0], int(args[1]), args[2]
            if not payload.startswith(b"dump:"):
                return b"-ERR DUMP payload version or checksum are wrong\r\n"
            if store._alive(key) and b"REPLACE" not in [a.upper() for a in args[3:]]:
                return b"-BUSYKEY Target key name already exists.\r\n"
            store.set(key, payload[len(b"dump:"):], ttl or None)
            return b"+OK\r\n"
        if cmd == b"TYPE":
            return b"+string\r\n" if store._alive(args[0]) else b"+none\r\n"
        if cmd == b"REPLICAOF":
            if [a.upper() for a in args] == [b"NO", b"ONE"]:
                self.server.master = None
            else:
                self.server.master = (args[0], int(args[1]))
            self.server.replicaof_calls.append(args)
            return b"+OK\r\n"
        if cmd == b"LASTSAVE":
            return b":%d\r\n" % self.server.last_save
        if cmd == b"BGSAVE":
            self.server.last_save += 1
            return b"+Background saving started\r\n"
        if cmd == b"CONFIG" and args[0].upper() == b"GET":
            values = {b"dir": self.server.data_dir.encode(), b"dbfilename": b"dump.rdb"}
            if args[1] not in values:
                return b"*0\r\n"
            return b"*2\r\n" + _bulk(args[1]) + _bulk(values[args[1]])
        if cmd == b"RANDOMKEY":
            keys = store.keys()
            return _bulk(keys[0] if keys else None)
        return b"-ERR unknown command '%s'\r\n" % cmd


class FakeRedisServer(socketserver.ThreadingTCPServer):
    """Serves a small RESP command subset on an ephemeral port."""

    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, password: bytes = b"") -> None:
        super().__init__(("127.0.0.1", 0), _RESPHandler)
        self.store = _KeyStore()
        self.password = password
        self.master = None
        self.replicaof_calls: List[List[bytes]] = []
        self.fail_commands: set = set()
        self.expire_on_pttl: set = set()
        self.extra_keyspace: List[str] = []
        self.last_save = 1700000000
        self.data_dir = "/var/lib/redis"
        self._thread = threading.Thread(target=self.serve_forever, daemon=True)
        self._thread.start()

    @property
    def port(self) -> int:
        return self.server_address[1]

    def endpoint(self, **kwargs) -> Endpoint:
        return Endpoint(type="redis", host="127.0.0.1", port=self.port, **kwargs)

    def stop(self) -> None:
        self.shutdown()
        self.server_close()


@pytest.fixture
def redis_pair():
    """A (source, target) pair of fake cache servers."""
    source, target = FakeRedisServer(), FakeRedisServer()
    yield source, target
    source.stop()
    target.stop()
