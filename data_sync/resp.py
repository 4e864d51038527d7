"""
最小RESP协议客户端

直接通过TCP连接使用缓存服务器的线路协议，不依赖外部客户端库。
请求编码为批量字符串数组；回复支持简单字符串、错误、整数、
批量字符串和（可嵌套的）数组。
"""

import socket
import ssl
import logging
from typing import Optional, List, Union, Any

from .endpoint import Endpoint
from .exceptions import ProtocolError, ConnectionError
from .utils import retry_on_exception

logger = logging.getLogger(__name__)

CRLF = b"\r\n"
DEFAULT_PORT = 6379

Arg = Union[bytes, str, int, float]


def _to_bytes(value: Arg) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode('utf-8')
    return str(value).encode('ascii')


def encode_command(*args: Arg) -> bytes:
    """
    把命令编码为批量字符串数组。

    格式: *<n>\\r\\n$<len>\\r\\n<arg>\\r\\n...
    """
    parts = [b"*%d\r\n" % len(args)]
    for arg in args:
        data = _to_bytes(arg)
        parts.append(b"$%d\r\n" % len(data))
        parts.append(data)
        parts.append(CRLF)
    return b"".join(parts)


class RESPReader:
    """从类文件对象中读取并解码回复。"""

    def __init__(self, stream):
        self._stream = stream

    def _readline(self) -> bytes:
        line = self._stream.readline()
        if not line:
            raise ConnectionError("connection closed by server")
        if not line.endswith(CRLF):
            raise ProtocolError(f"unterminated reply line: {line!r}")
        return line[:-2]

    def _read_exact(self, n: int) -> bytes:
        data = self._stream.read(n + 2)
        if data is None or len(data) < n + 2:
            raise ConnectionError("connection closed while reading bulk reply")
        if data[-2:] != CRLF:
            raise ProtocolError("bulk reply not terminated by CRLF")
        return data[:-2]

    def read_reply(self) -> Any:
        """
        读取一个回复。

        返回:
            简单字符串为 str，整数为 int，批量字符串为 bytes（空为 None），
            数组为 list（空为 None）；错误回复返回 ProtocolError 实例而不抛出，
            以便数组中的错误元素不会打乱后续读取。
        """
        line = self._readline()
        if not line:
            raise ProtocolError("empty reply line")

        prefix, payload = line[:1], line[1:]
        if prefix == b"+":
            return payload.decode('utf-8', errors='replace')
        if prefix == b"-":
            return ProtocolError(payload.decode('utf-8', errors='replace'))
        if prefix == b":":
            return int(payload)
        if prefix == b"$":
            length = int(payload)
            if length < 0:
                return None
            return self._read_exact(length)
        if prefix == b"*":
            count = int(payload)
            if count < 0:
                return None
            return [self.read_reply() for _ in range(count)]

        raise ProtocolError(f"unknown reply type: {line[:20]!r}")


class RESPClient:
    """
    单连接RESP客户端。

    没有设置超时时，套接字读取会一直阻塞到对端响应。
    """

    def __init__(self, host: str = "localhost", port: int = DEFAULT_PORT,
                 timeout: Optional[float] = None, use_ssl: bool = False,
                 ca_file: Optional[str] = None):
        self.host = host
        self.port = port or DEFAULT_PORT
        self.timeout = timeout
        self.use_ssl = use_ssl
        self.ca_file = ca_file
        self._sock: Optional[socket.socket] = None
        self._reader: Optional[RESPReader] = None
        self._stream = None

    @classmethod
    def from_endpoint(cls, endpoint: Endpoint, timeout: Optional[float] = None) -> 'RESPClient':
        """
        为端点建立连接，并在连接上先完成认证和库选择。

        异常:
            ConnectionError: 连接或认证失败
        """
        creds = endpoint.credentials
        client = cls(endpoint.host or "localhost", endpoint.port or DEFAULT_PORT,
                     timeout=timeout, use_ssl=endpoint.ssl,
                     ca_file=(creds.ca_file if creds and creds.ca_file else None))
        client.connect()
        try:
            if creds is not None and creds.password:
                client.auth(creds.password, creds.username or None)
            if endpoint.database and endpoint.database != "0":
                client.select(endpoint.database)
        except ProtocolError as e:
            client.close()
            raise ConnectionError(f"failed to authenticate to {client.host}:{client.port}: {e}") from e
        return client

    @retry_on_exception(max_retries=2, delay=0.5, exceptions=(OSError,))
    def _open_socket(self) -> socket.socket:
        return socket.create_connection((self.host, self.port), timeout=self.timeout)

    def connect(self):
        if self._sock is not None:
            return
        try:
            sock = self._open_socket()
        except OSError as e:
            raise ConnectionError(f"failed to connect to {self.host}:{self.port}: {e}") from e

        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        if self.use_ssl:
            context = ssl.create_default_context(cafile=self.ca_file)
            sock = context.wrap_socket(sock, server_hostname=self.host)

        self._sock = sock
        self._stream = sock.makefile('rb')
        self._reader = RESPReader(self._stream)
        logger.debug(f"已连接到 {self.host}:{self.port}")

    def close(self):
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                pass
            self._sock = None
        self._reader = None

    def __enter__(self) -> 'RESPClient':
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def execute(self, *args: Arg) -> Any:
        """
        发送命令并读取回复。

        异常:
            ProtocolError: 服务器返回错误回复
            ConnectionError: 连接不可用或被关闭
        """
        if self._sock is None:
            self.connect()
        try:
            self._sock.sendall(encode_command(*args))
            reply = self._reader.read_reply()
        except socket.timeout as e:
            raise ConnectionError(f"{_to_bytes(args[0]).decode()} timed out on {self.host}:{self.port}") from e
        except OSError as e:
            raise ConnectionError(f"connection to {self.host}:{self.port} failed: {e}") from e

        if isinstance(reply, ProtocolError):
            raise reply
        return reply

    def auth(self, password: str, username: Optional[str] = None):
        if username:
            self.execute("AUTH", username, password)
        else:
            self.execute("AUTH", password)

    def select(self, db: Union[int, str]):
        self.execute("SELECT", db)

    def info(self, section: Optional[str] = None) -> str:
        reply = self.execute("INFO", section) if section else self.execute("INFO")
        if isinstance(reply, bytes):
            return reply.decode('utf-8', errors='replace')
        return reply or ""

    def config_get(self, parameter: str) -> str:
        """返回 CONFIG GET 的单个值，参数不存在时返回空字符串。"""
        reply = self.execute("CONFIG", "GET", parameter)
        if not reply or len(reply) < 2:
            return ""
        value = reply[1]
        return value.decode('utf-8') if isinstance(value, bytes) else str(value)

    def scan(self, cursor: Union[bytes, str] = b"0", count: int = 1000,
             match: Optional[str] = None):
        """
        执行一次 SCAN。

        返回:
            (下一个游标, 键列表)
        """
        args: List[Arg] = ["SCAN", cursor]
        if match:
            args += ["MATCH", match]
        args += ["COUNT", count]
        reply = self.execute(*args)
        if not isinstance(reply, list) or len(reply) != 2:
            raise ProtocolError(f"unexpected SCAN reply: {reply!r}")
        return reply[0], reply[1] or []


def parse_info(text: str) -> dict:
    """
    把 INFO 文本解析为字典。

    按行拆分、按第一个冒号拆分键值，忽略注释行和不完整的行。
    """
    result = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or ":" not in line:
            continue
        key, value = line.split(":", 1)
        result[key] = value
    return result


def parse_keyspace(text: str) -> dict:
    """
    解析 INFO keyspace，例如 db0:keys=123,expires=10,avg_ttl=0。

    返回:
        {库名: 键数量}
    """
    counts = {}
    for key, value in parse_info(text).items():
        if not key.startswith("db"):
            continue
        for pair in value.split(","):
            if pair.startswith("keys="):
                try:
                    counts[key] = int(pair[len("keys="):])
                except ValueError:
                    continue
                break
    return counts
