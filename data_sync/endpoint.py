"""
同步端点描述

描述一次同步的一端（源或目标）：类型、主机/端口、凭据、
逻辑容器名（数据库或存储桶）、路径前缀和自由选项。
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any


@dataclass(frozen=True)
class Credentials:
    """端点的认证信息。"""
    username: str = ""
    password: str = ""
    access_key: str = ""
    secret_key: str = ""
    token: str = ""
    ssh_key: str = ""
    cert_file: str = ""
    key_file: str = ""
    ca_file: str = ""

    def has_basic_auth(self) -> bool:
        return bool(self.username and self.password)

    def has_access_keys(self) -> bool:
        return bool(self.access_key and self.secret_key)

    def has_cert_auth(self) -> bool:
        return bool(self.cert_file and self.key_file)


@dataclass(frozen=True)
class Endpoint:
    """
    同步端点。

    构造后不可变，在任务与策略调用之间按引用共享，策略不会修改它。
    database 与 bucket 分别是关系库/缓存和对象存储的逻辑容器名。
    """
    type: str
    host: str = ""
    port: int = 0
    database: str = ""
    bucket: str = ""
    path: str = ""
    region: str = ""
    credentials: Optional[Credentials] = None
    ssl: bool = False
    ssl_mode: str = ""
    options: Dict[str, str] = field(default_factory=dict)

    @property
    def username(self) -> str:
        return self.credentials.username if self.credentials else ""

    @property
    def password(self) -> str:
        return self.credentials.password if self.credentials else ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Endpoint':
        """从字典（例如 YAML 计划文件）创建端点。"""
        data = dict(data)
        creds = data.pop('credentials', None)
        if isinstance(creds, dict):
            creds = Credentials(**creds)
        data['options'] = dict(data.get('options') or {})
        return cls(credentials=creds, **data)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典，排除空凭据。"""
        data = asdict(self)
        if self.credentials is None:
            data.pop('credentials')
        return data

    def connection_string(self) -> str:
        """
        构建端点的连接字符串，格式取决于端点类型。

        返回:
            连接字符串；未知类型返回空字符串
        """
        if self.type == "postgres":
            return self._postgres_connection_string()
        if self.type == "mysql":
            return self._mysql_connection_string()
        if self.type == "redis":
            return self._redis_connection_string()
        if self.type in ("s3", "minio"):
            return self._s3_connection_string()
        return ""

    def _user_info(self, require_user: bool) -> str:
        if self.credentials is None:
            return ""
        username = self.credentials.username
        password = self.credentials.password
        if require_user and not username:
            return ""
        info = username
        if password:
            info += ":" + password
        if username or password:
            info += "@"
        return info

    def _postgres_connection_string(self) -> str:
        conn = "postgresql://" + self._user_info(require_user=True) + self.host
        if self.port > 0:
            conn += f":{self.port}"
        if self.database:
            conn += "/" + self.database
        if self.ssl_mode:
            conn += "?sslmode=" + self.ssl_mode
        return conn

    def _mysql_connection_string(self) -> str:
        conn = self._user_info(require_user=True) + "tcp(" + self.host
        if self.port > 0:
            conn += f":{self.port}"
        conn += ")"
        if self.database:
            conn += "/" + self.database
        return conn

    def _redis_connection_string(self) -> str:
        conn = "redis://" + self._user_info(require_user=False) + self.host
        if self.port > 0:
            conn += f":{self.port}"
        if self.database:
            conn += "/" + self.database
        return conn

    def _s3_connection_string(self) -> str:
        if self.type == "minio":
            conn = "minio://" + self.host
            if self.port > 0:
                conn += f":{self.port}"
            conn += "/" + self.bucket
        else:
            conn = "s3://" + self.bucket
        if self.path:
            conn += "/" + self.path
        return conn
