"""
MySQL/MariaDB同步策略

mysqldump 通过管道直接送入 mysql 客户端。
"""

import logging
from typing import Optional, List, Dict, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Connection, URL

from .config import SyncOptions
from .endpoint import Endpoint
from .relational import RelationalStrategy, TableByTableMixin

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3306

TABLES_QUERY = """
    SELECT table_name
    FROM information_schema.tables
    WHERE table_schema = :schema
    AND table_type = 'BASE TABLE'
    ORDER BY table_name
"""


def escape_identifier(name: str) -> str:
    return name.replace("`", "``")


def parse_mysqldump_progress(line: str) -> Tuple[str, str]:
    """
    解析 mysqldump 的注释行。

    返回:
        (表名, 阶段)，无法识别的部分为空字符串
    """
    line = line.strip()
    lowered = line.lower()
    table, phase = "", ""
    if "dumping data for table" in lowered:
        phase = "dumping"
    elif "table structure for table" in lowered:
        phase = "structure"
    else:
        return table, phase

    parts = line.split("`")
    if len(parts) >= 2:
        table = parts[1]
    return table, phase


class MySQLStrategy(RelationalStrategy):
    """MySQL 整库同步。"""

    size_query = """
        SELECT SUM(data_length + index_length)
        FROM information_schema.tables
        WHERE table_schema = :schema
    """

    def __init__(self, options: Optional[SyncOptions] = None, name: str = "mysql"):
        super().__init__(name, options)

    def build_url(self, endpoint: Endpoint) -> URL:
        query = {"ssl_verify_cert": "true"} if endpoint.ssl else {}
        return URL.create(
            "mysql+pymysql",
            username=endpoint.username or None,
            password=endpoint.password or None,
            host=endpoint.host or None,
            port=endpoint.port or None,
            database=endpoint.database or None,
            query=query,
        )

    def size_params(self, endpoint: Endpoint):
        return {"schema": endpoint.database}

    def admin_endpoint(self, target: Endpoint) -> Endpoint:
        # 连接服务器而不是具体的库
        return Endpoint(type=target.type, host=target.host, port=target.port,
                        credentials=target.credentials, ssl=target.ssl)

    def ensure_database(self, conn: Connection, database: str):
        conn.execute(text(f"CREATE DATABASE IF NOT EXISTS `{escape_identifier(database)}`"))

    def list_tables(self, conn: Connection, endpoint: Endpoint) -> List[str]:
        return [row[0] for row in conn.execute(text(TABLES_QUERY), {"schema": endpoint.database})]

    def count_query(self, table: str) -> str:
        return f"SELECT COUNT(*) FROM `{escape_identifier(table)}`"

    def _connection_args(self, endpoint: Endpoint) -> List[str]:
        args = ["-h", endpoint.host]
        if endpoint.port > 0:
            args += ["-P", str(endpoint.port)]
        if endpoint.username:
            args += ["-u", endpoint.username]
        return args

    def build_dump_command(self, source: Endpoint) -> List[str]:
        return (["mysqldump"] + self._connection_args(source) +
                ["--single-transaction", "--quick", "--routines", "--triggers",
                 "--events", "--add-drop-database", "--databases", source.database])

    def build_restore_command(self, target: Endpoint) -> List[str]:
        return ["mysql"] + self._connection_args(target)

    def build_env(self, endpoint: Endpoint) -> Dict[str, str]:
        if endpoint.password:
            return {"MYSQL_PWD": endpoint.password}
        return {}

    def parse_dump_line(self, line: str):
        return parse_mysqldump_progress(line)


class MySQLTableSync(TableByTableMixin, MySQLStrategy):
    """逐表 mysqldump | mysql。"""

    def __init__(self, options: Optional[SyncOptions] = None):
        super().__init__(options, name="mysql-tables")

    def build_table_pipe(self, source: Endpoint, target: Endpoint, table: str):
        dump_args = (["mysqldump"] + self._connection_args(source) +
                     ["--single-transaction", "--quick", source.database, table])
        restore_args = self.build_restore_command(target) + [target.database]
        return dump_args, restore_args
