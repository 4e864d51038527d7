"""
PostgreSQL同步策略

pg_dump（自定义格式）通过管道直接送入 pg_restore。
"""

import logging
import threading
from typing import Optional, List, Dict, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Connection, URL
from sqlalchemy.exc import SQLAlchemyError

from .config import SyncOptions
from .endpoint import Endpoint
from .exceptions import TransferError
from .progress import ProgressReporter
from .relational import RelationalStrategy, TableByTableMixin

logger = logging.getLogger(__name__)

DEFAULT_PORT = 5432

TABLES_QUERY = """
    SELECT schemaname || '.' || tablename
    FROM pg_tables
    WHERE schemaname NOT IN ('pg_catalog', 'information_schema')
    ORDER BY schemaname, tablename
"""


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_table(table: str) -> str:
    """把 schema.table 引用为 "schema"."table"。"""
    if "." in table:
        schema, name = table.split(".", 1)
        return f"{quote_identifier(schema)}.{quote_identifier(name)}"
    return quote_identifier(table)


def parse_pg_dump_progress(line: str) -> Tuple[str, str]:
    """
    解析 pg_dump -v 的输出行。

    返回:
        (表名, 阶段)，无法识别的部分为空字符串
    """
    line = line.strip()
    table, phase = "", ""
    if line.startswith("pg_dump: dumping contents of table"):
        parts = line.split('"')
        if len(parts) >= 2:
            table = parts[1]
        phase = "dumping"
    elif line.startswith("pg_dump: saving"):
        phase = "saving"
    elif line.startswith("pg_dump: creating"):
        phase = "creating"
    return table, phase


class PostgresStrategy(RelationalStrategy):
    """PostgreSQL 整库同步。"""

    size_query = "SELECT pg_database_size(current_database())"

    def __init__(self, options: Optional[SyncOptions] = None, name: str = "postgres"):
        super().__init__(name, options)

    def build_url(self, endpoint: Endpoint) -> URL:
        query = {"sslmode": endpoint.ssl_mode} if endpoint.ssl_mode else {}
        return URL.create(
            "postgresql+psycopg2",
            username=endpoint.username or None,
            password=endpoint.password or None,
            host=endpoint.host or None,
            port=endpoint.port or None,
            database=endpoint.database or None,
            query=query,
        )

    def admin_endpoint(self, target: Endpoint) -> Endpoint:
        return Endpoint(type=target.type, host=target.host, port=target.port,
                        database="postgres", credentials=target.credentials,
                        ssl=target.ssl, ssl_mode=target.ssl_mode)

    def ensure_database(self, conn: Connection, database: str):
        exists = conn.execute(
            text("SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = :name)"),
            {"name": database},
        ).scalar()
        if not exists:
            logger.info(f"🆕 创建目标数据库 {database}")
            conn.execute(text(f"CREATE DATABASE {quote_identifier(database)}"))

    def list_tables(self, conn: Connection, endpoint: Endpoint) -> List[str]:
        return [row[0] for row in conn.execute(text(TABLES_QUERY))]

    def count_query(self, table: str) -> str:
        return f"SELECT count(*) FROM {quote_table(table)}"

    def _connection_args(self, endpoint: Endpoint) -> List[str]:
        args = ["-h", endpoint.host]
        if endpoint.port > 0:
            args += ["-p", str(endpoint.port)]
        if endpoint.username:
            args += ["-U", endpoint.username]
        return args

    def build_dump_command(self, source: Endpoint) -> List[str]:
        return ["pg_dump"] + self._connection_args(source) + ["-Fc", "-v", source.database]

    def build_restore_command(self, target: Endpoint) -> List[str]:
        return (["pg_restore"] + self._connection_args(target) +
                ["-d", target.database, "--clean", "--if-exists",
                 "--no-owner", "--no-privileges", "-v"])

    def build_env(self, endpoint: Endpoint) -> Dict[str, str]:
        env = {}
        if endpoint.password:
            env["PGPASSWORD"] = endpoint.password
        if endpoint.ssl_mode:
            env["PGSSLMODE"] = endpoint.ssl_mode
        return env

    def parse_dump_line(self, line: str):
        return parse_pg_dump_progress(line)


class PostgresTableSync(TableByTableMixin, PostgresStrategy):
    """
    逐表 COPY TO STDOUT | COPY FROM STDIN。

    COPY 只搬运数据，所以先用 pg_dump --section=pre-data 在目标上重建表结构，
    数据复制完成后再用 post-data 补上索引、约束和触发器。
    """

    def __init__(self, options: Optional[SyncOptions] = None):
        super().__init__(options, name="postgres-tables")

    def build_schema_dump_command(self, source: Endpoint, section: str) -> List[str]:
        return (["pg_dump"] + self._connection_args(source) +
                ["--schema-only", f"--section={section}", "--no-owner", "--no-privileges",
                 "--clean", "--if-exists", source.database])

    def build_schema_restore_command(self, target: Endpoint) -> List[str]:
        return (["psql"] + self._connection_args(target) +
                ["-v", "ON_ERROR_STOP=1", "-q", "-d", target.database])

    def drop_target_tables(self, target: Endpoint, tables: List[str]):
        """删除目标上的同名表；CASCADE 连带清掉引用它们的外键。"""
        if not tables:
            return
        statement = f"DROP TABLE IF EXISTS {', '.join(quote_table(t) for t in tables)} CASCADE"
        with self.connection(target, autocommit=True) as conn:
            try:
                conn.execute(text(statement))
            except SQLAlchemyError as e:
                raise TransferError(f"failed to drop target tables: {e}") from e

    def prepare_target_schema(self, source: Endpoint, target: Endpoint, tables: List[str],
                              reporter: ProgressReporter,
                              cancel_event: Optional[threading.Event] = None):
        self.drop_target_tables(target, tables)
        logger.info(f"🏗️  在 {target.database} 上重建 {len(tables)} 张表的结构")
        self.run_pipe(self.build_schema_dump_command(source, "pre-data"),
                      self.build_schema_restore_command(target),
                      source, target, reporter, cancel_event=cancel_event, extrapolate=False)

    def finalize_target_schema(self, source: Endpoint, target: Endpoint,
                               reporter: ProgressReporter,
                               cancel_event: Optional[threading.Event] = None):
        self.run_pipe(self.build_schema_dump_command(source, "post-data"),
                      self.build_schema_restore_command(target),
                      source, target, reporter, cancel_event=cancel_event, extrapolate=False)

    def build_copy_out_command(self, source: Endpoint, table: str) -> List[str]:
        return (["psql"] + self._connection_args(source) +
                ["-d", source.database, "-c", f"COPY {quote_table(table)} TO STDOUT"])

    def build_copy_in_command(self, target: Endpoint, table: str) -> List[str]:
        # -1 让 TRUNCATE 和 COPY 在同一事务里
        qt = quote_table(table)
        return (["psql"] + self._connection_args(target) +
                ["-v", "ON_ERROR_STOP=1", "-1", "-d", target.database,
                 "-c", f"TRUNCATE {qt}", "-c", f"COPY {qt} FROM STDIN"])

    def build_table_pipe(self, source: Endpoint, target: Endpoint, table: str):
        return (self.build_copy_out_command(source, table),
                self.build_copy_in_command(target, table))
