"""
Data Sync引擎的自定义异常。

为不同错误条件定义特定的异常类型。
"""


class DataSyncError(Exception):
    """Data Sync引擎的基础异常。"""
    pass


class ConfigurationError(DataSyncError):
    """配置或端点描述无效时抛出。"""
    pass


class ConnectionError(DataSyncError):
    """连接或认证源/目标失败时抛出。"""
    pass


class ProtocolError(DataSyncError):
    """缓存协议回复格式错误或服务器返回错误时抛出。"""
    pass


class TransferError(DataSyncError):
    """数据传输失败时抛出（外部进程非零退出、DUMP/RESTORE失败等）。"""
    pass


class VerificationError(DataSyncError):
    """无法执行同步验证时抛出。"""
    pass


class SyncCancelledError(DataSyncError):
    """同步被取消时抛出。"""

    def __init__(self, message: str = "cancelled"):
        super().__init__(message)


class TimeoutError(DataSyncError):
    """操作超时时抛出。"""
    pass
