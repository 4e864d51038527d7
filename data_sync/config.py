"""
同步引擎配置

同步选项、引擎设置和日志设置三部分，可以来自 YAML 文件、环境变量
或直接构造。
"""

import os
import yaml
import logging
import colorlog
from logging.handlers import RotatingFileHandler
from typing import Dict, Any, Optional
from dataclasses import dataclass, asdict, field
from pathlib import Path

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

LOG_COLORS = {
    'DEBUG': 'cyan',
    'INFO': 'green',
    'WARNING': 'yellow',
    'ERROR': 'red',
    'CRITICAL': 'red,bg_white',
}

# 第三方库的日志太吵，统一压到 WARNING
NOISY_LOGGERS = ('boto3', 'botocore', 'urllib3', 's3transfer', 'sqlalchemy')


@dataclass
class SyncOptions:
    """调用方为策略提供的同步选项。"""
    parallel: int = 4
    batch_size: int = 1000
    incremental: bool = False
    dry_run: bool = False
    verify_after_sync: bool = True
    delete_extraneous: bool = False
    checksum_verify: bool = True
    timeout_seconds: int = 3600
    bandwidth_bytes_per_sec: int = 0
    resume_from: str = ""

    def bandwidth_limit(self) -> str:
        """转换为外部工具的带宽参数，例如 "10M"；未限速时为空。"""
        if self.bandwidth_bytes_per_sec <= 0:
            return ""
        return f"{self.bandwidth_bytes_per_sec // (1024 * 1024)}M"


@dataclass
class EngineSettings:
    """执行引擎设置。"""
    progress_buffer: int = 100
    forward_poll_interval: float = 0.1
    join_timeout: float = 5.0
    estimate_sizes: bool = False


@dataclass
class LoggingConfig:
    """日志设置"""
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file: Optional[str] = None
    max_size: int = 10 * 1024 * 1024
    backup_count: int = 5
    console: bool = True
    colored: bool = True


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 'yes')


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"environment variable {name} is not an integer: {raw}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"environment variable {name} is not a number: {raw}") from e


@dataclass
class Config:
    """完整配置"""
    sync: SyncOptions = field(default_factory=SyncOptions)
    engine: EngineSettings = field(default_factory=EngineSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Config':
        """
        从字典创建配置，缺少的部分使用默认值。

        异常:
            ConfigurationError: 出现未知字段或取值无效
        """
        data = data or {}
        try:
            config = cls(
                sync=SyncOptions(**(data.get('sync') or {})),
                engine=EngineSettings(**(data.get('engine') or {})),
                logging=LoggingConfig(**(data.get('logging') or {})),
            )
        except TypeError as e:
            raise ConfigurationError(f"invalid configuration field: {e}") from e
        config.validate()
        return config

    @classmethod
    def from_file(cls, config_path: str) -> 'Config':
        """从YAML文件加载配置。"""
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"❌ 加载配置文件失败 {config_path}: {e}")
            raise ConfigurationError(f"failed to load config from {config_path}: {e}") from e
        if data is not None and not isinstance(data, dict):
            raise ConfigurationError(f"config file {config_path} must contain a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_env(cls) -> 'Config':
        """从 DATA_SYNC_* 和 LOG_* 环境变量加载配置。"""
        sync_defaults = SyncOptions()
        engine_defaults = EngineSettings()

        sync_options = SyncOptions(
            parallel=_env_int('DATA_SYNC_PARALLEL', sync_defaults.parallel),
            batch_size=_env_int('DATA_SYNC_BATCH_SIZE', sync_defaults.batch_size),
            incremental=_env_bool('DATA_SYNC_INCREMENTAL', 'false'),
            dry_run=_env_bool('DATA_SYNC_DRY_RUN', 'false'),
            verify_after_sync=_env_bool('DATA_SYNC_VERIFY', 'true'),
            delete_extraneous=_env_bool('DATA_SYNC_DELETE_EXTRANEOUS', 'false'),
            checksum_verify=_env_bool('DATA_SYNC_CHECKSUM', 'true'),
            timeout_seconds=_env_int('DATA_SYNC_TIMEOUT', sync_defaults.timeout_seconds),
            bandwidth_bytes_per_sec=_env_int('DATA_SYNC_BANDWIDTH', 0),
            resume_from=os.getenv('DATA_SYNC_RESUME_FROM', ''),
        )

        engine_settings = EngineSettings(
            progress_buffer=_env_int('DATA_SYNC_PROGRESS_BUFFER', engine_defaults.progress_buffer),
            forward_poll_interval=_env_float('DATA_SYNC_POLL_INTERVAL',
                                             engine_defaults.forward_poll_interval),
            join_timeout=_env_float('DATA_SYNC_JOIN_TIMEOUT', engine_defaults.join_timeout),
            estimate_sizes=_env_bool('DATA_SYNC_ESTIMATE_SIZES', 'false'),
        )

        logging_config = LoggingConfig(
            level=os.getenv('LOG_LEVEL', 'INFO'),
            file=os.getenv('LOG_FILE') or None,
            console=_env_bool('LOG_CONSOLE', 'true'),
            colored=_env_bool('LOG_COLORED', 'true'),
        )

        config = cls(sync=sync_options, engine=engine_settings, logging=logging_config)
        config.validate()
        return config

    def validate(self):
        """
        检查取值范围。

        异常:
            ConfigurationError: 任一取值无效
        """
        if self.sync.parallel < 1:
            raise ConfigurationError("sync.parallel must be at least 1")
        if self.sync.batch_size < 1:
            raise ConfigurationError("sync.batch_size must be at least 1")
        if self.sync.timeout_seconds <= 0:
            raise ConfigurationError("sync.timeout_seconds must be positive")
        if self.engine.progress_buffer < 1:
            raise ConfigurationError("engine.progress_buffer must be at least 1")
        if self.engine.forward_poll_interval <= 0:
            raise ConfigurationError("engine.forward_poll_interval must be positive")
        if not isinstance(getattr(logging, self.logging.level.upper(), None), int):
            raise ConfigurationError(f"unknown log level: {self.logging.level}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sync': asdict(self.sync),
            'engine': asdict(self.engine),
            'logging': asdict(self.logging),
        }

    def save_to_file(self, config_path: str):
        """保存为YAML文件，必要时创建目录。"""
        path = Path(config_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, allow_unicode=True)
        logger.info(f"💾 配置已保存到 {config_path}")


def setup_logging(config: LoggingConfig):
    """
    配置 root logger，这样所有模块的日志都会输出。

    控制台使用 colorlog 着色；文件按大小轮转。
    """
    level = getattr(logging, config.level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # 清除已有的 handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if config.console:
        console_handler = logging.StreamHandler()
        if config.colored:
            console_handler.setFormatter(colorlog.ColoredFormatter(
                '%(log_color)s' + config.format,
                datefmt='%Y-%m-%d %H:%M:%S',
                log_colors=LOG_COLORS,
            ))
        else:
            console_handler.setFormatter(logging.Formatter(config.format))
        root_logger.addHandler(console_handler)

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.file,
            maxBytes=config.max_size,
            backupCount=config.backup_count,
            encoding='utf-8',
        )
        file_handler.setFormatter(logging.Formatter(config.format))
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def create_sample_config() -> str:
    """生成带默认值的示例配置内容。"""
    return yaml.safe_dump(Config().to_dict(), default_flow_style=False, allow_unicode=True)


def load_config(config_path: Optional[str] = None,
                use_env: bool = True,
                create_default: bool = False) -> Config:
    """
    按优先级加载配置：配置文件 > 环境变量 > 默认值。

    参数:
        config_path: 配置文件路径
        use_env: 没有配置文件时是否读取环境变量
        create_default: 以上都不可用时是否使用默认配置

    返回:
        Config

    异常:
        ConfigurationError: 没有可用的配置来源，或配置无效
    """
    if config_path:
        if os.path.exists(config_path):
            return Config.from_file(config_path)
        logger.warning(f"⚠️  配置文件不存在: {config_path}")

    if use_env:
        return Config.from_env()

    if create_default:
        logger.info("使用默认配置")
        return Config()

    raise ConfigurationError("no configuration source available")
