"""
HTTP 转 SOCKS5 适配代理 - 日志管理模块

版本: 1.0.0

功能概述:
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 日志轮转（按日期/大小）
3. 结构化日志格式（时间戳、级别、连接上下文）
4. 配置文件和环境变量支持（LOG_LEVEL 等）

每个连接在独立的 asyncio 任务中运行，上下文信息（客户端地址、目标
地址）保存在 contextvars 中，不同连接互不干扰。
"""

import contextvars
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False


DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"

_log_context: contextvars.ContextVar = contextvars.ContextVar('http2socks_log_context', default=None)


def _env_bool(name: str, default: Any) -> bool:
    return os.getenv(name, str(default)).lower() == 'true'


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        enable_file: 是否输出到文件
        enable_journal: 是否输出到 systemd journal
        context_fields: 上下文字段列表
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "http2socks.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    rotation_type: str = "size"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: list = None

    def __post_init__(self):
        if self.context_fields is None:
            self.context_fields = ["peer", "target"]


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    为日志记录添加当前任务的上下文信息
    """

    def __init__(self, context_fields: list = None):
        super().__init__()
        self.context_fields = context_fields or []

    def filter(self, record):
        context_data = _log_context.get() or {}
        context_parts = []
        for field in self.context_fields:
            value = context_data.get(field, "-")
            context_parts.append(f"{field}={value}")

        record.context = " | ".join(context_parts)
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持彩色输出和结构化格式
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        # 确保 context 字段存在
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"

        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    日志管理器

    管理日志系统的初始化和配置（单例）
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config = None
            self.context_filter = None
            self._initialized = True

    def load_config(self, log_config: Optional[Dict[str, Any]] = None) -> LogConfig:
        """
        从配置文件的 logging 段加载日志配置，环境变量优先

        Args:
            log_config: YAML 配置中的 logging 段（可选）

        Returns:
            LogConfig: 日志配置对象
        """
        log_config = log_config or {}
        defaults = LogConfig()

        return LogConfig(
            level=os.getenv('LOG_LEVEL', str(log_config.get('level', defaults.level))),
            log_dir=os.getenv('LOG_DIR', log_config.get('log_dir', defaults.log_dir)),
            log_file=os.getenv('LOG_FILE', log_config.get('log_file', defaults.log_file)),
            max_bytes=int(os.getenv('LOG_MAX_BYTES', log_config.get('max_bytes', defaults.max_bytes))),
            backup_count=int(os.getenv('LOG_BACKUP_COUNT', log_config.get('backup_count', defaults.backup_count))),
            rotation_type=os.getenv('LOG_ROTATION_TYPE', log_config.get('rotation_type', defaults.rotation_type)),
            format_string=os.getenv('LOG_FORMAT', log_config.get('format_string', defaults.format_string)),
            enable_console=_env_bool('LOG_ENABLE_CONSOLE', log_config.get('enable_console', defaults.enable_console)),
            enable_file=_env_bool('LOG_ENABLE_FILE', log_config.get('enable_file', defaults.enable_file)),
            enable_journal=_env_bool('LOG_ENABLE_JOURNAL', log_config.get('enable_journal', defaults.enable_journal)),
            context_fields=log_config.get('context_fields', defaults.context_fields),
        )

    def initialize(self, config: Optional[LogConfig] = None, log_config: Optional[Dict[str, Any]] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（可选）
            log_config: YAML 配置中的 logging 段（可选，config 为空时使用）
        """
        self.config = config or self.load_config(log_config)
        self.context_filter = ContextFilter(self.config.context_fields)
        self._setup_root_logger()

    def _level(self) -> int:
        return getattr(logging, self.config.level.upper(), logging.INFO)

    def _setup_root_logger(self):
        root_logger = logging.getLogger()
        root_logger.setLevel(self._level())

        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)

        if self.config.enable_console:
            self._add_console_handler(root_logger)

        if self.config.enable_file:
            self._add_file_handler(root_logger)

        if self.config.enable_journal and HAS_JOURNAL:
            self._add_journal_handler(root_logger)

    def _install(self, logger: logging.Logger, handler: logging.Handler):
        # 过滤器挂在处理器上，子日志记录器传播上来的记录也会带上上下文
        handler.setLevel(self._level())
        handler.addFilter(self.context_filter)
        logger.addHandler(handler)

    def _add_console_handler(self, logger: logging.Logger):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=sys.stdout.isatty()
        ))
        self._install(logger, console_handler)

    def _add_file_handler(self, logger: logging.Logger):
        """
        添加文件处理器（支持轮转）

        Args:
            logger: 日志记录器
        """
        log_dir = Path(self.config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file_path = log_dir / self.config.log_file

        if self.config.rotation_type == 'size':
            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        elif self.config.rotation_type == 'date':
            file_handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        else:
            file_handler = logging.FileHandler(
                filename=log_file_path,
                encoding='utf-8'
            )

        file_handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=False
        ))
        self._install(logger, file_handler)

    def _add_journal_handler(self, logger: logging.Logger):
        self._install(logger, JournalHandler(SYSLOG_IDENTIFIER='http2socks'))

    def set_debug(self):
        """强制使用 DEBUG 级别（命令行 --debug）"""
        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG)
        for handler in root_logger.handlers:
            handler.setLevel(logging.DEBUG)


def setup_logging(log_config: Optional[Dict[str, Any]] = None, debug: bool = False) -> LoggerManager:
    """
    初始化日志系统（便捷函数）

    Args:
        log_config: YAML 配置中的 logging 段
        debug: 是否强制 DEBUG 级别

    Returns:
        LoggerManager: 日志管理器
    """
    manager = LoggerManager()
    manager.initialize(log_config=log_config)
    if debug:
        manager.set_debug()
    return manager


def add_context(**kwargs):
    """
    添加当前任务的上下文信息

    Args:
        **kwargs: 上下文键值对
    """
    context_data = dict(_log_context.get() or {})
    context_data.update({key: str(value) for key, value in kwargs.items()})
    _log_context.set(context_data)


def clear_context():
    """清除当前任务的上下文信息"""
    _log_context.set(None)
