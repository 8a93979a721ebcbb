# 日志初始化

import logging
import logging.handlers
import os
import re
from typing import Dict, Any

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
# 外部HTTP客户端与访问日志默认只记录警告
DEFAULT_QUIET_LOGGERS = ['httpx', 'httpcore', 'uvicorn.access']

_SIZE_UNITS = {'': 1, 'KB': 1024, 'MB': 1024 ** 2, 'GB': 1024 ** 3}


def parse_size(size: Any) -> int:
    """'10MB' -> 10485760，纯数字按字节处理"""
    match = re.fullmatch(r'\s*(\d+)\s*(KB|MB|GB)?\s*', str(size).upper())
    if not match:
        raise ValueError(f"无效的日志文件大小: {size}")
    return int(match.group(1)) * _SIZE_UNITS[match.group(2) or '']


def setup_logging(config: Dict[str, Any]) -> logging.Logger:
    """
    按 logging 配置段初始化根日志器

    控制台始终输出；file_enabled 时追加按大小轮转的文件日志。
    重复调用会替换之前的处理器（测试中每个应用实例都会调用）。
    """
    log_config = config.get('logging', {})
    level = log_config.get('level', 'INFO').upper()
    formatter = logging.Formatter(log_config.get('format', DEFAULT_FORMAT))

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(getattr(logging, level, logging.INFO))

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_config.get('file_enabled', False):
        file_path = log_config.get('file_path', 'logs/coresy.log')
        if os.path.dirname(file_path):
            os.makedirs(os.path.dirname(file_path), exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            file_path,
            maxBytes=parse_size(log_config.get('max_file_size', '10MB')),
            backupCount=log_config.get('backup_count', 5),
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in log_config.get('quiet_loggers', DEFAULT_QUIET_LOGGERS):
        logging.getLogger(name).setLevel(logging.WARNING)

    root.debug(f"日志级别 {level}，文件日志 {'开启' if log_config.get('file_enabled') else '关闭'}")
    return root
