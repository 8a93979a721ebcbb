# 配置管理工具

import json
import os
import logging
from typing import Dict, Any, Optional
import re

from .fees import FeeSettings

REQUIRED_SECTIONS = ['app', 'server', 'database', 'auth', 'logging', 'fees']


def _replace_env_vars(value: str) -> str:
    """
    替换环境变量占位符
    将 ${ENV_VAR} 格式的占位符替换为实际的环境变量值
    """
    def replace_match(match):
        env_var = match.group(1)
        return os.getenv(env_var, match.group(0))  # 如果环境变量不存在，保持原样

    return re.sub(r'\$\{([^}]+)\}', replace_match, value)


def _process_config_values(config: Any) -> Any:
    """
    递归处理配置值，替换环境变量
    """
    if isinstance(config, dict):
        return {k: _process_config_values(v) for k, v in config.items()}
    elif isinstance(config, list):
        return [_process_config_values(item) for item in config]
    elif isinstance(config, str):
        return _replace_env_vars(config)
    else:
        return config


def _server_dir() -> str:
    script_dir = os.path.dirname(os.path.abspath(__file__))
    return os.path.dirname(script_dir)  # 上一级目录就是server目录


def load_config(config_env: Optional[str] = None) -> Dict[str, Any]:
    """
    加载配置文件
    根据 CONFIG_ENV 环境变量选择配置文件

    Returns:
        配置字典
    """
    config_env = config_env or os.getenv('CONFIG_ENV', 'development')

    config_files = {
        'production': 'config/config-prod.json',
        'development': 'config/config-dev.json',
        'test': 'config/config-test.json'
    }

    config_file = os.getenv('CONFIG_FILE') or config_files.get(config_env, 'config/config.json')

    if not os.path.isabs(config_file):
        config_file = os.path.join(_server_dir(), config_file)

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            config = json.load(f)

        config = _process_config_values(config)

        logging.info(f"成功加载配置文件: {config_file}")
        return config

    except FileNotFoundError:
        logging.error(f"配置文件不存在: {config_file}")
        raise
    except json.JSONDecodeError as e:
        logging.error(f"配置文件JSON格式错误: {e}")
        raise


def get_database_path(config: Dict[str, Any]) -> str:
    """
    获取数据库路径（相对于server目录），:memory: 原样返回
    """
    db_path = config.get('database', {}).get('path', 'data/coresy.db')

    if db_path != ':memory:' and not os.path.isabs(db_path):
        db_path = os.path.join(_server_dir(), db_path)

    return db_path


def validate_config(config: Dict[str, Any]) -> bool:
    """
    验证配置文件的完整性
    """
    for section in REQUIRED_SECTIONS:
        if section not in config:
            logging.error(f"配置文件缺少必需的section: {section}")
            return False

    auth_config = config.get('auth', {})
    if not auth_config.get('jwt_secret_key'):
        logging.error("JWT密钥未配置")
        return False

    return _validate_fees(config.get('fees') or {})


def _validate_fees(fees: Dict[str, Any]) -> bool:
    """费率须在 [0, 1] 内，金额与距离不能为负"""
    for key, value in fees.items():
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            continue
        if (key.endswith('_percentage') or key == 'tax_rate') and not 0 <= value <= 1:
            logging.error(f"费率配置 fees.{key}={value} 超出 [0, 1]")
            return False
        if value < 0:
            logging.error(f"费用配置 fees.{key} 不能为负数")
            return False
    return True


class Config:
    """
    配置管理类
    """
    def __init__(self, config_env: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        self.env = config_env or os.getenv('CONFIG_ENV', 'development')
        self.config = config if config is not None else load_config(self.env)

        if not validate_config(self.config):
            raise ValueError("配置文件验证失败")

    def get(self, key: str, default=None):
        """
        获取配置项，支持点号分隔的嵌套键

        Args:
            key: 配置键，支持 'fees.platform_fee_percentage' 格式
            default: 默认值
        """
        keys = key.split('.')
        value = self.config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def get_database_config(self) -> Dict[str, Any]:
        db_config = self.config.get('database', {}).copy()
        db_config['path'] = get_database_path(self.config)
        return db_config

    def get_fee_settings(self) -> FeeSettings:
        return FeeSettings.from_config(self.config.get('fees'))


def resolved_setting(value: Any) -> Optional[str]:
    """
    配置值未设置或仍是未替换的 ${ENV} 占位符时返回None
    """
    if not value or not isinstance(value, str):
        return None
    if re.fullmatch(r'\$\{[^}]+\}', value.strip()):
        return None
    return value
