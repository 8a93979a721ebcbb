#!/usr/bin/env python3
# 数据库初始化脚本
# CONFIG_ENV 选择配置；设置 BACKUP_PATH 时先备份已有数据库

import os
import sys
import logging
import sqlite3
from pathlib import Path

# 添加项目根目录到Python路径
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from db.manager import DatabaseManager
from db.schema import CORE_TABLES
from db.supporting_operations import SupportingOperations
from utils.config import Config


def ensure_admin(db_manager: DatabaseManager, support: SupportingOperations):
    """创建默认管理员账户（已存在则跳过）"""
    existing_admin = db_manager.execute_single(
        "SELECT user_id FROM users WHERE role = 'admin' LIMIT 1"
    ).fetchone()

    if existing_admin:
        logging.info("默认管理员账户已存在")
        return

    admin = support.create_user("系统管理员", role="admin")
    logging.info(f"成功创建默认管理员账户: {admin['user_id']}")


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    config = Config(os.getenv('CONFIG_ENV', 'development'))
    db_path = config.get_database_config()["path"]
    backup_path = os.getenv('BACKUP_PATH')

    logging.info(f"开始初始化数据库: {db_path}")
    logging.info(f"配置环境: {config.env}")

    try:
        with DatabaseManager(db_path) as db_manager:
            if backup_path:
                db_manager.backup(backup_path)

            db_manager.create_schema()
            ensure_admin(db_manager, SupportingOperations(db_manager, config.get_fee_settings()))
            db_manager.vacuum()

            logging.info("数据库初始化完成!")
            for table_name in CORE_TABLES:
                info = db_manager.get_table_info(table_name)
                logging.info(f"  - {table_name}: {info['record_count']} 条记录")
    except (sqlite3.Error, ConnectionError, RuntimeError, ValueError) as e:
        logging.error(f"数据库初始化失败: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
