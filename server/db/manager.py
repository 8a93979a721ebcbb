# 数据库连接和事务管理的核心组件

import sqlite3
import logging
import os
import threading
from datetime import datetime
from typing import List, Dict, Any, Callable
from contextlib import contextmanager

from .schema import TABLES, INDEXES, CORE_TABLES

DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def to_db_time(value: datetime) -> str:
    """datetime -> 与 CURRENT_TIMESTAMP 相同格式的字符串"""
    return value.strftime(DB_TIME_FORMAT)


def from_db_time(value: str) -> datetime:
    return datetime.strptime(value[:19], DB_TIME_FORMAT)


class DatabaseManager:
    """
    数据库管理器

    负责SQLite数据库连接管理、事务处理和基础操作。
    连接工作在自动提交模式，写事务显式 BEGIN IMMEDIATE，
    嵌套事务通过 SAVEPOINT 加入外层事务，只有最外层提交或回滚。
    """

    def __init__(self, db_path: str, auto_connect: bool = False):
        """
        初始化数据库管理器

        Args:
            db_path: 数据库文件路径，":memory:" 为内存数据库
            auto_connect: 是否自动连接数据库
        """
        self.db_path = db_path
        self.conn = None
        self._is_connected = False
        self._lock = threading.RLock()
        self._depth = 0
        self._after_commit: List[Callable[[], Any]] = []

        self.logger = logging.getLogger(self.__class__.__name__)

        if auto_connect:
            self.connect()

    def connect(self) -> sqlite3.Connection:
        """
        建立数据库连接

        Raises:
            ConnectionError: 连接失败时抛出异常
        """
        try:
            if self.conn is not None:
                self.logger.warning("数据库连接已存在，先关闭现有连接")
                self.close()

            if self.db_path != ":memory:":
                db_dir = os.path.dirname(self.db_path)
                if db_dir and not os.path.exists(db_dir):
                    os.makedirs(db_dir, exist_ok=True)
                    self.logger.info(f"创建数据库目录: {db_dir}")

            self.conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
            self.conn.row_factory = sqlite3.Row
            self._is_connected = True
            self.logger.info(f"成功连接到数据库: {self.db_path}")

            self._configure_database()

            return self.conn

        except sqlite3.Error as e:
            self.logger.error(f"连接数据库失败: {str(e)}")
            raise ConnectionError(f"无法连接到数据库 {self.db_path}: {str(e)}")

    def close(self):
        """
        关闭数据库连接
        """
        if self.conn is not None:
            try:
                self.conn.close()
                self.logger.info("数据库连接已关闭")
            except sqlite3.Error as e:
                self.logger.error(f"关闭数据库连接时发生错误: {str(e)}")
            finally:
                self.conn = None
                self._is_connected = False

    def _configure_database(self):
        optimizations = [
            "PRAGMA foreign_keys = ON",        # 启用外键约束
            "PRAGMA synchronous = NORMAL",     # 平衡性能和安全性
            "PRAGMA cache_size = -64000",      # 设置缓存大小为64MB
            "PRAGMA temp_store = MEMORY",      # 临时表存储在内存中
            "PRAGMA busy_timeout = 5000"       # 写锁等待5秒
        ]
        if self.db_path != ":memory:":
            optimizations.append("PRAGMA journal_mode = WAL")

        try:
            for opt in optimizations:
                self.conn.execute(opt)
            self.logger.debug("数据库优化参数配置完成")
        except sqlite3.Error as e:
            self.logger.warning(f"配置数据库参数时出现警告: {str(e)}")

    def is_connected(self) -> bool:
        return self._is_connected and self.conn is not None

    def ensure_connected(self):
        """
        Raises:
            ConnectionError: 连接不可用时抛出异常
        """
        if not self.is_connected():
            raise ConnectionError("数据库未连接，请先调用connect()方法")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def create_schema(self):
        """
        创建所有数据表和索引（幂等）
        """
        self.ensure_connected()

        for table_name, create_sql in TABLES:
            try:
                self.execute_single(create_sql)
                self.logger.debug(f"成功创建表: {table_name}")
            except sqlite3.Error as e:
                self.logger.error(f"创建表 {table_name} 失败: {e}")
                raise

        for index_sql in INDEXES:
            self.execute_single(index_sql)

        self.logger.info(f"数据库结构初始化完成，共 {len(TABLES)} 张表")

    @contextmanager
    def transaction(self):
        """
        事务上下文管理器（可重入）

        Usage:
            with db_manager.transaction() as conn:
                conn.execute("INSERT ...")
                conn.execute("UPDATE ...")

        在已有事务中再次进入时创建保存点：内层失败只回滚到保存点并继续抛出异常，
        由外层决定整体提交或回滚。
        """
        self.ensure_connected()

        with self._lock:
            depth = self._depth
            savepoint = f"sp_{depth}"
            callback_mark = len(self._after_commit)

            if depth == 0:
                self.conn.execute("BEGIN IMMEDIATE")
                self.logger.debug("事务开始")
            else:
                self.conn.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1

            try:
                yield self.conn
            except BaseException as e:
                self._depth -= 1
                if depth == 0:
                    self._rollback(e)
                else:
                    self.conn.execute(f"ROLLBACK TO {savepoint}")
                    self.conn.execute(f"RELEASE {savepoint}")
                    del self._after_commit[callback_mark:]
                raise
            else:
                self._depth -= 1
                if depth == 0:
                    try:
                        self.conn.execute("COMMIT")
                    except sqlite3.Error as e:
                        self._rollback(e)
                        raise
                    self.logger.debug("事务提交成功")
                    self._run_after_commit()
                else:
                    self.conn.execute(f"RELEASE {savepoint}")

    def _rollback(self, error: BaseException):
        self.logger.error(f"事务执行失败: {type(error).__name__}: {error}")
        self._after_commit.clear()
        try:
            self.conn.execute("ROLLBACK")
            self.logger.info("事务已回滚")
        except sqlite3.Error as rollback_error:
            self.logger.error(f"事务回滚失败: {str(rollback_error)}")

    def after_commit(self, callback: Callable[[], Any]):
        """
        注册事务提交后执行的回调（通知等尽力而为的副作用）

        不在事务中时立即执行；事务回滚时回调被丢弃。回调异常只记录日志。
        """
        if self._depth == 0:
            self._invoke_callback(callback)
        else:
            self._after_commit.append(callback)

    def _run_after_commit(self):
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            self._invoke_callback(callback)

    def _invoke_callback(self, callback: Callable[[], Any]):
        try:
            callback()
        except Exception as e:
            self.logger.error(f"提交后回调执行失败: {type(e).__name__}: {e}")

    def execute_transaction(self, operations: List[Callable]) -> List[Any]:
        """
        串行执行事务操作

        Args:
            operations: 操作函数列表，每个函数返回操作结果

        Returns:
            所有操作结果的列表

        Raises:
            ConnectionError: 数据库未连接
            Exception: 事务执行失败时抛出原始异常（已回滚）
        """
        self.ensure_connected()

        if not operations:
            self.logger.warning("事务操作列表为空")
            return []

        transaction_id = datetime.now().strftime("%Y%m%d%H%M%S%f")
        self.logger.debug(f"开始事务 {transaction_id}，包含 {len(operations)} 个操作")

        with self.transaction():
            results = []
            for i, operation in enumerate(operations):
                self.logger.debug(f"执行事务 {transaction_id} 中的操作 {i+1}/{len(operations)}")
                results.append(operation())

        if not self.in_transaction:
            self.logger.info(f"事务 {transaction_id} 提交成功")
        return results

    def execute_single(self, query: str, params: List = None) -> Any:
        """
        执行单个SQL语句（自动提交模式下立即生效，事务中则随事务提交）
        """
        self.ensure_connected()

        try:
            if params:
                return self.conn.execute(query, params)
            return self.conn.execute(query)
        except sqlite3.Error as e:
            self.logger.error(f"执行SQL查询失败: {query.strip()[:100]}..., 错误: {str(e)}")
            raise

    def get_table_info(self, table_name: str) -> Dict[str, Any]:
        """
        获取数据表信息
        """
        self.ensure_connected()

        columns_result = self.conn.execute(f"PRAGMA table_info('{table_name}')").fetchall()
        if not columns_result:
            raise ValueError(f"表 {table_name} 不存在")

        columns = [{
            'name': col[1],
            'type': col[2],
            'not_null': bool(col[3]),
            'default_value': col[4],
            'primary_key': bool(col[5])
        } for col in columns_result]

        record_count = self.conn.execute(f"SELECT COUNT(*) FROM {table_name}").fetchone()[0]

        return {
            'table_name': table_name,
            'columns': columns,
            'record_count': record_count
        }

    def check_integrity(self) -> Dict[str, Any]:
        """
        检查数据库完整性

        1. 核心表存在
        2. 钱包对账：每个钱包已完成流水之和等于当前余额

        Raises:
            RuntimeError: 发现问题时抛出
        """
        self.ensure_connected()
        self.logger.info("开始数据库完整性检查")

        for table in CORE_TABLES:
            result = self.conn.execute("""
                SELECT COUNT(*) FROM sqlite_master
                WHERE type='table' AND name=?
            """, (table,)).fetchone()
            if not result or result[0] == 0:
                raise RuntimeError(f"核心表 {table} 不存在")

        mismatches = self.conn.execute("""
            SELECT w.wallet_id, w.user_id, w.balance,
                   COALESCE(SUM(CASE WHEN t.status = 'completed' THEN t.amount END), 0) AS ledger_sum
            FROM wallets w
            LEFT JOIN transactions t ON t.wallet_id = w.wallet_id
            GROUP BY w.wallet_id
            HAVING ledger_sum != w.balance
        """).fetchall()

        if mismatches:
            issues = [f"钱包 {row['wallet_id']}（用户 {row['user_id']}）余额 {row['balance']} "
                      f"与流水合计 {row['ledger_sum']} 不一致" for row in mismatches]
            error_msg = "数据库完整性检查发现问题:\n" + "\n".join(issues)
            self.logger.error(error_msg)
            raise RuntimeError(error_msg)

        wallet_count = self.conn.execute("SELECT COUNT(*) FROM wallets").fetchone()[0]
        self.logger.info("数据库完整性检查通过")
        return {'tables': len(CORE_TABLES), 'wallets_reconciled': wallet_count}

    def vacuum(self):
        self.ensure_connected()
        self.logger.info("开始数据库清理优化")
        self.conn.execute("VACUUM")
        self.logger.info("数据库清理优化完成")

    def backup(self, backup_path: str):
        """
        在线备份数据库（sqlite3 backup API，内存库同样适用）
        """
        self.ensure_connected()
        self.logger.info(f"开始备份数据库到: {backup_path}")

        backup_dir = os.path.dirname(backup_path)
        if backup_dir and not os.path.exists(backup_dir):
            os.makedirs(backup_dir, exist_ok=True)

        target = sqlite3.connect(backup_path)
        try:
            self.conn.backup(target)
        finally:
            target.close()
        self.logger.info("数据库备份完成")

    def __enter__(self):
        if not self.is_connected():
            self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __del__(self):
        if self.is_connected():
            self.close()
