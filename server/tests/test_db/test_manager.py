# 数据库管理器测试

import sqlite3
import pytest

from db.manager import DatabaseManager, to_db_time, from_db_time
from datetime import datetime


class TestTransactions:
    """事务管理测试"""

    def _insert_user(self, db, name):
        db.conn.execute("INSERT INTO users (name, role) VALUES (?, 'user')", [name])

    def _count_users(self, db):
        return db.conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]

    def test_commit(self, test_db):
        test_db.execute_transaction([lambda: self._insert_user(test_db, "a")])
        assert self._count_users(test_db) == 1

    def test_rollback_on_error(self, test_db):
        def failing():
            self._insert_user(test_db, "a")
            raise ValueError("boom")

        with pytest.raises(ValueError):
            test_db.execute_transaction([failing])
        assert self._count_users(test_db) == 0
        assert not test_db.in_transaction

    def test_nested_transaction_joins_outer(self, test_db):
        """内层提交不落库，外层失败时一起回滚"""
        with pytest.raises(RuntimeError):
            with test_db.transaction():
                self._insert_user(test_db, "outer")
                test_db.execute_transaction([lambda: self._insert_user(test_db, "inner")])
                raise RuntimeError("outer failed")
        assert self._count_users(test_db) == 0

    def test_inner_failure_rolls_back_to_savepoint(self, test_db):
        with test_db.transaction():
            self._insert_user(test_db, "outer")
            with pytest.raises(ValueError):
                with test_db.transaction():
                    self._insert_user(test_db, "inner")
                    raise ValueError("inner failed")
        names = [row[0] for row in test_db.conn.execute("SELECT name FROM users").fetchall()]
        assert names == ["outer"]

    def test_after_commit_runs_only_on_commit(self, test_db):
        calls = []
        with test_db.transaction():
            test_db.after_commit(lambda: calls.append("committed"))
            assert calls == []
        assert calls == ["committed"]

        with pytest.raises(ValueError):
            with test_db.transaction():
                test_db.after_commit(lambda: calls.append("rolled back"))
                raise ValueError("boom")
        assert calls == ["committed"]

    def test_after_commit_errors_are_swallowed(self, test_db):
        def broken():
            raise RuntimeError("callback failed")

        with test_db.transaction():
            test_db.after_commit(broken)
        assert not test_db.in_transaction

    def test_empty_operation_list(self, test_db):
        assert test_db.execute_transaction([]) == []


class TestSchemaAndIntegrity:
    """表结构与完整性检查测试"""

    def test_create_schema_is_idempotent(self, test_db):
        test_db.create_schema()
        info = test_db.get_table_info("orders")
        assert "order_number" in [col["name"] for col in info["columns"]]

    def test_unknown_table(self, test_db):
        with pytest.raises(ValueError):
            test_db.get_table_info("no_such_table")

    def test_wallet_balance_check_constraint(self, test_db):
        test_db.conn.execute("INSERT INTO users (name, role) VALUES ('a', 'user')")
        with pytest.raises(sqlite3.IntegrityError):
            test_db.conn.execute("INSERT INTO wallets (user_id, balance) VALUES (1, -1)")

    def test_integrity_detects_unreconciled_wallet(self, test_db):
        test_db.conn.execute("INSERT INTO users (name, role) VALUES ('a', 'user')")
        test_db.conn.execute("INSERT INTO wallets (user_id, balance) VALUES (1, 500)")
        with pytest.raises(RuntimeError):
            test_db.check_integrity()

    def test_integrity_passes_on_empty_database(self, test_db):
        assert test_db.check_integrity()["wallets_reconciled"] == 0

    def test_requires_connection(self):
        db = DatabaseManager(":memory:")
        with pytest.raises(ConnectionError):
            db.execute_single("SELECT 1")


def test_db_time_round_trip():
    moment = datetime(2026, 10, 19, 8, 30, 15)
    assert from_db_time(to_db_time(moment)) == moment


class TestMaintenance:
    """备份与清理"""

    def test_backup_copies_rows(self, test_db, tmp_path):
        test_db.conn.execute("INSERT INTO users (name, role) VALUES ('备份用户', 'user')")
        target = tmp_path / "backups" / "coresy.db"

        test_db.backup(str(target))

        with DatabaseManager(str(target)) as restored:
            assert restored.conn.execute("SELECT name FROM users").fetchone()["name"] == "备份用户"
        assert not restored.is_connected()

    def test_vacuum_outside_transaction(self, test_db):
        test_db.vacuum()
        assert test_db.check_integrity()["tables"] > 0
