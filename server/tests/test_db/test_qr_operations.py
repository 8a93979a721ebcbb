# 二维码签发与核销测试

import re
from datetime import datetime, timedelta

import pytest

from db.qr_operations import QROperations, generate_qr_token
from utils.errors import NotFoundError, QRExpired, QRAlreadyUsed, ValidationError

NOW = datetime(2026, 3, 1, 10, 0, 0)
SCANNER = {"user_id": 1, "role": "business"}


@pytest.fixture
def qr_ops(test_db):
    return QROperations(test_db, pos_payment_seconds=60)


class TestTokens:
    """令牌生成"""

    def test_token_format(self):
        token = generate_qr_token("payment", 42)
        assert re.fullmatch(r"[0-9A-F]{16}", token)

    def test_tokens_are_unique(self):
        tokens = {generate_qr_token("order", 1) for _ in range(200)}
        assert len(tokens) == 200

    def test_invalid_type(self):
        with pytest.raises(ValidationError):
            generate_qr_token("coupon", 1)


class TestIssueAndValidate:
    """签发与校验"""

    def test_issue_sets_expiry_by_type(self, qr_ops):
        qr = qr_ops.issue("payment", 7, now=NOW)
        assert qr["expires_at"] == (NOW + timedelta(hours=1)).isoformat()

        pos = qr_ops.issue("payment", 7, short_lived=True, now=NOW)
        assert pos["expires_at"] == (NOW + timedelta(seconds=60)).isoformat()

        order = qr_ops.issue("order", 7, short_lived=True, now=NOW)
        assert order["expires_at"] == (NOW + timedelta(hours=24)).isoformat()

    def test_validate_within_window(self, qr_ops):
        qr = qr_ops.issue("reservation", 3, metadata={"party_size": 2}, now=NOW)
        result = qr_ops.validate(qr["token"], now=NOW + timedelta(hours=1))
        assert result["valid"]
        assert result["qr"]["metadata"] == {"party_size": 2}

    def test_validate_lowercase_token(self, qr_ops):
        qr = qr_ops.issue("order", 3, now=NOW)
        assert qr_ops.validate(qr["token"].lower(), now=NOW)["valid"]

    def test_expired(self, qr_ops):
        qr = qr_ops.issue("payment", 7, short_lived=True, now=NOW)
        with pytest.raises(QRExpired):
            qr_ops.validate(qr["token"], now=NOW + timedelta(seconds=61))
        assert qr_ops.check(qr["token"], now=NOW + timedelta(seconds=61)) == {
            "valid": False, "reason": "QR_EXPIRED"}

    def test_unknown_token(self, qr_ops):
        with pytest.raises(NotFoundError):
            qr_ops.validate("DEADBEEFDEADBEEF")
        assert qr_ops.check("DEADBEEFDEADBEEF")["reason"] == "QR_NOT_FOUND"


class TestConsume:
    """扫描核销"""

    def test_single_use_discount(self, qr_ops):
        qr = qr_ops.issue("discount", 5, metadata={"discount_amount": 500}, now=NOW)
        result = qr_ops.consume(qr["token"], SCANNER, now=NOW)
        assert result["qr_type"] == "discount"
        assert result["result"]["discount"] == {"discount_amount": 500}

        with pytest.raises(QRAlreadyUsed):
            qr_ops.consume(qr["token"], SCANNER, now=NOW)

        stored = qr_ops.get_by_token(qr["token"], now=NOW)
        assert stored["is_used"]
        assert stored["used_by"] == 1
        assert stored["scan_count"] == 1
        assert stored["single_use"]

    def test_reusable_type_counts_scans(self, qr_ops):
        qr_ops.register_handler("reservation", lambda qr, scanner: {"message": "ok"})
        qr = qr_ops.issue("reservation", 9, now=NOW)

        qr_ops.consume(qr["token"], SCANNER, now=NOW)
        qr_ops.consume(qr["token"], SCANNER, now=NOW)

        stored = qr_ops.get_by_token(qr["token"], now=NOW)
        assert not stored["is_used"]
        assert stored["scan_count"] == 2

    def test_handler_failure_leaves_token_unused(self, qr_ops):
        def failing_handler(qr, scanner):
            raise ValidationError("扫描者无权限", code="UNAUTHORIZED_SCANNER")

        qr_ops.register_handler("payment", failing_handler)
        qr = qr_ops.issue("payment", 7, now=NOW)

        with pytest.raises(ValidationError):
            qr_ops.consume(qr["token"], SCANNER, now=NOW)

        stored = qr_ops.get_by_token(qr["token"], now=NOW)
        assert not stored["is_used"]
        assert stored["scan_count"] == 0

    def test_unregistered_type(self, qr_ops):
        qr = qr_ops.issue("driver_pickup", 7, now=NOW)
        with pytest.raises(ValidationError) as exc_info:
            qr_ops.consume(qr["token"], SCANNER, now=NOW)
        assert exc_info.value.code == "QR_TYPE_NOT_SCANNABLE"

    def test_expired_scan(self, qr_ops):
        qr = qr_ops.issue("discount", 5, metadata={"discount_amount": 500}, now=NOW)
        with pytest.raises(QRExpired):
            qr_ops.consume(qr["token"], SCANNER, now=NOW + timedelta(days=2))


class TestCoupons:
    """折扣码"""

    def test_fixed_amount(self, qr_ops):
        qr = qr_ops.issue("discount", 1, metadata={"discount_amount": 1500}, now=NOW)
        assert qr_ops.resolve_coupon(qr["token"], 10000, now=NOW)["discount"] == 1500

    def test_percentage(self, qr_ops):
        qr = qr_ops.issue("discount", 1, metadata={"discount_percentage": 0.1}, now=NOW)
        assert qr_ops.resolve_coupon(qr["token"], 12340, now=NOW)["discount"] == 1234

    def test_bound_to_other_user(self, qr_ops):
        qr = qr_ops.issue("discount", 1, metadata={"discount_amount": 100}, user_id=5, now=NOW)
        with pytest.raises(ValidationError):
            qr_ops.resolve_coupon(qr["token"], 1000, user_id=6, now=NOW)

    def test_wrong_type(self, qr_ops):
        qr = qr_ops.issue("order", 1, now=NOW)
        with pytest.raises(ValidationError):
            qr_ops.resolve_coupon(qr["token"], 1000, now=NOW)

    def test_missing_discount_metadata(self, qr_ops):
        qr = qr_ops.issue("discount", 1, now=NOW)
        with pytest.raises(ValidationError):
            qr_ops.resolve_coupon(qr["token"], 1000, now=NOW)


class TestMaintenance:
    """重新生成与清理"""

    def test_regenerate_expires_old_token(self, qr_ops):
        old = qr_ops.issue("order", 11, metadata={"order_number": "ORD-1"}, now=NOW)
        new = qr_ops.regenerate(old["token"], now=NOW)

        assert new["token"] != old["token"]
        assert new["metadata"] == {"order_number": "ORD-1"}
        with pytest.raises(QRExpired):
            qr_ops.validate(old["token"], now=NOW)
        assert [qr["token"] for qr in qr_ops.list_by_reference("order", 11)] == [new["token"], old["token"]]

    def test_used_single_use_cannot_regenerate(self, qr_ops):
        qr = qr_ops.issue("discount", 1, metadata={"discount_amount": 100}, now=NOW)
        qr_ops.consume(qr["token"], SCANNER, now=NOW)
        with pytest.raises(QRAlreadyUsed):
            qr_ops.regenerate(qr["token"], now=NOW)

    def test_cleanup_expired(self, qr_ops):
        qr_ops.issue("payment", 1, now=NOW - timedelta(days=40))
        kept = qr_ops.issue("payment", 2, now=NOW)
        assert qr_ops.cleanup_expired(older_than_days=30, now=NOW) == 1
        assert qr_ops.get_by_token(kept["token"], now=NOW)["qr_type"] == "payment"
