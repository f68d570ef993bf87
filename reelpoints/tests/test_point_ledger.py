"""Tests for the point ledger (materialized balance + append-only log)."""
import pytest
from sqlalchemy import select

from reelpoints.core.database import point_ledger
from reelpoints.core.errors import InsufficientPointsError, NotFoundError, ValidationError
from reelpoints.features.ledger.service import (
    adjust,
    append_ledger_entry,
    debit,
    get_balance,
    get_user,
    get_user_ledger,
)
from reelpoints.models.ledger import LedgerEventType


class TestDebit:
    def test_debit_reduces_balance_and_appends_spend(self, db_session, seed):
        user_id = seed.user(points=50)

        balance_after = debit(db_session, user_id, 30, reason_code="short_leaf_purchase", family="short", content_id=7)
        db_session.commit()

        assert balance_after == 20
        assert get_balance(db_session, user_id) == 20
        entries = get_user_ledger(db_session, user_id)
        assert len(entries) == 1
        assert entries[0].event_type == LedgerEventType.SPEND
        assert entries[0].amount == -30
        assert entries[0].balance_after == 20
        assert entries[0].family == "short"
        assert entries[0].content_id == 7

    def test_debit_exact_balance_reaches_zero(self, db_session, seed):
        user_id = seed.user(points=30)
        assert debit(db_session, user_id, 30, reason_code="test") == 0

    def test_insufficient_debit_writes_nothing(self, db_session, seed):
        user_id = seed.user(points=20)

        with pytest.raises(InsufficientPointsError) as exc_info:
            debit(db_session, user_id, 30, reason_code="test")

        assert exc_info.value.required == 30
        assert exc_info.value.balance == 20
        assert exc_info.value.shortfall == 10
        assert exc_info.value.status_code == 402
        assert exc_info.value.details == {"required": 30, "balance": 20, "shortfall": 10}
        assert get_balance(db_session, user_id) == 20
        assert get_user_ledger(db_session, user_id) == []

    def test_non_positive_debit_rejected(self, db_session, seed):
        user_id = seed.user(points=20)
        with pytest.raises(ValidationError):
            debit(db_session, user_id, 0, reason_code="test")

    def test_unknown_user(self, db_session):
        with pytest.raises(NotFoundError):
            debit(db_session, 12345, 10, reason_code="test")

    def test_debit_does_not_commit(self, db_session, seed):
        user_id = seed.user(points=50)

        debit(db_session, user_id, 30, reason_code="test")
        db_session.rollback()

        assert get_balance(db_session, user_id) == 50
        assert db_session.execute(select(point_ledger)).fetchall() == []


class TestAdjust:
    def test_credit(self, db_session, seed):
        user_id = seed.user(points=0)

        entry = adjust(db_session, user_id, 100, "  welcome bonus ", actor="admin:abc")
        db_session.commit()

        assert entry.event_type == LedgerEventType.ADJUSTMENT
        assert entry.amount == 100
        assert entry.balance_after == 100
        assert entry.reason_code == "welcome bonus"
        assert entry.metadata == {"actor": "admin:abc"}
        assert get_balance(db_session, user_id) == 100

    def test_debit_adjustment(self, db_session, seed):
        user_id = seed.user(points=100)
        entry = adjust(db_session, user_id, -40, "correction")
        assert entry.balance_after == 60

    def test_negative_result_rejected(self, db_session, seed):
        user_id = seed.user(points=10)

        with pytest.raises(ValidationError):
            adjust(db_session, user_id, -11, "too much")

        assert get_balance(db_session, user_id) == 10

    @pytest.mark.parametrize("change,reason", [(0, "noop"), (5, ""), (5, "   ")])
    def test_invalid_requests(self, db_session, seed, change, reason):
        user_id = seed.user(points=10)
        with pytest.raises(ValidationError):
            adjust(db_session, user_id, change, reason)

    def test_unknown_user(self, db_session):
        with pytest.raises(NotFoundError):
            adjust(db_session, 4242, 10, "bonus")


class TestLedgerReads:
    def test_append_and_read_back(self, db_session, seed):
        user_id = seed.user(points=5)

        entry = append_ledger_entry(
            db_session,
            user_id=user_id,
            event_type=LedgerEventType.ADJUSTMENT,
            reason_code="import",
            amount=5,
            balance_after=5,
            metadata={"source": "migration"},
        )
        db_session.commit()

        assert entry.id is not None
        assert entry.metadata == {"source": "migration"}
        assert get_user_ledger(db_session, user_id)[0].id == entry.id

    def test_ledger_is_newest_first_and_limited(self, db_session, seed):
        user_id = seed.user(points=100)
        for amount in (1, 2, 3):
            debit(db_session, user_id, amount, reason_code=f"spend_{amount}")
        db_session.commit()

        entries = get_user_ledger(db_session, user_id, limit=2)

        assert [e.amount for e in entries] == [-3, -2]

    def test_balance_matches_ledger_sum(self, db_session, seed):
        user_id = seed.user(points=0)
        adjust(db_session, user_id, 80, "grant")
        debit(db_session, user_id, 30, reason_code="buy")
        adjust(db_session, user_id, -10, "fix")
        db_session.commit()

        total = sum(e.amount for e in get_user_ledger(db_session, user_id, limit=100))
        assert total == get_balance(db_session, user_id) == 40

    def test_get_user(self, db_session, seed):
        user_id = seed.user(points=7, display_name="viewer")
        user = get_user(db_session, user_id)
        assert user.points == 7
        assert user.display_name == "viewer"
        assert get_user(db_session, 999999) is None
