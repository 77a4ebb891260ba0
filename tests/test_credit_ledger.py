"""
Tests for the per-user credit ledger.

Tests:
- Row creation with the tier allocation
- Monthly reset of balance and usage
- Consumption, bonuses, refunds and tier changes
- Compare-and-swap retry on concurrent balance changes

Run tests:
    pytest tests/test_credit_ledger.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from api.credit_ledger import (
    CreditLedger,
    as_number,
    get_user_tier,
    next_month_start,
    parse_timestamp,
)
from api.store_adapter import StoreError

USER = "user-ledger"


@pytest.fixture
def ledger(memory_store):
    return CreditLedger(memory_store)


def _seed_credits(store, **values):
    row = {
        "user_id": USER,
        "credits_balance": 50,
        "monthly_allocation": 50,
        "credits_used_this_month": 0,
        "bonus_credits": 0,
        "month_reset_date": next_month_start(datetime.now(timezone.utc)).isoformat(),
    }
    row.update(values)
    return store.insert_one("user_credits", row)


# ============================================================================
# Helpers
# ============================================================================


class TestHelpers:
    """Numeric and date helpers."""

    def test_as_number_parses_numeric_strings(self):
        assert as_number("12.5") == 12.5
        assert as_number("10") == 10
        assert isinstance(as_number("10"), int)

    def test_as_number_none_is_zero(self):
        assert as_number(None) == 0

    def test_parse_timestamp_accepts_z_suffix(self):
        parsed = parse_timestamp("2026-03-01T00:00:00Z")
        assert parsed == datetime(2026, 3, 1, tzinfo=timezone.utc)

    def test_parse_timestamp_naive_is_utc(self):
        assert parse_timestamp("2026-03-01T12:00:00").tzinfo == timezone.utc

    def test_parse_timestamp_invalid(self):
        assert parse_timestamp("not a date") is None

    def test_next_month_start_wraps_year(self):
        now = datetime(2026, 12, 15, tzinfo=timezone.utc)
        assert next_month_start(now) == datetime(2027, 1, 1, tzinfo=timezone.utc)


class TestUserTier:
    """Tier resolution from users and user_profiles."""

    def test_defaults_to_free(self, memory_store):
        assert get_user_tier(USER, memory_store) == "free"

    def test_active_subscription_tier(self, memory_store):
        memory_store.insert("users", {"id": USER, "subscription_tier": "researcher", "subscription_status": "active"})
        assert get_user_tier(USER, memory_store) == "researcher"

    def test_canceled_subscription_falls_back_to_profile(self, memory_store):
        memory_store.insert("users", {"id": USER, "subscription_tier": "clinical", "subscription_status": "canceled"})
        memory_store.insert("user_profiles", {"id": USER, "subscription_tier": "researcher"})
        assert get_user_tier(USER, memory_store) == "researcher"


# ============================================================================
# Row lifecycle
# ============================================================================


class TestGetOrCreate:
    """Credit row creation and monthly reset."""

    def test_creates_free_row(self, ledger, memory_store):
        row = ledger.get_or_create(USER)

        assert as_number(row["credits_balance"]) == 50
        assert as_number(row["monthly_allocation"]) == 50
        assert memory_store.count("user_credits", eq={"user_id": USER}) == 1

    def test_creates_row_with_tier_allocation(self, ledger, memory_store):
        memory_store.insert("users", {"id": USER, "subscription_tier": "researcher", "subscription_status": "active"})
        row = ledger.get_or_create(USER)
        assert as_number(row["credits_balance"]) == 500

    def test_explicit_allocation(self, ledger):
        row = ledger.get_or_create(USER, allocation=0)
        assert as_number(row["credits_balance"]) == 0

    def test_existing_row_is_returned(self, ledger, memory_store):
        _seed_credits(memory_store, credits_balance=12)
        assert as_number(ledger.get_or_create(USER)["credits_balance"]) == 12
        assert memory_store.count("user_credits", eq={"user_id": USER}) == 1

    def test_monthly_reset(self, ledger, memory_store):
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        _seed_credits(
            memory_store,
            credits_balance=3,
            bonus_credits=10,
            credits_used_this_month=47,
            month_reset_date=past,
        )

        row = ledger.get_or_create(USER)

        assert as_number(row["credits_balance"]) == 60
        assert as_number(row["credits_used_this_month"]) == 0
        assert parse_timestamp(row["month_reset_date"]) > datetime.now(timezone.utc)


# ============================================================================
# Operations
# ============================================================================


class TestConsume:
    """Credit consumption."""

    def test_consume_success(self, ledger, memory_store):
        _seed_credits(memory_store)

        result = ledger.consume(USER, 5, action_type="workflow_run")

        assert result["success"] is True
        assert result["new_balance"] == 45
        assert result["credits_used_this_month"] == 5
        log = memory_store.select("usage_log", eq={"user_id": USER})
        assert len(log) == 1
        assert log[0]["credits_consumed"] == 5

    def test_consume_insufficient(self, ledger, memory_store):
        _seed_credits(memory_store, credits_balance=4)

        result = ledger.consume(USER, 5)

        assert result["success"] is False
        assert result["error"] == "Insufficient credits"
        assert result["required"] == 5
        assert result["available"] == 4
        assert as_number(memory_store.select_one("user_credits", eq={"user_id": USER})["credits_balance"]) == 4
        assert memory_store.select("usage_log") == []

    def test_consume_fractional(self, ledger, memory_store):
        _seed_credits(memory_store, credits_balance=1)
        result = ledger.consume(USER, 0.25)
        assert result["new_balance"] == 0.75

    def test_consume_retries_after_concurrent_change(self, ledger, memory_store, monkeypatch):
        _seed_credits(memory_store)
        original_update = memory_store.update
        calls = {"count": 0}

        def flaky_update(table, values, **eq):
            calls["count"] += 1
            if calls["count"] == 1:
                return []
            return original_update(table, values, **eq)

        monkeypatch.setattr(memory_store, "update", flaky_update)

        result = ledger.consume(USER, 5)

        assert result["success"] is True
        assert calls["count"] == 2

    def test_consume_gives_up_under_contention(self, ledger, memory_store, monkeypatch):
        _seed_credits(memory_store)
        monkeypatch.setattr(memory_store, "update", lambda table, values, **eq: [])

        with pytest.raises(StoreError):
            ledger.consume(USER, 5)


class TestBonusAndRefund:
    """Bonus credits, refunds and tier changes."""

    def test_add_bonus(self, ledger, memory_store):
        _seed_credits(memory_store, credits_balance=20, bonus_credits=5)

        row = ledger.add_bonus(USER, 100, reason="credit_purchase")

        assert as_number(row["credits_balance"]) == 120
        assert as_number(row["bonus_credits"]) == 105
        entry = memory_store.select_one("usage_log", eq={"user_id": USER})
        assert entry["action_type"] == "credit_addition"
        assert entry["credits_consumed"] == -100

    def test_refund(self, ledger, memory_store):
        _seed_credits(memory_store, credits_balance=10)
        row = ledger.refund(USER, 4)
        assert as_number(row["credits_balance"]) == 14

    def test_upgrade_adds_allocation_difference(self, ledger, memory_store):
        _seed_credits(memory_store, credits_balance=30)

        row = ledger.apply_tier_change(USER, "researcher")

        assert as_number(row["monthly_allocation"]) == 500
        assert as_number(row["credits_balance"]) == 480

    def test_downgrade_keeps_balance(self, ledger, memory_store):
        _seed_credits(memory_store, credits_balance=300, monthly_allocation=500)

        row = ledger.apply_tier_change(USER, "free")

        assert as_number(row["monthly_allocation"]) == 50
        assert as_number(row["credits_balance"]) == 300

    def test_record_transaction(self, ledger, memory_store):
        ledger.record_transaction(USER, 500, "purchase", "Purchased 500 credits", stripe_session_id="cs_123")

        row = memory_store.select_one("credit_transactions", eq={"user_id": USER})
        assert row["amount"] == 500
        assert row["type"] == "purchase"
        assert row["stripe_session_id"] == "cs_123"
        assert "metadata" not in row

    def test_recent_usage_newest_first(self, ledger, memory_store):
        memory_store.insert("usage_log", {"user_id": USER, "action_type": "a", "created_at": "2099-01-01T00:00:00+00:00"})
        memory_store.insert("usage_log", {"user_id": USER, "action_type": "b", "created_at": "2099-02-01T00:00:00+00:00"})

        usage = ledger.recent_usage(USER)

        assert [u["action_type"] for u in usage] == ["b", "a"]
