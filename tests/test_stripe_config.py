"""
Tests for the Stripe product catalog helpers.

Run tests:
    pytest tests/test_stripe_config.py -v
"""

import pytest

from api.stripe_config import (
    PRODUCTS,
    can_use_tier,
    get_price_id,
    get_tier_features,
    get_workflow_limit,
    normalize_interval,
    normalize_tier,
    tier_from_price_id,
)


class TestTierNormalization:
    @pytest.mark.parametrize(
        "raw, expected",
        [("researcher", "researcher"), (" Clinical ", "clinical"), ("free", None), ("gold", None), (None, None), (3, None)],
    )
    def test_normalize_tier(self, raw, expected):
        assert normalize_tier(raw) == expected

    @pytest.mark.parametrize("raw", ["annual", "yearly", "YEAR"])
    def test_annual_aliases(self, raw):
        assert normalize_interval(raw) == "annual"

    def test_interval_defaults_to_monthly(self):
        assert normalize_interval(None) == "monthly"
        assert normalize_interval("weekly") == "monthly"


class TestPrices:
    def test_price_round_trip(self):
        for tier in ("researcher", "clinical"):
            for interval in ("monthly", "annual"):
                assert tier_from_price_id(get_price_id(tier, interval)) == tier

    def test_free_has_no_price(self):
        assert get_price_id("free") is None

    def test_unknown_price_is_free(self):
        assert tier_from_price_id("price_unknown") == "free"
        assert tier_from_price_id(None) == "free"


class TestLimits:
    def test_workflow_limits(self):
        assert get_workflow_limit("free") == 3
        assert get_workflow_limit("researcher") == -1
        assert get_workflow_limit("nonexistent") == 3

    def test_tier_order(self):
        assert can_use_tier("clinical", "researcher")
        assert can_use_tier("researcher", "researcher")
        assert not can_use_tier("free", "researcher")
        assert not can_use_tier("platinum", "free")

    def test_features_are_copies(self):
        features = get_tier_features("free")
        features.append("extra")
        assert "extra" not in PRODUCTS["free"]["features"]
        assert get_tier_features("unknown") == []
