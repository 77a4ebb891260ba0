"""
Stripe product catalog and subscription tier helpers.

Product and price ids are the live catalog configured in the Stripe
dashboard. Tiers are ordered ``free < researcher < clinical``.
"""

from __future__ import annotations

from typing import Any

TIER_ORDER = ["free", "researcher", "clinical"]
PAID_TIERS = ("researcher", "clinical")

PRODUCTS: dict[str, dict[str, Any]] = {
    "free": {
        "product_id": "prod_Tm3Gmsj8Tk2Qn9",
        "name": "Free",
        "workflows_per_month": 3,
        "prices": {},
        "features": [
            "3 workflow runs per month",
            "50 monthly credits",
            "Up to 10 nodes per workflow",
            "Community support",
        ],
    },
    "researcher": {
        "product_id": "prod_Tm3G9GyiaeEZnn",
        "name": "Researcher",
        "workflows_per_month": -1,
        "prices": {
            "monthly": "price_1SoVA2KkfLbczEaw6fi6ab3C",
            "annual": "price_1SoVA9KkfLbczEawByCWqF7z",
        },
        "features": [
            "Unlimited workflow runs",
            "500 monthly credits",
            "Up to 100 nodes per workflow",
            "5 concurrent workflows",
            "Cloud compute included",
        ],
    },
    "clinical": {
        "product_id": "prod_Tm3Gvvauiuv0sP",
        "name": "Clinical",
        "workflows_per_month": -1,
        "prices": {
            "monthly": "price_1SoVAFKkfLbczEawQimGavQL",
            "annual": "price_1SoVALKkfLbczEaw9B277EsA",
        },
        "features": [
            "Everything in Researcher",
            "2000 monthly credits",
            "Up to 500 nodes per workflow",
            "20 concurrent workflows",
            "Priority queue",
        ],
    },
}

COUPONS = {
    "WELCOME20": {"percent_off": 20, "duration": "repeating", "duration_in_months": 3},
}

PREMIUM_QUERIES = {
    "product_id": "prod_RjD3Lgid4FWnlg",
    "price_id": "price_1QpkdmKkfLbczEawcDlD5JSq",
    "price_per_query_dollars": 1,
    "packs": [
        {"queries": 10, "price_dollars": 10, "savings": None},
        {"queries": 50, "price_dollars": 45, "savings": "10%"},
        {"queries": 100, "price_dollars": 80, "savings": "20%"},
        {"queries": 500, "price_dollars": 350, "savings": "30%"},
    ],
}


def normalize_tier(tier: Any) -> str | None:
    """Return ``researcher`` or ``clinical`` for a checkout request, else ``None``."""
    if not isinstance(tier, str):
        return None
    tier = tier.strip().lower()
    return tier if tier in PAID_TIERS else None


def normalize_interval(interval: Any) -> str:
    if isinstance(interval, str) and interval.strip().lower() in ("annual", "yearly", "year"):
        return "annual"
    return "monthly"


def get_price_id(tier: str, interval: str = "monthly") -> str | None:
    product = PRODUCTS.get(tier)
    if not product or not product["prices"]:
        return None
    return product["prices"].get(normalize_interval(interval))


def get_product_id(tier: str) -> str | None:
    product = PRODUCTS.get(tier)
    return product["product_id"] if product else None


def tier_from_price_id(price_id: str | None) -> str:
    """Map a Stripe price id back to its tier; unknown prices are ``free``."""
    if price_id:
        for tier, product in PRODUCTS.items():
            if price_id in product["prices"].values():
                return tier
    return "free"


def get_workflow_limit(tier: str) -> int:
    """Monthly workflow run limit; ``-1`` means unlimited."""
    product = PRODUCTS.get(tier) or PRODUCTS["free"]
    return product["workflows_per_month"]


def can_use_tier(user_tier: str, required_tier: str) -> bool:
    """True if ``user_tier`` is at least ``required_tier``."""
    try:
        return TIER_ORDER.index(user_tier) >= TIER_ORDER.index(required_tier)
    except ValueError:
        return False


def get_tier_features(tier: str) -> list[str]:
    product = PRODUCTS.get(tier)
    return list(product["features"]) if product else []
