"""
Per-user credit ledger.

Each user has one ``user_credits`` row holding the spendable balance,
the monthly allocation of their subscription tier, bonus credits
(purchases, discount codes) and the date the allocation next resets.
Every consumption and bonus is journaled to ``usage_log``; purchases,
refunds and cloud-compute charges also go to ``credit_transactions``.

Balance updates are compare-and-swap on the previous balance, so two
concurrent consumers can never spend the same credits.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from api.shared.logger import get_logger
from api.store_adapter import StoreAdapter, StoreError, get_store, utc_now_iso

logger = get_logger(__name__)

CREDIT_COSTS: dict[str, float] = {
    "brain_node_flash": 1,
    "brain_node_haiku": 1.5,
    "brain_node_gpt4_mini": 2,
    "brain_node_sonnet": 5,
    "brain_node_gpt4": 5,
    "brain_node_opus": 10,
    "preprocessing_node": 0.5,
    "analysis_node": 0.5,
    "reference_data_query": 0.5,
    "output_node": 0.25,
    "content_impact_analyzer": 110,
    "media_bias_analyzer": 15,
    "ad_effectiveness_tester": 12,
    "neuro_psych_screener": 8,
}

TIER_ALLOCATIONS: dict[str, dict[str, Any]] = {
    "free": {
        "monthly_credits": 50,
        "max_nodes_per_workflow": 10,
        "max_concurrent_workflows": 1,
        "priority_queue": False,
    },
    "researcher": {
        "monthly_credits": 500,
        "max_nodes_per_workflow": 100,
        "max_concurrent_workflows": 5,
        "priority_queue": False,
    },
    "clinical": {
        "monthly_credits": 2000,
        "max_nodes_per_workflow": 500,
        "max_concurrent_workflows": 20,
        "priority_queue": True,
    },
}

DEFAULT_TIER_LIMITS = {
    "max_nodes_per_workflow": 10,
    "max_concurrent_workflows": 1,
    "priority_queue": False,
}

CREDIT_PACKAGES: list[dict[str, Any]] = [
    {"name": "100 Credits", "credits": 100, "price_cents": 999},
    {"name": "500 Credits", "credits": 500, "price_cents": 3999},
    {"name": "1000 Credits", "credits": 1000, "price_cents": 6999},
    {"name": "5000 Credits", "credits": 5000, "price_cents": 29999},
]

DEFAULT_MONTHLY_ALLOCATION = TIER_ALLOCATIONS["free"]["monthly_credits"]

MAX_CAS_RETRIES = 5


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO timestamp (``Z`` suffix allowed) into an aware datetime."""
    if value is None or isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def next_month_start(now: datetime) -> datetime:
    """First instant of the month after ``now`` (UTC)."""
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def month_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def as_number(value: Any) -> float:
    """Credits as a number; Postgres numerics may arrive as strings."""
    if value is None:
        return 0
    number = float(value)
    return int(number) if number.is_integer() else number


def get_user_tier(user_id: str, store: StoreAdapter | None = None) -> str:
    """Resolve the subscription tier of a user.

    ``users.subscription_tier`` wins when the subscription is active,
    trialing or has no status yet; otherwise ``user_profiles`` is checked.
    Defaults to ``free``.
    """
    store = store or get_store()
    user = store.select_one(
        "users", "subscription_tier, subscription_status", eq={"id": user_id}
    )
    if user and user.get("subscription_tier"):
        status = user.get("subscription_status")
        if status in (None, "", "active", "trialing"):
            return user["subscription_tier"]

    profile = store.select_one("user_profiles", "subscription_tier", eq={"id": user_id})
    if profile and profile.get("subscription_tier"):
        return profile["subscription_tier"]
    return "free"


class CreditLedger:
    """Credit operations against ``user_credits``.

    Args:
        store: Store adapter; defaults to the process-wide store.
    """

    def __init__(self, store: StoreAdapter | None = None):
        self._store = store

    @property
    def store(self) -> StoreAdapter:
        return self._store or get_store()

    # ----- rows -----

    def get_or_create(self, user_id: str, allocation: float | None = None) -> dict[str, Any]:
        """Return the user's credit row, creating or resetting it as needed.

        A new row gets the allocation of the user's tier (or ``allocation``
        when given). When the reset date has passed, the balance becomes
        allocation plus bonus and monthly usage returns to zero.
        """
        now = datetime.now(timezone.utc)
        row = self.store.select_one("user_credits", eq={"user_id": user_id})

        if row is None:
            if allocation is None:
                tier = get_user_tier(user_id, self.store)
                allocation = TIER_ALLOCATIONS.get(tier, {}).get(
                    "monthly_credits", DEFAULT_MONTHLY_ALLOCATION
                )
            new_row = {
                "user_id": user_id,
                "credits_balance": allocation,
                "monthly_allocation": allocation,
                "credits_used_this_month": 0,
                "bonus_credits": 0,
                "month_reset_date": next_month_start(now).isoformat(),
                "updated_at": now.isoformat(),
            }
            logger.info("Creating credit row for %s with %s credits", user_id, allocation)
            return self.store.insert_one("user_credits", new_row)

        reset_at = parse_timestamp(row.get("month_reset_date"))
        if reset_at is not None and reset_at <= now:
            values = {
                "credits_balance": as_number(row.get("monthly_allocation")) + as_number(row.get("bonus_credits")),
                "credits_used_this_month": 0,
                "month_reset_date": next_month_start(now).isoformat(),
                "updated_at": now.isoformat(),
            }
            updated = self.store.update("user_credits", values, user_id=user_id)
            logger.info("Monthly credit reset for %s", user_id)
            return updated[0] if updated else {**row, **values}

        return row

    def _swap_balance(self, user_id: str, compute) -> tuple[dict[str, Any], dict[str, Any] | None]:
        """Apply ``compute(row) -> values | None`` with compare-and-swap.

        Returns ``(row_before, updated_row)``. ``updated_row`` is ``None``
        when ``compute`` declined the change.
        """
        for _ in range(MAX_CAS_RETRIES):
            row = self.get_or_create(user_id)
            values = compute(row)
            if values is None:
                return row, None
            values["updated_at"] = utc_now_iso()
            updated = self.store.update(
                "user_credits",
                values,
                user_id=user_id,
                credits_balance=row["credits_balance"],
            )
            if updated:
                return row, updated[0]
            logger.debug("Credit balance for %s changed concurrently, retrying", user_id)
        raise StoreError(f"Could not update credits for {user_id}: too much contention")

    def _log_usage(self, entry: dict[str, Any]) -> None:
        try:
            self.store.insert("usage_log", entry)
        except StoreError as e:
            logger.error("Failed to write usage_log entry for %s: %s", entry.get("user_id"), e)

    # ----- operations -----

    def consume(
        self,
        user_id: str,
        amount: float,
        workflow_id: str | None = None,
        action_type: str = "workflow_run",
        resource_type: str = "brain_node",
        resource_details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Spend ``amount`` credits.

        Returns:
            ``{success, credits_consumed, new_balance, credits_used_this_month}``
            or ``{success: False, error, required, available}`` when the
            balance is too low.
        """

        def compute(row):
            balance = as_number(row.get("credits_balance"))
            if balance < amount:
                return None
            return {
                "credits_balance": round(balance - amount, 4),
                "credits_used_this_month": round(as_number(row.get("credits_used_this_month")) + amount, 4),
            }

        before, after = self._swap_balance(user_id, compute)
        if after is None:
            return {
                "success": False,
                "error": "Insufficient credits",
                "required": amount,
                "available": as_number(before.get("credits_balance")),
            }

        self._log_usage(
            {
                "user_id": user_id,
                "workflow_id": workflow_id,
                "action_type": action_type,
                "resource_type": resource_type,
                "resource_details": resource_details or {},
                "credits_consumed": amount,
            }
        )
        return {
            "success": True,
            "credits_consumed": amount,
            "new_balance": as_number(after["credits_balance"]),
            "credits_used_this_month": as_number(after["credits_used_this_month"]),
        }

    def add_bonus(self, user_id: str, amount: float, reason: str = "bonus") -> dict[str, Any]:
        """Grant bonus credits; they count toward balance and survive resets."""

        def compute(row):
            return {
                "credits_balance": round(as_number(row.get("credits_balance")) + amount, 4),
                "bonus_credits": round(as_number(row.get("bonus_credits")) + amount, 4),
            }

        _, after = self._swap_balance(user_id, compute)
        self._log_usage(
            {
                "user_id": user_id,
                "action_type": "credit_addition",
                "resource_type": reason,
                "resource_details": {"amount": amount},
                "credits_consumed": -amount,
            }
        )
        return after

    def refund(self, user_id: str, amount: float) -> dict[str, Any]:
        """Return previously charged credits to the balance."""

        def compute(row):
            return {"credits_balance": round(as_number(row.get("credits_balance")) + amount, 4)}

        _, after = self._swap_balance(user_id, compute)
        logger.info("Refunded %s credits to %s", amount, user_id)
        return after

    def apply_tier_change(self, user_id: str, new_tier: str) -> dict[str, Any]:
        """Switch the monthly allocation; upgrades add the difference now."""
        new_allocation = TIER_ALLOCATIONS.get(new_tier, TIER_ALLOCATIONS["free"])["monthly_credits"]

        def compute(row):
            old_allocation = as_number(row.get("monthly_allocation"))
            values: dict[str, Any] = {"monthly_allocation": new_allocation}
            if new_allocation > old_allocation:
                values["credits_balance"] = as_number(row.get("credits_balance")) + (new_allocation - old_allocation)
            return values

        _, after = self._swap_balance(user_id, compute)
        logger.info("Credit allocation for %s set to %s (%s)", user_id, new_allocation, new_tier)
        return after

    def recent_usage(self, user_id: str, days: int = 30, limit: int = 50) -> list[dict[str, Any]]:
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        return self.store.select(
            "usage_log",
            "action_type, resource_type, credits_consumed, created_at",
            eq={"user_id": user_id},
            gte={"created_at": since},
            order="created_at",
            desc=True,
            limit=limit,
        )

    def record_transaction(
        self,
        user_id: str,
        amount: float,
        transaction_type: str,
        description: str,
        metadata: dict[str, Any] | None = None,
        stripe_session_id: str | None = None,
    ) -> None:
        """Append a ``credit_transactions`` row (purchases, refunds, charges)."""
        row: dict[str, Any] = {
            "user_id": user_id,
            "amount": amount,
            "type": transaction_type,
            "description": description,
        }
        if metadata is not None:
            row["metadata"] = metadata
        if stripe_session_id:
            row["stripe_session_id"] = stripe_session_id
        try:
            self.store.insert("credit_transactions", row)
        except StoreError as e:
            logger.error("Failed to record %s transaction for %s: %s", transaction_type, user_id, e)
