"""Credit balance API endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from api.auth import AuthUser, get_current_user
from api.credit_ledger import (
    CREDIT_COSTS,
    CREDIT_PACKAGES,
    DEFAULT_TIER_LIMITS,
    TIER_ALLOCATIONS,
    CreditLedger,
    as_number,
    get_user_tier,
)
from api.shared.logger import get_logger
from api.shared.settings import get_settings

logger = get_logger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])

MAX_CREDITS_PER_ADD = 10000


class ConsumeRequest(BaseModel):
    amount: Any = None
    workflow_id: str | None = None
    action_type: str = "workflow_run"
    resource_type: str = "brain_node"
    resource_details: dict[str, Any] = Field(default_factory=dict)


class AddCreditsRequest(BaseModel):
    credits: Any = None
    discountCode: str | None = None
    reason: str = "manual_add"


def find_discount_code(code: str | None) -> dict[str, Any] | None:
    """Look up an active credit discount code (case-insensitive)."""
    if not code:
        return None
    normalized = code.strip().upper()
    for entry in get_settings().discount_codes:
        if str(entry.get("code", "")).strip().upper() == normalized and entry.get("active", True):
            return entry
    return None


def _tier_limits(tier: str) -> dict[str, Any]:
    allocation = TIER_ALLOCATIONS.get(tier)
    if not allocation:
        return dict(DEFAULT_TIER_LIMITS)
    return {k: v for k, v in allocation.items() if k != "monthly_credits"}


@router.get("")
def get_credits(user: AuthUser = Depends(get_current_user)):
    """Current balance, tier limits, recent usage and the cost table."""
    ledger = CreditLedger()
    row = ledger.get_or_create(user.id)
    tier = get_user_tier(user.id, ledger.store)

    return {
        "credits_balance": as_number(row.get("credits_balance")),
        "monthly_allocation": as_number(row.get("monthly_allocation")),
        "credits_used_this_month": as_number(row.get("credits_used_this_month")),
        "bonus_credits": as_number(row.get("bonus_credits")),
        "month_reset_date": row.get("month_reset_date"),
        "tier": tier,
        "tier_limits": _tier_limits(tier),
        "recent_usage": ledger.recent_usage(user.id),
        "costs": CREDIT_COSTS,
    }


@router.post("")
def consume_credits(body: ConsumeRequest, user: AuthUser = Depends(get_current_user)):
    """Consume credits for a workflow action."""
    try:
        amount = float(body.amount)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid credit amount")
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Invalid credit amount")

    result = CreditLedger().consume(
        user.id,
        amount,
        workflow_id=body.workflow_id,
        action_type=body.action_type,
        resource_type=body.resource_type,
        resource_details=body.resource_details,
    )
    if not result["success"]:
        raise HTTPException(
            status_code=402,
            detail={
                "error": result["error"],
                "required": result["required"],
                "available": result["available"],
            },
        )
    return result


@router.post("/add")
def add_credits(body: AddCreditsRequest, user: AuthUser = Depends(get_current_user)):
    """Add bonus credits, optionally through a discount code."""
    credits = body.credits
    if isinstance(credits, bool) or not isinstance(credits, int) or not 1 <= credits <= MAX_CREDITS_PER_ADD:
        raise HTTPException(status_code=400, detail="Invalid credits amount (1-10000)")

    discount = None
    if body.discountCode:
        discount = find_discount_code(body.discountCode)
        if discount is None:
            raise HTTPException(status_code=400, detail="Invalid discount code")
    elif get_settings().is_production:
        raise HTTPException(
            status_code=400,
            detail="Discount code required. Use the checkout for purchases.",
        )

    ledger = CreditLedger()
    row = ledger.add_bonus(user.id, credits, reason=body.reason)

    if discount:
        description = f"Added {credits} credits with code {discount['code'].upper()}"
    else:
        description = f"Added {credits} credits ({body.reason})"
    ledger.record_transaction(
        user.id,
        credits,
        "discount" if discount else "manual",
        description,
    )
    logger.info("Added %d credits to %s", credits, user.id)

    return {
        "success": True,
        "credits_added": credits,
        "new_balance": as_number(row.get("credits_balance")),
        "bonus_credits": as_number(row.get("bonus_credits")),
        "discount_applied": discount is not None,
        "discount_name": discount.get("name") if discount else None,
    }


@router.get("/add")
async def validate_discount_code(code: str | None = None):
    """Check whether a discount code is valid."""
    if not code:
        raise HTTPException(status_code=400, detail="Discount code required")
    discount = find_discount_code(code)
    if discount is None:
        return {"valid": False, "percent_off": 0, "name": None}
    return {
        "valid": True,
        "percent_off": discount.get("percentOff", 0),
        "name": discount.get("name"),
    }


@router.get("/packages")
async def list_credit_packages():
    """Credit packages available for one-off purchase."""
    return {"packages": CREDIT_PACKAGES}
