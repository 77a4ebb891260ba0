"""
Dashboard summary API.

``GET /api/dashboard/summary`` rolls up the caller's ``items``: counts by
status and category, recent and most viewed items, a quality overview, and
the number of pending agent tasks.
"""

from __future__ import annotations

from collections import Counter
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from api.auth import AuthUser, get_current_user
from api.shared.logger import get_logger
from api.store_adapter import StoreError, get_store

logger = get_logger(__name__)

router = APIRouter(prefix="/dashboard", tags=["dashboard"])

ITEM_COLUMNS = (
    "id, status, verification_status, quality_score, enrichment_status, view_count, category_id, created_at"
)
TOP_ITEMS = 5


def summarize_items(
    items: list[dict[str, Any]],
    categories: list[dict[str, Any]],
    pending_tasks: int,
) -> dict[str, Any]:
    """Dashboard figures for one user's items."""
    category_names = {c.get("id"): c.get("name") for c in categories}
    by_category = Counter(category_names.get(i.get("category_id")) or "Uncategorized" for i in items)

    scores = [i.get("quality_score") or 0 for i in items]
    average_score = int(sum(scores) / len(scores) + 0.5) if scores else 0

    recent = sorted(items, key=lambda i: i.get("created_at") or "", reverse=True)[:TOP_ITEMS]
    top = sorted(items, key=lambda i: i.get("view_count") or 0, reverse=True)[:TOP_ITEMS]

    return {
        "total_items": len(items),
        "items_by_status": dict(Counter(i.get("status") for i in items)),
        "items_by_category": dict(by_category),
        "recent_items": recent,
        "top_items": top,
        "quality_overview": {
            "average_score": average_score,
            "verified_count": sum(1 for i in items if i.get("verification_status") == "verified"),
            "pending_enrichment": sum(1 for i in items if i.get("enrichment_status") == "pending"),
        },
        "agent_activity": {
            "last_24h_runs": 0,
            "items_processed_today": 0,
            "pending_tasks": pending_tasks,
        },
    }


@router.get("/summary")
def dashboard_summary(user: AuthUser = Depends(get_current_user)):
    """Summary of the caller's items for the dashboard overview."""
    store = get_store()
    try:
        items = store.select("items", ITEM_COLUMNS, eq={"user_id": user.id})
        # Shared categories have no owner
        categories = [
            c for c in store.select("categories", "id, name, user_id") if c.get("user_id") in (user.id, None)
        ]
        pending_tasks = store.count("agent_tasks", eq={"status": "pending"})
    except StoreError as e:
        logger.error("Error fetching dashboard summary for %s: %s", user.id, e)
        raise HTTPException(status_code=500, detail="Internal server error")

    return {"data": summarize_items(items, categories, pending_tasks)}
