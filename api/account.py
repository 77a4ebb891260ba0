"""
Onboarding and account API routes.

Onboarding stores the profile answers collected on first login; account
deletion removes the user's rows and then the auth user itself.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from api.auth import AuthUser, get_current_user
from api.shared.logger import get_logger
from api.store_adapter import StoreError, get_store, utc_now_iso

logger = get_logger(__name__)

router = APIRouter(tags=["account"])

# Tables cleared before the auth user is deleted, with their user key column
USER_TABLES = {
    "user_settings": "user_id",
    "user_interests": "user_id",
    "user_profiles": "id",
    "workflows": "user_id",
    "workflow_results": "user_id",
}


class OnboardingRequest(BaseModel):
    full_name: str | None = None
    institution: str | None = None
    role: str | None = None
    research_interests: list[str] = Field(default_factory=list)


@router.post("/onboarding")
def complete_onboarding(body: OnboardingRequest, user: AuthUser = Depends(get_current_user)):
    """Save onboarding answers and mark onboarding complete.

    The profile, settings and metadata writes are independent; a failure
    in one is logged and the others still run.
    """
    store = get_store()
    now = utc_now_iso()

    try:
        store.upsert(
            "user_profiles",
            {
                "id": user.id,
                "email": user.email,
                "full_name": body.full_name,
                "institution": body.institution,
                "role": body.role,
                "updated_at": now,
            },
            on_conflict="id",
        )
    except StoreError as e:
        logger.error("Error updating user profile: %s", e)

    try:
        store.upsert(
            "user_settings",
            {
                "user_id": user.id,
                "onboarding_completed": True,
                "preferences": {"research_interests": body.research_interests},
                "updated_at": now,
            },
            on_conflict="user_id",
        )
    except StoreError as e:
        logger.error("Error updating user settings: %s", e)

    try:
        store.update_user_metadata(
            user.id,
            {
                "full_name": body.full_name,
                "institution": body.institution,
                "role": body.role,
                "onboarding_completed": True,
            },
        )
    except StoreError as e:
        logger.error("Error updating user metadata: %s", e)

    return {"success": True}


@router.get("/onboarding")
def get_onboarding_status(user: AuthUser = Depends(get_current_user)):
    """Whether the caller finished onboarding."""
    try:
        settings = get_store().select_one(
            "user_settings", "onboarding_completed", eq={"user_id": user.id}
        )
    except StoreError as e:
        logger.error("Error checking onboarding status: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")

    completed = bool(
        (settings or {}).get("onboarding_completed")
        or user.user_metadata.get("onboarding_completed")
    )
    return {
        "onboarding_completed": completed,
        "user": {
            "id": user.id,
            "email": user.email,
            "full_name": user.user_metadata.get("full_name"),
        },
    }


def delete_user_rows(user_id: str) -> dict[str, Any]:
    """Delete the user's rows table by table.

    Returns:
        Mapping of table name to deleted row count, or ``None`` where the
        delete failed.
    """
    store = get_store()
    deleted: dict[str, Any] = {}
    for table, column in USER_TABLES.items():
        try:
            deleted[table] = len(store.delete(table, **{column: user_id}))
        except StoreError as e:
            logger.info("Could not delete from %s: %s", table, e)
            deleted[table] = None
    return deleted


@router.delete("/account")
def delete_account(user: AuthUser = Depends(get_current_user)):
    """Delete the caller's data and auth user."""
    deleted = delete_user_rows(user.id)
    logger.info("Deleted account data for %s: %s", user.id, deleted)

    try:
        get_store().delete_auth_user(user.id)
    except StoreError as e:
        logger.error("Error deleting user %s: %s", user.id, e)
        raise HTTPException(
            status_code=500,
            detail="Failed to delete account. Please contact support.",
        )

    return {"success": True, "message": "Account deleted successfully"}
