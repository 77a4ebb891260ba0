"""
Stripe billing API endpoints.

Checkout sessions for subscriptions and credit packs, the Stripe webhook,
and subscription status/sync for the signed-in user. Subscription state
lives on the ``users`` row; tier changes are propagated to the credit
ledger so the monthly allocation follows the plan.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import orjson
import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from api.auth import AuthUser, get_current_user
from api.credit_ledger import CREDIT_PACKAGES, CreditLedger, get_user_tier
from api.shared.logger import get_logger
from api.shared.settings import get_settings
from api.store_adapter import get_store, utc_now_iso
from api.stripe_config import get_price_id, normalize_interval, normalize_tier, tier_from_price_id

logger = get_logger(__name__)

router = APIRouter(prefix="/stripe", tags=["billing"])

ACTIVE_STATUSES = ("active", "trialing")


class CheckoutRequest(BaseModel):
    tier: str | None = None
    interval: str | None = "monthly"


class CreditCheckoutRequest(BaseModel):
    credits: int | None = None


def _configure_stripe() -> None:
    settings = get_settings()
    if not settings.stripe_configured:
        raise HTTPException(status_code=500, detail="Stripe is not configured")
    stripe.api_key = settings.stripe_secret_key


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError):
        value = getattr(obj, key, default)
    return default if value is None else value


def subscription_tier(subscription: Any) -> str:
    """Tier of the first recognised price on a subscription."""
    items = _get(_get(subscription, "items"), "data", [])
    for item in items:
        tier = tier_from_price_id(_get(_get(item, "price"), "id"))
        if tier != "free":
            return tier
    return "free"


def _period_end_iso(subscription: Any) -> str | None:
    period_end = _get(subscription, "current_period_end")
    if not period_end:
        return None
    return datetime.fromtimestamp(int(period_end), tz=timezone.utc).isoformat()


def save_subscription(user_id: str, values: dict[str, Any]) -> None:
    """Upsert subscription fields on ``users`` and sync the credit allocation."""
    store = get_store()
    previous_tier = get_user_tier(user_id, store)
    store.upsert("users", {"id": user_id, **values, "updated_at": utc_now_iso()}, on_conflict="id")

    status = values.get("subscription_status")
    tier = values.get("subscription_tier") or "free"
    effective_tier = tier if status in (None, *ACTIVE_STATUSES) else "free"
    if effective_tier != previous_tier:
        logger.info("Tier change for %s: %s -> %s", user_id, previous_tier, effective_tier)
        CreditLedger(store).apply_tier_change(user_id, effective_tier)


def _get_or_create_customer(user: AuthUser) -> str:
    store = get_store()
    row = store.select_one("users", "stripe_customer_id", eq={"id": user.id})
    if row and row.get("stripe_customer_id"):
        return row["stripe_customer_id"]

    customer = stripe.Customer.create(email=user.email, metadata={"user_id": user.id})
    customer_id = _get(customer, "id")
    store.upsert(
        "users",
        {"id": user.id, "email": user.email, "stripe_customer_id": customer_id, "updated_at": utc_now_iso()},
        on_conflict="id",
    )
    logger.info("Created Stripe customer %s for %s", customer_id, user.id)
    return customer_id


# ============= Checkout =============


@router.post("/create-checkout")
def create_checkout(body: CheckoutRequest, user: AuthUser = Depends(get_current_user)):
    """Create a subscription checkout session for a paid tier."""
    tier = normalize_tier(body.tier)
    if tier is None:
        raise HTTPException(status_code=400, detail="Missing or invalid tier")
    interval = normalize_interval(body.interval)
    price_id = get_price_id(tier, interval)

    _configure_stripe()
    app_url = get_settings().app_url
    try:
        customer_id = _get_or_create_customer(user)
        session = stripe.checkout.Session.create(
            customer=customer_id,
            client_reference_id=user.id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            allow_promotion_codes=True,
            success_url=f"{app_url}/dashboard?checkout=success",
            cancel_url=f"{app_url}/dashboard?checkout=canceled",
            metadata={"user_id": user.id, "tier": tier, "interval": interval},
            subscription_data={"metadata": {"user_id": user.id, "tier": tier}},
        )
    except stripe.StripeError as e:
        logger.error("Stripe checkout failed for %s: %s", user.id, e)
        raise HTTPException(status_code=500, detail="Failed to create checkout session")

    return {"url": _get(session, "url")}


@router.post("/create-credit-checkout")
def create_credit_checkout(body: CreditCheckoutRequest, user: AuthUser = Depends(get_current_user)):
    """Create a one-off payment session for a credit package."""
    package = next((p for p in CREDIT_PACKAGES if p["credits"] == body.credits), None)
    if package is None:
        raise HTTPException(status_code=400, detail="Invalid credit package")

    _configure_stripe()
    app_url = get_settings().app_url
    try:
        customer_id = _get_or_create_customer(user)
        session = stripe.checkout.Session.create(
            customer=customer_id,
            client_reference_id=user.id,
            mode="payment",
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": {"name": f"NeuroData Hub {package['name']}"},
                        "unit_amount": package["price_cents"],
                    },
                    "quantity": 1,
                }
            ],
            success_url=f"{app_url}/dashboard?credits=success",
            cancel_url=f"{app_url}/dashboard?credits=canceled",
            metadata={
                "user_id": user.id,
                "type": "credit_purchase",
                "credits": str(package["credits"]),
            },
        )
    except stripe.StripeError as e:
        logger.error("Stripe credit checkout failed for %s: %s", user.id, e)
        raise HTTPException(status_code=500, detail="Failed to create checkout session")

    return {"url": _get(session, "url")}


# ============= Webhook =============


def _handle_checkout_completed(session: dict[str, Any]) -> None:
    metadata = session.get("metadata") or {}
    user_id = metadata.get("user_id") or session.get("client_reference_id")
    if not user_id:
        logger.warning("Checkout session %s has no user reference", session.get("id"))
        return

    if metadata.get("type") == "credit_purchase":
        credits = int(metadata.get("credits") or 0)
        if credits <= 0:
            logger.warning("Credit purchase %s has no credit count", session.get("id"))
            return
        ledger = CreditLedger()
        session_id = session.get("id")
        if session_id and ledger.store.select_one("credit_transactions", eq={"stripe_session_id": session_id}):
            logger.info("Credit purchase %s already applied, skipping", session_id)
            return
        if ledger.store.select_one("user_credits", eq={"user_id": user_id}) is None:
            ledger.get_or_create(user_id, allocation=0)
        ledger.add_bonus(user_id, credits, reason="credit_purchase")
        ledger.record_transaction(
            user_id,
            credits,
            "purchase",
            f"Purchased {credits} credits",
            stripe_session_id=session_id,
        )
        logger.info("Credited %d purchased credits to %s", credits, user_id)
        return

    subscription_id = session.get("subscription")
    status = "active"
    tier = metadata.get("tier")
    if subscription_id:
        _configure_stripe()
        subscription = stripe.Subscription.retrieve(subscription_id)
        status = _get(subscription, "status", status)
        if not tier:
            found = subscription_tier(subscription)
            tier = found if found != "free" else None

    values: dict[str, Any] = {
        "stripe_customer_id": session.get("customer"),
        "stripe_subscription_id": subscription_id,
        "subscription_status": status,
        "subscription_tier": tier or "researcher",
    }
    email = (session.get("customer_details") or {}).get("email")
    if email:
        values["email"] = email
    save_subscription(user_id, values)
    logger.info("Subscription checkout completed for %s (%s)", user_id, values["subscription_tier"])


def _handle_subscription_change(subscription: dict[str, Any], deleted: bool) -> None:
    user_id = (subscription.get("metadata") or {}).get("user_id")
    if not user_id:
        logger.warning("Subscription %s has no user_id metadata", subscription.get("id"))
        return

    save_subscription(
        user_id,
        {
            "stripe_customer_id": subscription.get("customer"),
            "stripe_subscription_id": subscription.get("id"),
            "subscription_status": subscription.get("status") or ("canceled" if deleted else None),
            "subscription_tier": "free" if deleted else subscription_tier(subscription),
        },
    )


def handle_webhook_event(event: dict[str, Any]) -> None:
    """Apply a verified Stripe event to the database."""
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    logger.info("Stripe webhook: %s", event_type)

    if event_type == "checkout.session.completed":
        _handle_checkout_completed(obj)
    elif event_type == "customer.subscription.updated":
        _handle_subscription_change(obj, deleted=False)
    elif event_type == "customer.subscription.deleted":
        _handle_subscription_change(obj, deleted=True)
    else:
        logger.debug("Ignoring Stripe event %s", event_type)


@router.post("/webhook")
async def stripe_webhook(request: Request):
    """Receive Stripe events (signature verified)."""
    secret = get_settings().stripe_webhook_secret
    if not secret:
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    payload = await request.body()
    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError as e:
        raise HTTPException(status_code=400, detail={"error": "Invalid signature", "details": str(e)})
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"error": "Invalid payload", "details": str(e)})

    event = orjson.loads(payload)
    try:
        await run_in_threadpool(handle_webhook_event, event)
    except Exception as e:
        logger.exception("Stripe webhook handler failed for %s", event.get("type"))
        raise HTTPException(status_code=500, detail=f"Webhook handler failed: {e}")

    return {"received": True}


# ============= Subscription status =============


@router.get("/subscription")
def get_subscription(user: AuthUser = Depends(get_current_user)):
    """Subscription state, refreshed from Stripe when reachable."""
    store = get_store()
    row = store.select_one("users", eq={"id": user.id}) or {}

    tier = row.get("subscription_tier") or "free"
    status = row.get("subscription_status")
    customer_id = row.get("stripe_customer_id")
    period_end = row.get("current_period_end")
    email = row.get("email") or user.email

    if get_settings().stripe_configured:
        stripe.api_key = get_settings().stripe_secret_key
        try:
            if not customer_id and email:
                customers = _get(stripe.Customer.list(email=email, limit=1), "data", [])
                if customers:
                    customer_id = _get(customers[0], "id")
                    store.upsert(
                        "users",
                        {"id": user.id, "email": email, "stripe_customer_id": customer_id, "updated_at": utc_now_iso()},
                        on_conflict="id",
                    )

            if customer_id:
                subscriptions = _get(
                    stripe.Subscription.list(customer=customer_id, status="all", limit=1), "data", []
                )
                if subscriptions:
                    subscription = subscriptions[0]
                    status = _get(subscription, "status")
                    period_end = _period_end_iso(subscription) or period_end
                    tier = subscription_tier(subscription) if status in ACTIVE_STATUSES else "free"
                    save_subscription(
                        user.id,
                        {
                            "stripe_customer_id": customer_id,
                            "stripe_subscription_id": _get(subscription, "id"),
                            "subscription_status": status,
                            "subscription_tier": tier,
                            "current_period_end": period_end,
                        },
                    )
        except stripe.StripeError as e:
            logger.warning("Stripe lookup failed for %s, using stored values: %s", user.id, e)

    return {
        "tier": tier,
        "status": status,
        "stripeCustomerId": customer_id,
        "currentPeriodEnd": period_end,
        "email": email,
    }


@router.post("/sync")
def sync_subscription(user: AuthUser = Depends(get_current_user)):
    """Re-read the user's subscription from Stripe by email."""
    _configure_stripe()
    store = get_store()
    row = store.select_one("users", "email", eq={"id": user.id}) or {}
    email = user.email or row.get("email")
    if not email:
        raise HTTPException(status_code=400, detail="No email on account")

    try:
        customers = _get(stripe.Customer.list(email=email, limit=1), "data", [])
        if not customers:
            return {"synced": False, "message": "No Stripe customer found for this email"}
        customer_id = _get(customers[0], "id")

        subscriptions = _get(stripe.Subscription.list(customer=customer_id, limit=5), "data", [])
        chosen = next(
            (s for s in subscriptions if _get(s, "status") in ACTIVE_STATUSES),
            subscriptions[0] if subscriptions else None,
        )
        status = _get(chosen, "status")
        tier = subscription_tier(chosen) if status in ACTIVE_STATUSES else "free"

        save_subscription(
            user.id,
            {
                "email": email,
                "stripe_customer_id": customer_id,
                "stripe_subscription_id": _get(chosen, "id"),
                "subscription_status": status,
                "subscription_tier": tier,
            },
        )
    except stripe.StripeError as e:
        logger.error("Stripe sync failed for %s: %s", user.id, e)
        raise HTTPException(status_code=500, detail="Failed to sync subscription")

    return {"synced": True, "tier": tier, "status": status, "stripeCustomerId": customer_id}
