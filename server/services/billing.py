"""
Stripe subscriptions.

The user's tier is driven only by Stripe: checkout creates the subscription,
and the webhook events below keep `users.subscription_*` in sync.

    customer.subscription.created / updated  -> tier from the price, status, period end
    customer.subscription.deleted            -> back to free, cancelled
    invoice.payment_succeeded                -> logged
    invoice.payment_failed                   -> past_due
"""

import json
import logging
from datetime import datetime

import stripe
from sqlalchemy.orm import Session

import config
from errors import AppError
from models import SubscriptionEvent, User
from schemas import InvoiceInfo, PlanInfo
from tiers import TIER_LIMITS

logger = logging.getLogger(__name__)

PLANS = {
    "pro": {"name": "Pro", "price_cents": 1900, "interval": "month"},
    "enterprise": {"name": "Enterprise", "price_cents": 9900, "interval": "month"},
}

# Stripe subscription status -> our status
STATUS_MAP = {
    "active": "active",
    "trialing": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "canceled": "cancelled",
    "incomplete_expired": "cancelled",
}
PAID_STATUSES = ("active", "past_due")


def _client():
    if not config.stripe_enabled():
        raise AppError("BILLING_DISABLED")
    stripe.api_key = config.STRIPE_SECRET_KEY
    return stripe


def price_ids() -> dict[str, str]:
    return {
        "pro": config.STRIPE_PRO_PRICE_ID,
        "enterprise": config.STRIPE_ENTERPRISE_PRICE_ID,
    }


def tier_for_price(price_id: str | None) -> str | None:
    for tier, configured in price_ids().items():
        if configured and configured == price_id:
            return tier
    return None


def list_plans() -> list[PlanInfo]:
    plans = [PlanInfo(tier="free", name="Free", price_cents=0, interval="month",
                      features=TIER_LIMITS["free"]["features"])]
    for tier, plan in PLANS.items():
        plans.append(PlanInfo(
            tier=tier,
            name=plan["name"],
            price_cents=plan["price_cents"],
            interval=plan["interval"],
            price_id=price_ids()[tier] or None,
            features=TIER_LIMITS[tier]["features"],
        ))
    return plans


# =============================================================================
# CUSTOMER-FACING CALLS
# =============================================================================

def ensure_customer(session: Session, user: User) -> str:
    if user.stripe_customer_id:
        return user.stripe_customer_id
    customer = _client().Customer.create(email=user.email, metadata={"user_id": str(user.id)})
    user.stripe_customer_id = customer.id
    session.commit()
    return customer.id


def create_checkout_session(session: Session, user: User, price_id: str) -> tuple[str, str]:
    """Return (session_id, url) of a subscription Checkout session."""
    client = _client()
    tier = tier_for_price(price_id)
    if tier is None:
        raise AppError("INVALID_INPUT", "Unknown price id.", details={"price_id": price_id})

    customer_id = ensure_customer(session, user)
    try:
        checkout = client.checkout.Session.create(
            customer=customer_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=f"{config.APP_URL}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{config.APP_URL}/subscription/cancel",
            metadata={"user_id": str(user.id), "tier": tier},
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout failed for user {user.id}: {e}")
        raise AppError("EXTERNAL_API_ERROR", "Could not start checkout. Please try again.")
    return checkout.id, checkout.url


def cancel_subscription(session: Session, user: User) -> User:
    client = _client()
    if not user.stripe_subscription_id:
        raise AppError("NOT_FOUND", "No active subscription to cancel.")
    try:
        client.Subscription.modify(user.stripe_subscription_id, cancel_at_period_end=True)
    except stripe.StripeError as e:
        logger.error(f"Stripe cancel failed for user {user.id}: {e}")
        raise AppError("EXTERNAL_API_ERROR", "Could not cancel the subscription. Please try again.")
    user.cancel_at_period_end = 1
    session.commit()
    return user


def list_invoices(user: User, limit: int = 20) -> list[InvoiceInfo]:
    client = _client()
    if not user.stripe_customer_id:
        return []
    try:
        invoices = client.Invoice.list(customer=user.stripe_customer_id, limit=limit)
    except stripe.StripeError as e:
        logger.error(f"Stripe invoice listing failed for user {user.id}: {e}")
        raise AppError("EXTERNAL_API_ERROR", "Could not load invoices.")
    return [
        InvoiceInfo(
            id=invoice.id,
            amount_paid=invoice.amount_paid,
            currency=invoice.currency,
            status=invoice.status,
            created=datetime.utcfromtimestamp(invoice.created),
            hosted_invoice_url=invoice.hosted_invoice_url,
            invoice_pdf=invoice.invoice_pdf,
        )
        for invoice in invoices.data
    ]


# =============================================================================
# WEBHOOK
# =============================================================================

def construct_event(payload: bytes, signature: str | None) -> dict:
    """Verify the Stripe-Signature header and return the event as a plain dict."""
    _client()
    if not config.STRIPE_WEBHOOK_SECRET:
        raise AppError("BILLING_DISABLED", "Stripe webhook secret is not configured.")
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise AppError("INVALID_INPUT", "Invalid Stripe payload.")
    try:
        stripe.WebhookSignature.verify_header(body, signature or "", config.STRIPE_WEBHOOK_SECRET)
    except stripe.SignatureVerificationError:
        raise AppError("INVALID_INPUT", "Invalid Stripe signature.")
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        raise AppError("INVALID_INPUT", "Invalid Stripe payload.")


def _find_user(session: Session, obj: dict) -> User | None:
    customer_id = obj.get("customer")
    if customer_id:
        user = session.query(User).filter(User.stripe_customer_id == customer_id).first()
        if user:
            return user
    user_id = (obj.get("metadata") or {}).get("user_id")
    if user_id and str(user_id).isdigit():
        user = session.get(User, int(user_id))
        if user and customer_id and not user.stripe_customer_id:
            user.stripe_customer_id = customer_id
        return user
    return None


def _subscription_price(subscription: dict) -> str | None:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


def _period_end(subscription: dict) -> datetime | None:
    # Newer API versions moved current_period_end onto the subscription items
    end = subscription.get("current_period_end")
    if end is None:
        items = (subscription.get("items") or {}).get("data") or []
        end = items[0].get("current_period_end") if items else None
    return datetime.utcfromtimestamp(end) if end else None


def apply_subscription(user: User, subscription: dict) -> None:
    status = STATUS_MAP.get(subscription.get("status"), "inactive")
    tier = tier_for_price(_subscription_price(subscription))

    user.stripe_subscription_id = subscription.get("id")
    user.subscription_status = status
    user.subscription_tier = tier if tier and status in PAID_STATUSES else "free"
    user.subscription_end_date = _period_end(subscription)
    user.cancel_at_period_end = 1 if subscription.get("cancel_at_period_end") else 0


def _handle(session: Session, event_type: str, obj: dict, user: User | None) -> None:
    if user is None:
        logger.warning(f"Stripe event {event_type} for unknown customer {obj.get('customer')}")
        return

    if event_type in ("customer.subscription.created", "customer.subscription.updated"):
        apply_subscription(user, obj)
        logger.info(f"User {user.id} subscription now {user.subscription_tier}/{user.subscription_status}")
    elif event_type == "customer.subscription.deleted":
        user.subscription_tier = "free"
        user.subscription_status = "cancelled"
        user.stripe_subscription_id = None
        user.cancel_at_period_end = 0
        logger.info(f"User {user.id} subscription cancelled")
    elif event_type == "invoice.payment_succeeded":
        logger.info(f"Invoice {obj.get('id')} paid by user {user.id}")
    elif event_type == "invoice.payment_failed":
        user.subscription_status = "past_due"
        logger.warning(f"Invoice {obj.get('id')} payment failed for user {user.id}")
    else:
        logger.debug(f"Ignoring Stripe event {event_type}")


def handle_stripe_event(session: Session, event: dict) -> dict:
    """Apply one verified event. Idempotent on event id."""
    event_id = event["id"]
    if session.query(SubscriptionEvent).filter(SubscriptionEvent.stripe_event_id == event_id).first():
        logger.info(f"Stripe event {event_id} already processed")
        return {"received": True, "duplicate": True}

    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}
    user = None
    try:
        user = _find_user(session, obj)
        _handle(session, event_type, obj, user)
        session.flush()
    except Exception:
        # Still acknowledged; the event row below records it
        logger.exception(f"Failed to process Stripe event {event_id} ({event_type})")
        session.rollback()
        user = None

    session.add(SubscriptionEvent(
        user_id=user.id if user else None,
        stripe_event_id=event_id,
        event_type=event_type,
        data=json.dumps(obj, default=str),
    ))
    session.commit()
    return {"received": True}
