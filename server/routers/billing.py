"""
Subscription management and the Stripe webhook receiver.
"""

import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

import config
from auth import get_current_user
from database import get_db
from models import User
from schemas import CheckoutRequest, CheckoutResponse, InvoiceInfo, PlanInfo, SubscriptionStatus
from services import billing

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])


@router.get("/api/subscription/config")
def subscription_config():
    return {"enabled": config.stripe_enabled()}


@router.get("/api/subscription/plans", response_model=list[PlanInfo])
def plans():
    return billing.list_plans()


@router.get("/api/subscription/status", response_model=SubscriptionStatus)
def subscription_status(user: User = Depends(get_current_user)):
    return SubscriptionStatus(
        tier=user.subscription_tier,
        status=user.subscription_status,
        current_period_end=user.subscription_end_date,
        cancel_at_period_end=bool(user.cancel_at_period_end),
        stripe_customer_id=user.stripe_customer_id,
    )


@router.post("/api/subscription/checkout", response_model=CheckoutResponse)
def checkout(body: CheckoutRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    session_id, url = billing.create_checkout_session(db, user, body.price_id)
    return CheckoutResponse(session_id=session_id, url=url)


@router.post("/api/subscription/cancel", response_model=SubscriptionStatus)
def cancel(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    billing.cancel_subscription(db, user)
    return subscription_status(user)


@router.get("/api/subscription/invoices", response_model=list[InvoiceInfo])
def invoices(user: User = Depends(get_current_user)):
    return billing.list_invoices(user)


@router.post("/api/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    """Raw body is needed for signature verification."""
    payload = await request.body()
    event = billing.construct_event(payload, stripe_signature)
    return billing.handle_stripe_event(db, event)
