"""
Subscription tiers: usage limits and feature gating.

A limit of -1 means unlimited. Tiers only change through Stripe webhooks
(see services/billing.py).
"""

from datetime import datetime, timedelta

from fastapi import Depends
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

import config
from auth import get_current_user
from errors import AppError
from models import User

UNLIMITED = -1
ANALYSIS_WINDOW = timedelta(hours=24)

TIER_ORDER = ["free", "pro", "enterprise"]

TIER_LIMITS = {
    "free": {
        "api_calls_per_hour": 100,
        "analyses_per_day": 10,
        "batch_size": 3,
        "features": ["basic_analytics"],
    },
    "pro": {
        "api_calls_per_hour": 1000,
        "analyses_per_day": 100,
        "batch_size": UNLIMITED,
        "features": ["basic_analytics", "advanced_analytics", "export", "api_access"],
    },
    "enterprise": {
        "api_calls_per_hour": UNLIMITED,
        "analyses_per_day": UNLIMITED,
        "batch_size": UNLIMITED,
        "features": ["all"],
    },
}


def get_limits(tier: str | None) -> dict:
    return TIER_LIMITS.get(tier or "free", TIER_LIMITS["free"])


def has_feature(user: User, feature: str) -> bool:
    features = get_limits(user.subscription_tier)["features"]
    return "all" in features or feature in features


def upgrade_tier_for(feature: str) -> str:
    """Cheapest tier that includes `feature`."""
    for tier in TIER_ORDER:
        features = TIER_LIMITS[tier]["features"]
        if "all" in features or feature in features:
            return tier
    return "enterprise"


def check_feature(user: User, feature: str) -> None:
    if not has_feature(user, feature):
        raise AppError(
            "FEATURE_NOT_AVAILABLE",
            f"The '{feature}' feature is not available on the {user.subscription_tier} plan.",
            details={
                "feature": feature,
                "current_tier": user.subscription_tier,
                "upgrade_to": upgrade_tier_for(feature),
            },
        )


def require_feature(feature: str):
    """Dependency factory: the current user, provided their tier has `feature`."""

    def dependency(user: User = Depends(get_current_user)) -> User:
        check_feature(user, feature)
        return user

    return dependency


# =============================================================================
# DAILY ANALYSIS QUOTA
# =============================================================================

def reset_daily_count_if_due(user: User, now: datetime | None = None) -> bool:
    now = now or datetime.utcnow()
    if user.last_analysis_reset is None or now - user.last_analysis_reset >= ANALYSIS_WINDOW:
        user.analysis_count = 0
        user.last_analysis_reset = now
        return True
    return False


def analysis_reset_at(user: User) -> datetime:
    return (user.last_analysis_reset or datetime.utcnow()) + ANALYSIS_WINDOW


def remaining_analyses(user: User) -> int | None:
    """Analyses left in the current window, None when unlimited."""
    limit = get_limits(user.subscription_tier)["analyses_per_day"]
    if limit == UNLIMITED:
        return None
    reset_daily_count_if_due(user)
    return max(0, limit - (user.analysis_count or 0))


def _limit_error(user: User, remaining: int) -> AppError:
    limit = get_limits(user.subscription_tier)["analyses_per_day"]
    return AppError(
        "ANALYSIS_LIMIT_EXCEEDED",
        f"Daily analysis limit of {limit} reached for the {user.subscription_tier} plan.",
        details={
            "limit": limit,
            "remaining": remaining,
            "reset_at": analysis_reset_at(user).isoformat(),
            "upgrade_to": "pro" if user.subscription_tier == "free" else "enterprise",
        },
        headers=analysis_limit_headers(user),
    )


def check_analysis_limit(user: User, count: int = 1) -> None:
    remaining = remaining_analyses(user)
    if remaining is not None and remaining < count:
        raise _limit_error(user, remaining)


def claim_analysis(session: Session, user: User, now: datetime | None = None) -> None:
    """
    Take one analysis from the user's daily quota.

    The reset, check and increment run as UPDATE statements against the row,
    so concurrent workers for the same user cannot both take the last slot.
    Commits, then reloads `user`.
    """
    now = now or datetime.utcnow()
    limit = get_limits(user.subscription_tier)["analyses_per_day"]
    session.flush()

    session.query(User).filter(
        User.id == user.id,
        or_(User.last_analysis_reset.is_(None), User.last_analysis_reset <= now - ANALYSIS_WINDOW),
    ).update({User.analysis_count: 0, User.last_analysis_reset: now}, synchronize_session=False)

    query = session.query(User).filter(User.id == user.id)
    if limit != UNLIMITED:
        query = query.filter(func.coalesce(User.analysis_count, 0) < limit)
    claimed = query.update(
        {User.analysis_count: func.coalesce(User.analysis_count, 0) + 1}, synchronize_session=False
    )
    session.commit()
    session.refresh(user)

    if not claimed:
        raise _limit_error(user, 0)


def release_analysis(session: Session, user: User) -> None:
    """Give back a claimed analysis that did not produce a result."""
    session.query(User).filter(User.id == user.id, User.analysis_count > 0).update(
        {User.analysis_count: User.analysis_count - 1}, synchronize_session=False
    )
    session.commit()
    session.refresh(user)


def analysis_limit_headers(user: User) -> dict[str, str]:
    limit = get_limits(user.subscription_tier)["analyses_per_day"]
    if limit == UNLIMITED:
        return {"X-Analysis-Limit": "unlimited", "X-Analysis-Remaining": "unlimited"}
    return {
        "X-Analysis-Limit": str(limit),
        "X-Analysis-Remaining": str(remaining_analyses(user)),
        "X-Analysis-Reset": analysis_reset_at(user).isoformat(),
    }


# =============================================================================
# OTHER LIMITS
# =============================================================================

def batch_size_limit(user: User | None) -> int:
    tier = user.subscription_tier if user else "free"
    limit = get_limits(tier)["batch_size"]
    if limit == UNLIMITED:
        return config.BATCH_MAX_SIZE
    return min(limit, config.BATCH_MAX_SIZE)


def hourly_api_limit(user: User) -> int:
    return get_limits(user.subscription_tier)["api_calls_per_hour"]
