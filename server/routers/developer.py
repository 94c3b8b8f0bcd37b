"""
Developer settings: API keys, usage statistics and outgoing webhooks.
"""

import json
import logging
from datetime import datetime, timedelta

import httpx
from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session

import tiers
from auth import generate_api_key, get_current_user
from database import get_db
from errors import AppError
from models import ApiKey, ApiUsage, User, Webhook
from schemas import ApiKeyCreate, ApiKeyCreated, ApiKeyInfo, UsageStats, WebhookCreate, WebhookCreated, WebhookInfo
from services import webhooks

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/developer", tags=["developer"])

KEY_PREFIX_LENGTH = 10


# =============================================================================
# API KEYS
# =============================================================================

def _key_info(key: ApiKey) -> dict:
    return {
        "id": key.id,
        "name": key.name,
        "key_prefix": key.key_prefix,
        "permissions": json.loads(key.permissions),
        "rate_limit": key.rate_limit,
        "is_active": bool(key.is_active),
        "last_used_at": key.last_used_at,
        "expires_at": key.expires_at,
        "created_at": key.created_at,
    }


@router.post("/keys", response_model=ApiKeyCreated, status_code=201)
def create_key(body: ApiKeyCreate, user: User = Depends(tiers.require_feature("api_access")),
               db: Session = Depends(get_db)):
    """The plaintext key is only ever returned here."""
    plaintext, key_hash = generate_api_key()
    key = ApiKey(
        user_id=user.id,
        name=body.name,
        key_hash=key_hash,
        key_prefix=plaintext[:KEY_PREFIX_LENGTH],
        permissions=json.dumps(sorted({p.value for p in body.permissions})),
        rate_limit=body.rate_limit,
        expires_at=datetime.utcnow() + timedelta(days=body.expires_in_days) if body.expires_in_days else None,
    )
    db.add(key)
    db.commit()
    logger.info(f"API key {key.id} created", extra={"user_id": user.id})
    return ApiKeyCreated(**_key_info(key), key=plaintext)


@router.get("/keys", response_model=list[ApiKeyInfo])
def list_keys(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    keys = db.query(ApiKey).filter(ApiKey.user_id == user.id).order_by(ApiKey.created_at.desc()).all()
    return [_key_info(k) for k in keys]


@router.delete("/keys/{key_id}")
def revoke_key(key_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    key = db.get(ApiKey, key_id)
    if key is None or key.user_id != user.id:
        raise AppError("NOT_FOUND", "API key not found.")
    key.is_active = 0
    db.commit()
    logger.info(f"API key {key.id} revoked", extra={"user_id": user.id})
    return {"success": True}


@router.get("/usage", response_model=UsageStats)
def usage(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    now = datetime.utcnow()
    base = db.query(ApiUsage).join(ApiKey, ApiKey.id == ApiUsage.api_key_id).filter(ApiKey.user_id == user.id)

    average = base.with_entities(func.avg(ApiUsage.response_time_ms)).scalar()
    by_endpoint = base.with_entities(ApiUsage.endpoint, func.count(ApiUsage.id)).group_by(ApiUsage.endpoint).all()
    by_status = base.with_entities(ApiUsage.status_code, func.count(ApiUsage.id)).group_by(ApiUsage.status_code).all()

    return UsageStats(
        total_requests=base.count(),
        requests_last_hour=base.filter(ApiUsage.created_at >= now - timedelta(hours=1)).count(),
        requests_last_24h=base.filter(ApiUsage.created_at >= now - timedelta(hours=24)).count(),
        average_response_time_ms=round(float(average), 2) if average is not None else 0.0,
        by_endpoint=dict(by_endpoint),
        by_status={str(code): count for code, count in by_status},
    )


# =============================================================================
# WEBHOOKS
# =============================================================================

def _webhook_info(hook: Webhook) -> dict:
    return {
        "id": hook.id,
        "url": hook.url,
        "events": json.loads(hook.events),
        "is_active": bool(hook.is_active),
        "last_triggered_at": hook.last_triggered_at,
        "failure_count": hook.failure_count,
        "created_at": hook.created_at,
    }


def _owned_webhook(db: Session, user: User, webhook_id: int) -> Webhook:
    hook = db.get(Webhook, webhook_id)
    if hook is None or hook.user_id != user.id:
        raise AppError("NOT_FOUND", "Webhook not found.")
    return hook


@router.post("/webhooks", response_model=WebhookCreated, status_code=201)
def create_webhook(body: WebhookCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    unknown = sorted(set(body.events) - webhooks.SUPPORTED_EVENTS)
    if unknown or not body.events:
        raise AppError(
            "INVALID_INPUT",
            "Unsupported webhook events." if unknown else "At least one event is required.",
            details={"unsupported": unknown, "supported": sorted(webhooks.SUPPORTED_EVENTS)},
        )

    hook = Webhook(
        user_id=user.id,
        url=body.url,
        events=json.dumps(list(dict.fromkeys(body.events))),
        secret=webhooks.generate_secret(),
    )
    db.add(hook)
    db.commit()
    return WebhookCreated(**_webhook_info(hook), secret=hook.secret)


@router.get("/webhooks", response_model=list[WebhookInfo])
def list_webhooks(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    hooks = db.query(Webhook).filter(Webhook.user_id == user.id).order_by(Webhook.created_at.desc()).all()
    return [_webhook_info(h) for h in hooks]


@router.delete("/webhooks/{webhook_id}")
def delete_webhook(webhook_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    db.delete(_owned_webhook(db, user, webhook_id))
    db.commit()
    return {"success": True}


@router.post("/webhooks/{webhook_id}/test")
def test_webhook(webhook_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Send a `webhook.test` event synchronously and report whether it was accepted."""
    hook = _owned_webhook(db, user, webhook_id)
    client = httpx.Client(timeout=webhooks.DELIVERY_TIMEOUT)
    try:
        delivered = webhooks.deliver(hook, "webhook.test", {"webhook_id": hook.id, "message": "Test event"}, client)
    finally:
        client.close()
    db.commit()
    return {"delivered": delivered, "failure_count": hook.failure_count}
