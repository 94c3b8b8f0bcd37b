"""
Outgoing webhooks.

Each delivery is a JSON POST signed with the webhook's secret:

    X-RepoRadar-Signature: sha256=<hex hmac of the raw body>
    X-RepoRadar-Event: repository.analyzed

Receivers verify it with the same HMAC and a constant-time compare.
"""

import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime

import httpx
from sqlalchemy.orm import Session

from models import Webhook

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-RepoRadar-Signature"
EVENT_HEADER = "X-RepoRadar-Event"
DELIVERY_TIMEOUT = 10.0

SUPPORTED_EVENTS = {
    "repository.analyzed",
    "batch.completed",
    "webhook.test",
}


def generate_secret() -> str:
    return f"whsec_{secrets.token_urlsafe(24)}"


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature)


def build_body(event: str, data: dict) -> bytes:
    envelope = {
        "event": event,
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "data": data,
    }
    return json.dumps(envelope, default=str).encode()


def deliver(webhook: Webhook, event: str, data: dict, client: httpx.Client) -> bool:
    """POST one event to one webhook and record the outcome on the row."""
    body = build_body(event, data)
    headers = {
        "Content-Type": "application/json",
        "User-Agent": "RepoRadar-Webhooks",
        EVENT_HEADER: event,
        SIGNATURE_HEADER: sign_payload(webhook.secret, body),
    }
    try:
        response = client.post(webhook.url, content=body, headers=headers)
        ok = response.is_success
        if not ok:
            logger.warning(f"Webhook {webhook.id} answered {response.status_code} for {event}")
    except httpx.HTTPError as e:
        logger.warning(f"Webhook {webhook.id} delivery failed for {event}: {e}")
        ok = False

    if ok:
        webhook.last_triggered_at = datetime.utcnow()
        webhook.failure_count = 0
    else:
        webhook.failure_count = (webhook.failure_count or 0) + 1
    return ok


def subscribed_webhooks(session: Session, user_id: int, event: str) -> list[Webhook]:
    hooks = session.query(Webhook).filter(Webhook.user_id == user_id, Webhook.is_active == 1).all()
    return [hook for hook in hooks if event in json.loads(hook.events or "[]")]


def deliver_event(session: Session, user_id: int, event: str, data: dict,
                  client: httpx.Client | None = None) -> int:
    """Send `event` to every active webhook of the user subscribed to it. Returns successes."""
    hooks = subscribed_webhooks(session, user_id, event)
    if not hooks:
        return 0

    own_client = client is None
    client = client or httpx.Client(timeout=DELIVERY_TIMEOUT)
    try:
        delivered = sum(1 for hook in hooks if deliver(hook, event, data, client))
    finally:
        if own_client:
            client.close()
    session.commit()
    return delivered


def dispatch_event(user_id: int, event: str, data: dict) -> None:
    """Background-task entry point: opens its own session, never raises."""
    from database import SessionLocal

    session = SessionLocal()
    try:
        deliver_event(session, user_id, event, data)
    except Exception:
        logger.exception(f"Webhook dispatch of {event} for user {user_id} crashed")
        session.rollback()
    finally:
        session.close()
