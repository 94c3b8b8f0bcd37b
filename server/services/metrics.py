"""
Admin dashboard metrics computed from the operational tables.
"""

import csv
import io
import json
import logging
import os
import sys
import time
from collections import Counter, defaultdict
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
from database import check_db
from models import AnalyticsEvent, ApiUsage, BatchJob, User, UserActivity
from schemas import HealthMetrics, SystemMetrics, UserActivityMetrics

logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()

EXPORT_COLUMNS = ["id", "event_name", "event_category", "user_id", "properties", "created_at"]


class MetricsCalculator:

    def __init__(self, session: Session, now: datetime | None = None):
        self.session = session
        self.now = now or datetime.utcnow()

    # =========================================================================
    # HEALTH
    # =========================================================================

    def health(self, batch_queue_running: bool) -> HealthMetrics:
        started = time.perf_counter()
        try:
            database_ok = check_db()
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            database_ok = False
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        if not database_ok:
            status = "unhealthy"
        elif not batch_queue_running or not config.gemini_enabled():
            status = "degraded"
        else:
            status = "healthy"
        return HealthMetrics(
            status=status,
            database=database_ok,
            database_latency_ms=latency_ms,
            ai_enabled=config.gemini_enabled(),
            billing_enabled=config.stripe_enabled(),
            batch_queue_running=batch_queue_running,
            uptime_seconds=int(time.monotonic() - STARTED_AT),
            version=config.APP_VERSION,
        )

    # =========================================================================
    # SYSTEM
    # =========================================================================

    def system(self, window_hours: int = 24) -> SystemMetrics:
        hour_ago = self.now - timedelta(hours=1)
        since = self.now - timedelta(hours=window_hours)

        # Requests are counted from API usage plus product events; errors from the "error" category
        requests = (
            self.session.query(func.count(ApiUsage.id)).filter(ApiUsage.created_at >= hour_ago).scalar()
            + self.session.query(func.count(AnalyticsEvent.id))
            .filter(AnalyticsEvent.created_at >= hour_ago, AnalyticsEvent.event_category != "error")
            .scalar()
        )
        errors = (
            self.session.query(func.count(AnalyticsEvent.id))
            .filter(AnalyticsEvent.created_at >= hour_ago, AnalyticsEvent.event_category == "error")
            .scalar()
        )
        total = requests + errors

        errors_by_hour = defaultdict(int)
        rows = (
            self.session.query(AnalyticsEvent.created_at)
            .filter(AnalyticsEvent.created_at >= since, AnalyticsEvent.event_category == "error")
            .all()
        )
        for (created_at,) in rows:
            errors_by_hour[created_at.strftime("%Y-%m-%d %H:00")] += 1

        return SystemMetrics(
            requests_last_hour=requests,
            errors_last_hour=errors,
            error_rate=round(errors / total, 4) if total else 0.0,
            errors_by_hour=dict(sorted(errors_by_hour.items())),
            memory_max_rss_mb=self._max_rss_mb(),
            load_average=self._load_average(),
        )

    @staticmethod
    def _max_rss_mb() -> float | None:
        if sys.platform == "win32":
            return None
        import resource

        rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        # kilobytes on Linux, bytes on macOS
        divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
        return round(rss / divisor, 1)

    @staticmethod
    def _load_average() -> list[float]:
        try:
            return [round(v, 2) for v in os.getloadavg()]
        except (AttributeError, OSError):
            return []

    # =========================================================================
    # USERS
    # =========================================================================

    def user_activity(self) -> UserActivityMetrics:
        total_users = self.session.query(func.count(User.id)).scalar()
        new_users = (
            self.session.query(func.count(User.id))
            .filter(User.created_at >= self.now - timedelta(days=7))
            .scalar()
        )
        by_tier = dict(
            self.session.query(User.subscription_tier, func.count(User.id))
            .group_by(User.subscription_tier)
            .all()
        )
        top_actions = (
            self.session.query(UserActivity.action, func.count(UserActivity.id))
            .filter(UserActivity.created_at >= self.now - timedelta(days=30))
            .group_by(UserActivity.action)
            .order_by(func.count(UserActivity.id).desc())
            .limit(10)
            .all()
        )
        return UserActivityMetrics(
            total_users=total_users,
            new_users_last_7_days=new_users,
            active_users_last_24h=self.active_users(1),
            active_users_last_7_days=self.active_users(7),
            active_users_last_30_days=self.active_users(30),
            users_by_tier={tier: by_tier.get(tier, 0) for tier in ("free", "pro", "enterprise")},
            top_actions=dict(top_actions),
        )

    def active_users(self, days: int) -> int:
        return (
            self.session.query(func.count(func.distinct(UserActivity.user_id)))
            .filter(UserActivity.created_at >= self.now - timedelta(days=days))
            .scalar()
        )

    # =========================================================================
    # EVENTS
    # =========================================================================

    def time_series(self, days: int = 30, category: str | None = None) -> list[dict]:
        """Events per day, oldest first, zero-filled."""
        start = (self.now - timedelta(days=days - 1)).replace(hour=0, minute=0, second=0, microsecond=0)
        query = self.session.query(AnalyticsEvent.created_at).filter(AnalyticsEvent.created_at >= start)
        if category:
            query = query.filter(AnalyticsEvent.event_category == category)
        counts = Counter(created_at.strftime("%Y-%m-%d") for (created_at,) in query.all())

        series = []
        for offset in range(days):
            day = (start + timedelta(days=offset)).strftime("%Y-%m-%d")
            series.append({"date": day, "count": counts.get(day, 0)})
        return series

    def events(self, days: int = 30, category: str | None = None) -> list[AnalyticsEvent]:
        query = self.session.query(AnalyticsEvent).filter(
            AnalyticsEvent.created_at >= self.now - timedelta(days=days)
        )
        if category:
            query = query.filter(AnalyticsEvent.event_category == category)
        return query.order_by(AnalyticsEvent.created_at).all()

    def recent_jobs(self, limit: int = 50, status: str | None = None) -> list[BatchJob]:
        query = self.session.query(BatchJob)
        if status:
            query = query.filter(BatchJob.status == status)
        return query.order_by(BatchJob.created_at.desc(), BatchJob.id.desc()).limit(limit).all()


def event_to_dict(event: AnalyticsEvent) -> dict:
    return {
        "id": event.id,
        "event_name": event.event_name,
        "event_category": event.event_category,
        "user_id": event.user_id,
        "properties": json.loads(event.properties) if event.properties else None,
        "created_at": event.created_at.isoformat(),
    }


def events_to_csv(events: list[AnalyticsEvent]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for event in events:
        writer.writerow([
            event.id,
            event.event_name,
            event.event_category,
            event.user_id or "",
            event.properties or "",
            event.created_at.isoformat(),
        ])
    return buffer.getvalue()
