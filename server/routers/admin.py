"""
Operator dashboards. Every endpoint needs the X-Admin-Token header.
"""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from auth import require_admin
from database import get_db
from schemas import BatchJobInfo, HealthMetrics, SystemMetrics, UserActivityMetrics
from services.metrics import MetricsCalculator, event_to_dict, events_to_csv

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/health-metrics", response_model=HealthMetrics)
def health_metrics(request: Request, db: Session = Depends(get_db)):
    queue = getattr(request.app.state, "batch_queue", None)
    return MetricsCalculator(db).health(batch_queue_running=bool(queue and queue.running))


@router.get("/system-metrics", response_model=SystemMetrics)
def system_metrics(window_hours: int = Query(24, ge=1, le=168), db: Session = Depends(get_db)):
    return MetricsCalculator(db).system(window_hours)


@router.get("/user-activity", response_model=UserActivityMetrics)
def user_activity(db: Session = Depends(get_db)):
    return MetricsCalculator(db).user_activity()


@router.get("/analytics/time-series")
def time_series(
    days: int = Query(30, ge=1, le=365),
    category: str | None = None,
    db: Session = Depends(get_db),
):
    return {"days": days, "category": category, "series": MetricsCalculator(db).time_series(days, category)}


@router.get("/export")
def export_events(
    format: str = Query("json", pattern="^(json|csv)$"),
    days: int = Query(30, ge=1, le=365),
    category: str | None = None,
    db: Session = Depends(get_db),
):
    events = MetricsCalculator(db).events(days, category)
    if format == "csv":
        return Response(
            content=events_to_csv(events),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": 'attachment; filename="analytics_events.csv"'},
        )
    return {"count": len(events), "events": [event_to_dict(e) for e in events]}


@router.get("/jobs", response_model=list[BatchJobInfo])
def jobs(
    status: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    return MetricsCalculator(db).recent_jobs(limit, status)
