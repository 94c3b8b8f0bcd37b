"""
Server-side batch analysis.
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from errors import AppError
from limiter import limiter
from models import BatchJob, User
from schemas import BatchCreateRequest, BatchItemInfo, BatchJobDetail, BatchJobInfo, BatchStats
from services.batch import BatchQueue, get_batch_queue, summarize_job

router = APIRouter(prefix="/api/batch", tags=["batch"])


def get_user_job(session: Session, user: User, job_id: int) -> BatchJob:
    job = session.get(BatchJob, job_id)
    if job is None or job.user_id != user.id:
        raise AppError("NOT_FOUND", "Batch job not found.")
    return job


def job_detail(session: Session, job: BatchJob) -> BatchJobDetail:
    return BatchJobDetail(
        **BatchJobInfo.model_validate(job).model_dump(),
        items=[BatchItemInfo.model_validate(item) for item in job.items],
        summary=summarize_job(session, job),
    )


@router.post("", response_model=BatchJobInfo, status_code=202)
@limiter.limit("5/minute")
def create_batch(
    request: Request,
    body: BatchCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    queue: BatchQueue = Depends(get_batch_queue),
):
    """Queue a batch. Poll GET /api/batch/{id} for progress."""
    job = queue.create_job(db, user, body.urls)
    queue.enqueue(job.id)
    db.refresh(job)
    return job


@router.get("", response_model=list[BatchJobInfo])
def list_batches(
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return (
        db.query(BatchJob)
        .filter(BatchJob.user_id == user.id)
        .order_by(BatchJob.created_at.desc(), BatchJob.id.desc())
        .limit(limit)
        .all()
    )


@router.get("/stats", response_model=BatchStats)
def batch_stats(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    queue: BatchQueue = Depends(get_batch_queue),
):
    return queue.stats(db, user_id=user.id)


@router.get("/{job_id}", response_model=BatchJobDetail)
def get_batch(job_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return job_detail(db, get_user_job(db, user, job_id))


@router.post("/{job_id}/cancel", response_model=BatchJobDetail)
def cancel_batch(
    job_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    queue: BatchQueue = Depends(get_batch_queue),
):
    job = queue.cancel(db, get_user_job(db, user, job_id))
    return job_detail(db, job)
