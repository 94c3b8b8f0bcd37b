r"""
Server-side batch analysis.

A batch is a BatchJob row plus one BatchItem row per repository URL. Items
are processed by a bounded thread pool; every state change is committed, so
a restarted server can pick up where it stopped (see `BatchQueue.resume`).

Item lifecycle:

    pending -> analyzing -> completed
                        \-> pending (retryable failure, after backoff) -> analyzing ...
                        \-> error   (non-retryable, or attempts exhausted)
    pending -> cancelled            (job cancelled)

Job lifecycle: queued -> processing -> completed | failed | cancelled.
A job is `failed` only when every item ended in error.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable

from fastapi import Request
from sqlalchemy import func
from sqlalchemy.orm import Session

import config
import tiers
from errors import AppError
from models import BatchItem, BatchJob, RepositoryAnalysis, User
from schemas import BatchSummary
from services import webhooks
from services.analysis import AnalysisOutcome, analyze_repository_url, webhook_payload
from services.github import GitHubClient, parse_repository_url

logger = logging.getLogger(__name__)

UNFINISHED_ITEM_STATUSES = ("pending", "analyzing")
FINISHED_JOB_STATUSES = ("completed", "failed", "cancelled")

AnalyzeItem = Callable[[Session, User, str], AnalysisOutcome]


def analyze_batch_item(session: Session, user: User, url: str) -> AnalysisOutcome:
    """Default worker body: the regular analysis flow plus the webhook event."""
    github = GitHubClient()
    try:
        outcome = analyze_repository_url(session, github, url, user=user)
    finally:
        github.close()

    if not outcome.cached:
        webhooks.deliver_event(
            session, user.id, "repository.analyzed",
            webhook_payload(outcome.repository, outcome.analysis),
        )
    return outcome


def normalize_urls(urls: list[str]) -> list[str]:
    """Validate every URL and drop duplicates, keeping the first occurrence."""
    normalized = []
    seen = set()
    for index, url in enumerate(urls):
        try:
            owner, repo = parse_repository_url(url)
        except AppError as e:
            raise AppError("INVALID_INPUT", f"Invalid repository URL at position {index + 1}: {url}",
                           details={"index": index, "url": url}) from e
        key = f"{owner}/{repo}".lower()
        if key in seen:
            continue
        seen.add(key)
        normalized.append(f"https://github.com/{owner}/{repo}")
    return normalized


def summarize_job(session: Session, job: BatchJob) -> BatchSummary:
    average = (
        session.query(func.avg(RepositoryAnalysis.overall_score))
        .join(BatchItem, BatchItem.analysis_id == RepositoryAnalysis.id)
        .filter(BatchItem.job_id == job.id, BatchItem.status == "completed")
        .scalar()
    )
    return BatchSummary(
        total_repositories=job.total_items,
        successful_analyses=job.completed_items,
        failed_analyses=job.failed_items,
        average_score=round(float(average), 2) if average is not None else None,
        completed_at=job.completed_at,
    )


class BatchQueue:
    """Bounded worker pool over the batch tables."""

    def __init__(
        self,
        session_factory,
        analyze_item: AnalyzeItem = analyze_batch_item,
        max_workers: int | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.analyze_item = analyze_item
        self.max_workers = max_workers or config.BATCH_CONCURRENCY
        self.max_attempts = max_attempts or config.BATCH_MAX_ATTEMPTS
        self.backoff_seconds = config.BATCH_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self._sleep = sleep
        self._executor: ThreadPoolExecutor | None = None
        self._futures: dict[int, list[Future]] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self):
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="batch")
                logger.info(f"Batch queue started with {self.max_workers} workers")

    def shutdown(self, wait_for_running: bool = False):
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait_for_running, cancel_futures=True)
            logger.info("Batch queue stopped")

    @property
    def running(self) -> bool:
        return self._executor is not None

    def resume(self) -> int:
        """Re-queue items of unfinished jobs. Returns how many items were queued."""
        session = self.session_factory()
        try:
            jobs = session.query(BatchJob).filter(BatchJob.status.in_(("queued", "processing"))).all()
            job_ids = [job.id for job in jobs]
            if not job_ids:
                return 0
            # Work interrupted mid-analysis starts over
            session.query(BatchItem).filter(
                BatchItem.job_id.in_(job_ids), BatchItem.status == "analyzing"
            ).update({BatchItem.status: "pending"}, synchronize_session=False)
            session.commit()
            # A job whose last item finished right before shutdown was never finalised
            for job_id in job_ids:
                self._refresh_job(session, job_id)
        finally:
            session.close()

        queued = sum(self.enqueue(job_id) for job_id in job_ids)
        if queued:
            logger.info(f"Resumed {queued} batch items across {len(job_ids)} jobs")
        return queued

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    def create_job(self, session: Session, user: User, urls: list[str]) -> BatchJob:
        """Validate a batch request and persist it. Call `enqueue` after this."""
        normalized = normalize_urls(urls)
        if not normalized:
            raise AppError("INVALID_INPUT", "At least one repository URL is required.")

        limit = tiers.batch_size_limit(user)
        if len(normalized) > limit:
            raise AppError(
                "INVALID_INPUT",
                f"The {user.subscription_tier} plan allows up to {limit} repositories per batch.",
                details={
                    "max_batch_size": limit,
                    "requested": len(normalized),
                    "upgrade_to": "pro" if user.subscription_tier == "free" else None,
                },
            )

        tiers.check_analysis_limit(user, count=len(normalized))

        unfinished = session.query(func.count(BatchItem.id)).filter(
            BatchItem.status.in_(UNFINISHED_ITEM_STATUSES)
        ).scalar()
        if unfinished + len(normalized) > config.BATCH_MAX_QUEUED_ITEMS:
            raise AppError("QUEUE_FULL", details={"queued_items": unfinished})

        job = BatchJob(user_id=user.id, status="queued", total_items=len(normalized))
        job.items = [BatchItem(position=i, url=url, status="pending") for i, url in enumerate(normalized)]
        session.add(job)
        session.commit()
        logger.info(f"Batch job {job.id} created with {job.total_items} items", extra={"job_id": job.id})
        return job

    def enqueue(self, job_id: int) -> int:
        """Submit the job's pending items to the pool. Returns how many were submitted."""
        self.start()
        session = self.session_factory()
        try:
            item_ids = [
                row.id for row in session.query(BatchItem.id)
                .filter(BatchItem.job_id == job_id, BatchItem.status == "pending")
                .order_by(BatchItem.position)
            ]
        finally:
            session.close()

        futures = [self._executor.submit(self._run_item, item_id) for item_id in item_ids]
        with self._lock:
            self._futures.setdefault(job_id, []).extend(futures)
        return len(futures)

    def wait(self, job_id: int, timeout: float | None = None) -> bool:
        """Block until every submitted item of the job is done."""
        with self._lock:
            futures = list(self._futures.get(job_id, []))
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def cancel(self, session: Session, job: BatchJob) -> BatchJob:
        if job.status in ("completed", "failed"):
            raise AppError("INVALID_INPUT", f"Job {job.id} is already {job.status} and cannot be cancelled.")
        if job.status == "cancelled":
            return job

        job.status = "cancelled"
        job.completed_at = datetime.utcnow()
        session.query(BatchItem).filter(
            BatchItem.job_id == job.id, BatchItem.status == "pending"
        ).update({BatchItem.status: "cancelled", BatchItem.finished_at: datetime.utcnow()},
                 synchronize_session=False)
        session.commit()

        with self._lock:
            for future in self._futures.get(job.id, []):
                future.cancel()
        self._refresh_job(session, job.id)
        session.refresh(job)
        logger.info(f"Batch job {job.id} cancelled", extra={"job_id": job.id})
        return job

    # =========================================================================
    # STATS
    # =========================================================================

    def stats(self, session: Session, user_id: int | None = None) -> dict:
        query = session.query(BatchItem.status, func.count(BatchItem.id))
        if user_id is not None:
            query = query.join(BatchJob).filter(BatchJob.user_id == user_id)
        counts = dict(query.group_by(BatchItem.status).all())
        return {
            "waiting": counts.get("pending", 0),
            "active": counts.get("analyzing", 0),
            "completed": counts.get("completed", 0),
            "failed": counts.get("error", 0),
        }

    # =========================================================================
    # WORKER
    # =========================================================================

    def _job_cancelled(self, session: Session, job_id: int) -> bool:
        status = session.query(BatchJob.status).filter(BatchJob.id == job_id).scalar()
        return status == "cancelled"

    def _run_item(self, item_id: int):
        session = self.session_factory()
        try:
            self._process(session, item_id)
        except Exception:
            logger.exception(f"Batch item {item_id} crashed the worker")
            session.rollback()
        finally:
            session.close()

    def _process(self, session: Session, item_id: int):
        item = session.get(BatchItem, item_id)
        if item is None or item.status != "pending":
            return
        job_id = item.job_id
        if self._job_cancelled(session, job_id):
            return

        with self._lock:
            job = session.get(BatchJob, job_id)
            if job.status == "queued":
                job.status = "processing"
                job.started_at = datetime.utcnow()
                session.commit()

        user = session.get(User, job.user_id)

        while True:
            item.status = "analyzing"
            item.attempts = (item.attempts or 0) + 1
            item.started_at = item.started_at or datetime.utcnow()
            session.commit()

            try:
                outcome = self.analyze_item(session, user, item.url)
            except AppError as e:
                session.rollback()
                message, retryable = f"{e.code}: {e.message}", e.retryable
            except Exception as e:
                session.rollback()
                logger.exception(f"Unexpected error analyzing {item.url}")
                message, retryable = f"INTERNAL_ERROR: {e}", True
            else:
                item.status = "completed"
                item.repository_id = outcome.repository.id
                item.analysis_id = outcome.analysis.id
                item.last_error = None
                item.finished_at = datetime.utcnow()
                session.commit()
                break

            item.last_error = message
            if retryable and item.attempts < self.max_attempts and not self._job_cancelled(session, job_id):
                delay = self.backoff_seconds * (2 ** (item.attempts - 1))
                item.status = "pending"
                session.commit()
                logger.warning(
                    f"Batch item {item.id} attempt {item.attempts}/{self.max_attempts} failed, "
                    f"retrying in {delay:.1f}s: {message}",
                    extra={"job_id": job_id},
                )
                self._sleep(delay)
                if self._job_cancelled(session, job_id):
                    item.status = "cancelled"
                    item.finished_at = datetime.utcnow()
                    session.commit()
                    break
                continue

            item.status = "error"
            item.finished_at = datetime.utcnow()
            session.commit()
            logger.warning(f"Batch item {item.id} failed after {item.attempts} attempts: {message}",
                           extra={"job_id": job_id})
            break

        self._refresh_job(session, job_id)

    def _refresh_job(self, session: Session, job_id: int):
        """Recompute counters and progress from the item rows."""
        with self._lock:
            job = session.get(BatchJob, job_id)
            session.refresh(job)
            counts = dict(
                session.query(BatchItem.status, func.count(BatchItem.id))
                .filter(BatchItem.job_id == job_id)
                .group_by(BatchItem.status)
                .all()
            )
            completed = counts.get("completed", 0)
            failed = counts.get("error", 0)
            unfinished = sum(counts.get(status, 0) for status in UNFINISHED_ITEM_STATUSES)
            finished = job.total_items - unfinished

            job.completed_items = completed
            job.failed_items = failed
            job.progress = int(finished * 100 / job.total_items) if job.total_items else 100

            just_finished = False
            if job.status not in FINISHED_JOB_STATUSES and unfinished == 0:
                job.status = "failed" if completed == 0 and failed > 0 else "completed"
                job.completed_at = datetime.utcnow()
                just_finished = True
            session.commit()

        if just_finished:
            logger.info(f"Batch job {job_id} {job.status}: {completed} ok, {failed} failed", extra={"job_id": job_id})
            self._notify_finished(session, job)

    def _notify_finished(self, session: Session, job: BatchJob):
        summary = summarize_job(session, job)
        try:
            webhooks.deliver_event(session, job.user_id, "batch.completed", {
                "job_id": job.id,
                "status": job.status,
                **summary.model_dump(mode="json"),
            })
        except Exception:
            logger.exception(f"Could not deliver batch.completed for job {job.id}")
            session.rollback()


def get_batch_queue(request: Request) -> BatchQueue:
    """FastAPI dependency returning the app-wide queue."""
    return request.app.state.batch_queue
