"""
Public REST API (/api/v1), authenticated with X-API-Key.

Every call is rate limited per key to min(key.rate_limit, the owner's hourly
tier limit) over a sliding hour, and logged to api_usage.
"""

import json
import logging
import time
from datetime import datetime, timedelta

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response
from sqlalchemy.orm import Session

import tiers
from auth import get_api_key
from database import get_db
from errors import AppError
from models import ApiKey, ApiUsage, Repository, User
from schemas import AnalysisInfo, AnalyzeRequest, AnalyzeResponse, RepositoryInfo
from services import analysis, webhooks
from services.github import GitHubClient, get_github_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["public-api"])

USAGE_WINDOW = timedelta(hours=1)


def effective_limit(key: ApiKey, owner: User) -> int:
    tier_limit = tiers.hourly_api_limit(owner)
    if tier_limit == tiers.UNLIMITED:
        return key.rate_limit
    return min(key.rate_limit, tier_limit)


def api_access(
    request: Request,
    response: Response,
    key: ApiKey = Depends(get_api_key),
    db: Session = Depends(get_db),
):
    """Enforce the hourly limit, expose X-RateLimit-* headers and log the call."""
    now = datetime.utcnow()
    limit = effective_limit(key, key.user)
    window_start = now - USAGE_WINDOW
    used = db.query(ApiUsage).filter(ApiUsage.api_key_id == key.id, ApiUsage.created_at >= window_start).count()
    oldest = (
        db.query(ApiUsage.created_at)
        .filter(ApiUsage.api_key_id == key.id, ApiUsage.created_at >= window_start)
        .order_by(ApiUsage.created_at)
        .limit(1)
        .scalar()
    )
    reset_at = (oldest or now) + USAGE_WINDOW
    headers = {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(max(0, limit - used - 1)),
        "X-RateLimit-Reset": str(int(reset_at.timestamp())),
    }
    if used >= limit:
        raise AppError(
            "RATE_LIMIT_EXCEEDED",
            f"API rate limit of {limit} requests per hour exceeded.",
            details={"limit": limit, "reset_at": reset_at.isoformat()},
            headers={**headers, "X-RateLimit-Remaining": "0"},
        )
    response.headers.update(headers)

    started = time.perf_counter()
    status_code = 200
    try:
        yield key
    except AppError as e:
        status_code = e.status_code
        db.rollback()
        raise
    except Exception:
        status_code = 500
        db.rollback()
        raise
    finally:
        db.add(ApiUsage(
            api_key_id=key.id,
            endpoint=request.url.path,
            method=request.method,
            status_code=status_code,
            response_time_ms=int((time.perf_counter() - started) * 1000),
        ))
        key.last_used_at = now
        db.commit()


def require_permission(permission: str):
    def dependency(key: ApiKey = Depends(api_access)) -> ApiKey:
        if permission not in json.loads(key.permissions or "[]"):
            raise AppError("FORBIDDEN", f"This API key lacks the '{permission}' permission.")
        return key

    return dependency


@router.get("/repositories/search", response_model=list[RepositoryInfo])
def search(
    q: str = Query(..., min_length=1, max_length=256),
    limit: int = Query(20, ge=1, le=50),
    key: ApiKey = Depends(require_permission("read")),
    db: Session = Depends(get_db),
    github: GitHubClient = Depends(get_github_client),
):
    return [analysis.build_repository_info(repo) for repo in analysis.search_repositories(db, github, q, limit)]


@router.get("/repositories/{repository_id}", response_model=RepositoryInfo)
def get_repository(repository_id: int, key: ApiKey = Depends(require_permission("read")),
                   db: Session = Depends(get_db)):
    repo = db.get(Repository, repository_id)
    if repo is None:
        raise AppError("NOT_FOUND", "Repository not found.")
    return analysis.build_repository_info(repo)


@router.get("/repositories/{repository_id}/analysis", response_model=AnalysisInfo)
def get_analysis(repository_id: int, key: ApiKey = Depends(require_permission("read")),
                 db: Session = Depends(get_db)):
    repo = db.get(Repository, repository_id)
    if repo is None or repo.analysis is None:
        raise AppError("NOT_FOUND", "No analysis found for this repository.")
    return analysis.build_analysis_info(repo.analysis)


@router.post("/repositories/analyze", response_model=AnalyzeResponse)
def analyze(
    body: AnalyzeRequest,
    background_tasks: BackgroundTasks,
    key: ApiKey = Depends(require_permission("write")),
    db: Session = Depends(get_db),
    github: GitHubClient = Depends(get_github_client),
):
    """Analyze on behalf of the key's owner; counts against the owner's daily quota."""
    owner = key.user
    outcome = analysis.analyze_repository_url(db, github, body.url, user=owner)
    if not outcome.cached:
        background_tasks.add_task(
            webhooks.dispatch_event, owner.id, "repository.analyzed",
            analysis.webhook_payload(outcome.repository, outcome.analysis),
        )
    return AnalyzeResponse(
        repository=analysis.build_repository_info(outcome.repository),
        analysis=analysis.build_analysis_info(outcome.analysis),
        similar_repositories=analysis.build_similar_infos(db, outcome.repository),
        cached=outcome.cached,
    )
