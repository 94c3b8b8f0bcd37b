"""
Repository analysis endpoints: analyze, re-analyze, browse, search and compare.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response
from sqlalchemy.orm import Session

import tiers
from auth import get_current_user, get_optional_user
from database import get_db
from errors import AppError
from limiter import limiter
from models import Repository, User
from schemas import (
    AnalyzeRequest, AnalyzeResponse, CompareRequest, CompareResponse, FindSimilarRequest,
    FindSimilarResponse, RecentAnalysesResponse, RecentAnalysisItem, RepositoryDetailResponse,
    RepositoryInfo,
)
from services import analysis, gemini, webhooks
from services.github import GitHubClient, get_github_client

router = APIRouter(tags=["repositories"])


def _analyze_response(session: Session, outcome: analysis.AnalysisOutcome) -> AnalyzeResponse:
    return AnalyzeResponse(
        repository=analysis.build_repository_info(outcome.repository),
        analysis=analysis.build_analysis_info(outcome.analysis),
        similar_repositories=analysis.build_similar_infos(session, outcome.repository),
        cached=outcome.cached,
    )


def _after_analysis(outcome: analysis.AnalysisOutcome, user: User, response: Response,
                    background_tasks: BackgroundTasks):
    response.headers.update(tiers.analysis_limit_headers(user))
    if not outcome.cached:
        background_tasks.add_task(
            webhooks.dispatch_event, user.id, "repository.analyzed",
            analysis.webhook_payload(outcome.repository, outcome.analysis),
        )


@router.post("/api/repositories/analyze", response_model=AnalyzeResponse)
@limiter.limit("10/minute")
def analyze_repository(
    request: Request,
    response: Response,
    body: AnalyzeRequest,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    github: GitHubClient = Depends(get_github_client),
):
    """
    Analyze a GitHub repository.

    Returns the stored analysis when the repository was analyzed before;
    only fresh analyses count against the daily quota.
    """
    outcome = analysis.analyze_repository_url(db, github, body.url, user=user)
    _after_analysis(outcome, user, response, background_tasks)
    return _analyze_response(db, outcome)


@router.post("/api/repositories/{repository_id}/reanalyze", response_model=AnalyzeResponse)
@limiter.limit("5/minute")
def reanalyze_repository(
    request: Request,
    response: Response,
    repository_id: int,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    github: GitHubClient = Depends(get_github_client),
):
    outcome = analysis.reanalyze_repository(db, github, repository_id, user)
    _after_analysis(outcome, user, response, background_tasks)
    return _analyze_response(db, outcome)


@router.get("/api/analyses/recent", response_model=RecentAnalysesResponse)
def recent_analyses(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    rows, total = analysis.recent_analyses(db, page, page_size)
    items = [
        RecentAnalysisItem(
            repository=analysis.build_repository_info(row.repository),
            analysis=analysis.build_analysis_info(row),
        )
        for row in rows
    ]
    return RecentAnalysesResponse(items=items, page=page, page_size=page_size, total=total)


@router.get("/api/repositories/trending", response_model=list[RepositoryInfo])
@limiter.limit("30/minute")
def trending_repositories(
    request: Request,
    limit: int = Query(10, ge=1, le=50),
    db: Session = Depends(get_db),
    github: GitHubClient = Depends(get_github_client),
):
    repos = [analysis.upsert_repository(db, payload) for payload in github.get_trending_repositories(per_page=limit)]
    db.commit()
    return [analysis.build_repository_info(repo) for repo in repos]


@router.get("/api/repositories/search", response_model=list[RepositoryInfo])
@limiter.limit("30/minute")
def search_repositories(
    request: Request,
    q: str = Query(..., min_length=1, max_length=256),
    limit: int = Query(20, ge=1, le=50),
    db: Session = Depends(get_db),
    github: GitHubClient = Depends(get_github_client),
):
    repos = analysis.search_repositories(db, github, q, limit)
    return [analysis.build_repository_info(repo) for repo in repos]


@router.post("/api/repositories/find-similar", response_model=FindSimilarResponse)
@limiter.limit("10/minute")
def find_similar(
    request: Request,
    body: FindSimilarRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    repo = db.get(Repository, body.repository_id)
    if repo is None:
        raise AppError("NOT_FOUND", "Repository not found.")
    return FindSimilarResponse(**gemini.find_similar_by_functionality(analysis.repository_input(repo)))


@router.post("/api/repositories/compare", response_model=CompareResponse)
def compare_repositories(body: CompareRequest, db: Session = Depends(get_db)):
    return analysis.compare_repositories(db, body.repository_ids)


@router.get("/api/repositories/{repository_id}", response_model=RepositoryDetailResponse)
def get_repository(
    repository_id: int,
    user: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    return analysis.get_repository_detail(db, repository_id, user)
