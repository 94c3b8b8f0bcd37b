"""
Repository analysis flow shared by the web API, the public API and batch workers.
"""

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import tiers
from errors import AppError
from models import (
    AnalyticsEvent, Bookmark, Repository, RepositoryAnalysis, SimilarRepository, User, UserActivity,
)
from schemas import (
    AnalysisInfo, CompareItem, CompareResponse, RepositoryDetailResponse, RepositoryInfo,
    SimilarRepositoryInfo,
)
from services import gemini
from services.github import GitHubClient, parse_repository_url

logger = logging.getLogger(__name__)

REANALYSIS_COOLDOWN = timedelta(hours=1)
COMPARE_METRICS = gemini.METRICS + ["overall_score"]


@dataclass
class AnalysisOutcome:
    repository: Repository
    analysis: RepositoryAnalysis
    cached: bool


# =============================================================================
# SERIALIZATION
# =============================================================================

def loads(text: str | None, default):
    if not text:
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return default


def build_repository_info(repo: Repository) -> RepositoryInfo:
    return RepositoryInfo(
        id=repo.id,
        name=repo.name,
        full_name=repo.full_name,
        owner=repo.owner,
        description=repo.description,
        language=repo.language,
        stars=repo.stars or 0,
        forks=repo.forks or 0,
        watchers=repo.watchers or 0,
        html_url=repo.html_url,
        languages=loads(repo.languages, {}),
        topics=loads(repo.topics, []),
        last_analyzed=repo.last_analyzed,
        analysis_count=repo.analysis_count or 0,
    )


def build_analysis_info(analysis: RepositoryAnalysis) -> AnalysisInfo:
    return AnalysisInfo(
        id=analysis.id,
        repository_id=analysis.repository_id,
        originality=analysis.originality,
        completeness=analysis.completeness,
        marketability=analysis.marketability,
        monetization=analysis.monetization,
        usefulness=analysis.usefulness,
        overall_score=analysis.overall_score,
        summary=analysis.summary,
        strengths=loads(analysis.strengths, []),
        weaknesses=loads(analysis.weaknesses, []),
        recommendations=loads(analysis.recommendations, []),
        score_explanations=loads(analysis.score_explanations, {}),
        is_fallback=bool(analysis.is_fallback),
        created_at=analysis.created_at,
        updated_at=analysis.updated_at,
    )


def build_similar_infos(session: Session, repo: Repository) -> list[SimilarRepositoryInfo]:
    links = (
        session.query(SimilarRepository)
        .filter(SimilarRepository.repository_id == repo.id)
        .order_by(SimilarRepository.similarity.desc())
        .all()
    )
    return [
        SimilarRepositoryInfo(
            repository=build_repository_info(link.similar_repository),
            similarity=link.similarity,
        )
        for link in links
    ]


def webhook_payload(repo: Repository, analysis: RepositoryAnalysis) -> dict:
    """Body of the repository.analyzed event."""
    return {
        "repository": {
            "id": repo.id,
            "full_name": repo.full_name,
            "html_url": repo.html_url,
        },
        "analysis": {
            "id": analysis.id,
            **{metric: getattr(analysis, metric) for metric in COMPARE_METRICS},
            "summary": analysis.summary,
            "is_fallback": bool(analysis.is_fallback),
        },
    }


# =============================================================================
# PERSISTENCE HELPERS
# =============================================================================

def _apply_github_payload(repo: Repository, payload: dict, languages: dict | None):
    repo.name = payload["name"]
    repo.full_name = payload["full_name"]
    repo.owner = (payload.get("owner") or {}).get("login") or payload["full_name"].split("/")[0]
    repo.description = payload.get("description")
    repo.language = payload.get("language")
    repo.stars = payload.get("stargazers_count", 0)
    repo.forks = payload.get("forks_count", 0)
    repo.watchers = payload.get("watchers_count", 0)
    repo.size = payload.get("size", 0)
    repo.html_url = payload.get("html_url") or f"https://github.com/{payload['full_name']}"
    repo.clone_url = payload.get("clone_url")
    repo.topics = json.dumps(payload.get("topics") or [])
    if languages is not None:
        repo.languages = json.dumps(languages)


def upsert_repository(session: Session, payload: dict, languages: dict | None = None) -> Repository:
    """Insert or refresh a repository from a GitHub API payload. Handles concurrent inserts."""
    repo = session.get(Repository, payload["id"])
    if repo is None:
        # Renamed or re-created repositories keep full_name but change id
        stale = session.query(Repository).filter(Repository.full_name == payload["full_name"]).first()
        if stale is not None:
            session.delete(stale)
            session.flush()
        try:
            repo = Repository(id=payload["id"], languages="{}")
            _apply_github_payload(repo, payload, languages)
            session.add(repo)
            session.flush()
        except IntegrityError:
            # Another worker created it - rollback and load theirs
            session.rollback()
            repo = session.get(Repository, payload["id"])
            if repo is None:
                raise
            _apply_github_payload(repo, payload, languages)
    else:
        _apply_github_payload(repo, payload, languages)
    return repo


def repository_input(repo: Repository, readme: str | None = None) -> dict:
    """Data handed to the model."""
    return {
        "name": repo.name,
        "full_name": repo.full_name,
        "description": repo.description,
        "language": repo.language,
        "stars": repo.stars or 0,
        "forks": repo.forks or 0,
        "size": repo.size or 0,
        "languages": loads(repo.languages, {}),
        "topics": loads(repo.topics, []),
        "readme": readme,
    }


def store_analysis(session: Session, repo: Repository, result: dict, user: User | None) -> RepositoryAnalysis:
    analysis = repo.analysis
    if analysis is None:
        analysis = RepositoryAnalysis(repository_id=repo.id)
        session.add(analysis)
        repo.analysis = analysis

    analysis.user_id = user.id if user else None
    for metric in gemini.METRICS:
        setattr(analysis, metric, result[metric])
    analysis.overall_score = result["overall_score"]
    analysis.summary = result["summary"]
    analysis.strengths = json.dumps(result["strengths"])
    analysis.weaknesses = json.dumps(result["weaknesses"])
    analysis.recommendations = json.dumps(result["recommendations"])
    analysis.score_explanations = json.dumps(result["score_explanations"])
    analysis.is_fallback = 1 if result.get("is_fallback") else 0
    analysis.updated_at = datetime.utcnow()
    session.flush()
    return analysis


def record_activity(session: Session, user_id: int, action: str,
                    repository_id: int | None = None, details: dict | None = None):
    session.add(UserActivity(
        user_id=user_id,
        action=action,
        repository_id=repository_id,
        details=json.dumps(details) if details else None,
    ))


def record_event(session: Session, name: str, category: str,
                 user_id: int | None = None, properties: dict | None = None):
    session.add(AnalyticsEvent(
        event_name=name,
        event_category=category,
        user_id=user_id,
        properties=json.dumps(properties, default=str) if properties else None,
    ))


def link_similar_repositories(session: Session, github: GitHubClient, repo: Repository,
                              readme: str | None = None) -> list[SimilarRepository]:
    """Ask the model for look-alikes, resolve them on GitHub and store the links."""
    names = gemini.find_similar_repositories(repository_input(repo, readme))
    if not names:
        return []

    session.query(SimilarRepository).filter(SimilarRepository.repository_id == repo.id).delete()
    links = []
    for rank, full_name in enumerate(names):
        owner, name = full_name.split("/", 1)
        try:
            payload = github.get_repository(owner, name)
        except AppError as e:
            logger.info(f"Skipping similar repository {full_name}: {e.code}")
            continue
        if payload is None or payload["id"] == repo.id:
            continue
        similar = upsert_repository(session, payload)
        if any(link.similar_repository_id == similar.id for link in links):
            continue
        link = SimilarRepository(
            repository_id=repo.id,
            similar_repository_id=similar.id,
            similarity=round(max(0.5, 0.95 - 0.1 * rank), 2),
        )
        session.add(link)
        links.append(link)

    session.commit()
    return links


# =============================================================================
# ANALYZE
# =============================================================================

def analyze_repository_url(session: Session, github: GitHubClient, url: str,
                           user: User | None = None, force: bool = False) -> AnalysisOutcome:
    """
    Analyze a repository by URL.

    Returns the stored analysis when one exists (unless `force`), so repeat
    requests neither call the model nor count against the daily quota.
    """
    owner, name = parse_repository_url(url)
    details = github.get_repository_with_details(owner, name)
    if details is None:
        raise AppError("NOT_FOUND", f"Repository {owner}/{name} was not found on GitHub.")

    repo = upsert_repository(session, details["repository"], details["languages"])
    session.commit()

    if repo.analysis is not None and not force:
        if user:
            record_activity(session, user.id, "viewed", repo.id)
            session.commit()
        return AnalysisOutcome(repository=repo, analysis=repo.analysis, cached=True)

    if user:
        tiers.claim_analysis(session, user)

    logger.info(f"Analyzing {repo.full_name}", extra={"repository": repo.full_name})
    try:
        result = gemini.analyze_repository(repository_input(repo, details["readme"]))
        analysis = store_analysis(session, repo, result, user)
    except Exception:
        session.rollback()
        if user:
            tiers.release_analysis(session, user)
        raise

    repo.last_analyzed = datetime.utcnow()
    repo.analysis_count = (repo.analysis_count or 0) + 1
    if user:
        record_activity(session, user.id, "analyzed", repo.id, {"overall_score": analysis.overall_score})
    record_event(
        session, "repository_analyzed", "analysis",
        user_id=user.id if user else None,
        properties={"repository": repo.full_name, "fallback": bool(analysis.is_fallback)},
    )
    session.commit()

    try:
        link_similar_repositories(session, github, repo, details["readme"])
    except AppError as e:
        # Similar repositories are a bonus; the analysis itself already succeeded
        session.rollback()
        logger.warning(f"Could not link similar repositories for {repo.full_name}: {e.code}")

    session.refresh(repo)
    return AnalysisOutcome(repository=repo, analysis=repo.analysis, cached=False)


def reanalyze_repository(session: Session, github: GitHubClient, repository_id: int, user: User) -> AnalysisOutcome:
    """Force a fresh analysis, at most once per repository per hour."""
    repo = session.get(Repository, repository_id)
    if repo is None:
        raise AppError("NOT_FOUND", "Repository not found.")

    now = datetime.utcnow()
    if repo.reanalysis_locked_until and repo.reanalysis_locked_until > now:
        minutes = math.ceil((repo.reanalysis_locked_until - now).total_seconds() / 60)
        raise AppError(
            "RATE_LIMIT_EXCEEDED",
            f"This repository was re-analyzed recently. Try again in {minutes} minutes.",
            details={"retry_after_minutes": minutes},
            headers={"Retry-After": str(minutes * 60)},
        )

    outcome = analyze_repository_url(session, github, repo.full_name, user=user, force=True)
    outcome.repository.reanalysis_locked_until = datetime.utcnow() + REANALYSIS_COOLDOWN
    session.commit()
    return outcome


# =============================================================================
# READ SIDE
# =============================================================================

def get_repository_detail(session: Session, repository_id: int, user: User | None = None) -> RepositoryDetailResponse:
    repo = session.get(Repository, repository_id)
    if repo is None:
        raise AppError("NOT_FOUND", "Repository not found.")

    is_saved = False
    if user is not None:
        is_saved = session.query(Bookmark).filter(
            Bookmark.user_id == user.id, Bookmark.repository_id == repo.id
        ).first() is not None

    return RepositoryDetailResponse(
        repository=build_repository_info(repo),
        analysis=build_analysis_info(repo.analysis) if repo.analysis else None,
        similar_repositories=build_similar_infos(session, repo),
        is_saved=is_saved,
    )


def recent_analyses(session: Session, page: int = 1, page_size: int = 20) -> tuple[list, int]:
    query = session.query(RepositoryAnalysis).join(Repository)
    total = query.count()
    rows = (
        query.order_by(RepositoryAnalysis.updated_at.desc(), RepositoryAnalysis.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return rows, total


def search_repositories(session: Session, github: GitHubClient, query: str, limit: int = 20) -> list[Repository]:
    """Local matches first, topped up from GitHub search (which are stored as well)."""
    pattern = f"%{query.lower()}%"
    results = (
        session.query(Repository)
        .filter(or_(
            func.lower(Repository.full_name).like(pattern),
            func.lower(Repository.description).like(pattern),
        ))
        .order_by(Repository.stars.desc())
        .limit(limit)
        .all()
    )
    if len(results) >= limit:
        return results

    seen = {repo.id for repo in results}
    for payload in github.search_repositories(query, per_page=limit):
        if payload["id"] in seen:
            continue
        results.append(upsert_repository(session, payload))
        seen.add(payload["id"])
        if len(results) >= limit:
            break
    session.commit()
    return results


def compare_repositories(session: Session, repository_ids: list[int]) -> CompareResponse:
    """Side-by-side scores plus the best repository per metric (first wins ties)."""
    if len(set(repository_ids)) != len(repository_ids):
        raise AppError("INVALID_INPUT", "Each repository can only be compared once.")

    items = []
    for repository_id in repository_ids:
        repo = session.get(Repository, repository_id)
        if repo is None:
            raise AppError("NOT_FOUND", f"Repository {repository_id} not found.")
        if repo.analysis is None:
            raise AppError(
                "INVALID_INPUT",
                f"Repository {repo.full_name} has not been analyzed yet.",
                details={"repository_id": repository_id},
            )
        items.append(CompareItem(repository=build_repository_info(repo), analysis=build_analysis_info(repo.analysis)))

    best = {}
    for metric in COMPARE_METRICS:
        winner = items[0]
        for item in items[1:]:
            if getattr(item.analysis, metric) > getattr(winner.analysis, metric):
                winner = item
        best[metric] = winner.repository.id

    return CompareResponse(items=items, best=best)
