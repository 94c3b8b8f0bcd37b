"""
Preferences, AI recommendations, the assistant and the personal analytics dashboard.
"""

import json
from collections import defaultdict
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import func
from sqlalchemy.orm import Session

import tiers
from auth import get_current_user
from database import get_db
from errors import AppError
from limiter import limiter
from models import Bookmark, Collection, Repository, RepositoryAnalysis, User, UserActivity, UserPreference
from schemas import (
    AnalyticsDashboard, AskRequest, AskResponse, PreferencesInfo, PreferencesUpdate, RecommendationItem,
    ScoreTrendPoint,
)
from services import gemini
from services.analysis import repository_input

router = APIRouter(tags=["insights"])

LIST_PREFERENCES = ("preferred_languages", "preferred_topics", "excluded_topics")
TREND_DAYS = 30


def _preferences_info(prefs: UserPreference | None) -> PreferencesInfo:
    if prefs is None:
        return PreferencesInfo()
    return PreferencesInfo(
        preferred_languages=json.loads(prefs.preferred_languages or "[]"),
        preferred_topics=json.loads(prefs.preferred_topics or "[]"),
        excluded_topics=json.loads(prefs.excluded_topics or "[]"),
        email_notifications=bool(prefs.email_notifications),
        ai_recommendations=bool(prefs.ai_recommendations),
    )


@router.get("/api/user/preferences", response_model=PreferencesInfo)
def get_preferences(user: User = Depends(get_current_user)):
    return _preferences_info(user.preferences)


@router.put("/api/user/preferences", response_model=PreferencesInfo)
def update_preferences(body: PreferencesUpdate, user: User = Depends(get_current_user),
                       db: Session = Depends(get_db)):
    prefs = user.preferences
    if prefs is None:
        prefs = UserPreference(user_id=user.id)
        db.add(prefs)

    for field, value in body.model_dump(exclude_unset=True).items():
        if value is None:
            continue
        if field in LIST_PREFERENCES:
            value = json.dumps(sorted({v.strip() for v in value if v.strip()}))
        else:
            value = 1 if value else 0
        setattr(prefs, field, value)
    db.commit()
    db.refresh(prefs)
    return _preferences_info(prefs)


@router.get("/api/recommendations", response_model=list[RecommendationItem])
@limiter.limit("10/minute")
def recommendations(
    request: Request,
    limit: int = Query(10, ge=1, le=20),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    prefs = _preferences_info(user.preferences)
    if not prefs.ai_recommendations:
        return []

    rows = (
        db.query(UserActivity.action, Repository.full_name)
        .join(Repository, Repository.id == UserActivity.repository_id)
        .filter(UserActivity.user_id == user.id)
        .order_by(UserActivity.created_at.desc())
        .limit(20)
        .all()
    )
    activity = [{"action": action, "repository": name} for action, name in rows]
    return gemini.generate_recommendations(prefs.model_dump(), activity, limit=limit)


@router.post("/api/ai/ask", response_model=AskResponse)
@limiter.limit("20/minute")
def ask(request: Request, body: AskRequest, user: User = Depends(get_current_user),
        db: Session = Depends(get_db)):
    context = None
    if body.repository_id is not None:
        repo = db.get(Repository, body.repository_id)
        if repo is None:
            raise AppError("NOT_FOUND", "Repository not found.")
        context = repository_input(repo)
        if repo.analysis is not None:
            context["overall_score"] = repo.analysis.overall_score
            context["summary"] = repo.analysis.summary
    return AskResponse(answer=gemini.ask_ai(body.question, context))


# =============================================================================
# DASHBOARD
# =============================================================================

def _score_trend(db: Session, user: User) -> list[ScoreTrendPoint]:
    since = datetime.utcnow() - timedelta(days=TREND_DAYS)
    rows = (
        db.query(RepositoryAnalysis.updated_at, RepositoryAnalysis.overall_score)
        .filter(RepositoryAnalysis.user_id == user.id, RepositoryAnalysis.updated_at >= since)
        .all()
    )
    by_day = defaultdict(list)
    for updated_at, score in rows:
        by_day[updated_at.strftime("%Y-%m-%d")].append(score)
    return [
        ScoreTrendPoint(date=day, average_score=round(sum(scores) / len(scores), 2), count=len(scores))
        for day, scores in sorted(by_day.items())
    ]


@router.get("/api/analytics/dashboard", response_model=AnalyticsDashboard)
def dashboard(user: User = Depends(tiers.require_feature("basic_analytics")), db: Session = Depends(get_db)):
    """Analyses the caller ran, their average scores and languages. The trend needs advanced_analytics."""
    mine = db.query(RepositoryAnalysis).filter(RepositoryAnalysis.user_id == user.id)
    total = mine.count()

    averages = {}
    if total:
        columns = [func.avg(getattr(RepositoryAnalysis, m)) for m in gemini.METRICS + ["overall_score"]]
        row = db.query(*columns).filter(RepositoryAnalysis.user_id == user.id).one()
        averages = {m: round(float(v), 2) for m, v in zip(gemini.METRICS + ["overall_score"], row)}

    languages = (
        db.query(Repository.language, func.count(Repository.id))
        .join(RepositoryAnalysis, RepositoryAnalysis.repository_id == Repository.id)
        .filter(RepositoryAnalysis.user_id == user.id, Repository.language.isnot(None))
        .group_by(Repository.language)
        .all()
    )

    return AnalyticsDashboard(
        total_analyses=total,
        average_scores=averages,
        language_breakdown=dict(languages),
        bookmarks=db.query(func.count(Bookmark.id)).filter(Bookmark.user_id == user.id).scalar(),
        collections=db.query(func.count(Collection.id)).filter(Collection.user_id == user.id).scalar(),
        score_trend=_score_trend(db, user) if tiers.has_feature(user, "advanced_analytics") else None,
    )
