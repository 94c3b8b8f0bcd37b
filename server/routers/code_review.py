"""
AI code review endpoints.
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from errors import AppError
from limiter import limiter
from models import User
from schemas import (
    CodeReviewRequest, CodeReviewResult, CreateFixRequest, CreateFixResponse, ReviewType, SavedReviewInfo,
    SaveReviewRequest, ViewCodeRequest, ViewCodeResponse,
)
from services import code_review
from services.github import GitHubClient, parse_repository_url

router = APIRouter(prefix="/api/code-review", tags=["code-review"])


def _client_for(token: str | None) -> GitHubClient:
    # A caller-supplied token replaces the server token for private repositories
    return GitHubClient(token=token) if token else GitHubClient()


@router.post("/analyze", response_model=CodeReviewResult)
@limiter.limit("5/minute")
def analyze(request: Request, body: CodeReviewRequest, user: User = Depends(get_current_user)):
    if body.type == ReviewType.SNIPPET:
        return code_review.review_snippet(body.content)

    github = _client_for(body.github_token)
    try:
        return code_review.review_repository(github, body.content)
    finally:
        github.close()


@router.post("/view-code", response_model=ViewCodeResponse)
def view_code(body: ViewCodeRequest, user: User = Depends(get_current_user)):
    owner, repo = parse_repository_url(body.repo_url)
    github = _client_for(body.github_token)
    try:
        content = github.get_file_content(owner, repo, body.file_path)
    finally:
        github.close()
    if content is None:
        raise AppError("NOT_FOUND", "File not found.")
    return ViewCodeResponse(
        content=content,
        file_path=body.file_path,
        line=body.line,
        repo_url=f"https://github.com/{owner}/{repo}",
        file_url=code_review.file_url(owner, repo, body.file_path, body.line),
    )


@router.post("/create-fix", response_model=CreateFixResponse)
@limiter.limit("3/minute")
def create_fix(request: Request, body: CreateFixRequest, user: User = Depends(get_current_user)):
    if not body.github_token:
        raise AppError("INVALID_INPUT", "A GitHub token is required to create pull requests.",
                       details={"requires_auth": True})
    github = GitHubClient(token=body.github_token)
    try:
        pr = code_review.create_fix_pull_request(
            github, body.repo_url, body.file_path, body.issue, body.suggestion, body.line,
        )
    finally:
        github.close()
    return CreateFixResponse(pull_request_number=pr["number"], pull_request_url=pr["url"], branch=pr["branch"])


@router.post("/save", response_model=SavedReviewInfo, status_code=201)
def save(body: SaveReviewRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return code_review.to_saved_info(code_review.save_review(db, user, body))


@router.get("/history", response_model=list[SavedReviewInfo])
def history(limit: int = Query(50, ge=1, le=200), user: User = Depends(get_current_user),
            db: Session = Depends(get_db)):
    return [code_review.to_saved_info(r) for r in code_review.review_history(db, user, limit)]


@router.get("/{review_id}", response_model=SavedReviewInfo)
def get_review(review_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return code_review.to_saved_info(code_review.get_review(db, user, review_id))


@router.delete("/{review_id}")
def delete_review(review_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    db.delete(code_review.get_review(db, user, review_id))
    db.commit()
    return {"success": True}
