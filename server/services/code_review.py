"""
AI code review of repositories and snippets, plus one-click fix pull requests.
"""

import json
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from errors import AppError
from models import CodeReview, User
from schemas import CodeIssue, CodeReviewResult, SavedReviewInfo, SaveReviewRequest
from services import gemini
from services.github import GitHubClient, parse_repository_url

logger = logging.getLogger(__name__)

MAX_REVIEW_FILES = 3

# Entry points worth reviewing, by the repository's main language
FILE_CANDIDATES = {
    "JavaScript": ["index.js", "app.js", "server.js", "src/index.js", "src/app.js"],
    "TypeScript": ["index.ts", "app.ts", "server.ts", "src/index.ts", "src/app.ts", "src/main.ts"],
    "Python": ["main.py", "app.py", "__init__.py", "setup.py"],
    "Java": ["Main.java", "Application.java", "src/main/java/Main.java"],
    "Go": ["main.go", "app.go"],
    "Ruby": ["main.rb", "app.rb", "config.ru"],
    "PHP": ["index.php", "app.php", "main.php"],
    "C": ["main.c", "app.c"],
    "C++": ["main.cpp", "app.cpp"],
    "Rust": ["src/main.rs", "src/lib.rs", "main.rs", "lib.rs"],
}
DEFAULT_CANDIDATES = ["README.md", "index.js", "main.py"]


def main_language(languages: dict[str, int]) -> str | None:
    if not languages:
        return None
    return max(languages.items(), key=lambda pair: pair[1])[0]


def collect_review_files(github: GitHubClient, owner: str, repo: str, languages: dict[str, int],
                         readme: str | None = None) -> list[dict]:
    """Fetch up to MAX_REVIEW_FILES entry-point files, falling back to the README."""
    candidates = FILE_CANDIDATES.get(main_language(languages), DEFAULT_CANDIDATES)
    files = []
    for path in candidates:
        try:
            content = github.get_file_content(owner, repo, path)
        except AppError as e:
            logger.info(f"Skipping {owner}/{repo}:{path} for review: {e.code}")
            continue
        if content:
            files.append({"path": path, "content": content})
            if len(files) >= MAX_REVIEW_FILES:
                break

    if not files and readme:
        files.append({"path": "README.md", "content": readme})
    if not files:
        raise AppError(
            "INVALID_INPUT",
            f"Could not fetch any code files from the repository. Tried: {', '.join(candidates)}.",
            details={"tried": candidates},
        )
    return files


def _to_result(review: dict, files: list[dict]) -> CodeReviewResult:
    issues = []
    for issue in review.get("issues") or []:
        line = issue.get("line")
        issues.append(CodeIssue(
            type=str(issue.get("type") or "suggestion"),
            severity=str(issue.get("severity") or "low"),
            line=line if isinstance(line, int) else None,
            message=str(issue["message"]),
            suggestion=issue.get("suggestion"),
            file=issue.get("file"),
            category=issue.get("category"),
        ))
    return CodeReviewResult(
        **{key: review[key] for key in gemini.REVIEW_SCORES},
        issues=issues,
        suggestions=review.get("suggestions", []),
        positives=review.get("positives", []),
        linesOfCode=review.get("linesOfCode", 0),
        is_fallback=review.get("is_fallback", False),
        files=[f["path"] for f in files],
    )


def review_repository(github: GitHubClient, url: str) -> CodeReviewResult:
    owner, name = parse_repository_url(url)
    details = github.get_repository_with_details(owner, name)
    if details is None:
        raise AppError("NOT_FOUND", f"Repository {owner}/{name} was not found on GitHub.")
    if not details["languages"]:
        raise AppError(
            "INVALID_INPUT",
            "Could not determine repository languages. The repository may be empty.",
        )

    files = collect_review_files(github, owner, name, details["languages"], details["readme"])
    logger.info(f"Reviewing {len(files)} files of {owner}/{name}", extra={"repository": f"{owner}/{name}"})
    return _to_result(gemini.review_code(files, repository=details["repository"]), files)


def review_snippet(code: str) -> CodeReviewResult:
    files = [{"path": "snippet", "content": code}]
    return _to_result(gemini.review_code(files), files)


# =============================================================================
# FILES & FIXES
# =============================================================================

def file_url(owner: str, repo: str, path: str, line: int | None = None, branch: str = "main") -> str:
    anchor = f"#L{line}" if line else ""
    return f"https://github.com/{owner}/{repo}/blob/{branch}/{path}{anchor}"


def _truncate(text: str, length: int) -> str:
    return text if len(text) <= length else f"{text[:length]}..."


def create_fix_pull_request(github: GitHubClient, repo_url: str, path: str, issue: str,
                            suggestion: str | None = None, line: int | None = None,
                            now: datetime | None = None) -> dict:
    """Generate a fix with the model and open a pull request with it on a new branch."""
    owner, repo = parse_repository_url(repo_url)
    content = github.get_file_content(owner, repo, path)
    if content is None:
        raise AppError("NOT_FOUND", f"File {path} not found in {owner}/{repo}.")

    fixed = gemini.generate_fix(path, content, issue, suggestion, line)
    if not fixed:
        raise AppError("EXTERNAL_API_ERROR", "The AI service could not generate a fix. Please try again later.")

    timestamp = int((now or datetime.utcnow()).timestamp() * 1000)
    branch = f"fix/code-review-{timestamp}"
    github.create_branch(owner, repo, branch)
    github.update_file(owner, repo, path, fixed, f"Fix: {_truncate(issue, 50)}", branch)

    body = (
        "## AI-Generated Fix\n\n"
        f"**Issue:** {issue}\n"
        + (f"\n**Suggestion:** {suggestion}\n" if suggestion else "")
        + f"\n**File:** `{path}`"
        + (f"\n**Line:** {line}" if line else "")
        + "\n\n---\n\nThis pull request was generated by RepoRadar code review. "
        "Please review the changes carefully before merging."
    )
    pr = github.create_pull_request(owner, repo, f"Code Review Fix: {_truncate(issue, 60)}", body, head=branch)
    logger.info(f"Opened fix pull request #{pr.get('number')} on {owner}/{repo}")
    return {"number": pr["number"], "url": pr["html_url"], "branch": branch}


# =============================================================================
# SAVED REVIEWS
# =============================================================================

def to_saved_info(review: CodeReview) -> SavedReviewInfo:
    return SavedReviewInfo(
        id=review.id,
        type=review.review_type,
        content=review.content,
        repository_name=review.repository_name,
        repository_url=review.repository_url,
        overall_score=review.overall_score,
        result=CodeReviewResult.model_validate(json.loads(review.result)),
        created_at=review.created_at,
    )


def save_review(session: Session, user: User, request: SaveReviewRequest) -> CodeReview:
    review = CodeReview(
        user_id=user.id,
        review_type=request.type.value,
        content=request.content,
        repository_name=request.repository_name,
        repository_url=request.repository_url,
        result=request.result.model_dump_json(),
        overall_score=request.result.overallScore,
    )
    session.add(review)
    session.commit()
    return review


def get_review(session: Session, user: User, review_id: int) -> CodeReview:
    review = session.query(CodeReview).filter(
        CodeReview.id == review_id, CodeReview.user_id == user.id
    ).first()
    if review is None:
        raise AppError("NOT_FOUND", "Code review not found.")
    return review


def review_history(session: Session, user: User, limit: int = 50) -> list[CodeReview]:
    return (
        session.query(CodeReview)
        .filter(CodeReview.user_id == user.id)
        .order_by(CodeReview.created_at.desc(), CodeReview.id.desc())
        .limit(limit)
        .all()
    )
