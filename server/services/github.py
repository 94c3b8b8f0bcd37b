import base64
import logging
import re
from datetime import datetime, timedelta

import httpx

import config
from errors import AppError

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"

_REPO_PATTERNS = [
    re.compile(r"^(?:https?://)?(?:www\.)?github\.com/([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)$"),
    re.compile(r"^([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)$"),
]


def parse_repository_url(url: str) -> tuple[str, str]:
    """
    Split a repository reference into (owner, repo).

    Accepts https://github.com/owner/repo, github.com/owner/repo and owner/repo,
    with an optional trailing slash or .git suffix.
    """
    cleaned = (url or "").strip().rstrip("/")
    if cleaned.endswith(".git"):
        cleaned = cleaned[:-4]

    for pattern in _REPO_PATTERNS:
        match = pattern.match(cleaned)
        if match:
            owner, repo = match.group(1), match.group(2)
            if owner in (".", "..") or repo in (".", ".."):
                break
            return owner, repo

    raise AppError(
        "INVALID_INPUT",
        "Invalid GitHub repository URL. Use https://github.com/owner/repo or owner/repo.",
        details={"url": url},
    )


class GitHubClient:
    """Thin client over the GitHub REST API with uniform error mapping."""

    def __init__(self, token: str | None = None, base_url: str = GITHUB_API_URL,
                 timeout: float = 30.0, transport: httpx.BaseTransport | None = None):
        self.token = token if token is not None else config.GITHUB_TOKEN
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "RepoRadar",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self.client = httpx.Client(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

    def close(self):
        self.client.close()

    def _request(self, method: str, path: str, allow_404: bool = False, **kwargs) -> httpx.Response | None:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"GitHub {method} {path} timed out: {e}")
            raise AppError("TIMEOUT_ERROR", "GitHub did not respond in time.")
        except httpx.RequestError as e:
            logger.warning(f"GitHub {method} {path} failed: {e}")
            raise AppError("EXTERNAL_API_ERROR", "Could not reach GitHub.")

        if response.status_code == 404 and allow_404:
            return None
        if response.is_success:
            return response

        self._raise_for_status(response)

    def _raise_for_status(self, response: httpx.Response):
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = str(body.get("message", ""))
        else:
            message = response.text[:200]

        if status in (403, 429):
            details = {"github_message": message}
            reset = response.headers.get("X-RateLimit-Reset")
            if reset and reset.isdigit():
                details["reset_at"] = datetime.utcfromtimestamp(int(reset)).isoformat()
            raise AppError("RATE_LIMIT_EXCEEDED", "GitHub API rate limit exceeded. Please try again later.", details=details)
        if status == 404:
            raise AppError("NOT_FOUND", "Repository or resource not found on GitHub.")
        if status == 401:
            raise AppError("UNAUTHORIZED", "GitHub rejected the credentials.")
        if status == 422:
            raise AppError("INVALID_INPUT", f"GitHub rejected the request: {message}")
        raise AppError("EXTERNAL_API_ERROR", f"GitHub API error ({status}).", details={"github_message": message})

    # =========================================================================
    # SEARCH
    # =========================================================================

    def search_repositories(self, query: str, sort: str = "stars", per_page: int = 10) -> list[dict]:
        response = self._request(
            "GET", "/search/repositories",
            params={"q": query, "sort": sort, "order": "desc", "per_page": per_page},
        )
        return response.json().get("items", [])

    def get_trending_repositories(self, per_page: int = 10) -> list[dict]:
        """Repositories created in the last 7 days with more than 100 stars."""
        since = (datetime.utcnow() - timedelta(days=7)).strftime("%Y-%m-%d")
        return self.search_repositories(f"created:>{since} stars:>100", sort="stars", per_page=per_page)

    # =========================================================================
    # REPOSITORY DATA
    # =========================================================================

    def get_repository(self, owner: str, repo: str) -> dict | None:
        response = self._request("GET", f"/repos/{owner}/{repo}", allow_404=True)
        return response.json() if response is not None else None

    def get_repository_languages(self, owner: str, repo: str) -> dict[str, int]:
        response = self._request("GET", f"/repos/{owner}/{repo}/languages", allow_404=True)
        return response.json() if response is not None else {}

    def get_repository_readme(self, owner: str, repo: str) -> str | None:
        response = self._request(
            "GET", f"/repos/{owner}/{repo}/readme", allow_404=True,
            headers={"Accept": "application/vnd.github.raw"},
        )
        return response.text if response is not None else None

    def get_repository_with_details(self, owner: str, repo: str) -> dict | None:
        """Repository payload plus `languages` and `readme`, or None if it does not exist."""
        repository = self.get_repository(owner, repo)
        if repository is None:
            return None
        return {
            "repository": repository,
            "languages": self.get_repository_languages(owner, repo),
            "readme": self.get_repository_readme(owner, repo),
        }

    def get_file_content(self, owner: str, repo: str, path: str, ref: str | None = None) -> str | None:
        params = {"ref": ref} if ref else None
        response = self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", allow_404=True, params=params)
        if response is None:
            return None
        data = response.json()
        if isinstance(data, list) or data.get("type") != "file":
            return None
        if data.get("encoding") == "base64":
            return base64.b64decode(data.get("content", "")).decode("utf-8", errors="replace")
        return data.get("content")

    def get_file_sha(self, owner: str, repo: str, path: str, ref: str | None = None) -> str | None:
        params = {"ref": ref} if ref else None
        response = self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", allow_404=True, params=params)
        if response is None:
            return None
        data = response.json()
        return data.get("sha") if isinstance(data, dict) else None

    # =========================================================================
    # WRITES (need a token with repo scope)
    # =========================================================================

    def create_branch(self, owner: str, repo: str, branch: str, from_branch: str = "main") -> dict:
        ref = self._request("GET", f"/repos/{owner}/{repo}/git/ref/heads/{from_branch}").json()
        sha = ref["object"]["sha"]
        response = self._request(
            "POST", f"/repos/{owner}/{repo}/git/refs",
            json={"ref": f"refs/heads/{branch}", "sha": sha},
        )
        return response.json()

    def update_file(self, owner: str, repo: str, path: str, content: str, message: str, branch: str) -> dict:
        body = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        sha = self.get_file_sha(owner, repo, path, ref=branch)
        if sha:
            body["sha"] = sha
        response = self._request("PUT", f"/repos/{owner}/{repo}/contents/{path}", json=body)
        return response.json()

    def create_pull_request(self, owner: str, repo: str, title: str, body: str, head: str, base: str = "main") -> dict:
        response = self._request(
            "POST", f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )
        return response.json()


def get_github_client():
    """FastAPI dependency; tests override it with a stub."""
    client = GitHubClient()
    try:
        yield client
    finally:
        client.close()
