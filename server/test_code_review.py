"""Tests for AI code review, file viewing and fix pull requests."""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from conftest import bearer, repo_payload
from errors import AppError
from services import code_review

SNIPPET = "def add(a, b):\n    return a + b\n"


@pytest.fixture
def fake_github():
    github = MagicMock()
    with patch("routers.code_review.GitHubClient", return_value=github) as factory:
        github.factory = factory
        yield github


def review_body(score=82):
    return {
        "overallScore": score, "codeQuality": 80, "security": 90, "performance": 75,
        "maintainability": 70, "testCoverage": 10, "issues": [], "suggestions": ["Add tests"],
        "positives": ["Readable"], "linesOfCode": 2,
    }


class TestReviewService:

    def test_main_language(self):
        assert code_review.main_language({"Python": 10, "Go": 99}) == "Go"
        assert code_review.main_language({}) is None

    def test_collects_entry_points_for_language(self):
        github = MagicMock()
        github.get_file_content.side_effect = lambda owner, repo, path: {"app.py": "print(1)"}.get(path)

        files = code_review.collect_review_files(github, "octo", "radar", {"Python": 100})

        assert files == [{"path": "app.py", "content": "print(1)"}]

    def test_falls_back_to_readme(self):
        github = MagicMock()
        github.get_file_content.return_value = None

        files = code_review.collect_review_files(github, "octo", "radar", {"Python": 100}, readme="# Radar")
        assert files == [{"path": "README.md", "content": "# Radar"}]

    def test_nothing_to_review(self):
        github = MagicMock()
        github.get_file_content.side_effect = AppError("RATE_LIMIT_EXCEEDED")

        with pytest.raises(AppError) as exc_info:
            code_review.collect_review_files(github, "octo", "radar", {"Go": 5})
        assert exc_info.value.details["tried"] == ["main.go", "app.go"]

    def test_empty_repository(self):
        github = MagicMock()
        github.get_repository_with_details.return_value = {"repository": repo_payload("octo/radar"),
                                                           "languages": {}, "readme": None}
        with pytest.raises(AppError):
            code_review.review_repository(github, "octo/radar")

    def test_file_url(self):
        assert code_review.file_url("octo", "radar", "src/app.py", 12) == \
            "https://github.com/octo/radar/blob/main/src/app.py#L12"

    def test_fix_pull_request(self):
        github = MagicMock()
        github.get_file_content.return_value = "broken\n"
        github.create_pull_request.return_value = {"number": 9, "html_url": "https://github.com/octo/radar/pull/9"}

        with patch("services.code_review.gemini.generate_fix", return_value="fixed\n"):
            pr = code_review.create_fix_pull_request(github, "octo/radar", "app.py", "It is broken", line=3,
                                                     now=datetime(2024, 1, 1))

        branch = f"fix/code-review-{int(datetime(2024, 1, 1).timestamp() * 1000)}"
        assert pr == {"number": 9, "url": "https://github.com/octo/radar/pull/9", "branch": branch}
        github.create_branch.assert_called_once_with("octo", "radar", branch)
        github.update_file.assert_called_once_with("octo", "radar", "app.py", "fixed\n", "Fix: It is broken", branch)
        assert "**Line:** 3" in github.create_pull_request.call_args[0][3]

    def test_fix_without_model(self):
        github = MagicMock()
        github.get_file_content.return_value = "broken\n"

        with pytest.raises(AppError) as exc_info:
            code_review.create_fix_pull_request(github, "octo/radar", "app.py", "It is broken")
        assert exc_info.value.code == "EXTERNAL_API_ERROR"
        github.create_branch.assert_not_called()


class TestReviewApi:

    def test_snippet_review(self, client, headers):
        response = client.post("/api/code-review/analyze", json={"type": "snippet", "content": SNIPPET},
                               headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["is_fallback"] is True
        assert data["files"] == ["snippet"]
        assert data["linesOfCode"] == 2

    def test_repository_review(self, client, headers, fake_github):
        fake_github.get_repository_with_details.return_value = {
            "repository": repo_payload("octo/radar"), "languages": {"Python": 100}, "readme": None,
        }
        fake_github.get_file_content.side_effect = lambda owner, repo, path: "x = 1\n" if path == "main.py" else None

        with patch("services.code_review.gemini.review_code", return_value=review_body()):
            response = client.post("/api/code-review/analyze",
                                   json={"type": "repository", "content": "https://github.com/octo/radar"},
                                   headers=headers)

        assert response.json()["overallScore"] == 82
        assert response.json()["files"] == ["main.py"]
        fake_github.close.assert_called_once()

    def test_user_token_is_used(self, client, headers, fake_github):
        fake_github.get_repository_with_details.return_value = None

        response = client.post("/api/code-review/analyze",
                               json={"type": "repository", "content": "octo/private", "github_token": "ghp_user"},
                               headers=headers)

        assert response.status_code == 404
        fake_github.factory.assert_called_once_with(token="ghp_user")

    def test_requires_auth(self, client):
        response = client.post("/api/code-review/analyze", json={"type": "snippet", "content": SNIPPET})
        assert response.status_code == 401

    def test_view_code(self, client, headers, fake_github):
        fake_github.get_file_content.return_value = "print('hi')\n"

        response = client.post("/api/code-review/view-code",
                               json={"repo_url": "octo/radar", "file_path": "main.py", "line": 4}, headers=headers)

        assert response.json() == {
            "content": "print('hi')\n",
            "file_path": "main.py",
            "line": 4,
            "repo_url": "https://github.com/octo/radar",
            "file_url": "https://github.com/octo/radar/blob/main/main.py#L4",
        }

    def test_view_missing_file(self, client, headers, fake_github):
        fake_github.get_file_content.return_value = None

        response = client.post("/api/code-review/view-code",
                               json={"repo_url": "octo/radar", "file_path": "nope.py"}, headers=headers)
        assert response.status_code == 404

    def test_create_fix_needs_token(self, client, headers):
        response = client.post("/api/code-review/create-fix",
                               json={"repo_url": "octo/radar", "file_path": "app.py", "issue": "Bug"},
                               headers=headers)

        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"requires_auth": True}

    def test_create_fix(self, client, headers, fake_github):
        fake_github.get_file_content.return_value = "broken\n"
        fake_github.create_pull_request.return_value = {"number": 3, "html_url": "https://github.com/octo/radar/pull/3"}

        with patch("services.code_review.gemini.generate_fix", return_value="fixed\n"):
            response = client.post("/api/code-review/create-fix",
                                   json={"repo_url": "octo/radar", "file_path": "app.py", "issue": "Bug",
                                         "github_token": "ghp_user"},
                                   headers=headers)

        data = response.json()
        assert data["pull_request_number"] == 3
        assert data["branch"].startswith("fix/code-review-")
        fake_github.factory.assert_called_once_with(token="ghp_user")


class TestSavedReviews:

    def save(self, client, headers, score=82):
        body = {"type": "repository", "repository_name": "octo/radar",
                "repository_url": "https://github.com/octo/radar", "result": review_body(score)}
        return client.post("/api/code-review/save", json=body, headers=headers)

    def test_save_and_fetch(self, client, headers):
        saved = self.save(client, headers)
        assert saved.status_code == 201
        review_id = saved.json()["id"]

        fetched = client.get(f"/api/code-review/{review_id}", headers=headers).json()
        assert fetched["overall_score"] == 82
        assert fetched["result"]["suggestions"] == ["Add tests"]

    def test_history_newest_first(self, client, headers):
        self.save(client, headers, score=50)
        self.save(client, headers, score=60)

        history = client.get("/api/code-review/history", headers=headers).json()
        assert [r["overall_score"] for r in history] == [60, 50]

    def test_reviews_are_private(self, client, headers, make_user):
        review_id = self.save(client, headers).json()["id"]
        other = bearer(make_user("other@example.com"))

        assert client.get(f"/api/code-review/{review_id}", headers=other).status_code == 404
        assert client.delete(f"/api/code-review/{review_id}", headers=other).status_code == 404

    def test_delete(self, client, headers):
        review_id = self.save(client, headers).json()["id"]

        assert client.delete(f"/api/code-review/{review_id}", headers=headers).json() == {"success": True}
        assert client.get(f"/api/code-review/{review_id}", headers=headers).status_code == 404

    def test_scores_out_of_range(self, client, headers):
        assert self.save(client, headers, score=140).status_code == 422
