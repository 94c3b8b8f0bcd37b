"""Shared fixtures for the RepoRadar API tests."""

import os
import tempfile

# Set test environment variables before importing modules
_DB_DIR = tempfile.mkdtemp(prefix="reporadar-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["GEMINI_API_KEY"] = ""
os.environ["GITHUB_TOKEN"] = ""
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = ""
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["BATCH_BACKOFF_SECONDS"] = "0"

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from auth import create_access_token, hash_password
from database import SessionLocal, engine
from main import app
from models import Base, User
from services import analysis, gemini
from services.github import get_github_client

ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}
PASSWORD = "correct-horse"

# full_name -> GitHub repository id served by the fake GitHub client
KNOWN_REPOSITORIES = {
    "octo/radar": 101,
    "octo/sonar": 102,
    "acme/widget": 103,
    "acme/gadget": 104,
}


def repo_payload(full_name: str, repo_id: int | None = None, stars: int = 120, language: str = "Python") -> dict:
    """A GitHub /repos/{owner}/{repo} payload."""
    owner, name = full_name.split("/")
    return {
        "id": repo_id or KNOWN_REPOSITORIES.get(full_name, 999),
        "name": name,
        "full_name": full_name,
        "owner": {"login": owner},
        "description": f"{name} does useful things",
        "language": language,
        "stargazers_count": stars,
        "forks_count": 12,
        "watchers_count": stars,
        "size": 2048,
        "html_url": f"https://github.com/{full_name}",
        "clone_url": f"https://github.com/{full_name}.git",
        "topics": ["devtools", "analysis"],
    }


def repository_details(owner: str, name: str) -> dict | None:
    full_name = f"{owner}/{name}"
    if full_name not in KNOWN_REPOSITORIES:
        return None
    return {
        "repository": repo_payload(full_name),
        "languages": {"Python": 9000, "Shell": 120},
        "readme": f"# {name}\n\nA project.",
    }


def make_fake_github() -> MagicMock:
    github = MagicMock()
    github.get_repository_with_details.side_effect = repository_details
    github.search_repositories.return_value = []
    github.get_trending_repositories.return_value = [repo_payload("acme/gadget", stars=900)]
    github.get_repository.return_value = None
    return github


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def github():
    return make_fake_github()


@pytest.fixture
def client(github):
    app.dependency_overrides[get_github_client] = lambda: github
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    """Factory creating a user directly in the database."""

    def _make_user(email: str = "dev@example.com", tier: str = "free", password: str = PASSWORD) -> User:
        user = User(
            email=email,
            password_hash=hash_password(password),
            subscription_tier=tier,
            subscription_status="active" if tier != "free" else "inactive",
        )
        db.add(user)
        db.commit()
        return user

    return _make_user


def bearer(user: User) -> dict:
    token, _ = create_access_token(user.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def headers(user):
    return bearer(user)


@pytest.fixture
def pro_user(make_user):
    return make_user("pro@example.com", tier="pro")


@pytest.fixture
def pro_headers(pro_user):
    return bearer(pro_user)


@pytest.fixture
def seed_repository(db):
    """Factory storing a repository with an analysis, without going through GitHub."""

    def _seed(full_name: str, overall: float = 7.0, user: User | None = None, **scores):
        repo = analysis.upsert_repository(db, repo_payload(full_name), {"Python": 100})
        result = gemini.fallback_analysis({"language": "Python"})
        result.update({metric: scores.get(metric, overall) for metric in gemini.METRICS})
        result["overall_score"] = overall
        result["summary"] = f"{full_name} summary"
        result["is_fallback"] = False
        analysis.store_analysis(db, repo, result, user)
        db.commit()
        return repo

    return _seed
