"""
Markdown documentation served to the docs viewer.

Pages live in DOCS_DIR/<category>/<slug>.md with optional YAML front matter:

    ---
    title: Quick Start
    description: Analyze your first repository
    lastUpdated: 2024-05-01
    tags: [analysis, onboarding]
    ---

Parsed pages are cached in memory for DOCS_CACHE_TTL seconds per `category/slug`.
"""

import logging
import re
import threading
import time
from pathlib import Path
from typing import Callable

import yaml

from errors import AppError
from schemas import DocCategory, DocMetadata, DocPage, DocSummary

logger = logging.getLogger(__name__)

CATEGORY_ORDER = ["getting-started", "features", "api-reference", "faq", "troubleshooting"]
_SLUG = re.compile(r"^[a-z0-9][a-z0-9-]*$")


def title_from_slug(slug: str) -> str:
    return " ".join(part.capitalize() for part in slug.split("-") if part)


def parse_front_matter(text: str) -> tuple[dict, str]:
    """Split `---` delimited YAML front matter from the markdown body."""
    if not text.startswith("---"):
        return {}, text
    lines = text.splitlines(keepends=True)
    for index in range(1, len(lines)):
        if lines[index].strip() == "---":
            header = "".join(lines[1:index])
            body = "".join(lines[index + 1:]).lstrip("\n")
            try:
                data = yaml.safe_load(header) or {}
            except yaml.YAMLError as e:
                logger.warning(f"Ignoring malformed front matter: {e}")
                return {}, body
            return (data if isinstance(data, dict) else {}), body
    return {}, text


def build_metadata(front_matter: dict, category: str, slug: str) -> DocMetadata:
    default_title = title_from_slug(category) if slug == "index" else title_from_slug(slug)
    tags = front_matter.get("tags") or []
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",") if t.strip()]
    last_updated = front_matter.get("lastUpdated")
    return DocMetadata(
        title=str(front_matter.get("title") or default_title),
        description=front_matter.get("description"),
        last_updated=str(last_updated) if last_updated is not None else None,
        author=front_matter.get("author"),
        tags=[str(t) for t in tags],
    )


class DocsLibrary:
    """Loads and caches documentation pages."""

    def __init__(self, root: Path, ttl_seconds: int = 300, clock: Callable[[], float] = time.monotonic):
        self.root = Path(root)
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: dict[str, tuple[float, DocPage]] = {}
        self._lock = threading.Lock()

    def clear(self):
        with self._lock:
            self._cache.clear()

    def _path(self, category: str, slug: str) -> Path:
        if not _SLUG.match(category) or not _SLUG.match(slug):
            raise AppError("NOT_FOUND", "Documentation page not found.")
        return self.root / category / f"{slug}.md"

    def _load(self, category: str, slug: str) -> DocPage:
        path = self._path(category, slug)
        if not path.is_file():
            raise AppError("NOT_FOUND", f"Documentation page {category}/{slug} not found.")
        front_matter, body = parse_front_matter(path.read_text(encoding="utf-8"))
        return DocPage(
            category=category,
            slug=slug,
            metadata=build_metadata(front_matter, category, slug),
            content=body,
        )

    def get(self, category: str, slug: str) -> DocPage:
        key = f"{category}/{slug}"
        now = self._clock()
        with self._lock:
            cached = self._cache.get(key)
            if cached and now - cached[0] < self.ttl_seconds:
                return cached[1]

        page = self._load(category, slug)
        with self._lock:
            self._cache[key] = (now, page)
        return page

    def categories(self) -> list[str]:
        if not self.root.is_dir():
            return []
        found = [p.name for p in self.root.iterdir() if p.is_dir() and _SLUG.match(p.name)]
        ordered = [name for name in CATEGORY_ORDER if name in found]
        return ordered + sorted(name for name in found if name not in CATEGORY_ORDER)

    def slugs(self, category: str) -> list[str]:
        directory = self.root / category
        names = sorted(p.stem for p in directory.glob("*.md") if _SLUG.match(p.stem))
        # index pages lead their category
        return sorted(names, key=lambda name: name != "index")

    def list_categories(self) -> list[DocCategory]:
        result = []
        for category in self.categories():
            docs = []
            for slug in self.slugs(category):
                page = self.get(category, slug)
                docs.append(DocSummary(category=category, slug=slug, metadata=page.metadata))
            result.append(DocCategory(name=category, docs=docs))
        return result

    def search(self, query: str, limit: int = 20) -> list[DocSummary]:
        """Case-insensitive match on title, description, tags and body; title hits rank first."""
        needle = query.strip().lower()
        if not needle:
            return []
        scored = []
        for category in self.categories():
            for slug in self.slugs(category):
                page = self.get(category, slug)
                meta = page.metadata
                score = 0
                if needle in meta.title.lower():
                    score += 3
                if meta.description and needle in meta.description.lower():
                    score += 2
                if any(needle in tag.lower() for tag in meta.tags):
                    score += 2
                if needle in page.content.lower():
                    score += 1
                if score:
                    scored.append((score, DocSummary(category=category, slug=slug, metadata=meta)))
        scored.sort(key=lambda pair: -pair[0])
        return [summary for _, summary in scored[:limit]]
