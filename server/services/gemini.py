"""
Gemini-backed AI features: repository scoring, similar repositories,
recommendations, the assistant and code review.

Every public function degrades gracefully: without GEMINI_API_KEY, or when
the model keeps failing, callers get a well-formed fallback instead of an
exception.
"""

import json
import logging
import re
import time

import config

logger = logging.getLogger(__name__)

METRICS = ["originality", "completeness", "marketability", "monetization", "usefulness"]
README_PREVIEW_CHARS = 2000
MAX_ATTEMPTS = 2

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


# =============================================================================
# LOW-LEVEL CALL
# =============================================================================

def _generate(prompt: str, system_instruction: str | None = None, json_mode: bool = False,
              model: str | None = None) -> str | None:
    """Run one prompt through Gemini. Returns the response text, or None on failure."""
    if not config.GEMINI_API_KEY:
        return None

    from google import genai

    generation_config = {"http_options": {"timeout": 30_000}}
    if system_instruction:
        generation_config["system_instruction"] = system_instruction
    if json_mode:
        generation_config["response_mime_type"] = "application/json"

    client = genai.Client(api_key=config.GEMINI_API_KEY)
    for attempt in range(MAX_ATTEMPTS):
        try:
            response = client.models.generate_content(
                model=model or config.GEMINI_MODEL,
                contents=prompt,
                config=generation_config,
            )
            if response.text:
                return response.text
            logger.warning(f"Gemini returned an empty response (attempt {attempt + 1}/{MAX_ATTEMPTS})")
        except Exception as e:
            logger.warning(f"Gemini error (attempt {attempt + 1}/{MAX_ATTEMPTS}): {e}")
        if attempt < MAX_ATTEMPTS - 1:
            time.sleep(1)

    return None


def parse_json_response(text: str | None) -> dict | None:
    """Parse a model response that should contain one JSON object."""
    if not text:
        return None
    cleaned = text.strip().replace("```json", "").replace("```", "").strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(cleaned)
        if not match:
            return None
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


# =============================================================================
# REPOSITORY ANALYSIS
# =============================================================================

ANALYSIS_SYSTEM_PROMPT = """You are an expert software repository analyst. Analyze the given repository and provide a comprehensive evaluation with detailed reasoning.

Rate each aspect from 1-10 and provide detailed insights:
1. Originality: How unique and innovative is this project? Consider novelty of approach, creative problem-solving, and differentiation from existing solutions.
2. Completeness: How complete and production-ready is the codebase? Consider documentation, testing, error handling, and polish.
3. Marketability: How appealing would this be to users/customers? Consider demand, user experience, and competitive positioning.
4. Monetization: What are the potential revenue opportunities? Consider business models, target market size, and value proposition.
5. Usefulness: How practically useful is this project? Consider real-world applicability, problem severity, and user impact.

Provide detailed explanations for WHY each score was given.
Include:
- A concise summary (2-3 sentences)
- 3-5 key strengths with clear reasoning
- 3-5 areas for improvement with specific explanations
- 3-5 actionable recommendations with expected impact

Respond with valid JSON in this exact format:
{
  "originality": number,
  "completeness": number,
  "marketability": number,
  "monetization": number,
  "usefulness": number,
  "overallScore": number,
  "summary": "string",
  "strengths": [{"point": "Brief strength statement", "reason": "Evidence for it"}],
  "weaknesses": [{"point": "Brief weakness statement", "reason": "How it impacts the project"}],
  "recommendations": [{"suggestion": "Actionable recommendation", "reason": "Why it helps", "impact": "Expected impact"}],
  "scoreExplanations": {
    "originality": "string",
    "completeness": "string",
    "marketability": "string",
    "monetization": "string",
    "usefulness": "string"
  }
}

Return ONLY the JSON object, no other text or markdown formatting."""


def build_repository_prompt(repo_data: dict) -> str:
    readme = repo_data.get("readme")
    readme_section = (
        f"README Preview: {readme[:README_PREVIEW_CHARS]}..." if readme else "No README available"
    )
    return f"""
Repository: {repo_data.get("full_name") or repo_data.get("name")}
Description: {repo_data.get("description") or "No description"}
Primary Language: {repo_data.get("language") or "Unknown"}
Stars: {repo_data.get("stars", 0)}
Forks: {repo_data.get("forks", 0)}
Size: {repo_data.get("size", 0)} KB
Languages: {json.dumps(repo_data.get("languages") or {})}
Topics: {", ".join(repo_data.get("topics") or [])}
{readme_section}
"""


def clamp_score(value, default: float = 5.0) -> float:
    """Coerce a model score into the 1-10 range."""
    try:
        score = float(value)
    except (TypeError, ValueError):
        return default
    if score != score:  # NaN
        return default
    return round(max(1.0, min(10.0, score)), 1)


def _points(items, first_key: str, keys: tuple[str, ...]) -> list[dict]:
    result = []
    for item in items or []:
        if isinstance(item, str) and item.strip():
            entry = {key: "" for key in keys}
            entry[first_key] = item.strip()
            result.append(entry)
        elif isinstance(item, dict) and item.get(first_key):
            result.append({key: str(item.get(key) or "") for key in keys})
    return result


def normalize_analysis(raw: dict) -> dict:
    """Turn a raw model payload into the stored analysis shape."""
    scores = {metric: clamp_score(raw.get(metric)) for metric in METRICS}
    overall_raw = raw.get("overallScore", raw.get("overall_score"))
    if overall_raw is None:
        overall = round(sum(scores.values()) / len(scores), 1)
    else:
        overall = clamp_score(overall_raw, default=round(sum(scores.values()) / len(scores), 1))

    explanations = raw.get("scoreExplanations") or raw.get("score_explanations") or {}
    if not isinstance(explanations, dict):
        explanations = {}

    return {
        **scores,
        "overall_score": overall,
        "summary": str(raw.get("summary") or "").strip() or "No summary provided.",
        "strengths": _points(raw.get("strengths"), "point", ("point", "reason")),
        "weaknesses": _points(raw.get("weaknesses"), "point", ("point", "reason")),
        "recommendations": _points(raw.get("recommendations"), "suggestion", ("suggestion", "reason", "impact")),
        "score_explanations": {
            metric: str(explanations[metric]) for metric in METRICS if explanations.get(metric)
        },
        "is_fallback": False,
    }


def fallback_analysis(repo_data: dict) -> dict:
    language = repo_data.get("language") or "open-source"
    unavailable = "Score based on standard assessment - full analysis unavailable"
    return {
        **{metric: 5.0 for metric in METRICS},
        "overall_score": 5.0,
        "summary": (
            "Analysis unavailable due to API error. This repository appears to be a "
            f"standard project in the {language} ecosystem."
        ),
        "strengths": [
            {"point": "Public and inspectable", "reason": "The source is available for manual review"},
        ],
        "weaknesses": [
            {"point": "Analysis temporarily unavailable", "reason": "Full AI analysis could not be completed at this time"},
            {"point": "Unable to assess current state", "reason": "Detailed metrics cannot be evaluated without AI assistance"},
        ],
        "recommendations": [
            {
                "suggestion": "Review project documentation",
                "reason": "Manual review can provide insights that automated analysis missed",
                "impact": "Better understanding of project capabilities and limitations",
            },
            {
                "suggestion": "Re-run the analysis later",
                "reason": "The AI provider may be temporarily unavailable",
                "impact": "A complete, scored evaluation",
            },
        ],
        "score_explanations": {metric: unavailable for metric in METRICS},
        "is_fallback": True,
    }


def analyze_repository(repo_data: dict) -> dict:
    """
    Score a repository on the five metrics plus an overall score (1-10).

    `repo_data` carries name/full_name, description, language, stars, forks,
    size, languages, topics and readme. Returns the normalized analysis dict;
    `is_fallback` is True when the model could not be used.
    """
    text = _generate(
        build_repository_prompt(repo_data),
        system_instruction=ANALYSIS_SYSTEM_PROMPT,
        json_mode=True,
    )
    raw = parse_json_response(text)
    if raw is None:
        if config.GEMINI_API_KEY:
            logger.error(f"Gemini analysis failed for {repo_data.get('full_name')}, using fallback")
        return fallback_analysis(repo_data)
    return normalize_analysis(raw)


# =============================================================================
# SIMILAR REPOSITORIES
# =============================================================================

_REPO_NAME = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


def find_similar_repositories(repo_data: dict, limit: int = 5) -> list[str]:
    """Up to `limit` owner/repo names the model considers similar."""
    prompt = f"""Given this repository information:
Name: {repo_data.get("full_name") or repo_data.get("name")}
Description: {repo_data.get("description") or ""}
Language: {repo_data.get("language") or ""}
Topics: {", ".join(repo_data.get("topics") or [])}

Find 3-5 similar GitHub repositories. Return only repository names in format "owner/repo-name", one per line.
Focus on repositories with similar functionality, technology stack, or problem domain."""

    text = _generate(prompt, model=config.GEMINI_FAST_MODEL)
    if not text:
        return []

    own_name = (repo_data.get("full_name") or "").lower()
    names = []
    for line in text.splitlines():
        candidate = line.strip().strip("-*` ").strip()
        if _REPO_NAME.match(candidate) and candidate.lower() != own_name and candidate not in names:
            names.append(candidate)
    return names[:limit]


def find_similar_by_functionality(repo_data: dict) -> dict:
    """Similar projects with reasoning and 0-1 similarity scores."""
    system_prompt = """You are an expert at analyzing GitHub repositories and finding similar projects based on functionality, use cases, and technology stack.
Consider core functionality, intended use cases, technology stack, features and domain.
Return JSON: {"repositories": ["owner/repo"], "reasoning": "string", "similarity_scores": [{"repository": "owner/repo", "score": 0-100}]}"""

    prompt = f"""Analyze this repository and find similar projects:

Repository: {repo_data.get("full_name") or repo_data.get("name")}
Description: {repo_data.get("description") or ""}
Primary Language: {repo_data.get("language") or ""}
Topics/Tags: {", ".join(repo_data.get("topics") or [])}

Find 5-8 highly similar GitHub repositories. Provide similarity scores (0-100) weighted by
functional similarity (40%), technology stack (30%), use case (20%) and domain (10%)."""

    empty = {
        "repositories": [],
        "reasoning": "Unable to find similar repositories at this time.",
        "similarity_scores": {},
    }
    raw = parse_json_response(_generate(prompt, system_instruction=system_prompt, json_mode=True))
    if raw is None:
        return empty

    repositories = [
        name for name in raw.get("repositories") or []
        if isinstance(name, str) and _REPO_NAME.match(name.strip())
    ][:8]

    scores = {}
    raw_scores = raw.get("similarity_scores") or []
    if isinstance(raw_scores, dict):
        raw_scores = [{"repository": k, "score": v} for k, v in raw_scores.items()]
    for entry in raw_scores:
        if not isinstance(entry, dict) or entry.get("repository") not in repositories:
            continue
        try:
            scores[entry["repository"]] = round(max(0.0, min(100.0, float(entry.get("score", 0)))) / 100, 2)
        except (TypeError, ValueError):
            continue

    return {
        "repositories": repositories,
        "reasoning": str(raw.get("reasoning") or ""),
        "similarity_scores": scores,
    }


# =============================================================================
# ASSISTANT & RECOMMENDATIONS
# =============================================================================

ASSISTANT_SYSTEM_PROMPT = """You are an AI assistant for RepoRadar, a GitHub repository analysis platform.

RepoRadar features:
- Analyzes GitHub repositories on 5 metrics: originality, completeness, marketability, monetization potential and usefulness (1-10)
- Batch analysis of several repositories at once (3 per batch on the free plan)
- Repository comparison, similar repositories and trending repositories
- PDF and CSV export, collections, bookmarks and tags
- Teams, developer API keys and webhooks

Instructions:
- Provide helpful, concise answers about RepoRadar and the repositories users ask about
- Give step-by-step instructions when asked how to use features
- Explain metrics and scoring when asked
- Keep answers focused and actionable"""

ASSISTANT_UNAVAILABLE = "AI assistant is currently unavailable. Please try again later."


def ask_ai(question: str, repository_context: dict | None = None) -> str:
    prompt = question
    if repository_context:
        prompt = (
            f"Context about the repository the user is looking at:\n"
            f"{json.dumps(repository_context, default=str, indent=2)}\n\nQuestion: {question}"
        )
    text = _generate(prompt, system_instruction=ASSISTANT_SYSTEM_PROMPT)
    return text.strip() if text else ASSISTANT_UNAVAILABLE


def generate_recommendations(preferences: dict, recent_activity: list[dict], limit: int = 10) -> list[dict]:
    """Personalized owner/repo suggestions with a reason and a 0-1 confidence."""
    activity_lines = "\n".join(
        f"- {a.get('action')} {a.get('repository') or ''}".rstrip() for a in recent_activity[:20]
    ) or "- none"
    prompt = f"""You are an expert GitHub repository recommendation system. Based on the user's preferences and recent activity, generate personalized repository recommendations.

User Preferences:
- Preferred Languages: {", ".join(preferences.get("preferred_languages") or []) or "Any"}
- Preferred Topics: {", ".join(preferences.get("preferred_topics") or []) or "Any"}
- Excluded Topics: {", ".join(preferences.get("excluded_topics") or []) or "None"}

Recent Activity (last 20 actions):
{activity_lines}

Recommend {limit} GitHub repositories. Avoid excluded topics. Prefer active, well-maintained projects.

Return a JSON object:
{{"recommendations": [{{"name": "owner/repo", "reason": "Why it fits this user", "matchScore": 0.0-1.0}}]}}"""

    raw = parse_json_response(_generate(prompt, json_mode=True))
    if raw is None:
        return []

    recommendations = []
    for entry in raw.get("recommendations") or []:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("name") or entry.get("repository") or "").strip()
        if not _REPO_NAME.match(name):
            continue
        try:
            confidence = max(0.0, min(1.0, float(entry.get("matchScore", entry.get("confidence", 0.5)))))
        except (TypeError, ValueError):
            confidence = 0.5
        recommendations.append({
            "repository": name,
            "reason": str(entry.get("reason") or ""),
            "confidence": round(confidence, 2),
        })
    return recommendations[:limit]


# =============================================================================
# CODE REVIEW
# =============================================================================

REVIEW_FORMAT = """Provide your analysis in the following JSON format:
{
  "overallScore": <number 0-100>,
  "codeQuality": <number 0-100>,
  "security": <number 0-100>,
  "performance": <number 0-100>,
  "maintainability": <number 0-100>,
  "testCoverage": <number 0-100>,
  "issues": [
    {"type": "error|warning|suggestion|security", "severity": "critical|high|medium|low",
     "line": <line number>, "message": "<issue>", "suggestion": "<how to fix>",
     "file": "<file path>", "category": "<category>"}
  ],
  "suggestions": ["<suggestion>"],
  "positives": ["<positive>"]
}

Provide ONLY the JSON response, no additional text."""

REVIEW_SCORES = ["overallScore", "codeQuality", "security", "performance", "maintainability", "testCoverage"]


def _fallback_review(files: list[dict]) -> dict:
    return {
        "overallScore": 70,
        "codeQuality": 70,
        "security": 70,
        "performance": 70,
        "maintainability": 70,
        "testCoverage": 0,
        "issues": [],
        "suggestions": ["Add comprehensive error handling", "Increase test coverage", "Document complex functions"],
        "positives": [],
        "linesOfCode": sum(len(f["content"].splitlines()) for f in files),
        "is_fallback": True,
    }


def _normalize_review(raw: dict, files: list[dict]) -> dict:
    valid_paths = [f["path"] for f in files]
    review = {}
    for key in REVIEW_SCORES:
        try:
            review[key] = int(max(0, min(100, float(raw.get(key, 0)))))
        except (TypeError, ValueError):
            review[key] = 0

    issues = []
    for issue in raw.get("issues") or []:
        if not isinstance(issue, dict) or not issue.get("message"):
            continue
        # Models sometimes invent paths; pin those to a file we actually sent
        if issue.get("file") not in valid_paths:
            issue["file"] = valid_paths[0]
        issues.append(issue)

    review["issues"] = issues
    review["suggestions"] = [str(s) for s in raw.get("suggestions") or []]
    review["positives"] = [str(p) for p in raw.get("positives") or []]
    review["linesOfCode"] = sum(len(f["content"].splitlines()) for f in files)
    review["is_fallback"] = False
    return review


def review_code(files: list[dict], repository: dict | None = None) -> dict:
    """
    Review source files ({"path", "content"}) and return scores (0-100),
    issues, suggestions and positives.
    """
    if repository:
        header = (
            f"You are a code review expert. Analyze the following code files from the "
            f"{repository.get('full_name')} repository and provide a detailed code review.\n\n"
            f"Description: {repository.get('description') or 'No description'}\n"
            f"Main Language: {repository.get('language') or 'Unknown'}\n"
        )
    else:
        header = "You are a code review expert. Analyze this code snippet and provide a code review.\n"

    body = "\n".join(f"\n--- {f['path']} ---\n{f['content'][:2000]}" for f in files)
    prompt = f"{header}\nFiles to analyze:\n{body}\n\n{REVIEW_FORMAT}"

    raw = parse_json_response(_generate(prompt, json_mode=True))
    if raw is None:
        return _fallback_review(files)
    return _normalize_review(raw, files)


def generate_fix(path: str, content: str, issue: str, suggestion: str | None = None,
                 line: int | None = None) -> str | None:
    """Return the full fixed file content, or None when the model is unavailable."""
    prompt = f"""You are a code review assistant. Fix the following issue in the code:

File: {path}
Line: {line or "N/A"}
Issue: {issue}
{f"Suggestion: {suggestion}" if suggestion else ""}

Current code:
```
{content}
```

Provide ONLY the fixed code without any explanations or markdown formatting."""

    text = _generate(prompt)
    if not text:
        return None
    fixed = text.strip()
    if fixed.startswith("```"):
        fixed = fixed.split("\n", 1)[1] if "\n" in fixed else ""
        if fixed.rstrip().endswith("```"):
            fixed = fixed.rstrip()[:-3]
    return fixed.rstrip() + "\n"
