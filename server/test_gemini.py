"""Tests for model output handling. The model itself is always patched out."""

import json
from unittest.mock import MagicMock, patch

import pytest

from services import gemini

REPO = {"full_name": "octo/radar", "name": "radar", "language": "Python", "description": "Radar"}


class TestParsing:

    def test_plain_json(self):
        assert gemini.parse_json_response('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        assert gemini.parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}

    def test_json_inside_prose(self):
        assert gemini.parse_json_response('Sure! {"a": {"b": 2}} Hope that helps.') == {"a": {"b": 2}}

    @pytest.mark.parametrize("text", [None, "", "no json here", "[1, 2]"])
    def test_unusable(self, text):
        assert gemini.parse_json_response(text) is None

    @pytest.mark.parametrize("value,expected", [
        (7, 7.0), ("8.25", 8.2), (0, 1.0), (42, 10.0), ("n/a", 5.0), (None, 5.0), (float("nan"), 5.0),
    ])
    def test_clamp_score(self, value, expected):
        assert gemini.clamp_score(value) == expected


class TestGenerate:

    @pytest.fixture
    def model_client(self, monkeypatch):
        import config
        monkeypatch.setattr(config, "GEMINI_API_KEY", "test-key")
        with patch("google.genai.Client") as client_class, patch("services.gemini.time.sleep") as sleep:
            client = client_class.return_value
            client.sleep = sleep
            yield client

    def test_pauses_only_between_attempts(self, model_client):
        model_client.models.generate_content.side_effect = RuntimeError("overloaded")

        assert gemini._generate("prompt") is None
        assert model_client.models.generate_content.call_count == gemini.MAX_ATTEMPTS
        assert model_client.sleep.call_count == gemini.MAX_ATTEMPTS - 1

    def test_second_attempt_succeeds(self, model_client):
        model_client.models.generate_content.side_effect = [RuntimeError("overloaded"), MagicMock(text="ok")]

        assert gemini._generate("prompt") == "ok"
        model_client.sleep.assert_called_once_with(1)

    def test_first_answer_needs_no_pause(self, model_client):
        model_client.models.generate_content.return_value = MagicMock(text="ok")

        assert gemini._generate("prompt", json_mode=True) == "ok"
        model_client.sleep.assert_not_called()
        assert model_client.models.generate_content.call_args[1]["config"]["response_mime_type"] == "application/json"


class TestAnalyzeRepository:

    def test_without_api_key_returns_fallback(self):
        result = gemini.analyze_repository(REPO)

        assert result["is_fallback"] is True
        assert result["overall_score"] == 5.0
        assert all(result[m] == 5.0 for m in gemini.METRICS)
        assert "Python" in result["summary"]

    def test_normalizes_model_output(self):
        raw = {
            "originality": 9, "completeness": 12, "marketability": "6", "monetization": 4, "usefulness": 8,
            "overallScore": 7.5,
            "summary": "  Solid tool.  ",
            "strengths": ["Fast", {"point": "Typed", "reason": "mypy clean"}, {"reason": "no point"}],
            "weaknesses": [{"point": "Docs", "reason": "thin"}],
            "recommendations": [{"suggestion": "Add docs", "reason": "adoption", "impact": "high"}],
            "scoreExplanations": {"originality": "novel", "bogus": "ignored"},
        }
        with patch("services.gemini._generate", return_value=json.dumps(raw)):
            result = gemini.analyze_repository(REPO)

        assert result["is_fallback"] is False
        assert result["completeness"] == 10.0
        assert result["marketability"] == 6.0
        assert result["overall_score"] == 7.5
        assert result["summary"] == "Solid tool."
        assert result["strengths"] == [{"point": "Fast", "reason": ""}, {"point": "Typed", "reason": "mypy clean"}]
        assert result["score_explanations"] == {"originality": "novel"}

    def test_overall_defaults_to_mean(self):
        raw = {"originality": 2, "completeness": 4, "marketability": 6, "monetization": 8, "usefulness": 10}
        with patch("services.gemini._generate", return_value=json.dumps(raw)):
            result = gemini.analyze_repository(REPO)
        assert result["overall_score"] == 6.0

    def test_garbage_output_falls_back(self):
        with patch("services.gemini._generate", return_value="I cannot help with that"):
            assert gemini.analyze_repository(REPO)["is_fallback"] is True


class TestSimilar:

    def test_names_are_filtered(self):
        text = "- acme/widget\n* `acme/gadget`\nnot a repo\nocto/radar\nacme/widget\n"
        with patch("services.gemini._generate", return_value=text):
            assert gemini.find_similar_repositories(REPO) == ["acme/widget", "acme/gadget"]

    def test_unavailable_model(self):
        assert gemini.find_similar_repositories(REPO) == []

    def test_functionality_scores_scaled(self):
        raw = {
            "repositories": ["acme/widget", "bad name", "acme/gadget"],
            "reasoning": "Same domain",
            "similarity_scores": [
                {"repository": "acme/widget", "score": 85},
                {"repository": "acme/gadget", "score": 150},
                {"repository": "unknown/repo", "score": 50},
            ],
        }
        with patch("services.gemini._generate", return_value=json.dumps(raw)):
            result = gemini.find_similar_by_functionality(REPO)

        assert result["repositories"] == ["acme/widget", "acme/gadget"]
        assert result["similarity_scores"] == {"acme/widget": 0.85, "acme/gadget": 1.0}

    def test_functionality_fallback(self):
        result = gemini.find_similar_by_functionality(REPO)
        assert result["repositories"] == []
        assert result["reasoning"]


class TestAssistant:

    def test_ask_includes_context(self):
        with patch("services.gemini._generate", return_value=" It scores well. ") as generate:
            answer = gemini.ask_ai("Is it good?", {"full_name": "octo/radar", "overall_score": 8})

        assert answer == "It scores well."
        prompt = generate.call_args[0][0]
        assert "octo/radar" in prompt
        assert "Is it good?" in prompt

    def test_ask_unavailable(self):
        assert gemini.ask_ai("Hello?") == gemini.ASSISTANT_UNAVAILABLE

    def test_recommendations(self):
        raw = {"recommendations": [
            {"name": "acme/widget", "reason": "Python CLI", "matchScore": 0.9},
            {"name": "nonsense", "reason": "x"},
            {"name": "acme/gadget", "reason": "Similar", "matchScore": 3},
        ]}
        with patch("services.gemini._generate", return_value=json.dumps(raw)):
            items = gemini.generate_recommendations({"preferred_languages": ["Python"]}, [], limit=5)

        assert [i["repository"] for i in items] == ["acme/widget", "acme/gadget"]
        assert items[1]["confidence"] == 1.0


class TestCodeReview:

    FILES = [{"path": "main.py", "content": "import os\nprint(os.getcwd())\n"}]

    def test_fallback_review(self):
        review = gemini.review_code(self.FILES)

        assert review["is_fallback"] is True
        assert review["linesOfCode"] == 2
        assert review["testCoverage"] == 0

    def test_review_is_normalized(self):
        raw = {
            "overallScore": 120, "codeQuality": "80", "security": -5, "performance": 70,
            "maintainability": 65, "testCoverage": "none",
            "issues": [
                {"type": "warning", "severity": "medium", "line": 2, "message": "Prints cwd", "file": "made/up.py"},
                {"type": "warning"},
            ],
            "suggestions": ["Use logging"],
            "positives": ["Short"],
        }
        with patch("services.gemini._generate", return_value=json.dumps(raw)):
            review = gemini.review_code(self.FILES, repository={"full_name": "octo/radar"})

        assert review["overallScore"] == 100
        assert review["codeQuality"] == 80
        assert review["security"] == 0
        assert review["testCoverage"] == 0
        assert len(review["issues"]) == 1
        assert review["issues"][0]["file"] == "main.py"

    def test_generate_fix_strips_fences(self):
        with patch("services.gemini._generate", return_value="```python\nprint('fixed')\n```"):
            assert gemini.generate_fix("main.py", "print('broken')", "broken") == "print('fixed')\n"

    def test_generate_fix_unavailable(self):
        assert gemini.generate_fix("main.py", "x = 1", "issue") is None
