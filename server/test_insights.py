"""Tests for preferences, recommendations, the assistant and the dashboard."""

from unittest.mock import patch

from services import gemini


class TestPreferences:

    def test_defaults(self, client, headers):
        prefs = client.get("/api/user/preferences", headers=headers).json()

        assert prefs["preferred_languages"] == []
        assert prefs["ai_recommendations"] is True

    def test_update_normalizes_lists(self, client, headers):
        client.put("/api/user/preferences",
                   json={"preferred_languages": ["Python", " Go ", "Python", ""], "email_notifications": False},
                   headers=headers)

        prefs = client.get("/api/user/preferences", headers=headers).json()
        assert prefs["preferred_languages"] == ["Go", "Python"]
        assert prefs["email_notifications"] is False

    def test_partial_update_keeps_other_fields(self, client, headers):
        client.put("/api/user/preferences", json={"preferred_topics": ["cli"]}, headers=headers)
        client.put("/api/user/preferences", json={"ai_recommendations": False}, headers=headers)

        prefs = client.get("/api/user/preferences", headers=headers).json()
        assert prefs["preferred_topics"] == ["cli"]
        assert prefs["ai_recommendations"] is False


class TestRecommendations:

    def test_disabled_by_preference(self, client, headers):
        client.put("/api/user/preferences", json={"ai_recommendations": False}, headers=headers)

        with patch("routers.insights.gemini.generate_recommendations") as generate:
            assert client.get("/api/recommendations", headers=headers).json() == []
        generate.assert_not_called()

    def test_activity_is_passed_to_model(self, client, headers):
        client.post("/api/repositories/analyze", json={"url": "octo/radar"}, headers=headers)
        items = [{"repository": "acme/widget", "reason": "Also Python", "confidence": 0.7}]

        with patch("routers.insights.gemini.generate_recommendations", return_value=items) as generate:
            response = client.get("/api/recommendations", params={"limit": 5}, headers=headers)

        assert response.json() == items
        activity = generate.call_args[0][1]
        assert activity == [{"action": "analyzed", "repository": "octo/radar"}]
        assert generate.call_args[1]["limit"] == 5


class TestAssistant:

    def test_without_model(self, client, headers):
        response = client.post("/api/ai/ask", json={"question": "What is this?"}, headers=headers)
        assert response.json() == {"answer": gemini.ASSISTANT_UNAVAILABLE}

    def test_repository_context(self, client, headers, seed_repository):
        repo = seed_repository("octo/radar", overall=8.0)

        with patch("routers.insights.gemini.ask_ai", return_value="Looks good.") as ask_ai:
            client.post("/api/ai/ask", json={"question": "Worth using?", "repository_id": repo.id}, headers=headers)

        context = ask_ai.call_args[0][1]
        assert context["full_name"] == "octo/radar"
        assert context["overall_score"] == 8.0

    def test_unknown_repository(self, client, headers):
        response = client.post("/api/ai/ask", json={"question": "?", "repository_id": 5}, headers=headers)
        assert response.status_code == 404


class TestDashboard:

    def test_free_tier_has_no_trend(self, client, headers, user, seed_repository):
        seed_repository("octo/radar", overall=6.0, user=user)
        seed_repository("octo/sonar", overall=8.0, user=user)
        seed_repository("acme/widget", overall=1.0)

        data = client.get("/api/analytics/dashboard", headers=headers).json()

        assert data["total_analyses"] == 2
        assert data["average_scores"]["overall_score"] == 7.0
        assert data["language_breakdown"] == {"Python": 2}
        assert data["score_trend"] is None

    def test_pro_tier_gets_trend(self, client, pro_headers, pro_user, seed_repository):
        seed_repository("octo/radar", overall=6.0, user=pro_user)
        seed_repository("octo/sonar", overall=8.0, user=pro_user)

        trend = client.get("/api/analytics/dashboard", headers=pro_headers).json()["score_trend"]

        assert len(trend) == 1
        assert trend[0]["average_score"] == 7.0
        assert trend[0]["count"] == 2

    def test_empty_dashboard(self, client, headers):
        data = client.get("/api/analytics/dashboard", headers=headers).json()
        assert data["total_analyses"] == 0
        assert data["average_scores"] == {}
