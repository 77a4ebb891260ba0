"""
Tests for personalized suggestions.

Tests:
- Template scoring against a profile
- Fallback and Gemini custom prompts
- Generate, fetch and track endpoints

Run tests:
    pytest tests/test_suggestions.py -v
"""

import json

import pytest

from api.suggestions import (
    OnboardingProfile,
    SuggestionService,
    build_custom_prompt_request,
    fallback_custom_prompts,
    score_template,
)
from api.store_adapter import StoreError

PROFILE = {
    "background": "content_creator",
    "experience_level": "intermediate",
    "content_interests": ["gaming", "tech_reviews"],
    "content_goals": ["grow_audience"],
}


@pytest.fixture
def templates(memory_store):
    memory_store.insert(
        "prompt_templates",
        [
            {"id": "p-match", "is_active": True, "target_backgrounds": ["content_creator"], "target_interests": ["gaming"], "use_count": 50},
            {"id": "p-featured", "is_active": True, "is_featured": True},
            {"id": "p-inactive", "is_active": False, "target_backgrounds": ["content_creator"]},
        ],
    )
    memory_store.insert(
        "workflow_templates",
        [{"id": "w1", "is_active": True, "target_goals": ["grow_audience"]}],
    )
    memory_store.insert(
        "search_suggestions",
        [
            {"id": "s-trending", "is_active": True, "is_trending": True},
            {"id": "s-plain", "is_active": True},
        ],
    )


# ============================================================================
# Scoring
# ============================================================================


class TestScoring:
    def test_full_match(self):
        template = {
            "target_backgrounds": ["content_creator"],
            "target_interests": ["gaming", "music"],
            "target_goals": ["grow_audience"],
            "target_experience_levels": ["intermediate"],
            "is_featured": True,
        }
        score = score_template(template, "content_creator", ["gaming", "tech_reviews"], ["grow_audience"], "intermediate")
        assert score == 10 + 5 + 4 + 3 + 5

    def test_popularity_is_capped(self):
        assert score_template({"use_count": 150}, "", [], [], popularity=True) == 1.5
        assert score_template({"use_count": 10000}, "", [], [], popularity=True) == 3

    def test_trending_bonus_only_when_requested(self):
        template = {"is_trending": True}
        assert score_template(template, "", [], []) == 0
        assert score_template(template, "", [], [], trending=True) == 8


class TestCustomPrompts:
    def test_fallback_prompts_follow_profile(self):
        prompts = fallback_custom_prompts(OnboardingProfile(**PROFILE))
        titles = [p["title"] for p in prompts]
        assert titles == [
            "Analyze My Content Style",
            "Gaming Highlight Optimizer",
            "Tech Review Structure Analysis",
            "Viral Element Detector",
        ]

    def test_prompt_request_expands_contexts(self):
        request = build_custom_prompt_request(OnboardingProfile(**PROFILE))
        assert "BACKGROUND: content creator focused on building audience" in request
        assert "video games, streaming" in request
        assert "EXPERIENCE: intermediate" in request

    def test_gemini_prompts(self, memory_store, fake_gemini):
        generated = [{"title": "Custom", "prompt_text": "Do it"}]
        fake_gemini.generate.return_value = f"Here you go:\n{json.dumps(generated)}"

        prompts = SuggestionService(memory_store, fake_gemini).custom_prompts(OnboardingProfile(**PROFILE))

        assert prompts == generated
        assert fake_gemini.generate.call_args.kwargs["temperature"] == 0.7

    def test_gemini_failure_falls_back(self, memory_store, fake_gemini):
        fake_gemini.generate.side_effect = RuntimeError("quota")
        prompts = SuggestionService(memory_store, fake_gemini).custom_prompts(OnboardingProfile(**PROFILE))
        assert prompts[0]["title"] == "Analyze My Content Style"

    def test_offline_uses_fallback(self, memory_store, offline_gemini):
        prompts = SuggestionService(memory_store, offline_gemini).custom_prompts(
            OnboardingProfile(background="marketing", content_goals=["monetization"])
        )
        assert [p["title"] for p in prompts] == ["Campaign Performance Decoder", "Monetization Opportunity Scanner"]


# ============================================================================
# Endpoints
# ============================================================================


class TestGenerateSuggestions:
    """POST and GET /api/suggestions/generate."""

    def test_requires_profile(self, client, auth_headers):
        response = client.post("/api/suggestions/generate", json={"background": "student"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["detail"] == "Missing required onboarding data"

    def test_generate(self, client, auth_headers, templates, offline_gemini, memory_store, user_id):
        response = client.post("/api/suggestions/generate", json=PROFILE, headers=auth_headers)

        suggestions = response.json()["suggestions"]
        assert suggestions["promptCount"] == 2
        assert suggestions["workflowCount"] == 1
        assert suggestions["searchCount"] == 2
        assert suggestions["customPromptCount"] == 4

        row = memory_store.select_one("user_suggestions", eq={"user_id": user_id})
        assert row["suggested_prompts"] == ["p-match", "p-featured"]
        assert row["suggested_searches"][0] == "s-trending"
        assert row["is_stale"] is False

    def test_regenerate_replaces_row(self, client, auth_headers, templates, offline_gemini, memory_store):
        client.post("/api/suggestions/generate", json=PROFILE, headers=auth_headers)
        client.post("/api/suggestions/generate", json=PROFILE, headers=auth_headers)
        assert len(memory_store.select("user_suggestions")) == 1

    def test_store_failure(self, client, auth_headers, offline_gemini, memory_store, monkeypatch):
        def failing_upsert(*args, **kwargs):
            raise StoreError("down")

        monkeypatch.setattr(memory_store, "upsert", failing_upsert)

        data = client.post("/api/suggestions/generate", json=PROFILE, headers=auth_headers).json()

        assert data["success"] is True
        assert data["suggestions"] is None

    def test_get_without_suggestions(self, client, auth_headers):
        data = client.get("/api/suggestions/generate", headers=auth_headers).json()
        assert data["suggestions"] is None
        assert data["message"].startswith("No suggestions found.")

    def test_get_resolves_templates(self, client, auth_headers, templates, offline_gemini):
        client.post("/api/suggestions/generate", json=PROFILE, headers=auth_headers)

        suggestions = client.get("/api/suggestions/generate", headers=auth_headers).json()["suggestions"]

        assert {p["id"] for p in suggestions["prompts"]} == {"p-match", "p-featured"}
        assert [w["id"] for w in suggestions["workflows"]] == ["w1"]
        assert len(suggestions["customPrompts"]) == 4


class TestTrackSuggestion:
    """POST /api/suggestions/track."""

    def test_used_increments_count(self, client, auth_headers, templates, memory_store):
        response = client.post(
            "/api/suggestions/track",
            json={"suggestion_type": "prompt", "suggestion_id": "p-match", "action": "used"},
            headers=auth_headers,
        )

        assert response.json() == {"success": True}
        assert memory_store.select_one("prompt_templates", eq={"id": "p-match"})["use_count"] == 51
        event = memory_store.select_one("suggestion_analytics")
        assert event["action"] == "used"

    def test_viewed_does_not_increment(self, client, auth_headers, templates, memory_store):
        client.post(
            "/api/suggestions/track",
            json={"suggestion_type": "prompt", "suggestion_id": "p-match", "action": "viewed"},
            headers=auth_headers,
        )
        assert memory_store.select_one("prompt_templates", eq={"id": "p-match"})["use_count"] == 50

    def test_invalid_action(self, client, auth_headers):
        response = client.post(
            "/api/suggestions/track",
            json={"suggestion_type": "prompt", "suggestion_id": "x", "action": "shared"},
            headers=auth_headers,
        )
        assert response.status_code == 422
