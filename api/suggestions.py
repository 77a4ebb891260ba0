"""
Personalized suggestions API endpoints.

After onboarding, the user's profile (background, experience level,
interests, goals) is matched against the prompt, workflow and search
template tables. The best matches plus five Gemini-written custom prompts
are stored in ``user_suggestions``.
"""

from __future__ import annotations

import json
import re
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from api.auth import AuthUser, get_current_user
from api.shared.gemini import GeminiClient, get_gemini
from api.shared.logger import get_logger
from api.store_adapter import StoreAdapter, StoreError, get_store, utc_now_iso

logger = get_logger(__name__)

router = APIRouter(prefix="/suggestions", tags=["suggestions"])

PROMPT_LIMIT = 20
WORKFLOW_LIMIT = 10
SEARCH_LIMIT = 15
CUSTOM_PROMPT_COUNT = 5

BACKGROUND_CONTEXTS = {
    "marketing": "digital marketing professional focused on campaigns, brand growth, and analytics",
    "content_creator": "content creator focused on building audience, engagement, and viral content",
    "business_owner": "entrepreneur or business owner focused on growth, competition, and market positioning",
    "agency": "agency professional managing multiple clients and campaigns",
    "student": "student learning content strategy and digital marketing",
    "researcher": "researcher focused on academic work and data analysis",
}

INTEREST_CONTEXTS = {
    "tech_reviews": "technology products, gadgets, software reviews",
    "gaming": "video games, streaming, esports, gaming culture",
    "business": "business strategy, entrepreneurship, startups",
    "education": "educational content, tutorials, learning",
    "entertainment": "entertainment, comedy, viral content",
    "sports": "sports content, athletics, fitness",
    "music": "music content, covers, production",
    "lifestyle": "lifestyle, daily vlogs, personal brand",
    "news": "news coverage, current events, journalism",
    "science": "science education, research, experiments",
    "finance": "personal finance, investing, crypto",
    "travel": "travel content, destinations, adventures",
}

GOAL_CONTEXTS = {
    "grow_audience": "rapidly growing subscriber/follower count",
    "increase_engagement": "boosting likes, comments, shares, and watch time",
    "improve_quality": "elevating production value and content quality",
    "learn_trends": "staying ahead of platform trends and algorithm changes",
    "competitor_analysis": "understanding and outperforming competitors",
    "monetization": "maximizing revenue from content",
}

# (condition kind, value, prompt)
FALLBACK_PROMPTS: list[tuple[str, str, dict[str, str]]] = [
    (
        "background",
        "content_creator",
        {
            "title": "Analyze My Content Style",
            "description": "Get AI insights on your unique content fingerprint",
            "prompt_text": (
                "Analyze this video and identify my unique content style. What makes my content "
                "distinctive? How can I double down on my strengths?"
            ),
            "reason": "Perfect for content creators looking to refine their brand",
            "category": "content_creation",
            "icon": "sparkles",
            "gradient": "from-purple-500 to-pink-600",
        },
    ),
    (
        "background",
        "marketing",
        {
            "title": "Campaign Performance Decoder",
            "description": "Understand what makes campaigns succeed",
            "prompt_text": (
                "Analyze this marketing content and decode the strategy. What psychological triggers "
                "are being used? How can I adapt this for my campaigns?"
            ),
            "reason": "Essential for marketing professionals seeking inspiration",
            "category": "marketing",
            "icon": "target",
            "gradient": "from-blue-500 to-cyan-600",
        },
    ),
    (
        "interest",
        "gaming",
        {
            "title": "Gaming Highlight Optimizer",
            "description": "Find the perfect clips for maximum engagement",
            "prompt_text": (
                "Analyze this gaming video and identify the top 5 clip-worthy moments. Explain why each "
                "would perform well as a short-form clip."
            ),
            "reason": "Gaming creators need to maximize every piece of content",
            "category": "content_creation",
            "icon": "gamepad-2",
            "gradient": "from-purple-600 to-pink-600",
        },
    ),
    (
        "interest",
        "tech_reviews",
        {
            "title": "Tech Review Structure Analysis",
            "description": "Learn from top tech reviewers",
            "prompt_text": (
                "Analyze this tech review video structure. Break down the intro hook, spec presentation, "
                "real-world testing, and conclusion. Suggest improvements."
            ),
            "reason": "Tech reviewers need structured, comprehensive content",
            "category": "content_creation",
            "icon": "cpu",
            "gradient": "from-cyan-500 to-blue-600",
        },
    ),
    (
        "goal",
        "grow_audience",
        {
            "title": "Viral Element Detector",
            "description": "Find what makes content shareable",
            "prompt_text": (
                "Analyze this viral content and identify the specific elements that made it shareable. "
                "What hooks, emotions, or patterns can I replicate?"
            ),
            "reason": "Audience growth requires understanding viral mechanics",
            "category": "content_creation",
            "icon": "trending-up",
            "gradient": "from-green-500 to-emerald-600",
        },
    ),
    (
        "goal",
        "monetization",
        {
            "title": "Monetization Opportunity Scanner",
            "description": "Identify revenue potential in content",
            "prompt_text": (
                "Analyze this content for monetization opportunities. Identify sponsor fit, affiliate "
                "potential, product placement moments, and audience purchasing signals."
            ),
            "reason": "Turn views into revenue with strategic content analysis",
            "category": "business",
            "icon": "dollar-sign",
            "gradient": "from-amber-500 to-orange-600",
        },
    ),
]

TRACKED_TABLES = {
    "prompt": "prompt_templates",
    "workflow": "workflow_templates",
    "search": "search_suggestions",
}

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


class OnboardingProfile(BaseModel):
    background: str | None = None
    experience_level: str | None = None
    content_interests: list[str] = Field(default_factory=list)
    content_goals: list[str] = Field(default_factory=list)
    full_name: str | None = None
    institution: str | None = None


class TrackRequest(BaseModel):
    suggestion_type: Literal["prompt", "workflow", "search", "custom"]
    suggestion_id: str
    action: Literal["viewed", "clicked", "used", "completed", "rated", "dismissed"]
    rating: int | None = Field(default=None, ge=1, le=5)


def score_template(
    template: dict[str, Any],
    background: str,
    interests: list[str],
    goals: list[str],
    experience_level: str | None = None,
    *,
    popularity: bool = False,
    trending: bool = False,
) -> float:
    """Relevance of a template to a user profile."""
    score: float = 0
    if background in (template.get("target_backgrounds") or []):
        score += 10
    target_interests = template.get("target_interests") or []
    score += 5 * sum(1 for i in interests if i in target_interests)
    target_goals = template.get("target_goals") or []
    score += 4 * sum(1 for g in goals if g in target_goals)
    if experience_level is not None and experience_level in (template.get("target_experience_levels") or []):
        score += 3
    if template.get("is_featured"):
        score += 5
    if popularity:
        score += min((template.get("use_count") or 0) / 100, 3)
    if trending and template.get("is_trending"):
        score += 8
    return score


def fallback_custom_prompts(profile: OnboardingProfile) -> list[dict[str, str]]:
    """Profile-driven prompts used when Gemini is unavailable or fails."""
    matches = {
        "background": lambda value: profile.background == value,
        "interest": lambda value: value in profile.content_interests,
        "goal": lambda value: value in profile.content_goals,
    }
    prompts = [dict(prompt) for kind, value, prompt in FALLBACK_PROMPTS if matches[kind](value)]
    return prompts[:CUSTOM_PROMPT_COUNT]


def build_custom_prompt_request(profile: OnboardingProfile) -> str:
    background = BACKGROUND_CONTEXTS.get(profile.background or "", profile.background)
    interests = ", ".join(INTEREST_CONTEXTS.get(i, i) for i in profile.content_interests)
    goals = ", ".join(GOAL_CONTEXTS.get(g, g) for g in profile.content_goals)
    return f"""You are a content analysis expert. Generate 5 highly personalized AI workflow prompts for a user with this profile:

BACKGROUND: {background}
EXPERIENCE: {profile.experience_level}
INTERESTS: {interests}
GOALS: {goals}

Generate 5 unique, specific prompts that would be extremely valuable for this exact user. Each prompt should:
1. Be actionable and specific (not generic)
2. Reference their specific niche/interests
3. Help them achieve their stated goals
4. Match their experience level

Return as a JSON array with this structure:
[
  {{
    "title": "Short catchy title (4-6 words)",
    "description": "One sentence explaining the value",
    "prompt_text": "The full prompt to send to the AI (2-4 sentences, specific and actionable)",
    "reason": "Why this is perfect for this user (1 sentence)",
    "category": "content_creation|marketing|business|research|education",
    "icon": "zap|trending-up|target|users|brain|sparkles|lightbulb|rocket",
    "gradient": "from-purple-500 to-pink-600|from-blue-500 to-cyan-600|from-amber-500 to-orange-600|from-green-500 to-emerald-600"
  }}
]

Only return the JSON array, no other text."""


class SuggestionService:
    """Matches templates to a user profile and stores the result.

    Args:
        store: Store adapter; defaults to the process-wide store.
        gemini: Gemini client; defaults to the shared client.
    """

    def __init__(self, store: StoreAdapter | None = None, gemini: GeminiClient | None = None):
        self.store = store or get_store()
        self.gemini = gemini or get_gemini()

    def _ranked(self, table: str, limit: int, **score_kwargs: Any) -> list[dict[str, Any]]:
        rows = self.store.select(table, eq={"is_active": True})
        scored = [{**row, "match_score": score_template(row, **score_kwargs)} for row in rows]
        scored.sort(key=lambda row: row["match_score"], reverse=True)
        return scored[:limit]

    def custom_prompts(self, profile: OnboardingProfile) -> list[dict[str, Any]]:
        if not self.gemini.available:
            return fallback_custom_prompts(profile)
        try:
            text = self.gemini.generate(build_custom_prompt_request(profile), temperature=0.7, max_output_tokens=2048)
            match = _JSON_ARRAY_RE.search(text or "")
            if match:
                prompts = json.loads(match.group(0))
                if isinstance(prompts, list):
                    return prompts
        except Exception as e:
            logger.error("Error generating custom prompts: %s", e)
        return fallback_custom_prompts(profile)

    def generate_for_user(self, user_id: str, profile: OnboardingProfile) -> dict[str, Any] | None:
        """Rank templates, write ``user_suggestions`` and return the row.

        Returns ``None`` when the suggestions could not be stored.
        """
        background = profile.background or ""
        interests = profile.content_interests
        goals = profile.content_goals
        level = profile.experience_level or "beginner"

        try:
            prompts = self._ranked(
                "prompt_templates",
                PROMPT_LIMIT,
                background=background,
                interests=interests,
                goals=goals,
                experience_level=level,
                popularity=True,
            )
            workflows = self._ranked(
                "workflow_templates",
                WORKFLOW_LIMIT,
                background=background,
                interests=interests,
                goals=goals,
                experience_level=level,
            )
            searches = self._ranked(
                "search_suggestions",
                SEARCH_LIMIT,
                background=background,
                interests=interests,
                goals=goals,
                trending=True,
            )
            now = utc_now_iso()
            rows = self.store.upsert(
                "user_suggestions",
                {
                    "user_id": user_id,
                    "user_background": background,
                    "user_experience_level": level,
                    "user_interests": interests,
                    "user_goals": goals,
                    "suggested_prompts": [p["id"] for p in prompts],
                    "suggested_workflows": [w["id"] for w in workflows],
                    "suggested_searches": [s["id"] for s in searches],
                    "custom_prompts": self.custom_prompts(profile),
                    "is_stale": False,
                    "generated_at": now,
                    "updated_at": now,
                },
                on_conflict="user_id",
            )
        except StoreError as e:
            logger.error("Error storing suggestions for %s: %s", user_id, e)
            return None
        return rows[0] if rows else None

    def _by_ids(self, table: str, ids: list[str]) -> list[dict[str, Any]]:
        if not ids:
            return []
        return self.store.select(table, in_={"id": ids})

    def get_for_user(self, user_id: str) -> dict[str, Any] | None:
        row = self.store.select_one("user_suggestions", eq={"user_id": user_id})
        if row is None:
            return None
        return {
            "prompts": self._by_ids("prompt_templates", row.get("suggested_prompts") or []),
            "workflows": self._by_ids("workflow_templates", row.get("suggested_workflows") or []),
            "searches": self._by_ids("search_suggestions", row.get("suggested_searches") or []),
            "customPrompts": row.get("custom_prompts") or [],
        }

    def track(self, user_id: str, body: TrackRequest) -> None:
        self.store.insert(
            "suggestion_analytics",
            {
                "user_id": user_id,
                "suggestion_type": body.suggestion_type,
                "suggestion_id": body.suggestion_id,
                "action": body.action,
                "rating": body.rating,
                "created_at": utc_now_iso(),
            },
        )
        table = TRACKED_TABLES.get(body.suggestion_type)
        if body.action != "used" or table is None:
            return
        row = self.store.select_one(table, "id, use_count", eq={"id": body.suggestion_id})
        if row is not None:
            self.store.update(table, {"use_count": (row.get("use_count") or 0) + 1}, id=body.suggestion_id)


@router.post("/generate")
async def generate_suggestions(body: OnboardingProfile, user: AuthUser = Depends(get_current_user)):
    """Generate and store suggestions from the caller's onboarding answers."""
    if not body.background or not body.content_interests:
        raise HTTPException(status_code=400, detail="Missing required onboarding data")

    row = await run_in_threadpool(SuggestionService().generate_for_user, user.id, body)
    if row is None:
        return {
            "success": True,
            "suggestions": None,
            "message": (
                "Onboarding completed but suggestions generation failed. "
                "Suggestions will be generated on next login."
            ),
        }

    return {
        "success": True,
        "suggestions": {
            "id": row.get("id"),
            "promptCount": len(row.get("suggested_prompts") or []),
            "workflowCount": len(row.get("suggested_workflows") or []),
            "searchCount": len(row.get("suggested_searches") or []),
            "customPromptCount": len(row.get("custom_prompts") or []),
        },
    }


@router.get("/generate")
def get_suggestions(user: AuthUser = Depends(get_current_user)):
    """The caller's stored suggestions with templates resolved."""
    try:
        suggestions = SuggestionService().get_for_user(user.id)
    except StoreError as e:
        logger.error("Error getting suggestions for %s: %s", user.id, e)
        raise HTTPException(status_code=500, detail="Internal server error")

    if suggestions is None:
        return {
            "success": True,
            "suggestions": None,
            "message": "No suggestions found. Complete onboarding to generate personalized suggestions.",
        }
    return {"success": True, "suggestions": suggestions}


@router.post("/track")
def track_suggestion(body: TrackRequest, user: AuthUser = Depends(get_current_user)):
    """Record an interaction with a suggestion."""
    try:
        SuggestionService().track(user.id, body)
    except StoreError as e:
        logger.error("Error tracking suggestion usage: %s", e)
        raise HTTPException(status_code=500, detail="Failed to track suggestion")
    return {"success": True}
