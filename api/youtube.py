"""
YouTube content endpoints.

- ``GET /api/trending-videos`` serves today's stored trending videos, then
  yesterday's, then a fixed fallback list.
- ``GET|POST /api/cron/fetch-trending`` pulls the YouTube Data API
  ``mostPopular`` chart into ``trending_videos`` and drops rows older than
  a week. In production it requires ``Authorization: Bearer $CRON_SECRET``.
- ``POST /api/discover-videos`` suggests videos to analyze from onboarding
  interests: YouTube search first, then Gemini, then built-in defaults.
  ``GET`` returns the stored interests.
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import orjson
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from api.auth import AuthUser, get_current_user
from api.shared.gemini import get_gemini, strip_code_fences
from api.shared.logger import get_logger
from api.shared.settings import get_settings
from api.store_adapter import StoreError, get_store, utc_now_iso

logger = get_logger(__name__)

router = APIRouter(tags=["youtube"])

YOUTUBE_API_BASE = "https://www.googleapis.com/youtube/v3"
WATCH_URL = "https://www.youtube.com/watch?v="
REQUEST_TIMEOUT = 15.0
TRENDING_REGION = "US"
TRENDING_FETCH_SIZE = 50
TRENDING_RETENTION_DAYS = 7
MAX_TRENDING_LIMIT = 50
MAX_DISCOVERY_QUERIES = 3
MAX_DISCOVERY_RESULTS = 3

TRENDING_COLUMNS = "id, video_id, title, channel_name, thumbnail_url, view_count, category, trending_rank"

CATEGORIES = {
    "1": "Film & Animation",
    "2": "Autos & Vehicles",
    "10": "Music",
    "15": "Pets & Animals",
    "17": "Sports",
    "18": "Short Movies",
    "19": "Travel & Events",
    "20": "Gaming",
    "21": "Videoblogging",
    "22": "People & Blogs",
    "23": "Comedy",
    "24": "Entertainment",
    "25": "News & Politics",
    "26": "Howto & Style",
    "27": "Education",
    "28": "Science & Technology",
    "29": "Nonprofits & Activism",
    "30": "Movies",
    "31": "Anime/Animation",
    "32": "Action/Adventure",
    "33": "Classics",
    "34": "Comedy",
    "35": "Documentary",
    "36": "Drama",
    "37": "Family",
    "38": "Foreign",
    "39": "Horror",
    "40": "Sci-Fi/Fantasy",
    "41": "Thriller",
    "42": "Shorts",
    "43": "Shows",
    "44": "Trailers",
}

FALLBACK_TRENDING = [
    {
        "id": "fallback-1",
        "video_id": "dQw4w9WgXcQ",
        "title": "Rick Astley - Never Gonna Give You Up",
        "channel_name": "Rick Astley",
        "thumbnail_url": "https://i.ytimg.com/vi/dQw4w9WgXcQ/hqdefault.jpg",
        "view_count": 1_500_000_000,
        "category": "Music",
        "trending_rank": 1,
        "url": f"{WATCH_URL}dQw4w9WgXcQ",
    },
    {
        "id": "fallback-2",
        "video_id": "jNQXAC9IVRw",
        "title": "Me at the zoo",
        "channel_name": "jawed",
        "thumbnail_url": "https://i.ytimg.com/vi/jNQXAC9IVRw/hqdefault.jpg",
        "view_count": 300_000_000,
        "category": "People & Blogs",
        "trending_rank": 2,
        "url": f"{WATCH_URL}jNQXAC9IVRw",
    },
    {
        "id": "fallback-3",
        "video_id": "9bZkp7q19f0",
        "title": "PSY - GANGNAM STYLE",
        "channel_name": "officialpsy",
        "thumbnail_url": "https://i.ytimg.com/vi/9bZkp7q19f0/hqdefault.jpg",
        "view_count": 5_000_000_000,
        "category": "Music",
        "trending_rank": 3,
        "url": f"{WATCH_URL}9bZkp7q19f0",
    },
]

INTEREST_QUERIES = {
    "tech_reviews": ["tech review 2025", "best gadgets review", "smartphone review"],
    "gaming": ["gaming highlights", "best games 2025", "gameplay walkthrough"],
    "business": ["business tips", "entrepreneurship", "startup advice"],
    "education": ["learn online", "educational content", "how to tutorial"],
    "entertainment": ["viral video", "trending entertainment", "comedy sketch"],
    "sports": ["sports highlights", "best plays", "athlete training"],
    "music": ["music video", "song cover", "music production"],
    "lifestyle": ["lifestyle vlog", "day in my life", "productivity tips"],
    "news": ["news analysis", "current events", "documentary"],
    "science": ["science explained", "scientific discovery", "space exploration"],
    "finance": ["personal finance", "investing tips", "money management"],
    "travel": ["travel vlog", "destination guide", "travel tips"],
}
GENERIC_QUERIES = ["trending video 2025", "viral content", "popular creator"]

GOAL_REASONS = {
    "grow_audience": (
        "This video exemplifies excellent audience growth strategies with compelling hooks and shareable content."
    ),
    "increase_engagement": (
        "Notice the high engagement tactics - strong CTAs, community interaction, and conversation starters."
    ),
    "improve_quality": "Study the production value, editing style, and visual storytelling techniques used here.",
    "learn_trends": "This represents current trending formats and topics that are resonating with audiences.",
    "competitor_analysis": "Analyze how top creators in this niche structure their content and engage viewers.",
    "monetization": "This creator demonstrates effective monetization strategies while maintaining viewer trust.",
}


def _search_url(terms: str) -> str:
    return "https://www.youtube.com/results?search_query=" + "+".join(terms.split())


DEFAULT_VIDEOS = {
    "tech_reviews": {
        "title": "iPhone 16 Pro Max Review: The Real Story",
        "creator": "MKBHD",
        "url": _search_url("mkbhd iphone 16 pro max review"),
        "reason": "Marques Brownlee sets the gold standard for tech reviews with cinematic quality",
    },
    "gaming": {
        "title": "I Spent 100 Days in Minecraft Hardcore",
        "creator": "Luke TheNotable",
        "url": _search_url("luke thenotable 100 days minecraft"),
        "reason": "The '100 days' format created an entirely new genre of gaming content",
    },
    "business": {
        "title": "$100M Offers: How to Make Irresistible Offers",
        "creator": "Alex Hormozi",
        "url": _search_url("alex hormozi 100m offers"),
        "reason": "Direct, value-packed business content that converts viewers into fans",
    },
    "entertainment": {
        "title": "I Gave My 100,000,000th Subscriber An Island",
        "creator": "MrBeast",
        "url": _search_url("mrbeast 100 million subscriber island"),
        "reason": "Master of retention, hooks, and viral mechanics",
    },
    "education": {
        "title": "How The Economic Machine Works",
        "creator": "Principles by Ray Dalio",
        "url": _search_url("ray dalio economic machine works"),
        "reason": "Complex topics explained simply with engaging visuals",
    },
    "science": {
        "title": "The Egg - A Short Story",
        "creator": "Kurzgesagt",
        "url": _search_url("kurzgesagt the egg"),
        "reason": "Stunning animation and storytelling that makes complex ideas shareable",
    },
    "finance": {
        "title": "How To Invest For Beginners",
        "creator": "Graham Stephan",
        "url": _search_url("graham stephan invest beginners"),
        "reason": "Engaging personal finance content with excellent retention",
    },
    "lifestyle": {
        "title": "My Morning Routine for Maximum Productivity",
        "creator": "Matt D'Avella",
        "url": _search_url("matt davella morning routine"),
        "reason": "Cinematic vlog style that inspires action",
    },
}
DEFAULT_MIX = ("entertainment", "business", "tech_reviews")


class DiscoverRequest(BaseModel):
    background: str | None = None
    experience_level: str | None = None
    content_interests: list[str] = Field(default_factory=list)
    platforms: list[str] = Field(default_factory=list)
    content_goals: list[str] = Field(default_factory=list)


def format_view_count(count: Any) -> str:
    """``1234567`` -> ``"1.2M views"``."""
    try:
        value = int(count or 0)
    except (TypeError, ValueError):
        value = 0
    if value >= 1_000_000_000:
        return f"{value / 1_000_000_000:.1f}B views"
    if value >= 1_000_000:
        return f"{value / 1_000_000:.1f}M views"
    if value >= 1_000:
        return f"{value / 1_000:.0f}K views"
    return f"{value} views"


def _to_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _best_thumbnail(thumbnails: dict[str, Any], sizes=("maxres", "high", "medium")) -> str:
    for size in sizes:
        url = (thumbnails.get(size) or {}).get("url")
        if url:
            return url
    return ""


# ============= YouTube Data API =============


class YouTubeClient:
    """Minimal async client for the YouTube Data API v3.

    Every call returns an empty result instead of raising when the API key
    is missing, the request fails, or the API answers with an error status.
    """

    def __init__(self, api_key: str | None, timeout: float = REQUEST_TIMEOUT):
        self.api_key = api_key
        self.timeout = timeout

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def _get(self, resource: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        if not self.available:
            logger.error("No YouTube API key configured")
            return []
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{YOUTUBE_API_BASE}/{resource}", params={**params, "key": self.api_key})
        except httpx.HTTPError as e:
            logger.error("YouTube %s request failed: %s", resource, e)
            return []
        if not response.is_success:
            logger.error("YouTube API error %s: %s", response.status_code, response.text[:500])
            return []
        return response.json().get("items") or []

    async def most_popular(self, region: str = TRENDING_REGION, max_results: int = TRENDING_FETCH_SIZE):
        return await self._get(
            "videos",
            {"part": "snippet,statistics", "chart": "mostPopular", "regionCode": region, "maxResults": max_results},
        )

    async def search(self, query: str, max_results: int = 5):
        return await self._get(
            "search",
            {
                "part": "snippet",
                "q": query,
                "type": "video",
                "order": "viewCount",
                "maxResults": max_results,
                "videoDuration": "medium",
                "relevanceLanguage": "en",
                "safeSearch": "moderate",
            },
        )

    async def video_stats(self, video_ids: list[str]) -> dict[str, dict[str, Any]]:
        if not video_ids:
            return {}
        items = await self._get("videos", {"part": "statistics", "id": ",".join(video_ids)})
        return {item["id"]: item.get("statistics") or {} for item in items if item.get("id")}


def get_youtube() -> YouTubeClient:
    return YouTubeClient(get_settings().youtube_api_key)


# ============= Trending =============


def trending_rows(items: list[dict[str, Any]], region: str, fetched_at: datetime) -> list[dict[str, Any]]:
    """Rows for ``trending_videos`` from a ``mostPopular`` response, ranked by position."""
    rows = []
    for rank, video in enumerate(items, start=1):
        snippet = video.get("snippet") or {}
        statistics = video.get("statistics") or {}
        rows.append(
            {
                "video_id": video.get("id"),
                "title": snippet.get("title"),
                "channel_name": snippet.get("channelTitle"),
                "channel_id": snippet.get("channelId"),
                "description": (snippet.get("description") or "")[:500],
                "thumbnail_url": _best_thumbnail(snippet.get("thumbnails") or {}),
                "view_count": _to_int(statistics.get("viewCount")),
                "like_count": _to_int(statistics.get("likeCount")),
                "comment_count": _to_int(statistics.get("commentCount")),
                "category": CATEGORIES.get(snippet.get("categoryId"), "Entertainment"),
                "tags": (snippet.get("tags") or [])[:10],
                "trending_rank": rank,
                "region_code": region,
                "published_at": snippet.get("publishedAt"),
                "fetched_at": fetched_at.isoformat(),
                "fetched_date": fetched_at.date().isoformat(),
            }
        )
    return rows


def _with_links(videos: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {**v, "url": f"{WATCH_URL}{v['video_id']}", "viewCountFormatted": format_view_count(v.get("view_count"))}
        for v in videos
    ]


def _fallback_videos(limit: int) -> list[dict[str, Any]]:
    return [{**v, "viewCountFormatted": format_view_count(v["view_count"])} for v in FALLBACK_TRENDING[:limit]]


def _stored_trending(since: datetime, until: datetime | None, category: str | None, limit: int):
    eq = {"category": category} if category else None
    lt = {"fetched_at": until.isoformat()} if until else None
    return get_store().select(
        "trending_videos",
        TRENDING_COLUMNS,
        eq=eq,
        gte={"fetched_at": since.isoformat()},
        lt=lt,
        order="trending_rank",
        limit=limit,
    )


@router.get("/trending-videos")
def get_trending_videos(limit: int = Query(10, ge=1), category: str | None = None):
    """Today's trending videos, falling back to yesterday's and then a fixed list."""
    limit = min(limit, MAX_TRENDING_LIMIT)
    today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

    try:
        videos = _stored_trending(today, None, category, limit)
        if videos:
            return {
                "videos": _with_links(videos),
                "source": "database",
                "count": len(videos),
                "fetchedAt": utc_now_iso(),
            }

        videos = _stored_trending(today - timedelta(days=1), today, category, limit)
    except StoreError as e:
        logger.error("Trending videos query failed: %s", e)
        return {"videos": _fallback_videos(limit), "source": "fallback", "error": str(e)}

    if videos:
        return {"videos": _with_links(videos), "source": "yesterday", "count": len(videos)}
    return {
        "videos": _fallback_videos(limit),
        "source": "fallback",
        "message": "No trending data available, using fallback",
    }


def _check_cron_auth(authorization: str | None) -> None:
    settings = get_settings()
    if settings.is_production and settings.cron_secret:
        if authorization != f"Bearer {settings.cron_secret}":
            raise HTTPException(status_code=401, detail="Unauthorized")


def store_trending(rows: list[dict[str, Any]], cutoff: datetime) -> int:
    """Upsert one day's trending rows and drop rows fetched before ``cutoff``."""
    store = get_store()
    for row in rows:
        store.upsert("trending_videos", row, on_conflict="video_id,fetched_date")
    try:
        removed = store.delete_before("trending_videos", "fetched_at", cutoff.isoformat())
        logger.info("Removed %d trending videos older than %s", len(removed), cutoff.date())
    except StoreError as e:
        logger.warning("Trending cleanup failed: %s", e)
    return len(rows)


async def _fetch_trending(authorization: str | None) -> dict[str, Any]:
    _check_cron_auth(authorization)
    started = datetime.now(timezone.utc)
    results: dict[str, Any] = {"timestamp": started.isoformat(), "status": "running"}

    items = await get_youtube().most_popular(TRENDING_REGION, TRENDING_FETCH_SIZE)
    if not items:
        results.update(status="no_videos_fetched", error="YouTube API returned no videos")
        raise HTTPException(status_code=500, detail=results)
    results["videosFetched"] = len(items)

    rows = trending_rows(items, TRENDING_REGION, datetime.now(timezone.utc))
    cutoff = started - timedelta(days=TRENDING_RETENTION_DAYS)
    try:
        inserted = await run_in_threadpool(store_trending, rows, cutoff)
    except StoreError as e:
        logger.error("Storing trending videos failed: %s", e)
        results.update(status="database_error", error=str(e))
        raise HTTPException(status_code=500, detail=results)

    elapsed = datetime.now(timezone.utc) - started
    results.update(
        status="success",
        videosInserted=inserted,
        executionTimeMs=int(elapsed.total_seconds() * 1000),
    )
    logger.info("Stored %d trending videos", inserted)
    return results


@router.get("/cron/fetch-trending")
async def fetch_trending(authorization: str | None = Header(default=None)):
    """Scheduled job: pull the trending chart into ``trending_videos``."""
    return await _fetch_trending(authorization)


@router.post("/cron/fetch-trending")
async def trigger_fetch_trending(authorization: str | None = Header(default=None)):
    """Manual trigger for the trending fetch."""
    return await _fetch_trending(authorization)


# ============= Discovery =============


def default_suggestions(interests: list[str]) -> list[dict[str, Any]]:
    """Built-in suggestions for the given interests (a generic mix when none match)."""
    keys = [i for i in interests if i in DEFAULT_VIDEOS][:MAX_DISCOVERY_RESULTS] or list(DEFAULT_MIX)
    return [{**DEFAULT_VIDEOS[key], "category": key, "videoId": ""} for key in keys]


async def discover_with_youtube(
    client: YouTubeClient, interests: list[str], goals: list[str]
) -> list[dict[str, Any]]:
    """Search one query per interest and keep the top video of each distinct channel."""
    queries = [random.choice(INTEREST_QUERIES[i]) for i in interests if i in INTEREST_QUERIES]
    queries = queries or list(GENERIC_QUERIES)

    found: list[tuple[dict[str, Any], str]] = []
    for i, query in enumerate(queries[:MAX_DISCOVERY_QUERIES]):
        category = interests[i] if i < len(interests) else "entertainment"
        for result in await client.search(query, MAX_DISCOVERY_RESULTS):
            found.append((result, category))
    if not found:
        return []

    stats = await client.video_stats([r["id"]["videoId"] for r, _ in found])
    reason = GOAL_REASONS.get(goals[0] if goals else "learn_trends", GOAL_REASONS["learn_trends"])

    suggestions = []
    seen_channels = set()
    for result, category in found:
        snippet = result.get("snippet") or {}
        channel = snippet.get("channelTitle")
        if channel in seen_channels:
            continue
        seen_channels.add(channel)

        video_id = result["id"]["videoId"]
        view_count = (stats.get(video_id) or {}).get("viewCount")
        suggestions.append(
            {
                "title": snippet.get("title"),
                "creator": channel,
                "url": f"{WATCH_URL}{video_id}",
                "thumbnailUrl": _best_thumbnail(snippet.get("thumbnails") or {}, ("medium", "high")) or None,
                "viewCount": format_view_count(view_count) if view_count is not None else None,
                "reason": reason,
                "category": category,
                "videoId": video_id,
            }
        )
        if len(suggestions) >= MAX_DISCOVERY_RESULTS:
            break
    return suggestions


def _humanize(values: list[str], default: str) -> str:
    return ", ".join(v.replace("_", " ") for v in values) if values else default


def build_discovery_prompt(body: DiscoverRequest) -> str:
    return f"""You are a content discovery assistant. Suggest 3 REAL YouTube videos for content strategy analysis.

User Profile:
- Background: {(body.background or "content creator").replace("_", " ")}
- Experience Level: {(body.experience_level or "intermediate").replace("_", " ")}
- Content Interests: {_humanize(body.content_interests, "general content")}
- Goals: {_humanize(body.content_goals, "content improvement")}

Return valid JSON array only:
[{{"title": "Title", "creator": "Channel", "url": "https://www.youtube.com/results?search_query=...", "reason": "Why analyze this", "category": "interest_id", "videoId": ""}}]"""


async def discover_with_gemini(body: DiscoverRequest) -> list[dict[str, Any]]:
    gemini = get_gemini()
    if not gemini.available:
        return []
    try:
        text = await run_in_threadpool(gemini.generate, build_discovery_prompt(body))
    except Exception as e:
        logger.error("Gemini discovery failed: %s", e)
        return []
    try:
        parsed = orjson.loads(strip_code_fences(text))
    except orjson.JSONDecodeError:
        logger.warning("Gemini discovery returned non-JSON output")
        return []
    return [s for s in parsed if isinstance(s, dict)] if isinstance(parsed, list) else []


def _save_interests(user_id: str, body: DiscoverRequest) -> None:
    get_store().upsert(
        "user_interests",
        {"user_id": user_id, **body.model_dump(), "updated_at": utc_now_iso()},
        on_conflict="user_id",
    )


@router.post("/discover-videos")
async def discover_videos(body: DiscoverRequest, user: AuthUser = Depends(get_current_user)):
    """Suggest videos to analyze and remember the caller's interests."""
    logger.info("Video discovery for %s (interests=%s)", user.id, body.content_interests)

    suggestions: list[dict[str, Any]] = []
    youtube = get_youtube()
    if youtube.available:
        suggestions = await discover_with_youtube(youtube, body.content_interests, body.content_goals)
    if not suggestions:
        suggestions = await discover_with_gemini(body)
    if not suggestions:
        suggestions = default_suggestions(body.content_interests)

    try:
        await run_in_threadpool(_save_interests, user.id, body)
    except StoreError as e:
        logger.error("Saving interests for %s failed: %s", user.id, e)

    return {"success": True, "suggestions": suggestions}


@router.get("/discover-videos")
def get_interests(user: AuthUser = Depends(get_current_user)):
    """The caller's stored content interests."""
    try:
        interests = get_store().select_one("user_interests", eq={"user_id": user.id})
    except StoreError as e:
        logger.error("Error fetching interests for %s: %s", user.id, e)
        raise HTTPException(status_code=500, detail="Failed to fetch interests")
    return {"interests": interests}
