"""
Tests for the trending videos, trending cron and video discovery endpoints.

YouTube Data API calls are patched or served by an httpx mock transport; no
network access is needed.

Run tests:
    pytest tests/test_youtube.py -v
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from api.youtube import (
    FALLBACK_TRENDING,
    YouTubeClient,
    default_suggestions,
    format_view_count,
    trending_rows,
)


def api_video(video_id, title="A video", views="1000", category_id="28"):
    return {
        "id": video_id,
        "snippet": {
            "title": title,
            "channelTitle": "Channel",
            "channelId": "UC1",
            "description": "x" * 600,
            "thumbnails": {"high": {"url": f"https://i.ytimg.com/vi/{video_id}/hq.jpg"}},
            "categoryId": category_id,
            "tags": [f"t{i}" for i in range(12)],
            "publishedAt": "2026-10-01T00:00:00Z",
        },
        "statistics": {"viewCount": views, "likeCount": "10", "commentCount": "2"},
    }


def stored_video(video_id, rank, fetched_at, category="Music"):
    return {
        "video_id": video_id,
        "title": f"Video {video_id}",
        "channel_name": "Channel",
        "thumbnail_url": "",
        "view_count": 2_500_000,
        "category": category,
        "trending_rank": rank,
        "fetched_at": fetched_at.isoformat(),
        "fetched_date": fetched_at.date().isoformat(),
    }


def mock_async_client(handler):
    """AsyncClient factory that routes requests to ``handler``."""
    real_client = httpx.AsyncClient

    def factory(*args, **kwargs):
        return real_client(*args, transport=httpx.MockTransport(handler), **kwargs)

    return factory


# ============================================================================
# Helpers
# ============================================================================


class TestFormatting:
    @pytest.mark.parametrize(
        "count,expected",
        [
            (1_500_000_000, "1.5B views"),
            (2_345_678, "2.3M views"),
            (15_400, "15K views"),
            (999, "999 views"),
            (None, "0 views"),
            ("12000", "12K views"),
        ],
    )
    def test_format_view_count(self, count, expected):
        assert format_view_count(count) == expected

    def test_trending_rows(self):
        fetched_at = datetime(2026, 10, 18, 6, 0, tzinfo=timezone.utc)

        rows = trending_rows([api_video("a"), api_video("b", category_id="999")], "US", fetched_at)

        assert [r["trending_rank"] for r in rows] == [1, 2]
        first = rows[0]
        assert first["video_id"] == "a"
        assert first["view_count"] == 1000
        assert first["category"] == "Science & Technology"
        assert len(first["description"]) == 500
        assert len(first["tags"]) == 10
        assert first["thumbnail_url"] == "https://i.ytimg.com/vi/a/hq.jpg"
        assert first["fetched_date"] == "2026-10-18"
        assert rows[1]["category"] == "Entertainment"

    def test_default_suggestions(self):
        assert [s["category"] for s in default_suggestions(["gaming", "cooking"])] == ["gaming"]
        assert [s["category"] for s in default_suggestions([])] == ["entertainment", "business", "tech_reviews"]


class TestYouTubeClient:
    def test_without_key(self):
        assert asyncio.run(YouTubeClient(None).most_popular()) == []

    def test_most_popular_request(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            return httpx.Response(200, json={"items": [api_video("a")]})

        with patch("api.youtube.httpx.AsyncClient", mock_async_client(handler)):
            items = asyncio.run(YouTubeClient("key").most_popular("GB", 5))

        assert [i["id"] for i in items] == ["a"]
        assert seen["url"].path == "/youtube/v3/videos"
        assert seen["url"].params["chart"] == "mostPopular"
        assert seen["url"].params["regionCode"] == "GB"
        assert seen["url"].params["key"] == "key"

    def test_error_status(self):
        def handler(request):
            return httpx.Response(403, json={"error": {"message": "quota exceeded"}})

        with patch("api.youtube.httpx.AsyncClient", mock_async_client(handler)):
            assert asyncio.run(YouTubeClient("key").search("science")) == []

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with patch("api.youtube.httpx.AsyncClient", mock_async_client(handler)):
            assert asyncio.run(YouTubeClient("key").video_stats(["a"])) == {}

    def test_video_stats(self):
        def handler(request):
            assert request.url.params["id"] == "a,b"
            return httpx.Response(200, json={"items": [{"id": "a", "statistics": {"viewCount": "5"}}]})

        with patch("api.youtube.httpx.AsyncClient", mock_async_client(handler)):
            assert asyncio.run(YouTubeClient("key").video_stats(["a", "b"])) == {"a": {"viewCount": "5"}}


# ============================================================================
# GET /api/trending-videos
# ============================================================================


class TestTrendingVideos:
    def test_fallback_when_empty(self, client):
        data = client.get("/api/trending-videos").json()

        assert data["source"] == "fallback"
        assert len(data["videos"]) == len(FALLBACK_TRENDING)
        assert data["videos"][0]["viewCountFormatted"] == "1.5B views"

    def test_fallback_limit(self, client):
        assert len(client.get("/api/trending-videos?limit=2").json()["videos"]) == 2

    def test_today(self, client, memory_store):
        now = datetime.now(timezone.utc)
        memory_store.insert("trending_videos", [stored_video("b", 2, now), stored_video("a", 1, now)])

        data = client.get("/api/trending-videos").json()

        assert data["source"] == "database"
        assert data["count"] == 2
        assert [v["video_id"] for v in data["videos"]] == ["a", "b"]
        assert data["videos"][0]["url"] == "https://www.youtube.com/watch?v=a"
        assert data["videos"][0]["viewCountFormatted"] == "2.5M views"

    def test_yesterday(self, client, memory_store):
        memory_store.insert("trending_videos", [stored_video("a", 1, datetime.now(timezone.utc) - timedelta(days=1))])

        data = client.get("/api/trending-videos").json()

        assert data["source"] == "yesterday"
        assert [v["video_id"] for v in data["videos"]] == ["a"]

    def test_category_filter(self, client, memory_store):
        now = datetime.now(timezone.utc)
        memory_store.insert(
            "trending_videos",
            [stored_video("a", 1, now, category="Music"), stored_video("b", 2, now, category="Gaming")],
        )

        data = client.get("/api/trending-videos?category=Gaming").json()

        assert [v["video_id"] for v in data["videos"]] == ["b"]


# ============================================================================
# /api/cron/fetch-trending
# ============================================================================


class TestFetchTrending:
    def test_stores_and_cleans_up(self, client, memory_store):
        old = datetime.now(timezone.utc) - timedelta(days=10)
        memory_store.insert("trending_videos", [stored_video("stale", 1, old)])

        with patch(
            "api.youtube.YouTubeClient.most_popular",
            new=AsyncMock(return_value=[api_video("a"), api_video("b")]),
        ):
            response = client.get("/api/cron/fetch-trending")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["videosFetched"] == 2
        assert data["videosInserted"] == 2
        assert sorted(r["video_id"] for r in memory_store.select("trending_videos")) == ["a", "b"]

    def test_same_day_refetch_updates_rows(self, client, memory_store):
        with patch("api.youtube.YouTubeClient.most_popular", new=AsyncMock(return_value=[api_video("a")])):
            client.post("/api/cron/fetch-trending")
        with patch(
            "api.youtube.YouTubeClient.most_popular",
            new=AsyncMock(return_value=[api_video("a", views="5000")]),
        ):
            client.post("/api/cron/fetch-trending")

        rows = memory_store.select("trending_videos")
        assert len(rows) == 1
        assert rows[0]["view_count"] == 5000

    def test_no_videos(self, client):
        with patch("api.youtube.YouTubeClient.most_popular", new=AsyncMock(return_value=[])):
            response = client.get("/api/cron/fetch-trending")

        assert response.status_code == 500
        assert response.json()["detail"]["status"] == "no_videos_fetched"

    def test_production_requires_secret(self, client, set_env):
        set_env(NEURODATA_ENV="production", CRON_SECRET="s3cret")

        with patch("api.youtube.YouTubeClient.most_popular", new=AsyncMock(return_value=[api_video("a")])):
            denied = client.get("/api/cron/fetch-trending")
            wrong = client.get("/api/cron/fetch-trending", headers={"Authorization": "Bearer nope"})
            allowed = client.get("/api/cron/fetch-trending", headers={"Authorization": "Bearer s3cret"})

        assert denied.status_code == 401
        assert wrong.status_code == 401
        assert allowed.status_code == 200


# ============================================================================
# /api/discover-videos
# ============================================================================


def search_result(video_id, channel):
    return {
        "id": {"videoId": video_id},
        "snippet": {
            "title": f"Video {video_id}",
            "channelTitle": channel,
            "thumbnails": {"medium": {"url": f"https://i.ytimg.com/vi/{video_id}/mq.jpg"}},
        },
    }


class TestDiscoverVideos:
    def test_requires_auth(self, client):
        assert client.post("/api/discover-videos", json={}).status_code == 401

    def test_defaults_without_keys(self, client, auth_headers, memory_store, user_id):
        response = client.post(
            "/api/discover-videos",
            headers=auth_headers,
            json={"content_interests": ["science", "finance"], "content_goals": ["grow_audience"]},
        )

        assert response.status_code == 200
        suggestions = response.json()["suggestions"]
        assert [s["category"] for s in suggestions] == ["science", "finance"]
        saved = memory_store.select_one("user_interests", eq={"user_id": user_id})
        assert saved["content_interests"] == ["science", "finance"]

    def test_gemini_fallback(self, client, auth_headers, fake_gemini):
        fake_gemini.generate.return_value = (
            '```json\n[{"title": "T", "creator": "C", "url": "https://example.com", '
            '"reason": "R", "category": "music", "videoId": ""}]\n```'
        )

        response = client.post("/api/discover-videos", headers=auth_headers, json={"content_interests": ["music"]})

        assert response.json()["suggestions"][0]["title"] == "T"

    def test_gemini_bad_json_uses_defaults(self, client, auth_headers, fake_gemini):
        fake_gemini.generate.return_value = "not json"

        response = client.post("/api/discover-videos", headers=auth_headers, json={"content_interests": ["gaming"]})

        assert [s["category"] for s in response.json()["suggestions"]] == ["gaming"]

    def test_youtube_search(self, client, auth_headers, set_env):
        set_env(YOUTUBE_API_KEY="yt-key")
        results = [search_result("v1", "A"), search_result("v2", "A"), search_result("v3", "B")]

        with patch("api.youtube.YouTubeClient.search", new=AsyncMock(return_value=results)), patch(
            "api.youtube.YouTubeClient.video_stats",
            new=AsyncMock(return_value={"v1": {"viewCount": "2500000"}}),
        ):
            response = client.post(
                "/api/discover-videos",
                headers=auth_headers,
                json={"content_interests": ["gaming"], "content_goals": ["grow_audience"]},
            )

        suggestions = response.json()["suggestions"]
        assert [s["videoId"] for s in suggestions] == ["v1", "v3"]
        assert suggestions[0]["viewCount"] == "2.5M views"
        assert suggestions[0]["category"] == "gaming"
        assert suggestions[0]["reason"].startswith("This video exemplifies")
        assert suggestions[1]["viewCount"] is None

    def test_get_interests(self, client, auth_headers, memory_store, user_id):
        assert client.get("/api/discover-videos", headers=auth_headers).json() == {"interests": None}

        memory_store.insert("user_interests", {"user_id": user_id, "content_interests": ["news"]})

        interests = client.get("/api/discover-videos", headers=auth_headers).json()["interests"]
        assert interests["content_interests"] == ["news"]
