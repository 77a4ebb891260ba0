"""
Tests for the dashboard summary endpoint.

Run tests:
    pytest tests/test_dashboard.py -v
"""

from unittest.mock import patch

import pytest

from api.dashboard import summarize_items
from api.store_adapter import StoreError


@pytest.fixture
def seeded_items(memory_store, user_id):
    memory_store.insert(
        "items",
        [
            {
                "id": "a",
                "user_id": user_id,
                "status": "published",
                "verification_status": "verified",
                "quality_score": 80,
                "enrichment_status": "complete",
                "view_count": 10,
                "category_id": "c1",
                "created_at": "2026-01-01T00:00:00+00:00",
            },
            {
                "id": "b",
                "user_id": user_id,
                "status": "draft",
                "quality_score": 71,
                "enrichment_status": "pending",
                "view_count": 50,
                "created_at": "2026-02-01T00:00:00+00:00",
            },
            {"id": "x", "user_id": "someone-else", "status": "draft", "view_count": 999},
        ],
    )
    memory_store.insert(
        "categories",
        [
            {"id": "c1", "name": "Neuro", "user_id": user_id},
            {"id": "c2", "name": "Shared"},
            {"id": "c3", "name": "Private", "user_id": "someone-else"},
        ],
    )
    memory_store.insert(
        "agent_tasks",
        [{"status": "pending"}, {"status": "pending"}, {"status": "done"}],
    )
    return memory_store


# ============================================================================
# Summary helper
# ============================================================================


class TestSummarizeItems:
    def test_empty(self):
        summary = summarize_items([], [], 0)

        assert summary["total_items"] == 0
        assert summary["quality_overview"]["average_score"] == 0
        assert summary["recent_items"] == []

    def test_average_rounds_half_up(self):
        items = [{"quality_score": 80}, {"quality_score": 71}]
        assert summarize_items(items, [], 0)["quality_overview"]["average_score"] == 76

    def test_missing_score_counts_as_zero(self):
        items = [{"quality_score": 90}, {"quality_score": None}]
        assert summarize_items(items, [], 0)["quality_overview"]["average_score"] == 45

    def test_top_lists_capped(self):
        items = [{"id": str(i), "view_count": i, "created_at": f"2026-01-{i + 1:02d}"} for i in range(8)]

        summary = summarize_items(items, [], 0)

        assert [i["id"] for i in summary["top_items"]] == ["7", "6", "5", "4", "3"]
        assert [i["id"] for i in summary["recent_items"]] == ["7", "6", "5", "4", "3"]


# ============================================================================
# GET /api/dashboard/summary
# ============================================================================


class TestSummaryEndpoint:
    def test_requires_auth(self, client):
        assert client.get("/api/dashboard/summary").status_code == 401

    def test_summary(self, client, auth_headers, seeded_items):
        response = client.get("/api/dashboard/summary", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total_items"] == 2
        assert data["items_by_status"] == {"published": 1, "draft": 1}
        assert data["items_by_category"] == {"Neuro": 1, "Uncategorized": 1}
        assert [i["id"] for i in data["recent_items"]] == ["b", "a"]
        assert [i["id"] for i in data["top_items"]] == ["b", "a"]
        assert data["quality_overview"] == {
            "average_score": 76,
            "verified_count": 1,
            "pending_enrichment": 1,
        }
        assert data["agent_activity"]["pending_tasks"] == 2

    def test_store_failure(self, client, auth_headers):
        with patch("api.store_adapter.StoreAdapter.select", side_effect=StoreError("down")):
            response = client.get("/api/dashboard/summary", headers=auth_headers)

        assert response.status_code == 500
        assert response.json()["detail"] == "Internal server error"
