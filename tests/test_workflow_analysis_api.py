"""
Tests for the analysis workbench endpoints.

Run tests:
    pytest tests/test_workflow_analysis_api.py -v
"""

import pytest

from api.workflow_analysis import (
    NaturalAnalysisRequest,
    build_natural_prompt,
    extract_display_blocks,
    prepare_data_summary,
)

RESULTS = {
    "nodes": [
        {"nodeName": "Viewer 1", "nodeType": "brainNode", "status": "completed", "processingTime": "120ms", "result": {"rating": 4}},
        {"nodeName": "Viewer 2", "nodeType": "brainNode", "status": "completed", "processingTime": "80 ms", "result": {"score": "5"}},
        {"nodeName": "Report", "nodeType": "outputNode", "status": "error", "result": "Failed"},
    ],
    "aggregated": {"averageRating": 4.5, "totalResponses": 2},
    "summary": {"totalNodes": 3, "completedNodes": 2, "nodeTypes": ["brainNode", "outputNode"]},
}


@pytest.fixture
def session_id(client, auth_headers):
    response = client.post(
        "/api/workflows/analyze/save",
        json={"action": "create_session", "workflowId": "wf-1", "nodeNames": ["Viewer 1"]},
        headers=auth_headers,
    )
    return response.json()["session"]["id"]


# ============================================================================
# Python
# ============================================================================


class TestPythonAnalysis:
    """POST /api/workflows/analyze/python."""

    def test_requires_auth(self, client):
        response = client.post("/api/workflows/analyze/python", json={"code": "1", "data": {}})
        assert response.status_code == 401

    def test_missing_parameters(self, client, auth_headers):
        response = client.post("/api/workflows/analyze/python", json={"code": "1"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["detail"] == "Missing code or data parameter"

    def test_runs_code(self, client, auth_headers):
        response = client.post(
            "/api/workflows/analyze/python",
            json={"code": "print(len(nodes))\nsummary['totalNodes']", "data": RESULTS},
            headers=auth_headers,
        )

        data = response.json()
        assert data["success"] is True
        assert data["output"] == "3"
        assert data["result"] == 3
        assert "executionTime" in data

    def test_errors_return_200(self, client, auth_headers):
        response = client.post(
            "/api/workflows/analyze/python", json={"code": "import os", "data": {}}, headers=auth_headers
        )
        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_module_internals_blocked(self, client, auth_headers):
        response = client.post(
            "/api/workflows/analyze/python",
            json={"code": "statistics.sys.modules['os'].popen('id').read()", "data": RESULTS},
            headers=auth_headers,
        )

        data = response.json()
        assert data["success"] is False
        assert "result" not in data


# ============================================================================
# Query
# ============================================================================


class TestDataSummary:
    def test_summary_sections(self):
        summary = prepare_data_summary(RESULTS)

        assert "- Total Nodes: 3" in summary
        assert "- Node Types: brainNode, outputNode" in summary
        assert "- Average: 100.00ms" in summary
        assert "- completed: 2 (66.7%)" in summary
        assert "- brainNode: 2" in summary
        assert "1. Viewer 1 (brainNode): {\"rating\": 4}..." in summary
        assert "- Average Rating: 4.5" in summary
        assert "- Count: 2" in summary
        assert "- Average: 4.50" in summary
        assert '- Distribution: {"4":1,"5":1}' in summary

    def test_non_finite_ratings_are_skipped(self):
        data = {
            "nodes": [
                {"result": {"rating": "Infinity"}},
                {"result": {"score": float("-inf")}},
                {"result": {"value": "NaN"}},
                {"result": {"rating": 3}},
            ]
        }

        summary = prepare_data_summary(data)

        assert "- Count: 1" in summary
        assert '- Distribution: {"3":1}' in summary

    def test_query_with_infinite_rating(self, client, fake_gemini):
        data = {"nodes": [{"nodeName": "A", "result": {"rating": "Infinity"}}]}
        response = client.post("/api/workflows/analyze/query", json={"query": "avg?", "data": data})
        assert response.status_code == 200

    def test_empty_data(self):
        summary = prepare_data_summary({})
        assert "- Total Nodes: 0" in summary
        assert "Detected Ratings" not in summary


class TestQueryAnalysis:
    """POST /api/workflows/analyze/query."""

    def test_missing_parameters(self, client):
        assert client.post("/api/workflows/analyze/query", json={"query": "why?"}).status_code == 400

    def test_not_configured(self, client, offline_gemini):
        response = client.post("/api/workflows/analyze/query", json={"query": "why?", "data": RESULTS})
        assert response.status_code == 500
        assert response.json()["detail"] == "API key not configured"

    def test_answer(self, client, fake_gemini):
        fake_gemini.generate.return_value = "Viewer 2 rated highest."

        response = client.post(
            "/api/workflows/analyze/query", json={"query": "Who rated highest?", "data": RESULTS}
        )

        assert response.json() == {"success": True, "result": "Viewer 2 rated highest."}
        prompt = fake_gemini.generate.call_args.args[0]
        assert "## User Question\nWho rated highest?" in prompt
        assert "**Overview:**" in prompt


# ============================================================================
# Natural language
# ============================================================================


class TestNaturalAnalysis:
    """POST /api/workflows/analyze/natural."""

    def test_requires_prompt(self, client):
        assert client.post("/api/workflows/analyze/natural", json={}).status_code == 400

    def test_suggestion_phase(self, client, fake_gemini):
        fake_gemini.generate.return_value = (
            "Plan:\n```python\nprint(len(nodes))\n```\n```markdown\n| Node | Rating |\n```"
        )

        response = client.post(
            "/api/workflows/analyze/natural",
            json={"prompt": "Tabulate ratings", "completedResults": [{"name": "Viewer 1", "type": "brainNode", "result": "4"}]},
        )

        data = response.json()
        assert data["phase"] == "suggestion"
        assert data["generatedCode"] == "print(len(nodes))"
        assert data["displayContent"] == "| Node | Rating |"
        assert data["displayFormat"] == "markdown"
        assert fake_gemini.generate.call_args.kwargs["max_output_tokens"] == 4000

    def test_final_prompt_uses_grounding(self):
        body = NaturalAnalysisRequest(
            prompt="Summarize",
            phase="final",
            groundingSuggestion={"userIntent": "Compare groups", "suggestedCode": "x = 1", "formatType": "markdown"},
            aggregatedResult={"mean": 3},
            nodeNames=[f"n{i}" for i in range(25)],
        )

        prompt = build_natural_prompt(body)

        assert 'User\'s original intent: "Compare groups"' in prompt
        assert 'Aggregated data: {"mean": 3}' in prompt
        assert "n19..." in prompt
        assert "n20" not in prompt

    def test_raw_result_fallback(self):
        prompt = build_natural_prompt(NaturalAnalysisRequest(prompt="Summarize", rawResultText="raw text"))
        assert "RAW WORKFLOW RESULT" in prompt
        assert "=== USER REQUEST ===\nSummarize" in prompt

    def test_html_block_wins(self):
        blocks = extract_display_blocks("```html\n<b>x</b>\n```\n```markdown\n# y\n```")
        assert blocks == {"displayContent": "<b>x</b>", "displayFormat": "html"}


# ============================================================================
# Sessions
# ============================================================================


class TestAnalysisSessions:
    """/api/workflows/analyze/save."""

    def test_unknown_action(self, client, auth_headers):
        response = client.post("/api/workflows/analyze/save", json={"action": "explode"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["detail"] == "Unknown action: explode"

    def test_create_session(self, client, auth_headers, memory_store, session_id, user_id):
        session = memory_store.select_one("workflow_analysis_sessions", eq={"id": session_id})
        assert session["user_id"] == user_id
        assert session["status"] == "draft"
        assert session["session_name"].startswith("Analysis ")
        assert session["node_names"] == ["Viewer 1"]

    def test_grounding_then_output(self, client, auth_headers, memory_store, session_id):
        grounding = client.post(
            "/api/workflows/analyze/save",
            json={"action": "save_grounding", "sessionId": session_id, "userIntent": "Compare"},
            headers=auth_headers,
        ).json()["grounding"]
        assert grounding["format_type"] == "markdown"
        assert memory_store.select_one("workflow_analysis_sessions", eq={"id": session_id})["status"] == "grounded"

        output = client.post(
            "/api/workflows/analyze/save",
            json={
                "action": "save_output",
                "sessionId": session_id,
                "groundingSuggestionId": grounding["id"],
                "displayContent": "## Result",
            },
            headers=auth_headers,
        ).json()["output"]
        assert output["output_type"] == "natural_language"
        session = memory_store.select_one("workflow_analysis_sessions", eq={"id": session_id})
        assert session["status"] == "completed"
        assert session["completed_at"]

    def test_grounding_requires_session(self, client, auth_headers):
        response = client.post("/api/workflows/analyze/save", json={"action": "save_grounding"}, headers=auth_headers)
        assert response.status_code == 400

    def test_grounding_other_users_session(self, client, auth_headers, memory_store):
        other = memory_store.insert_one("workflow_analysis_sessions", {"user_id": "someone-else"})
        response = client.post(
            "/api/workflows/analyze/save",
            json={"action": "save_grounding", "sessionId": other["id"]},
            headers=auth_headers,
        )
        assert response.status_code == 404

    def test_save_execution(self, client, auth_headers):
        execution = client.post(
            "/api/workflows/analyze/save",
            json={"action": "save_execution", "rawResponse": "abcdef", "perNodeResults": [{"nodeId": "n1"}]},
            headers=auth_headers,
        ).json()["execution"]

        assert execution["response_length"] == 6
        assert execution["per_node_results_count"] == 1
        assert execution["model_used"] == "gemini-2.0-flash"
        assert execution["execution_id"].startswith("exec-")

    def test_list_and_fetch(self, client, auth_headers, session_id):
        client.post(
            "/api/workflows/analyze/save",
            json={"action": "save_output", "sessionId": session_id},
            headers=auth_headers,
        )

        sessions = client.get("/api/workflows/analyze/save", params={"workflowId": "wf-1"}, headers=auth_headers).json()
        assert [s["id"] for s in sessions["sessions"]] == [session_id]

        session = client.get("/api/workflows/analyze/save", params={"sessionId": session_id}, headers=auth_headers).json()
        assert len(session["session"]["outputs"]) == 1
        assert session["session"]["grounding_suggestions"] == []

    def test_fetch_missing_session(self, client, auth_headers):
        response = client.get("/api/workflows/analyze/save", params={"sessionId": "missing"}, headers=auth_headers)
        assert response.status_code == 404

    def test_delete(self, client, auth_headers, memory_store, session_id):
        client.post(
            "/api/workflows/analyze/save",
            json={"action": "save_output", "sessionId": session_id},
            headers=auth_headers,
        )

        response = client.delete("/api/workflows/analyze/save", params={"sessionId": session_id}, headers=auth_headers)

        assert response.json() == {"success": True}
        assert memory_store.select("workflow_analysis_sessions") == []
        assert memory_store.select("analysis_outputs") == []

    def test_delete_requires_id(self, client, auth_headers):
        assert client.delete("/api/workflows/analyze/save", headers=auth_headers).status_code == 400
