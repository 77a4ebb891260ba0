"""
Tests for the workflow wizard parse and batch endpoints.

Run tests:
    pytest tests/test_workflow_wizard.py -v
"""

import pytest

from api.workflow_wizard import (
    BatchRequest,
    detect_demographics,
    detect_input_type,
    detect_task_type,
    extract_agent_noun,
    extract_count,
    fantasy_name,
    generate_agent,
    naming_style,
)


# ============================================================================
# Intent parsing
# ============================================================================


class TestIntentParsing:
    @pytest.mark.parametrize(
        "query,expected",
        [
            ("500 chefs rating a recipe", 500),
            ("five hundred teenagers", 500),
            ("a dozen critics", 12),
            ("critics reviewing a film", 10),
        ],
    )
    def test_extract_count(self, query, expected):
        assert extract_count(query) == expected

    def test_agent_noun(self):
        assert extract_agent_noun("500 chefs rating a recipe") == ("chef", "chefs")
        assert extract_agent_noun("200 lawyers reviewing a contract") == ("lawyer", "lawyers")

    def test_agent_noun_default(self):
        assert extract_agent_noun("rate my essay") == ("agent", "agents")

    def test_naming_style(self):
        assert naming_style("lawyer") == "professional"
        assert naming_style("alien") == "fantasy"
        assert naming_style("chef") == "casual"

    def test_task_and_input(self):
        assert detect_task_type("500 chefs rating a recipe") == ("rating", "rating")
        assert detect_input_type("500 chefs rating a recipe") == "food"
        assert detect_task_type("hello there") == ("custom", "processing")

    def test_demographics(self):
        assert detect_demographics("100 teenagers watching a video") == ["gen-z"]
        assert detect_demographics("500 chefs rating a recipe") is None


class TestParseEndpoint:
    """POST /api/workflows/generate/parse."""

    def test_requires_query(self, client):
        response = client.post("/api/workflows/generate/parse", json={})
        assert response.status_code == 400
        assert response.json()["detail"] == "Query is required"

    def test_rating_skeleton(self, client):
        data = client.post("/api/workflows/generate/parse", json={"query": "500 chefs rating a recipe"}).json()

        intent = data["intent"]
        assert intent["workflowType"] == "parallel-agents"
        assert intent["agentCount"] == 500
        assert intent["namingStyle"] == "casual"
        assert intent["aggregationType"] == "average"
        assert data["needsBatchGeneration"] is True
        assert data["estimatedBatches"] == 20

        skeleton = data["skeleton"]
        assert skeleton["name"] == "500 Chefs Rating Session"
        assert [n["label"] for n in skeleton["nodes"]] == [
            "Recipe / Dish",
            "500 chefs",
            "Score Calculator",
            "Score Report",
        ]
        assert skeleton["nodes"][2]["payload"]["description"] == "Calculates average scores from all 500 chefs"
        assert skeleton["connections"] == [{"from": 0, "to": 1}, {"from": 1, "to": 2}, {"from": 2, "to": 3}]

    def test_video_reaction(self, client):
        data = client.post(
            "/api/workflows/generate/parse", json={"query": "100 teenagers watching a video"}
        ).json()

        assert data["intent"]["workflowType"] == "content-analysis"
        assert data["intent"]["demographicMix"] == ["gen-z"]
        assert data["skeleton"]["name"] == "100 Teenagers Video Reaction"
        assert data["skeleton"]["nodes"][0]["type"] == "contentUrlInputNode"


# ============================================================================
# Batch generation
# ============================================================================


BATCH = {
    "batchSize": 3,
    "totalCount": 5,
    "agentNoun": "chef",
    "agentNounPlural": "chefs",
    "namingStyle": "casual",
    "taskType": "rating",
    "taskVerb": "rate",
}


class TestAgentGeneration:
    def test_professional(self):
        body = BatchRequest(totalCount=4, agentNoun="scientist", namingStyle="professional", taskType="analysis")

        agent = generate_agent(0, body)
        persona = agent["payload"]["persona"]

        assert persona["displayName"] == "Dr. Emma"
        assert persona["title"] == "Dr."
        assert persona["specialization"] == "Neuroscience"
        assert "with expertise in Neuroscience" in agent["payload"]["behavior"]
        assert generate_agent(3, body)["payload"]["persona"]["title"] == "Prof."

    def test_fantasy_names(self):
        assert fantasy_name("alien", 1) == "Klatuu"
        assert fantasy_name("android", 0) == "Unit-742"
        assert fantasy_name("dragon", 0) == "Entity Alpha"

    def test_numbered(self):
        agent = generate_agent(6, BatchRequest(totalCount=10, agentNoun="bot", namingStyle="numbered"))
        assert agent["label"] == "Bot 7 - Bot-0007"
        assert agent["payload"]["persona"]["culturalBackground"] == "synthetic"

    def test_demographic_mix(self):
        agent = generate_agent(0, BatchRequest(totalCount=1, demographicMix=["senior"]))
        persona = agent["payload"]["persona"]
        assert persona["ageGroup"] == "Senior"
        assert 75 <= persona["age"] <= 95


class TestBatchEndpoint:
    """POST /api/workflows/generate/batch."""

    def test_invalid_parameters(self, client):
        response = client.post("/api/workflows/generate/batch", json={**BATCH, "totalCount": 0})
        assert response.status_code == 400

    def test_first_batch(self, client):
        data = client.post("/api/workflows/generate/batch", json={**BATCH, "batchNumber": 0}).json()

        assert [a["label"] for a in data["agents"]] == ["Chef 1 - Emma", "Chef 2 - Wei", "Chef 3 - Sofia"]
        assert data["isComplete"] is False
        assert data["progress"] == {"current": 3, "total": 5, "percentage": 60}
        assert data["agents"][0]["payload"]["behavior"] == (
            "Emma will rate the content on a scale of 1-10, providing detailed justification "
            "based on their classically trained and innovative perspective."
        )

    def test_last_batch(self, client):
        data = client.post("/api/workflows/generate/batch", json={**BATCH, "batchNumber": 1}).json()

        assert len(data["agents"]) == 2
        assert data["agents"][0]["label"] == "Chef 4 - Amara"
        assert data["isComplete"] is True
        assert data["progress"]["percentage"] == 100

    def test_past_the_end(self, client):
        data = client.post("/api/workflows/generate/batch", json={**BATCH, "batchNumber": 2}).json()
        assert data == {"agents": [], "isComplete": True, "progress": {"current": 5, "total": 5}}
