"""
Analysis workbench API endpoints.

Operates on the results of a finished workflow run:

- ``/workflows/analyze/python`` runs a snippet in the restricted evaluator
- ``/workflows/analyze/query`` answers a question about the results
- ``/workflows/analyze/natural`` drafts (suggestion phase) or writes
  (final phase) a formatted analysis
- ``/workflows/analyze/save`` persists analysis sessions and their outputs
"""

from __future__ import annotations

import json
import math
import re
from collections import Counter
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from api.auth import AuthUser, get_current_user
from api.shared.gemini import DEFAULT_MODEL, get_gemini
from api.shared.logger import get_logger
from api.shared.sandbox import run_analysis_code
from api.store_adapter import StoreError, get_store, utc_now_iso

logger = get_logger(__name__)

router = APIRouter(prefix="/workflows/analyze", tags=["workflow-analysis"])

_CODE_BLOCK_RE = {
    lang: re.compile(rf"```{lang}\n([\s\S]*?)```") for lang in ("python", "html", "markdown")
}

SAMPLE_NODES = 5
SAMPLE_CHARS = 200
NODE_NAME_LIMIT = 20


class PythonAnalysisRequest(BaseModel):
    code: str | None = None
    data: dict[str, Any] | None = None


class QueryAnalysisRequest(BaseModel):
    query: str | None = None
    data: dict[str, Any] | None = None


class NaturalAnalysisRequest(BaseModel):
    prompt: str | None = None
    workflowContext: str | None = None
    nodeCount: int | None = None
    nodeTypes: list[str] | None = None
    nodeNames: list[str] | None = None
    completedCount: int | None = None
    completedResults: list[dict[str, Any]] = Field(default_factory=list)
    aggregatedResult: Any = None
    rawResultText: str | None = None
    phase: str | None = None
    groundingSuggestion: dict[str, Any] | None = None


class AnalysisSaveRequest(BaseModel):
    """Body of ``POST /analyze/save``; fields beyond ``action`` depend on it."""

    model_config = ConfigDict(extra="allow")

    action: str | None = None
    sessionId: str | None = None


# ============================================================================
# Python
# ============================================================================


@router.post("/python", dependencies=[Depends(get_current_user)])
async def analyze_python(body: PythonAnalysisRequest):
    """Run an analysis snippet against workflow results.

    Execution errors are reported with ``success: false`` and HTTP 200.
    """
    if not body.code or body.data is None:
        raise HTTPException(status_code=400, detail="Missing code or data parameter")

    result = await run_in_threadpool(run_analysis_code, body.code, body.data)
    return result.to_dict()


# ============================================================================
# Query
# ============================================================================


def _processing_time(node: dict[str, Any]) -> int:
    match = re.match(r"\s*(\d+)", str(node.get("processingTime") or ""))
    return int(match.group(1)) if match else 0


def _preview(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value)[:SAMPLE_CHARS]
    return str(value)[:SAMPLE_CHARS]


def _number(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _fmt(number: float) -> str:
    return str(int(number)) if float(number).is_integer() else str(number)


def prepare_data_summary(data: dict[str, Any]) -> str:
    """Compact text digest of workflow results for the query prompt."""
    nodes = [n for n in data.get("nodes") or [] if isinstance(n, dict)]
    aggregated = data.get("aggregated") or {}
    summary = data.get("summary") or {}

    lines = [
        "**Overview:**",
        f"- Total Nodes: {summary.get('totalNodes', len(nodes))}",
        f"- Completed: {summary.get('completedNodes', 0)}",
        f"- Node Types: {', '.join(summary.get('nodeTypes') or [])}",
    ]

    times = [t for t in (_processing_time(n) for n in nodes) if t > 0]
    if times:
        lines += [
            "\n**Processing Times:**",
            f"- Average: {sum(times) / len(times):.2f}ms",
            f"- Min: {min(times)}ms",
            f"- Max: {max(times)}ms",
        ]

    lines.append("\n**Status Breakdown:**")
    for status, count in Counter(str(n.get("status")) for n in nodes).items():
        lines.append(f"- {status}: {count} ({count / len(nodes) * 100:.1f}%)")

    lines.append("\n**Node Type Distribution:**")
    for node_type, count in Counter(str(n.get("nodeType")) for n in nodes).items():
        lines.append(f"- {node_type}: {count}")

    lines.append(f"\n**Sample Node Results (first {SAMPLE_NODES}):**")
    for i, node in enumerate(nodes[:SAMPLE_NODES]):
        lines.append(f"{i + 1}. {node.get('nodeName')} ({node.get('nodeType')}): {_preview(node.get('result'))}...")

    if isinstance(aggregated, dict) and aggregated:
        lines.append("\n**Aggregated Result:**")
        if "averageRating" in aggregated:
            lines.append(f"- Average Rating: {aggregated['averageRating']}")
        if "totalResponses" in aggregated:
            lines.append(f"- Total Responses: {aggregated['totalResponses']}")
        if "summary" in aggregated:
            lines.append(f"- Summary: {str(aggregated['summary'])[:300]}...")
        lines.append(f"- Available keys: {', '.join(str(k) for k in aggregated)}")

    ratings = []
    for node in nodes:
        result = node.get("result")
        if not isinstance(result, dict):
            continue
        for key in ("rating", "score", "value"):
            if key in result:
                number = _number(result[key])
                if number is not None:
                    ratings.append(number)

    if ratings:
        distribution: dict[str, int] = {}
        for rating in ratings:
            # Round half up, like the web client's bucketing.
            bucket = str(int(rating + 0.5) if rating >= 0 else -int(-rating + 0.5))
            distribution[bucket] = distribution.get(bucket, 0) + 1
        lines += [
            "\n**Detected Ratings/Scores:**",
            f"- Count: {len(ratings)}",
            f"- Average: {sum(ratings) / len(ratings):.2f}",
            f"- Min: {_fmt(min(ratings))}",
            f"- Max: {_fmt(max(ratings))}",
            f"- Distribution: {json.dumps(distribution, separators=(',', ':'))}",
        ]

    return "\n".join(lines)


def build_query_prompt(query: str, data_summary: str) -> str:
    return f"""You are an expert data analyst assistant. Analyze the following workflow execution data and answer the user's question.

## Data Summary
{data_summary}

## User Question
{query}

## Instructions
- Provide a clear, concise answer based on the data
- Include specific numbers, percentages, or statistics when relevant
- If the question asks for comparisons, provide clear comparisons
- If the data doesn't contain information to answer the question, say so
- Format your response in a readable way with bullet points if listing multiple items
- Keep your answer focused and relevant to the question

Answer:"""


@router.post("/query")
async def analyze_query(body: QueryAnalysisRequest):
    """Answer a natural-language question about workflow results."""
    if not body.query or body.data is None:
        raise HTTPException(status_code=400, detail="Missing query or data parameter")

    gemini = get_gemini()
    if not gemini.available:
        raise HTTPException(status_code=500, detail="API key not configured")

    prompt = build_query_prompt(body.query, prepare_data_summary(body.data))
    try:
        text = await run_in_threadpool(gemini.generate, prompt)
    except Exception as e:
        logger.error("Query analysis error: %s", e)
        raise HTTPException(status_code=500, detail=str(e) or "Failed to analyze query")

    return {"success": True, "result": text}


# ============================================================================
# Natural language
# ============================================================================


def _workflow_section(body: NaturalAnalysisRequest) -> str:
    node_types = ", ".join(body.nodeTypes or []) or "various"
    names = ""
    if body.nodeNames:
        names = "Node names: " + ", ".join(body.nodeNames[:NODE_NAME_LIMIT])
        if len(body.nodeNames) > NODE_NAME_LIMIT:
            names += "..."
    return (
        f"=== WORKFLOW CONTEXT ===\n{body.workflowContext or ''}\n\n"
        f"Node count: {body.nodeCount}\n"
        f"Completed nodes: {body.completedCount or 0}\n"
        f"Node types: {node_types}\n"
        f"{names}"
    )


def _results_section(body: NaturalAnalysisRequest) -> str:
    section = ""
    if body.completedResults:
        section = f"\n\n=== ACTUAL RESULTS FROM WORKFLOW ({len(body.completedResults)} samples) ===\n"
        for i, r in enumerate(body.completedResults):
            section += f"\n[{i + 1}. {r.get('name')} ({r.get('type')})]:\n{r.get('result')}\n"
    elif body.rawResultText:
        section += f"\n\n=== RAW WORKFLOW RESULT (per-node mapping unavailable) ===\n{body.rawResultText}\n"
    return section


def build_natural_prompt(body: NaturalAnalysisRequest) -> str:
    """Suggestion-phase or grounded final-phase analysis prompt."""
    results = _results_section(body)
    workflow = _workflow_section(body)

    grounding = body.groundingSuggestion
    if body.phase == "final" and grounding:
        aggregated = ""
        if body.aggregatedResult:
            aggregated = f"\nAggregated data: {json.dumps(body.aggregatedResult, default=str)[:800]}"
        return f"""You are an expert data analyst for NeuroData Hub. Generate a clean, well-organized analysis.

=== GROUNDING CONTEXT (User's previous intent and suggested format) ===
User's original intent: "{grounding.get('userIntent')}"

Previously suggested Python code structure:
```python
{grounding.get('suggestedCode')}
```

Previously suggested output format ({grounding.get('formatType')}):
{grounding.get('suggestedFormat')}

IMPORTANT: Use this grounding context to generate the FINAL output. The user has already defined their intent and approved the suggested structure. Now populate it with ACTUAL data from the results above.

{workflow}
{results}
{aggregated}

=== TASK ===
Generate a clean, WELL-FORMATTED analysis based on the user's intent and the data above.

OUTPUT FORMAT REQUIREMENTS:
1. Use proper markdown with ## headers for main sections
2. Use bullet points (- ) for lists, not asterisks
3. Use **bold** for emphasis and key terms
4. Use tables where data is comparative (use | header | header | format)
5. Keep paragraphs short and scannable
6. Include specific numbers and data from the results
7. End with a brief "Key Takeaways" or "Summary" section

Generate ONLY the final markdown output - no code blocks, no explanations about what you're doing.
Start directly with the analysis content."""

    return f"""You are an expert data analyst for NeuroData Hub. Generate a clean, organized analysis.

{workflow}
{results}

=== USER REQUEST ===
{body.prompt}

=== OUTPUT REQUIREMENTS ===
Generate a CLEAN, WELL-FORMATTED analysis following these rules:

1. **Structure**: Use markdown with clear ## headers for each section
2. **Lists**: Use - for bullet points, keep items concise
3. **Tables**: Use markdown tables (| col1 | col2 |) for comparative data
4. **Metrics**: Bold key numbers like **85%** or **Score: 9/10**
5. **Sections to include** (adapt based on user request):
   - Executive Summary (2-3 sentences)
   - Key Findings (bullet points)
   - Detailed Analysis (organized by topic)
   - Recommendations or Next Steps
   - Summary Table (if applicable)

6. **Style**:
   - Be direct and specific
   - Use actual data from the results
   - Keep paragraphs short (2-3 sentences max)
   - Avoid filler words and meta-commentary

Start your response directly with the analysis - no preamble."""


def extract_display_blocks(text: str) -> dict[str, Any]:
    """Pull ```python / ```html / ```markdown blocks out of a response."""
    extracted: dict[str, Any] = {}
    python = _CODE_BLOCK_RE["python"].search(text)
    if python:
        extracted["generatedCode"] = python.group(1).strip()

    html = _CODE_BLOCK_RE["html"].search(text)
    markdown = _CODE_BLOCK_RE["markdown"].search(text)
    if html:
        extracted["displayContent"] = html.group(1).strip()
        extracted["displayFormat"] = "html"
    elif markdown:
        extracted["displayContent"] = markdown.group(1).strip()
        extracted["displayFormat"] = "markdown"
    return extracted


@router.post("/natural")
async def analyze_natural(body: NaturalAnalysisRequest):
    """Generate a formatted analysis of workflow results."""
    if not body.prompt:
        raise HTTPException(status_code=400, detail="Prompt is required")

    gemini = get_gemini()
    if not gemini.available:
        raise HTTPException(status_code=500, detail="Gemini API key not configured")

    try:
        text = await run_in_threadpool(
            gemini.generate,
            build_natural_prompt(body),
            temperature=0.3,
            top_p=0.9,
            max_output_tokens=4000,
        )
    except Exception as e:
        logger.error("Natural language analysis error: %s", e)
        raise HTTPException(status_code=500, detail=str(e) or "Analysis failed")

    return {
        "success": True,
        "content": text,
        "phase": body.phase or "suggestion",
        **extract_display_blocks(text),
    }


# ============================================================================
# Sessions
# ============================================================================


def _create_session(user: AuthUser, body: dict[str, Any]) -> dict[str, Any]:
    session = get_store().insert_one(
        "workflow_analysis_sessions",
        {
            "user_id": user.id,
            "workflow_id": body.get("workflowId") or None,
            "workflow_run_id": body.get("workflowRunId") or None,
            "output_node_id": body.get("outputNodeId"),
            "output_node_name": body.get("outputNodeName"),
            "session_name": body.get("sessionName")
            or f"Analysis {datetime.now(timezone.utc).strftime('%m/%d/%Y')}",
            "connected_nodes_count": body.get("connectedNodesCount") or 0,
            "completed_nodes_count": body.get("completedNodesCount") or 0,
            "node_types": body.get("nodeTypes") or [],
            "node_names": body.get("nodeNames") or [],
            "status": "draft",
        },
    )
    return {"success": True, "session": session}


def _require_session(user: AuthUser, session_id: str | None) -> str:
    if not session_id:
        raise HTTPException(status_code=400, detail="sessionId is required")
    if get_store().select_one("workflow_analysis_sessions", "id", eq={"id": session_id, "user_id": user.id}) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session_id


def _save_grounding(user: AuthUser, body: dict[str, Any]) -> dict[str, Any]:
    session_id = _require_session(user, body.get("sessionId"))
    store = get_store()
    grounding = store.insert_one(
        "analysis_grounding_suggestions",
        {
            "session_id": session_id,
            "user_intent": body.get("userIntent"),
            "original_prompt": body.get("originalPrompt"),
            "suggested_python_code": body.get("suggestedPythonCode"),
            "suggested_output_format": body.get("suggestedOutputFormat"),
            "format_type": body.get("formatType") or "markdown",
            "explanation": body.get("explanation"),
        },
    )
    store.update("workflow_analysis_sessions", {"status": "grounded", "updated_at": utc_now_iso()}, id=session_id)
    return {"success": True, "grounding": grounding}


def _save_output(user: AuthUser, body: dict[str, Any]) -> dict[str, Any]:
    session_id = _require_session(user, body.get("sessionId"))
    store = get_store()
    output = store.insert_one(
        "analysis_outputs",
        {
            "session_id": session_id,
            "grounding_suggestion_id": body.get("groundingSuggestionId") or None,
            "output_type": body.get("outputType") or "natural_language",
            "nl_prompt": body.get("nlPrompt"),
            "nl_response": body.get("nlResponse"),
            "nl_tokens_used": body.get("nlTokensUsed"),
            "python_code": body.get("pythonCode"),
            "python_output": body.get("pythonOutput"),
            "python_execution_status": body.get("pythonExecutionStatus"),
            "python_error_message": body.get("pythonErrorMessage"),
            "display_content": body.get("displayContent"),
            "display_format": body.get("displayFormat") or "markdown",
            "display_config": body.get("displayConfig") or {},
        },
    )
    now = utc_now_iso()
    store.update(
        "workflow_analysis_sessions",
        {"status": "completed", "completed_at": now, "updated_at": now},
        id=session_id,
    )
    return {"success": True, "output": output}


def _save_execution(user: AuthUser, body: dict[str, Any]) -> dict[str, Any]:
    raw_response = body.get("rawResponse")
    per_node = body.get("perNodeResults") or []
    execution = get_store().insert_one(
        "workflow_execution_results",
        {
            "user_id": user.id,
            "workflow_id": body.get("workflowId") or None,
            "workflow_name": body.get("workflowName"),
            "execution_id": body.get("executionId") or f"exec-{int(datetime.now(timezone.utc).timestamp() * 1000)}",
            "input_nodes": body.get("inputNodes") or [],
            "input_edges": body.get("inputEdges") or [],
            "input_config": body.get("inputConfig") or {},
            "raw_response": raw_response,
            "response_length": len(raw_response) if raw_response else 0,
            "summary": body.get("summary"),
            "per_node_results": per_node,
            "per_node_results_count": len(per_node),
            "model_used": body.get("modelUsed") or DEFAULT_MODEL,
            "tokens_input": body.get("tokensInput"),
            "tokens_output": body.get("tokensOutput"),
            "execution_time_ms": body.get("executionTimeMs"),
            "status": body.get("status") or "completed",
            "error_message": body.get("errorMessage"),
            "mapping_success_rate": body.get("mappingSuccessRate"),
            "mapping_diagnostics": body.get("mappingDiagnostics") or {},
            "started_at": body.get("startedAt"),
            "completed_at": body.get("completedAt") or utc_now_iso(),
        },
    )
    return {"success": True, "execution": execution}


SAVE_ACTIONS = {
    "create_session": _create_session,
    "save_grounding": _save_grounding,
    "save_output": _save_output,
    "save_execution": _save_execution,
}


@router.get("/save")
def get_analysis_sessions(
    workflowId: str | None = None,
    sessionId: str | None = None,
    user: AuthUser = Depends(get_current_user),
):
    """List the caller's analysis sessions, or fetch one with its children."""
    store = get_store()
    try:
        if sessionId:
            session = store.select_one("workflow_analysis_sessions", eq={"id": sessionId, "user_id": user.id})
            if session is None:
                raise HTTPException(status_code=404, detail="Session not found")
            session["grounding_suggestions"] = store.select(
                "analysis_grounding_suggestions", eq={"session_id": sessionId}, order="created_at"
            )
            session["outputs"] = store.select("analysis_outputs", eq={"session_id": sessionId}, order="created_at")
            return {"session": session}

        eq = {"user_id": user.id}
        if workflowId:
            eq["workflow_id"] = workflowId
        sessions = store.select(
            "workflow_analysis_sessions", eq=eq, order="created_at", desc=True, limit=50
        )
    except StoreError as e:
        logger.error("Error fetching analysis sessions: %s", e)
        raise HTTPException(status_code=500, detail=str(e))

    return {"sessions": sessions}


@router.post("/save")
def save_analysis(body: AnalysisSaveRequest, user: AuthUser = Depends(get_current_user)):
    """Create a session or attach a grounding, output or execution record."""
    handler = SAVE_ACTIONS.get(body.action or "")
    if handler is None:
        raise HTTPException(status_code=400, detail=f"Unknown action: {body.action}")

    try:
        return handler(user, body.model_dump())
    except StoreError as e:
        logger.error("Error in analysis save (%s): %s", body.action, e)
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/save")
def delete_analysis_session(sessionId: str | None = None, user: AuthUser = Depends(get_current_user)):
    """Delete one of the caller's sessions with its groundings and outputs."""
    if not sessionId:
        raise HTTPException(status_code=400, detail="sessionId is required")

    store = get_store()
    try:
        deleted = store.delete("workflow_analysis_sessions", id=sessionId, user_id=user.id)
        if deleted:
            store.delete("analysis_grounding_suggestions", session_id=sessionId)
            store.delete("analysis_outputs", session_id=sessionId)
    except StoreError as e:
        logger.error("Error deleting analysis session %s: %s", sessionId, e)
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True}
