"""
Workflow execution API endpoints.

``POST /workflows/run`` turns the canvas into a single Gemini prompt
(see ``api.workflow_prompts``), records the run, charges credits and
returns the analysis with per-node results.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from api.auth import AuthUser, get_optional_user
from api.credit_ledger import CreditLedger, get_user_tier, month_start, next_month_start
from api.shared.gemini import DEFAULT_MODEL, get_gemini
from api.shared.logger import get_logger
from api.store_adapter import StoreError, get_store, utc_now_iso
from api.stripe_config import get_workflow_limit
from api.workflow_prompts import (
    ARTICLE_TEXT_LIMIT,
    build_article_prompt,
    build_simulation_prompt,
    build_standard_prompt,
    build_video_prompt,
    count_regions,
    detect_content_analysis,
    detect_simulation,
    extract_text_from_html,
    parse_model_output,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflow-run"])

ARTICLE_USER_AGENT = "NeuroData/1.0 (+https://neurodata.example)"
UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

CONTENT_CONFIG = {"temperature": 0.25, "top_p": 0.9, "max_output_tokens": 3000}
SIMULATION_CONFIG = {"temperature": 0.7, "top_p": 0.9, "max_output_tokens": 4000}
STANDARD_CONFIG = {"temperature": 0.3, "top_p": 0.9, "max_output_tokens": 3000}


class RunWorkflowRequest(BaseModel):
    nodes: list[dict[str, Any]] | None = None
    edges: list[dict[str, Any]] = Field(default_factory=list)
    workflowId: str | None = None
    workflowName: str | None = None
    name: str | None = None


def check_execution_limit(user_id: str) -> dict[str, Any]:
    """Whether the user may run another workflow this month.

    Returns ``{allowed, remaining, reason?}``; ``remaining`` is ``-1`` for
    unlimited tiers.
    """
    limit = get_workflow_limit(get_user_tier(user_id))
    if limit == -1:
        return {"allowed": True, "remaining": -1}

    now = datetime.now(timezone.utc)
    executed = get_store().count(
        "workflow_runs",
        eq={"user_id": user_id},
        gte={"created_at": month_start(now).isoformat()},
        lt={"created_at": next_month_start(now).isoformat()},
    )
    if executed >= limit:
        return {
            "allowed": False,
            "remaining": 0,
            "reason": (
                f"You've used all {limit} workflow executions for this month. "
                "Upgrade to get unlimited workflows."
            ),
        }
    return {"allowed": True, "remaining": limit - executed - 1}


async def fetch_article_text(url: str) -> str:
    """Download a news page and return its readable text (empty on failure)."""
    try:
        async with httpx.AsyncClient(follow_redirects=True) as client:
            response = await client.get(url, headers={"User-Agent": ARTICLE_USER_AGENT}, timeout=15.0)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("Failed to fetch article %s: %s", url, e)
        return ""
    return extract_text_from_html(response.text)[:ARTICLE_TEXT_LIMIT]


async def _generate(prompt: str, config: dict[str, Any], parts: list[Any] | None = None) -> str:
    return await run_in_threadpool(get_gemini().generate, prompt, parts=parts, **config)


async def _run_content_analysis(content, nodes: list[dict[str, Any]]) -> str:
    if content.youtube_id:
        prompt = build_video_prompt(content)
        video = {
            "file_data": {
                "mime_type": "video/mp4",
                "file_uri": f"https://www.youtube.com/watch?v={content.youtube_id}",
            }
        }
        try:
            return await _generate(prompt, CONTENT_CONFIG, parts=[video])
        except Exception as e:
            logger.info("Direct video analysis failed (%s); retrying with URL in prompt", e)
            return await _generate(prompt, CONTENT_CONFIG)

    if content.is_news_article:
        article_text = await fetch_article_text(content.url) if content.url else ""
        logger.info("Fetched %d characters of article text", len(article_text))
        return await _generate(build_article_prompt(content, nodes, article_text), CONTENT_CONFIG)

    return await _generate(build_video_prompt(content), CONTENT_CONFIG)


def _record_run(
    user_id: str | None,
    workflow_id: str | None,
    workflow_name: str,
    text: str,
    nodes: list[dict[str, Any]],
    per_node_results: list[Any],
) -> None:
    store = get_store()
    now = utc_now_iso()

    if user_id or workflow_id:
        try:
            store.insert(
                "workflow_runs",
                {
                    "user_id": user_id,
                    "workflow_id": workflow_id,
                    "status": "completed",
                    "result_summary": text[:500],
                    "nodes_executed": len(nodes),
                    "started_at": now,
                    "completed_at": now,
                },
            )
        except StoreError as e:
            logger.warning("Failed to log workflow run: %s", e)

    if workflow_id and per_node_results:
        rows = [
            {
                "workflow_execution_id": workflow_id,
                "node_id": str(r.get("nodeId") or r.get("id") or "") if isinstance(r, dict) else "",
                "node_name": str(r.get("nodeName") or r.get("label") or "") if isinstance(r, dict) else "",
                "result": r,
                "updated_at": now,
            }
            for r in per_node_results
        ]
        try:
            store.insert("workflow_node_results", rows)
        except StoreError as e:
            logger.warning("Failed to save per-node results: %s", e)

    if user_id:
        credits = max(1, len(nodes))
        result = CreditLedger(store).consume(
            user_id,
            credits,
            workflow_id=workflow_id if workflow_id and UUID_RE.match(workflow_id) else None,
            action_type="workflow_run",
            resource_type="ai_analysis",
            resource_details={
                "workflow_name": workflow_name,
                "nodes_count": len(nodes),
                "timestamp": now,
            },
        )
        if result["success"]:
            logger.info("Charged %s credits for workflow run; balance %s", credits, result["new_balance"])
        else:
            logger.warning("Insufficient credits for workflow run by %s: %s", user_id, result)


@router.post("/run")
async def run_workflow(body: RunWorkflowRequest, user: AuthUser | None = Depends(get_optional_user)):
    """Execute a workflow canvas through Gemini."""
    nodes = body.nodes or []
    edges = body.edges
    workflow_name = body.workflowName or body.name or "Untitled Workflow"
    if not nodes:
        raise HTTPException(status_code=400, detail="No nodes provided in workflow")

    if user is not None:
        check = await run_in_threadpool(check_execution_limit, user.id)
        if not check["allowed"]:
            raise HTTPException(
                status_code=402,
                detail={
                    "error": "Execution limit reached",
                    "message": check["reason"],
                    "remaining": 0,
                    "requiresUpgrade": True,
                },
            )

    if not get_gemini().available:
        raise HTTPException(
            status_code=503,
            detail={
                "error": "AI service not configured",
                "message": "GOOGLE_GEMINI_API_KEY is not set in environment variables",
                "mode": "offline",
            },
        )

    try:
        content = detect_content_analysis(nodes)
        if content is not None:
            logger.info("Content impact run for %s", content.url)
            text = await _run_content_analysis(content, nodes)
        else:
            simulation = detect_simulation(nodes, workflow_name)
            if simulation is not None:
                logger.info("Simulation run (%s, %d agents)", simulation.kind, len(simulation.agent_nodes))
                text = await _generate(build_simulation_prompt(simulation, workflow_name), SIMULATION_CONFIG)
            else:
                text = await _generate(build_standard_prompt(nodes), STANDARD_CONFIG)
    except Exception as e:
        message = str(e)
        logger.error("Workflow execution error: %s", message)
        if "API_KEY" in message or "API key" in message:
            raise HTTPException(status_code=401, detail={"error": "Invalid API key", "message": message})
        if "QUOTA" in message or "rate limit" in message or "RATE_LIMIT" in message:
            raise HTTPException(
                status_code=429,
                detail={"error": "Rate limit exceeded", "message": "Please try again in a moment"},
            )
        raise HTTPException(status_code=500, detail={"error": "Workflow execution failed", "message": message})

    parsed = parse_model_output(text)
    await run_in_threadpool(
        _record_run,
        user.id if user else None,
        body.workflowId,
        workflow_name,
        parsed.text,
        nodes,
        parsed.per_node_results,
    )

    return {
        "success": True,
        "workflowId": body.workflowId,
        "workflowName": workflow_name,
        "result": parsed.text,
        "analysis": parsed.text,
        "perNodeResults": parsed.per_node_results,
        "creditsRefresh": True,
        "metadata": {
            "model": DEFAULT_MODEL,
            "nodesProcessed": len(nodes),
            "edgesProcessed": len(edges),
            "timestamp": utc_now_iso(),
            "regionsAnalyzed": count_regions(nodes),
        },
    }


@router.get("/run")
async def workflow_run_status():
    """Whether workflow execution is available."""
    ready = get_gemini().available
    return {
        "status": "ready" if ready else "offline",
        "message": "Workflow API is ready" if ready else "GOOGLE_GEMINI_API_KEY not configured",
        "timestamp": utc_now_iso(),
    }
