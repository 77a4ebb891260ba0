"""Gemini-backed workflow assistants: explain a canvas, or draft one from a query."""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from api.shared.gemini import get_gemini, strip_code_fences
from api.shared.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflow-ai"])

NODE_CATALOG: dict[str, dict[str, Any]] = {
    "dataNode": {
        "description": (
            "Input data sources with descriptive labels that explain what data is fed in "
            '(e.g. "Game Performance Data", "Player Biometrics")'
        ),
        "use_cases": ["patient scans", "research datasets", "external data", "file uploads", "performance metrics"],
    },
    "referenceDatasetNode": {
        "description": "Large reference datasets for comparison (HCP 1200, OpenNeuro, Allen Brain Atlas)",
        "use_cases": ["healthy controls", "normative data", "population baselines", "gene expression"],
    },
    "brainRegionNode": {
        "description": "Specific brain regions from the Allen Atlas (204 regions available)",
        "use_cases": ["targeted analysis", "ROI studies", "regional comparisons", "lesion mapping"],
    },
    "preprocessingNode": {
        "description": "Data preprocessing steps (motion correction, skull stripping, normalization, filtering)",
        "use_cases": ["clean data", "standardize scans", "remove artifacts", "prepare for analysis"],
    },
    "analysisNode": {
        "description": "Statistical and analytical operations with descriptive labels",
        "use_cases": ["brain connectivity", "activation patterns", "volume measurements", "frequency analysis"],
    },
    "mlNode": {
        "description": "Machine learning inference and classification",
        "use_cases": ["disease classification", "tissue segmentation", "outcome prediction", "phenotype clustering"],
    },
    "comparisonAgentNode": {
        "description": "Compare patient data against reference populations",
        "use_cases": ["TBI analysis", "deviation detection", "percentile ranking", "phenotype matching"],
    },
    "brainNode": {
        "description": (
            "AI-powered interpretation (Gemini); also used to simulate individual viewers, "
            "players or entities reacting to content"
        ),
        "use_cases": ["interpret results", "generate insights", "clinical summary", "simulate viewer reactions"],
    },
    "outputNode": {
        "description": "Output and visualization nodes with descriptive labels (reports, dashboards, alerts)",
        "use_cases": ["generate reports", "3D brain maps", "export data", "visualize results"],
    },
}

REQUIRED_SUGGESTION_KEYS = ("id", "name", "nodes", "connections")


class ExplainRequest(BaseModel):
    workflow: dict[str, Any] | None = None


class GenerateRequest(BaseModel):
    query: Any = None


def build_wizard_prompt(query: str) -> str:
    catalog = "\n".join(
        f"- {node_type}: {info['description']}\n   Use cases: {', '.join(info['use_cases'])}"
        for node_type, info in NODE_CATALOG.items()
    )
    return f"""You are the NeuroData Hub Workflow Wizard. You help users create brain imaging analysis workflows by selecting and connecting the right nodes.

AVAILABLE NODE TYPES:
{catalog}

AVAILABLE REFERENCE DATASETS:
- HCP 1200: Human Connectome Project, 1,200 healthy adults (DTI, fMRI, structural MRI)
- OpenNeuro: 800+ open datasets across conditions and modalities
- Allen Brain Atlas: gene expression and anatomical reference data
- UK Biobank: 500,000+ subjects with health and imaging data
- ADNI: Alzheimer's Disease Neuroimaging Initiative

AVAILABLE BRAIN REGIONS (204 from Allen Atlas): frontal, temporal, parietal and occipital lobe regions,
subcortical structures (thalamus, basal ganglia, brainstem, cerebellum) and white matter tracts.

NODE LABELING:
Every node needs a descriptive label that explains its purpose. When a brainNode represents a person,
include name and role (e.g. "Student 1 - Sarah Chen").

COUNT REQUESTS:
When the user asks for a specific number of things ("10 students", "5 brain regions"), generate EXACTLY
that many individual nodes, each with a unique label and payload, connected to shared input and output nodes.
For counts above 20 you may generate a representative sample and describe the pattern.

WORKFLOW RULES:
1. Every workflow needs at least one input (dataNode or referenceDatasetNode)
2. Analysis nodes process data from input nodes
3. comparisonAgentNode requires two inputs: patient data and reference data
4. brainNode interpretation comes after analysis
5. outputNode is the final node
6. Connect nodes following the data flow
7. Use a unique kebab-case id for the workflow
8. dataNode payloads include a "sampleDataDescription" field

OUTPUT FORMAT (JSON):
{{
  "id": "unique-kebab-case-id",
  "name": "Short Descriptive Name",
  "description": "One sentence describing the workflow",
  "category": "research" | "clinical" | "comparison" | "analysis",
  "nodes": [{{"type": "nodeType", "label": "Descriptive Label", "payload": {{"label": "..."}}}}],
  "connections": [{{"from": 0, "to": 1}}]
}}

Respond ONLY with valid JSON. No markdown, no explanation.

User request: "{query}\""""


def build_explain_prompt(workflow: dict[str, Any]) -> str:
    nodes = "\n".join(
        f'{i + 1}. [{n.get("type")}] "{n.get("label")}"' for i, n in enumerate(workflow.get("nodes") or [])
    )
    connections = "\n".join(
        f"  {c.get('from')} → {c.get('to')}" for c in workflow.get("connections") or []
    ) or "No connections defined"
    video = f"\n\nCONTENT URL: {workflow['videoUrl']}\n" if workflow.get("videoUrl") else ""

    return f"""You are explaining a neuroscience data analysis workflow to a researcher.

WORKFLOW: "{workflow.get('name')}"
{video}
NODES:
{nodes}

DATA FLOW:
{connections}

Please provide a clear, helpful explanation of:
1. What this workflow does (2-3 sentences)
2. Step-by-step explanation of each node and its role
3. What insights or outputs the user can expect
4. Any recommendations for improving the workflow

Keep the explanation accessible but technically accurate. Use markdown formatting for clarity."""


@router.post("/explain")
async def explain_workflow(body: ExplainRequest):
    """Plain-language explanation of a workflow."""
    workflow = body.workflow
    if not workflow or not workflow.get("nodes"):
        raise HTTPException(status_code=400, detail="Workflow data is required")

    gemini = get_gemini()
    if not gemini.available:
        raise HTTPException(status_code=500, detail="Gemini API key not configured")

    try:
        explanation = await run_in_threadpool(
            gemini.generate, build_explain_prompt(workflow), temperature=0.7, max_output_tokens=1024
        )
    except Exception as e:
        logger.error("Workflow explanation failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to generate explanation")

    if not explanation:
        raise HTTPException(status_code=500, detail="No explanation generated")

    return {"success": True, "explanation": explanation, "workflowName": workflow.get("name")}


@router.post("/generate")
async def generate_workflow(body: GenerateRequest):
    """Draft a workflow (nodes and connections) from a natural-language query."""
    query = body.query
    if not query or not isinstance(query, str):
        raise HTTPException(status_code=400, detail="Query is required")

    gemini = get_gemini()
    if not gemini.available:
        raise HTTPException(status_code=500, detail="Gemini API key not configured")

    try:
        response_text = await run_in_threadpool(
            gemini.generate, build_wizard_prompt(query), temperature=0.7, max_output_tokens=2048
        )
    except Exception as e:
        logger.error("Workflow generation failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to generate workflow")

    if not response_text:
        raise HTTPException(status_code=500, detail="No response from AI")

    cleaned = strip_code_fences(response_text)
    try:
        suggestion = json.loads(cleaned)
    except json.JSONDecodeError:
        suggestion = None

    if not isinstance(suggestion, dict) or any(suggestion.get(k) in (None, "") for k in REQUIRED_SUGGESTION_KEYS):
        logger.warning("Unparseable workflow suggestion for query %r", query)
        raise HTTPException(
            status_code=500,
            detail={"error": "Failed to parse generated workflow", "raw": cleaned},
        )

    return {"success": True, "suggestion": suggestion, "query": query}
