"""Workflow persistence API endpoints.

A workflow is stored as one ``workflows`` row plus ``compute_nodes`` and
``node_edges`` rows. The canvas sends React Flow style nodes and edges;
node types map to stored categories and back.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from api.auth import AuthUser, get_current_user
from api.shared.logger import get_logger
from api.shared.settings import get_settings
from api.store_adapter import get_store, utc_now_iso

logger = get_logger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflows"])

NODE_TYPE_TO_CATEGORY = {
    "brainNode": "ml_inference",
    "dataNode": "input_source",
    "preprocessingNode": "preprocessing",
    "analysisNode": "analysis",
    "mlNode": "ml_inference",
    "outputNode": "output_sink",
    "computeNode": "preprocessing",
}

CATEGORY_TO_NODE_TYPE = {
    "input_source": "dataNode",
    "preprocessing": "preprocessingNode",
    "analysis": "analysisNode",
    "ml_inference": "mlNode",
    "ml_training": "mlNode",
    "visualization": "analysisNode",
    "output_sink": "outputNode",
}

DEFAULT_SOURCE_HANDLE = "output"
DEFAULT_TARGET_HANDLE = "input"
DEFAULT_NODE_COLOR = "#6366f1"
DEFAULT_NODE_ICON = "cpu"


class SaveWorkflowRequest(BaseModel):
    workflowId: str | None = None
    name: str | None = None
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    is_template: bool = False
    is_public: bool = False
    nodes: list[dict[str, Any]] | None = None
    edges: list[dict[str, Any]] = Field(default_factory=list)
    canvas_zoom: float = 1
    canvas_offset_x: float = 0
    canvas_offset_y: float = 0


def node_category(node_type: str | None) -> str:
    return NODE_TYPE_TO_CATEGORY.get(node_type or "", "preprocessing")


def node_type_for_category(category: str | None) -> str:
    return CATEGORY_TO_NODE_TYPE.get(category or "", "computeNode")


def _node_rows(workflow_id: str, nodes: list[dict[str, Any]]) -> list[dict[str, Any]]:
    rows = []
    for node in nodes:
        data = node.get("data") or {}
        position = node.get("position") or {}
        rows.append(
            {
                "workflow_id": workflow_id,
                "name": data.get("label") or node.get("type") or "Node",
                "description": data.get("description"),
                "category": node_category(node.get("type")),
                "color": data.get("color") or DEFAULT_NODE_COLOR,
                "icon": data.get("icon") or DEFAULT_NODE_ICON,
                "position_x": position.get("x", 0),
                "position_y": position.get("y", 0),
                "config_values": data,
                "status": "idle",
            }
        )
    return rows


def _edge_rows(
    workflow_id: str,
    edges: list[dict[str, Any]],
    id_map: dict[str, str],
) -> list[dict[str, Any]]:
    rows = []
    for edge in edges:
        source = id_map.get(edge.get("source"))
        target = id_map.get(edge.get("target"))
        if not source or not target:
            logger.debug("Skipping edge %s with unknown endpoint", edge.get("id"))
            continue
        rows.append(
            {
                "workflow_id": workflow_id,
                "source_node_id": source,
                "target_node_id": target,
                "source_handle": edge.get("sourceHandle") or DEFAULT_SOURCE_HANDLE,
                "target_handle": edge.get("targetHandle") or DEFAULT_TARGET_HANDLE,
                "is_valid": True,
            }
        )
    return rows


def _delete_graph(workflow_id: str) -> None:
    store = get_store()
    store.delete("node_edges", workflow_id=workflow_id)
    store.delete("compute_nodes", workflow_id=workflow_id)


def _can_read(workflow: dict[str, Any], user: AuthUser) -> bool:
    return workflow.get("user_id") == user.id or bool(workflow.get("is_public")) or get_settings().dev_mode


@router.post("")
def save_workflow(body: SaveWorkflowRequest, user: AuthUser = Depends(get_current_user)):
    """Create or update a workflow together with its nodes and edges."""
    if not body.name or body.nodes is None:
        raise HTTPException(status_code=400, detail="Missing required fields: name, nodes")

    store = get_store()
    values = {
        "name": body.name,
        "description": body.description,
        "tags": body.tags,
        "is_template": body.is_template,
        "is_public": body.is_public,
        "canvas_zoom": body.canvas_zoom,
        "canvas_offset_x": body.canvas_offset_x,
        "canvas_offset_y": body.canvas_offset_y,
        "updated_at": utc_now_iso(),
    }

    if body.workflowId:
        updated = store.update("workflows", values, id=body.workflowId, user_id=user.id)
        if not updated:
            raise HTTPException(status_code=404, detail="Workflow not found")
        workflow_id = body.workflowId
        _delete_graph(workflow_id)
    else:
        created = store.insert_one("workflows", {**values, "user_id": user.id, "status": "draft"})
        workflow_id = created["id"]

    inserted_nodes = store.insert("compute_nodes", _node_rows(workflow_id, body.nodes))
    id_map = {
        node.get("id"): row["id"]
        for node, row in zip(body.nodes, inserted_nodes)
        if node.get("id") is not None
    }
    inserted_edges = store.insert("node_edges", _edge_rows(workflow_id, body.edges, id_map))

    logger.info(
        "Saved workflow %s (%d nodes, %d edges)", workflow_id, len(inserted_nodes), len(inserted_edges)
    )
    return {
        "success": True,
        "workflowId": workflow_id,
        "nodeCount": len(inserted_nodes),
        "edgeCount": len(inserted_edges),
    }


@router.get("")
def load_workflow(id: str | None = None, user: AuthUser = Depends(get_current_user)):
    """Load a workflow in canvas format."""
    if not id:
        raise HTTPException(status_code=400, detail="Missing workflow id")

    store = get_store()
    workflow = store.select_one("workflows", eq={"id": id})
    if workflow is None or not _can_read(workflow, user):
        raise HTTPException(status_code=404, detail="Workflow not found")

    node_rows = store.select("compute_nodes", eq={"workflow_id": id}, order="created_at")
    edge_rows = store.select("node_edges", eq={"workflow_id": id})

    nodes = []
    for row in node_rows:
        data = dict(row.get("config_values") or {})
        data.update(
            {
                "label": row.get("name"),
                "status": row.get("status"),
                "progress": row.get("progress", 0),
            }
        )
        nodes.append(
            {
                "id": row["id"],
                "type": node_type_for_category(row.get("category")),
                "position": {"x": row.get("position_x", 0), "y": row.get("position_y", 0)},
                "data": data,
            }
        )

    node_ids = {row["id"] for row in node_rows}
    edges = []
    for row in edge_rows:
        if row.get("source_node_id") not in node_ids or row.get("target_node_id") not in node_ids:
            continue
        edge: dict[str, Any] = {
            "id": row["id"],
            "source": row["source_node_id"],
            "target": row["target_node_id"],
        }
        if row.get("source_handle") and row["source_handle"] != DEFAULT_SOURCE_HANDLE:
            edge["sourceHandle"] = row["source_handle"]
        if row.get("target_handle") and row["target_handle"] != DEFAULT_TARGET_HANDLE:
            edge["targetHandle"] = row["target_handle"]
        edges.append(edge)

    return {"workflow": workflow, "nodes": nodes, "edges": edges}


@router.get("/results/{workflow_id}")
def get_workflow_results(workflow_id: str, user: AuthUser = Depends(get_current_user)):
    """Per-node results recorded for a workflow."""
    results = get_store().select(
        "workflow_node_results",
        eq={"workflow_execution_id": workflow_id},
        order="created_at",
    )
    return {"results": results}


@router.get("/{workflow_id}")
def get_workflow(workflow_id: str, user: AuthUser = Depends(get_current_user)):
    """Raw workflow row with its node and edge rows."""
    store = get_store()
    workflow = store.select_one("workflows", eq={"id": workflow_id})
    if workflow is None or not _can_read(workflow, user):
        raise HTTPException(status_code=404, detail="Workflow not found")

    return {
        **workflow,
        "nodes": store.select("compute_nodes", eq={"workflow_id": workflow_id}, order="created_at"),
        "edges": store.select("node_edges", eq={"workflow_id": workflow_id}),
    }


@router.delete("/{workflow_id}")
def delete_workflow(workflow_id: str, user: AuthUser = Depends(get_current_user)):
    """Delete a workflow and its graph (owner only)."""
    store = get_store()
    workflow = store.select_one("workflows", "id, user_id", eq={"id": workflow_id, "user_id": user.id})
    if workflow is None:
        raise HTTPException(status_code=404, detail="Workflow not found")

    _delete_graph(workflow_id)
    store.delete("workflows", id=workflow_id, user_id=user.id)
    logger.info("Deleted workflow %s", workflow_id)
    return {"success": True}
