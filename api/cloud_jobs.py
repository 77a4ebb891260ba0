"""
Cloud compute job API endpoints.

A cloud job is a queued ``cloud_compute_jobs`` row holding a workflow
snapshot. The cloud worker (``api.jobs.cloud_worker``) picks pending rows
up and executes them node by node.
"""

from __future__ import annotations

import hashlib
import json
import math
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.auth import AuthUser, get_current_user
from api.credit_ledger import CreditLedger, as_number, get_user_tier, parse_timestamp
from api.shared.logger import get_logger
from api.store_adapter import StoreError, get_store, utc_now_iso

logger = get_logger(__name__)

router = APIRouter(prefix="/workflows", tags=["cloud-compute"])

MAX_NODES = 100000
MAX_LIST_LIMIT = 50
UNLIMITED_CLOUD_TIERS = ("researcher", "clinical", "enterprise", "pro", "team")
COMPUTE_TIER_MULTIPLIERS = {"high_memory": 1.5, "gpu": 3.0}
CANCELLABLE_STATUSES = ("pending", "queued")

JOB_LIST_COLUMNS = (
    "id, job_name, node_count, status, progress, created_at, started_at, "
    "completed_at, credits_charged, error_message"
)


class CloudJobRequest(BaseModel):
    workflowData: dict[str, Any] | None = None
    jobName: str | None = None
    computeTier: str = "standard"


def calculate_credits(node_count: int, compute_tier: str = "standard") -> int:
    """One credit per five nodes (minimum two), scaled by the compute tier."""
    base = max(2, math.ceil(node_count / 5))
    return math.ceil(base * COMPUTE_TIER_MULTIPLIERS.get(compute_tier, 1.0))


def estimate_duration(node_count: int) -> int:
    """Estimated run time in seconds."""
    return math.ceil(5 + node_count * 0.3)


def hash_workflow(workflow_data: dict[str, Any]) -> str:
    payload = json.dumps(workflow_data, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def has_unlimited_cloud_compute(tier: str) -> bool:
    return tier.lower() in UNLIMITED_CLOUD_TIERS


def job_detail(job: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
    """Client view of a job row, with timing for started jobs."""
    detail: dict[str, Any] = {
        "id": job["id"],
        "jobName": job.get("job_name"),
        "nodeCount": job.get("node_count"),
        "status": job.get("status"),
        "progress": job.get("progress") or 0,
        "currentNode": job.get("current_node"),
        "computeTier": job.get("compute_tier"),
        "creditsCharged": job.get("credits_charged"),
        "createdAt": job.get("created_at"),
        "startedAt": job.get("started_at"),
        "completedAt": job.get("completed_at"),
        "estimatedDuration": job.get("estimated_duration_seconds"),
    }

    if job.get("status") == "completed":
        detail["result"] = job.get("result")
        detail["perNodeResults"] = job.get("per_node_results")
    elif job.get("status") == "failed":
        detail["errorMessage"] = job.get("error_message")
        detail["creditsRefunded"] = job.get("credits_refunded")

    started = parse_timestamp(job.get("started_at"))
    if started is not None:
        now = now or datetime.now(timezone.utc)
        elapsed = int((now - started).total_seconds())
        detail["elapsedSeconds"] = elapsed
        estimated = job.get("estimated_duration_seconds")
        if job.get("status") == "running" and estimated:
            detail["remainingSeconds"] = max(0, estimated - elapsed)

    return detail


@router.post("/cloud")
def submit_cloud_job(body: CloudJobRequest, user: AuthUser = Depends(get_current_user)):
    """Queue a workflow for cloud execution, charging credits on free tiers."""
    workflow_data = body.workflowData
    if not workflow_data or not isinstance(workflow_data.get("nodes"), list):
        raise HTTPException(status_code=400, detail="Invalid workflow data - nodes required")

    node_count = len(workflow_data["nodes"])
    if node_count < 1:
        raise HTTPException(status_code=400, detail="Workflow must have at least 1 node")
    if node_count > MAX_NODES:
        raise HTTPException(status_code=400, detail="Workflow exceeds maximum of 100,000 nodes")

    store = get_store()
    ledger = CreditLedger(store)
    tier = get_user_tier(user.id, store)
    unlimited = has_unlimited_cloud_compute(tier)
    credits_needed = 0 if unlimited else calculate_credits(node_count, body.computeTier)

    if credits_needed:
        charge = ledger.consume(
            user.id,
            credits_needed,
            action_type="cloud_compute",
            resource_type="cloud_job",
            resource_details={"node_count": node_count, "compute_tier": body.computeTier},
        )
        if not charge["success"]:
            current = charge["available"]
            raise HTTPException(
                status_code=402,
                detail={
                    "error": f"Insufficient credits. Need {credits_needed}, have {current}",
                    "creditsNeeded": credits_needed,
                    "currentCredits": current,
                },
            )

    try:
        job = store.insert_one(
            "cloud_compute_jobs",
            {
                "user_id": user.id,
                "job_name": body.jobName or f"Workflow ({node_count} nodes)",
                "node_count": node_count,
                "estimated_duration_seconds": estimate_duration(node_count),
                "workflow_data": workflow_data,
                "workflow_hash": hash_workflow(workflow_data),
                "status": "pending",
                "progress": 0,
                "compute_tier": body.computeTier,
                "credits_charged": credits_needed,
            },
        )
    except StoreError as e:
        logger.error("Error creating cloud job for %s: %s", user.id, e)
        if credits_needed:
            ledger.refund(user.id, credits_needed)
        raise HTTPException(status_code=500, detail="Failed to create job")

    if credits_needed:
        ledger.record_transaction(
            user.id,
            -credits_needed,
            "cloud_compute",
            f"Cloud compute job: {node_count} nodes",
            metadata={"job_id": job["id"], "compute_tier": body.computeTier},
        )
        message = f"Job submitted! Processing {node_count} nodes in the cloud."
    else:
        message = f"Job submitted! Processing {node_count} nodes in the cloud. (Included with {tier} plan)"

    logger.info("Cloud job %s queued for %s (%d nodes, %d credits)", job["id"], user.id, node_count, credits_needed)

    return {
        "success": True,
        "job": {
            "id": job["id"],
            "status": job["status"],
            "nodeCount": job["node_count"],
            "estimatedDuration": job["estimated_duration_seconds"],
            "creditsCharged": as_number(job["credits_charged"]),
            "createdAt": job.get("created_at"),
        },
        "message": message,
    }


@router.get("/cloud")
def list_cloud_jobs(
    status: str | None = None,
    limit: int = 10,
    user: AuthUser = Depends(get_current_user),
):
    """The caller's recent cloud jobs, newest first."""
    eq: dict[str, Any] = {"user_id": user.id}
    if status:
        eq["status"] = status

    try:
        jobs = get_store().select(
            "cloud_compute_jobs",
            JOB_LIST_COLUMNS,
            eq=eq,
            order="created_at",
            desc=True,
            limit=max(1, min(limit, MAX_LIST_LIMIT)),
        )
    except StoreError as e:
        logger.error("Error fetching cloud jobs: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch jobs")

    return {"jobs": jobs}


@router.get("/cloud/{job_id}")
def get_cloud_job(job_id: str, user: AuthUser = Depends(get_current_user)):
    """Status, timing and (when finished) results of one cloud job."""
    job = get_store().select_one("cloud_compute_jobs", eq={"id": job_id, "user_id": user.id})
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_detail(job)


@router.delete("/cloud/{job_id}")
def cancel_cloud_job(job_id: str, user: AuthUser = Depends(get_current_user)):
    """Cancel a job that has not started yet and refund its credits."""
    store = get_store()
    job = store.select_one(
        "cloud_compute_jobs",
        "id, status, credits_charged, user_id",
        eq={"id": job_id, "user_id": user.id},
    )
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    if job["status"] not in CANCELLABLE_STATUSES:
        raise HTTPException(status_code=400, detail=f"Cannot cancel job with status: {job['status']}")

    # Conditional on the status read above so a job the worker just claimed is not cancelled.
    updated = store.update(
        "cloud_compute_jobs",
        {"status": "cancelled", "completed_at": utc_now_iso(), "credits_refunded": True},
        id=job_id,
        user_id=user.id,
        status=job["status"],
    )
    if not updated:
        raise HTTPException(status_code=400, detail="Job has already started")

    credits = as_number(job.get("credits_charged"))
    if credits > 0:
        ledger = CreditLedger(store)
        ledger.refund(user.id, credits)
        ledger.record_transaction(
            user.id,
            credits,
            "refund",
            "Cloud compute job cancelled - refund",
            metadata={"job_id": job_id},
        )

    logger.info("Cloud job %s cancelled by %s", job_id, user.id)
    return {
        "success": True,
        "message": "Job cancelled and credits refunded",
        "creditsRefunded": credits,
    }
