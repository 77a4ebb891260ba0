"""
Cloud compute worker.

Polls ``cloud_compute_jobs`` for pending rows and executes each workflow
node by node through Gemini on the ``JobManager`` thread pool. Job state
is written back to the row; progress is pushed to WebSocket subscribers
of ``job:{job_id}``.

Runs inside the API process when ``CLOUD_WORKER_ENABLED`` is set, or
standalone via ``python worker.py``.
"""

from __future__ import annotations

import functools
import json
import threading
import time
from typing import Any, Callable

from api.credit_ledger import CreditLedger, as_number
from api.jobs.manager import Job, JobManager, JobType, job_manager
from api.shared.gemini import GeminiClient, get_gemini
from api.shared.logger import get_logger
from api.shared.settings import get_settings
from api.store_adapter import StoreAdapter, StoreError, get_store, utc_now_iso

logger = get_logger(__name__)

NODE_DELAY_SECONDS = 0.2
UPSTREAM_RESULT_CHARS = 500
FINISHED_JOB_RETENTION_HOURS = 24


def _label(node: dict[str, Any]) -> str:
    data = node.get("data") or {}
    return data.get("label") or node.get("id") or "Node"


def is_output_node(node: dict[str, Any]) -> bool:
    return node.get("type") == "outputNode" or (node.get("data") or {}).get("category") == "output_sink"


def _compare_position(a: dict[str, Any], b: dict[str, Any]) -> float:
    pa, pb = a.get("position") or {}, b.get("position") or {}
    ax, bx = pa.get("x", 0) or 0, pb.get("x", 0) or 0
    if abs(ax - bx) > 100:
        return ax - bx
    return (pa.get("y", 0) or 0) - (pb.get("y", 0) or 0)


def order_nodes(nodes: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Left-to-right, top-to-bottom order with output nodes last.

    Nodes whose x positions are within 100px of each other are treated as
    one column and ordered by y.
    """
    outputs = [n for n in nodes if is_output_node(n)]
    others = [n for n in nodes if not is_output_node(n)]
    others.sort(key=functools.cmp_to_key(_compare_position))
    return others + outputs


def build_node_prompt(node: dict[str, Any], upstream: dict[str, str], workflow_context: str) -> str:
    """Prompt for one node, shaped by its category."""
    data = node.get("data") or {}
    label = data.get("label") or node.get("type") or "Node"
    behavior = data.get("behavior") or ""
    category = data.get("category") or ""
    node_type = node.get("type") or ""

    instructions = f"Instructions: {behavior}" if behavior else ""
    context = ""
    if upstream:
        lines = "\n".join(f"- {node_id}: {result[:UPSTREAM_RESULT_CHARS]}" for node_id, result in upstream.items())
        context = f"\nPrevious node results to incorporate:\n{lines}\n"

    if category == "analysis" or "analysis" in node_type:
        return f"""You are an AI agent performing data analysis in a neuroscience workflow.

Workflow: {workflow_context}
Current Node: {label}
{instructions}
{context}
Analyze the data and provide insights. Be concise but thorough. Format with clear sections."""

    if category == "data" or "data" in node_type:
        return f"""You are an AI agent processing data in a neuroscience workflow.

Workflow: {workflow_context}
Current Node: {label}
{instructions}
{context}
Process and transform the data as specified. Output structured results."""

    if category == "output_sink" or node_type == "outputNode":
        return f"""You are an AI agent creating a final summary for a neuroscience workflow.

Workflow: {workflow_context}
Current Node: {label}
{context}
Synthesize all previous results into a comprehensive summary. Include:
1. Key findings
2. Main insights
3. Actionable recommendations
4. Any limitations or caveats

Format the output clearly with sections and bullet points."""

    return f"""You are an AI agent in a neuroscience data workflow.

Workflow: {workflow_context}
Current Node: {label}
Type: {node_type}
{instructions}
{context}
Execute the task for this node. Provide clear, structured output that can be used by downstream nodes."""


class CloudComputeWorker:
    """Claims pending cloud jobs and runs them on a ``JobManager``.

    Args:
        store: Store adapter; defaults to the process-wide store.
        gemini: Gemini client; defaults to the shared client.
        manager: Job manager that owns the execution threads.
        max_jobs: Maximum jobs in flight at once.
        poll_seconds: Delay between polls in ``run_forever``.
        node_delay: Pause between nodes to stay under Gemini rate limits.
    """

    def __init__(
        self,
        store: StoreAdapter | None = None,
        gemini: GeminiClient | None = None,
        manager: JobManager | None = None,
        max_jobs: int = 3,
        poll_seconds: float = 5,
        node_delay: float = NODE_DELAY_SECONDS,
    ):
        self._store = store
        self._gemini = gemini
        self.manager = manager or job_manager
        self.max_jobs = max_jobs
        self.poll_seconds = poll_seconds
        self.node_delay = node_delay
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(cls) -> "CloudComputeWorker":
        settings = get_settings()
        return cls(max_jobs=settings.worker_max_jobs, poll_seconds=settings.worker_poll_seconds)

    @property
    def store(self) -> StoreAdapter:
        return self._store or get_store()

    @property
    def gemini(self) -> GeminiClient:
        return self._gemini or get_gemini()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ----- polling -----

    def poll_once(self) -> list[str]:
        """Claim up to the free slots of pending jobs and submit them.

        Returns:
            Ids of the jobs that were submitted.
        """
        free_slots = self.max_jobs - self.manager.active_count()
        if free_slots <= 0:
            return []

        if not self.gemini.available:
            logger.warning("Cloud worker idle: Gemini API key not configured")
            return []

        try:
            pending = self.store.select(
                "cloud_compute_jobs",
                eq={"status": "pending"},
                order="created_at",
                limit=free_slots,
            )
        except StoreError as e:
            logger.error("Error fetching pending cloud jobs: %s", e)
            return []

        submitted = []
        for row in pending:
            if self.manager.get_job(row["id"]) is not None:
                continue
            # Another worker may have claimed the row since the select.
            claimed = self.store.update("cloud_compute_jobs", {"status": "queued"}, id=row["id"], status="pending")
            if not claimed:
                continue

            job = self.manager.create_job(
                JobType.CLOUD_COMPUTE,
                {"user_id": row.get("user_id"), "node_count": row.get("node_count")},
                job_id=row["id"],
            )
            self.manager.submit_job(job, functools.partial(self.process_job, row))
            submitted.append(row["id"])

        if submitted:
            logger.info("Submitted %d cloud job(s)", len(submitted))
        return submitted

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        """Poll until ``stop_event`` is set."""
        stop_event = stop_event or self._stop_event
        logger.info("Cloud worker polling every %ss (max %d jobs)", self.poll_seconds, self.max_jobs)
        while not stop_event.is_set():
            try:
                self.poll_once()
                self.manager.cleanup_old_jobs(FINISHED_JOB_RETENTION_HOURS)
            except Exception:
                logger.exception("Cloud worker poll failed")
            stop_event.wait(self.poll_seconds)
        logger.info("Cloud worker stopped")

    def start(self) -> None:
        """Run ``run_forever`` on a daemon thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="cloud-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def state(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "active_jobs": self.manager.active_count(),
            "max_jobs": self.max_jobs,
            "poll_seconds": self.poll_seconds,
        }

    # ----- execution -----

    def process_job(self, row: dict[str, Any], job: Job, progress_callback: Callable[[float, str], bool]) -> dict[str, Any]:
        """Run one claimed job and store its outcome on the row."""
        job_id = row["id"]
        started = self.store.update(
            "cloud_compute_jobs",
            {"status": "running", "started_at": utc_now_iso(), "progress": 0},
            id=job_id,
            status="queued",
        )
        if not started:
            logger.info("Cloud job %s was cancelled before it started", job_id)
            job.cancellation_requested = True
            return {"success": False, "error": "Job was cancelled"}

        logger.info("Starting cloud job %s (%s nodes, tier %s)", job_id, row.get("node_count"), row.get("compute_tier"))

        try:
            outcome = self.execute_workflow(row, job, progress_callback)
            self.store.update(
                "cloud_compute_jobs",
                {
                    "status": "completed" if outcome["success"] else "failed",
                    "progress": 100,
                    "result": outcome["final_result"],
                    "per_node_results": outcome["per_node_results"],
                    "error_message": outcome.get("error"),
                    "completed_at": utc_now_iso(),
                    "current_node": None,
                },
                id=job_id,
            )
        except Exception as e:
            logger.error("Cloud job %s failed: %s", job_id, e)
            self.store.update(
                "cloud_compute_jobs",
                {
                    "status": "failed",
                    "error_message": str(e) or "Unknown error",
                    "completed_at": utc_now_iso(),
                    "current_node": None,
                },
                id=job_id,
            )
            self.refund_credits(row)
            raise

        logger.info("Cloud job %s finished %s", job_id, "successfully" if outcome["success"] else "with errors")
        return outcome

    def execute_workflow(
        self,
        row: dict[str, Any],
        job: Job,
        progress_callback: Callable[[float, str], bool],
    ) -> dict[str, Any]:
        """Process every node in order, feeding upstream results forward.

        Returns:
            ``{success, per_node_results, final_result, error?}``
        """
        workflow = row.get("workflow_data") or {}
        nodes = workflow.get("nodes") or []
        edges = workflow.get("edges") or []
        context = workflow.get("workflowName") or f"Workflow with {row.get('node_count') or len(nodes)} nodes"

        incoming: dict[str, list[str]] = {}
        for edge in edges:
            incoming.setdefault(edge.get("target"), []).append(edge.get("source"))

        ordered = order_nodes(nodes)
        results: dict[str, dict[str, Any]] = {}
        failed = 0

        for i, node in enumerate(ordered):
            progress = round(i / len(ordered) * 100)
            label = _label(node)
            self.store.update("cloud_compute_jobs", {"progress": progress, "current_node": label}, id=row["id"])
            if not progress_callback(progress, f"Processing node: {label}"):
                raise RuntimeError("Job was cancelled")

            upstream = {}
            for source in incoming.get(node.get("id"), []):
                result = (results.get(source) or {}).get("result")
                if result:
                    upstream[source] = result if isinstance(result, str) else json.dumps(result)

            node_result = self._process_node(node, upstream, context)
            results[node.get("id")] = node_result
            if node_result["status"] == "error":
                failed += 1

            self.manager.update_job_metrics(
                job.id,
                {
                    "nodes_processed": i + 1,
                    "nodes_total": len(ordered),
                    "nodes_failed": failed,
                    "last_node_ms": node_result["processingTime"],
                },
            )

            if i < len(ordered) - 1 and self.node_delay:
                time.sleep(self.node_delay)

        output = next((n for n in ordered if is_output_node(n)), None)
        if output is not None:
            final_result = results.get(output.get("id"), {}).get("result") or "No output generated"
        elif ordered:
            final_result = results.get(ordered[-1].get("id"), {}).get("result") or "Workflow completed"
        else:
            final_result = "Workflow completed"

        outcome: dict[str, Any] = {
            "success": failed == 0,
            "per_node_results": results,
            "final_result": final_result,
        }
        if failed:
            outcome["error"] = "Some nodes failed to process"
        return outcome

    def _process_node(self, node: dict[str, Any], upstream: dict[str, str], context: str) -> dict[str, Any]:
        start = time.monotonic()
        try:
            text = self.gemini.generate(build_node_prompt(node, upstream, context))
        except Exception as e:
            logger.error("Error processing node %s: %s", node.get("id"), e)
            return {
                "nodeId": node.get("id"),
                "result": "",
                "status": "error",
                "processingTime": int((time.monotonic() - start) * 1000),
                "error": str(e) or "Unknown error",
            }
        return {
            "nodeId": node.get("id"),
            "result": text,
            "status": "completed",
            "processingTime": int((time.monotonic() - start) * 1000),
        }

    def refund_credits(self, row: dict[str, Any]) -> float:
        """Give back the credits a failed job was charged."""
        user_id = row.get("user_id")
        current = self.store.select_one("cloud_compute_jobs", "credits_charged, credits_refunded", eq={"id": row["id"]})
        amount = as_number((current or row).get("credits_charged"))
        if not user_id or amount <= 0 or (current or {}).get("credits_refunded"):
            return 0

        try:
            ledger = CreditLedger(self.store)
            ledger.refund(user_id, amount)
            ledger.record_transaction(
                user_id,
                amount,
                "refund",
                "Cloud compute job failed - refund",
                metadata={"job_id": row["id"]},
            )
            self.store.update("cloud_compute_jobs", {"credits_refunded": True}, id=row["id"])
        except StoreError as e:
            logger.error("Failed to refund %s credits for job %s: %s", amount, row["id"], e)
            return 0

        logger.info("Refunded %s credits to user %s", amount, user_id)
        return amount


_worker: CloudComputeWorker | None = None


def get_cloud_worker() -> CloudComputeWorker | None:
    return _worker


def start_cloud_worker() -> CloudComputeWorker:
    """Start the in-process worker (idempotent)."""
    global _worker
    if _worker is None:
        _worker = CloudComputeWorker.from_settings()
    _worker.start()
    return _worker


def stop_cloud_worker() -> None:
    global _worker
    if _worker is not None:
        _worker.stop()
        _worker = None
