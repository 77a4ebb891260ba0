"""
FastAPI backend for NeuroData Hub.

This module provides the web API for the NeuroData Hub application:
credits and Stripe billing, workflow persistence and execution, cloud
compute jobs, workflow result analysis, personalized suggestions and
onboarding.

WebSocket endpoints push cloud job progress to the workflow canvas.
"""

import asyncio
import os

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse

from api.shared.logger import get_logger, setup_logging
from api.shared.settings import get_settings

setup_logging(get_settings().log_level)
logger = get_logger(__name__)

from api.account import router as account_router
from api.billing import router as billing_router
from api.cloud_jobs import router as cloud_jobs_router
from api.credits import router as credits_router
from api.dashboard import router as dashboard_router
from api.jobs import job_manager, start_cloud_worker, stop_cloud_worker
from api.suggestions import router as suggestions_router
from api.system import log_error
from api.system import router as system_router
from api.trends import router as trends_router
from api.workflow_ai import router as workflow_ai_router
from api.workflow_analysis import router as workflow_analysis_router
from api.workflow_run import router as workflow_run_router
from api.workflow_wizard import router as workflow_wizard_router
from api.workflows import router as workflows_router
from api.youtube import router as youtube_router
from websocket import job_channel, ws_manager

# Create FastAPI app
app = FastAPI(
    title="NeuroData Hub API",
    description="API for the NeuroData Hub neuroscience workflow platform",
    version="1.0.0",
    default_response_class=ORJSONResponse,
)

# ============= Exception Handlers for Error Logging =============


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Log HTTP exceptions and return JSON response."""
    # Only log 5xx errors (server errors)
    if exc.status_code >= 500:
        log_error(
            endpoint=str(request.url.path),
            message=str(exc.detail),
            level="error",
            details=f"Status code: {exc.status_code}",
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Log unexpected exceptions and return JSON response."""
    log_error(
        endpoint=str(request.url.path),
        message=str(exc),
        level="critical",
        details=f"Unhandled exception: {type(exc).__name__}",
        exc=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,  # Must be False when using allow_origins=["*"]
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include API routes
# Fixed /workflows/* paths go before workflows_router's /workflows/{workflow_id}
app.include_router(system_router, prefix="/api", tags=["system"])
app.include_router(credits_router, prefix="/api", tags=["credits"])
app.include_router(billing_router, prefix="/api", tags=["billing"])
app.include_router(workflow_run_router, prefix="/api", tags=["workflow-run"])
app.include_router(workflow_ai_router, prefix="/api", tags=["workflow-ai"])
app.include_router(workflow_wizard_router, prefix="/api", tags=["workflow-wizard"])
app.include_router(cloud_jobs_router, prefix="/api", tags=["cloud-compute"])
app.include_router(workflow_analysis_router, prefix="/api", tags=["workflow-analysis"])
app.include_router(workflows_router, prefix="/api", tags=["workflows"])
app.include_router(suggestions_router, prefix="/api", tags=["suggestions"])
app.include_router(trends_router, prefix="/api", tags=["trends"])
app.include_router(youtube_router, prefix="/api", tags=["youtube"])
app.include_router(account_router, prefix="/api", tags=["account"])
app.include_router(dashboard_router, prefix="/api", tags=["dashboard"])


# ============= Startup Events =============


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup."""
    settings = get_settings()
    logger.info("NeuroData Hub API starting (environment=%s)...", settings.environment)

    # Worker threads publish WebSocket updates onto this loop
    job_manager.bind_loop(asyncio.get_running_loop())

    if settings.worker_enabled:
        worker = start_cloud_worker()
        logger.info("Cloud worker started (max_jobs=%d, poll=%ss)", worker.max_jobs, worker.poll_seconds)

    logger.info("Startup complete, backend ready")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the cloud worker and the job pool."""
    stop_cloud_worker()
    job_manager.bind_loop(None)
    job_manager.shutdown()
    logger.info("NeuroData Hub API stopped")


# ============= WebSocket Endpoints =============


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, client_id: str = None):
    """
    Main WebSocket endpoint for real-time updates.

    Clients can subscribe to channels for specific updates:
    - job:{job_id} - Updates for a specific cloud compute job

    Message format (JSON):
    {
        "type": "subscribe" | "unsubscribe" | "ping",
        "channel": "channel_name",
        "data": {}
    }
    """
    await ws_manager.connect(websocket, client_id)

    try:
        while True:
            message_text = await websocket.receive_text()
            response = await ws_manager.handle_message(websocket, message_text)
            if response:
                await ws_manager.send_to_connection(websocket, response)

    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception as e:
        logger.error("WebSocket error: %s", e)
        await ws_manager.disconnect(websocket)


@app.websocket("/ws/job/{job_id}")
async def job_websocket_endpoint(websocket: WebSocket, job_id: str):
    """
    WebSocket endpoint for job-specific updates.

    Automatically subscribes to the job channel on connection.
    """
    await ws_manager.connect(websocket, f"job-{job_id}")
    await ws_manager.subscribe(websocket, job_channel(job_id))

    try:
        while True:
            # Keep connection alive, handle ping/pong
            message_text = await websocket.receive_text()
            response = await ws_manager.handle_message(websocket, message_text)
            if response:
                await ws_manager.send_to_connection(websocket, response)

    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception as e:
        logger.error("Job WebSocket error: %s", e)
        await ws_manager.disconnect(websocket)


@app.get("/api/ws/stats")
async def get_websocket_stats():
    """Get WebSocket connection statistics."""
    return {
        "total_connections": ws_manager.get_connection_count(),
    }


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="NeuroData Hub backend server")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("NEURODATA_PORT", 8000)),
        help="Port to run the server on (default: 8000 or NEURODATA_PORT env var)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--reload",
        action=argparse.BooleanOptionalAction,
        default=not get_settings().is_production,
        help="Enable auto-reload (default: on outside production)",
    )
    args = parser.parse_args()

    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=get_settings().log_level.lower(),
    )
