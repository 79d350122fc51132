"""
FastAPI backend for the audio diagnostics engine.

This module provides the web API of the visualizer's audio feature cache
diagnostics: cache diffs, regeneration jobs, the missing-features popup and
real-time updates over WebSocket.
"""

import os
import traceback

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse

from api.app_config import app_config
from api.shared.logger import get_logger, setup_logging

setup_logging(os.environ.get("AUDIOVIZ_LOG_LEVEL") or app_config.get_log_level())
logger = get_logger(__name__)

from api.diagnostics import get_diagnostics_store
from api.diagnostics import router as diagnostics_router
from api.system import log_error
from api.system import router as system_router
from websocket import DIAGNOSTICS_CHANNEL, ws_manager

# Create FastAPI app
app = FastAPI(
    title="Audio diagnostics API",
    description="Audio feature cache diff and regeneration engine",
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
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Log unexpected exceptions and return JSON response."""
    log_error(
        endpoint=str(request.url.path),
        message=str(exc),
        level="critical",
        details=f"Unhandled exception: {type(exc).__name__}",
        traceback="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
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
app.include_router(system_router, prefix="/api", tags=["system"])
app.include_router(diagnostics_router, prefix="/api", tags=["diagnostics"])


# ============= Startup Events =============


@app.on_event("startup")
async def startup_event():
    """Build the diagnostics store and compute the initial diffs."""
    logger.info("Audio diagnostics backend starting...")
    logger.info("Config folder: %s", app_config.get_config_path())
    store = get_diagnostics_store()
    store.recompute_diffs()
    logger.info("Diagnostics ready (%d calculators registered)", len(store.registry))


# ============= WebSocket Endpoints =============


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, client_id: str = None):
    """
    Main WebSocket endpoint for real-time updates.

    Clients can subscribe to channels for specific updates:
    - diagnostics - diff, popup and job updates
    - job:{job_id} - Updates for a specific regeneration job

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
    WebSocket endpoint for one regeneration job.

    Automatically subscribes to the job channel on connection.
    """
    await ws_manager.connect(websocket, f"job-{job_id}")
    await ws_manager.subscribe(websocket, f"job:{job_id}")

    try:
        while True:
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
        "diagnostics_subscribers": ws_manager.get_channel_subscribers(DIAGNOSTICS_CHANNEL),
    }


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Audio diagnostics backend server")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("AUDIOVIZ_PORT", 8000)),
        help="Port to run the server on (default: 8000 or AUDIOVIZ_PORT env var)",
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
        default=False,
        help="Enable auto-reload",
    )
    args = parser.parse_args()

    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )
