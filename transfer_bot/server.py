"""FastAPI status server: dashboard, progress API, health check."""

import html
import logging
import time
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from .models import ProgressSnapshot

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        self.config = config or {}

        server_config = self.config.get("server", {})
        self.slow_threshold = server_config.get("slow_request_threshold_seconds", 1.0)

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if elapsed > self.slow_threshold:
            logger.warning(
                f"SLOW REQUEST: {request.method} {request.url.path} "
                f"took {elapsed:.2f}s"
            )

        return response


class ProgressResponse(BaseModel):
    """Current progress snapshot."""
    status: str
    task: str
    completed: int
    total: int
    activeUsers: int
    lastUpdate: str


class HealthResponse(BaseModel):
    """Liveness document."""
    status: str
    uptime: float
    timestamp: str
    bot_status: str


def _format_uptime(seconds: float) -> str:
    return f"{int(seconds // 60)}m {int(seconds % 60)}s"


def render_dashboard(progress: dict, uptime_seconds: float) -> str:
    """Render the auto-refreshing HTML dashboard for a progress snapshot."""
    status = progress["status"]
    last_update = datetime.fromisoformat(progress["lastUpdate"]).strftime("%H:%M:%S")
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <meta http-equiv="refresh" content="5">
    <title>Transfer Bot Dashboard</title>
    <style>
        body {{ font-family: 'Segoe UI', Tahoma, sans-serif; margin: 0; padding: 20px;
               background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); color: white; min-height: 100vh; }}
        .container {{ max-width: 800px; margin: 0 auto; background: rgba(255, 255, 255, 0.1);
                      border-radius: 20px; padding: 30px; }}
        h1 {{ text-align: center; }}
        .panel {{ background: rgba(255, 255, 255, 0.2); padding: 20px; border-radius: 15px; margin-bottom: 20px; }}
        .progress-bar {{ width: 100%; height: 25px; background: rgba(255, 255, 255, 0.3);
                         border-radius: 12px; overflow: hidden; margin-top: 10px; }}
        .progress-fill {{ height: 100%; background: linear-gradient(90deg, #4CAF50, #45a049);
                          width: {progress["completed"]}%; }}
        .info-grid {{ display: grid; grid-template-columns: repeat(auto-fit, minmax(200px, 1fr)); gap: 15px; }}
        .info-card {{ background: rgba(255, 255, 255, 0.2); padding: 15px; border-radius: 10px; text-align: center; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>🤖 Transfer Bot Dashboard</h1>
        <div class="panel"><strong>Status:</strong> Bot is running ✅</div>
        <div class="panel">
            <h3>📊 Current Task Progress</h3>
            <p><strong>Task:</strong> {html.escape(progress["task"])}</p>
            <div class="progress-bar"><div class="progress-fill"></div></div>
            <p>{progress["completed"]}% Complete ({progress["completed"]}/{progress["total"]})</p>
            <p><strong>Status:</strong> {html.escape(status.capitalize())}</p>
        </div>
        <div class="info-grid">
            <div class="info-card"><h3>👥 Active Users</h3><p>{progress["activeUsers"]}</p></div>
            <div class="info-card"><h3>⏰ Last Update</h3><p>{last_update}</p></div>
            <div class="info-card"><h3>📈 Uptime</h3><p>{_format_uptime(uptime_seconds)}</p></div>
        </div>
        <p>API Endpoint: <code>/progress</code> | Health: <code>/health</code></p>
    </div>
</body>
</html>
"""


def create_app(
    progress=None,
    config: Optional[dict] = None,
    started_at: Optional[float] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        progress: ProgressPublisher instance (read-only here)
        config: Configuration dictionary
        started_at: time.monotonic() of process start (defaults to now)

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Transfer Bot",
        description="Progress and health for the Telegram media transfer bot",
        version="0.1.0",
    )

    app.state.config = config or {}
    app.add_middleware(RequestTimingMiddleware, config=config)

    app.state.progress = progress
    app.state.started_at = started_at if started_at is not None else time.monotonic()

    def uptime() -> float:
        return time.monotonic() - app.state.started_at

    def snapshot() -> dict:
        if app.state.progress is None:
            return ProgressSnapshot().to_dict()
        return app.state.progress.snapshot.to_dict()

    @app.get("/", response_class=HTMLResponse)
    async def dashboard():
        """HTML dashboard, refreshes itself every 5 seconds."""
        return render_dashboard(snapshot(), uptime())

    @app.get("/progress", response_model=ProgressResponse)
    async def get_progress():
        """Progress snapshot for external monitoring."""
        return snapshot()

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "uptime": uptime(),
            "timestamp": datetime.now().isoformat(),
            "bot_status": "running",
        }

    return app
