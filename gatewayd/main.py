"""
gatewayd FastAPI application.

Control surface for the sandboxed gateway: status, token-authorized restart,
and read-only session introspection. Blocking handlers are plain functions so
FastAPI runs them in its threadpool. On startup the backup is restored, the
config hydrated and the gateway launched in a background job.
"""

import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from . import __version__, startup
from .config import config
from .exceptions import GatewaydError, SessionNotFound, Unauthorized
from .jobs import JobStatus, job_manager
from .models import LifecycleEvent, initialize_db
from .monitor import gateway_monitor
from .process import supervisor
from .sessions import DEFAULT_HISTORY_LIMIT, session_store

# Configure logging with rotation
log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

# Rotating file handler (auto-compaction)
file_handler = RotatingFileHandler(
    config.supervisor_log,
    maxBytes=config.log_max_bytes,
    backupCount=config.log_backup_count,
)
file_handler.setFormatter(log_formatter)

# Console handler
console_handler = logging.StreamHandler()
console_handler.setFormatter(log_formatter)

# Configure root logger
logging.basicConfig(
    level=logging.INFO,
    handlers=[file_handler, console_handler],
)
logger = logging.getLogger(__name__)

# Initialize database
initialize_db()


def _boot():
    try:
        return startup.boot(supervisor, config).to_dict()
    finally:
        gateway_monitor.expect_running = True


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info("Starting gatewayd...")
    job_manager.submit("boot", _boot)
    await gateway_monitor.start()

    yield

    # Shutdown
    logger.info("Shutting down gatewayd...")
    await gateway_monitor.stop()
    supervisor.shutdown()


app = FastAPI(
    title="gatewayd",
    description="Supervisor for the sandboxed agent gateway",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(GatewaydError)
async def gatewayd_error_handler(request: Request, exc: GatewaydError):
    if isinstance(exc, Unauthorized):
        # No internal detail on auth failures
        return JSONResponse({"error": "Invalid or missing token"}, status_code=401)
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)


# Health
@app.get("/sandbox-health")
async def sandbox_health():
    """Liveness of the supervisor itself."""
    return {
        "status": "ok",
        "service": "gatewayd",
        "gateway_port": config.gateway_port,
    }


# Gateway control
@app.get("/api/status")
def get_status():
    """Whether the gateway process exists and accepts connections."""
    return supervisor.status()


@app.post("/api/restart")
def restart_gateway(token: Optional[str] = Query(None)):
    """Kill and relaunch the gateway. Returns before the new instance is healthy."""
    previous_pid, job = supervisor.schedule_restart(token)
    gateway_monitor.crash_restarts = 0

    response = {
        "success": True,
        "message": (
            "Gateway process killed, new instance starting..."
            if previous_pid
            else "No existing process found, starting new instance..."
        ),
        "jobId": job.id,
    }
    if previous_pid:
        response["previousProcessId"] = previous_pid
    return response


# Sessions
@app.get("/api/admin/sessions")
def list_sessions(active: Optional[int] = Query(None, ge=1, description="Only sessions active within N minutes")):
    """List gateway sessions."""
    return session_store.list_sessions(active)


@app.get("/api/admin/sessions/{session_key}/history")
def get_session_history(
    session_key: str,
    limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=500),
):
    """Most recent messages of a session."""
    try:
        return session_store.get_history(session_key, limit)
    except SessionNotFound:
        return JSONResponse({"error": "Session not found"}, status_code=404)


# Jobs
@app.get("/api/jobs")
async def list_jobs(kind: Optional[str] = None, status: Optional[str] = None):
    """List background jobs (boot, restart)."""
    filter_status = None
    if status:
        try:
            filter_status = JobStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")

    jobs = job_manager.recent(kind, filter_status)
    return [j.to_dict() for j in jobs]


@app.get("/api/jobs/{job_id}")
async def get_job(job_id: str):
    """Get a specific job by ID."""
    job = job_manager.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found")
    return job.to_dict()


# Lifecycle events
@app.get("/api/events")
def list_events(
    kind: Optional[str] = Query(None, description="Filter by kind: launch, kill, restart, ..."),
    limit: int = Query(100, ge=1, le=1000),
):
    """Recent supervisor lifecycle events."""
    query = LifecycleEvent.select()
    if kind:
        query = query.where(LifecycleEvent.kind == kind)
    events = query.order_by(LifecycleEvent.timestamp.desc(), LifecycleEvent.id.desc()).limit(limit)
    return [e.to_dict() for e in events]
