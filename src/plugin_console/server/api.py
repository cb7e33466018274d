import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from plugin_console.config import settings
from plugin_console.db.access import get_engine
from plugin_console.db.setup import initialize_database
from plugin_console.engine.queue import JobQueue
from plugin_console.engine.worker import PluginJobWorker
from plugin_console.plugins.errors import (
    InvalidJobStateError,
    NotFoundError,
    PluginManagerError,
    ValidationError,
)
from plugin_console.plugins.manager import PluginManager

logger = logging.getLogger(__name__)


# --- Dependencies (overridable in tests) ---

def get_job_queue(request: Request) -> JobQueue:
    return request.app.state.job_queue


def get_manager(request: Request) -> PluginManager:
    return request.app.state.manager


def get_worker(request: Request) -> Optional[PluginJobWorker]:
    return getattr(request.app.state, "worker", None)


# --- Models ---

class JobRequest(BaseModel):
    action: str
    name: Optional[str] = None
    url: Optional[str] = None
    options: Optional[Dict[str, Any]] = None


# --- Error mapping ---

def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def _on_request_validation(request: Request, exc: RequestValidationError):
    return _error(400, f"Invalid request: {exc.errors()}")


async def _on_plugin_error(request: Request, exc: PluginManagerError):
    if isinstance(exc, NotFoundError):
        return _error(404, str(exc))
    if isinstance(exc, (ValidationError, InvalidJobStateError)):
        return _error(400, str(exc))
    logger.error(f"Unhandled plugin error on {request.url.path}: {exc}", exc_info=True)
    return _error(500, str(exc))


# --- Endpoints ---

def submit_job(req: JobRequest, queue: JobQueue = Depends(get_job_queue)):
    """Queue a plugin operation; the worker picks it up in submission order."""
    job = queue.create_job(req.action, name=req.name, url=req.url, options=req.options)
    return JSONResponse(status_code=201, content={"success": True, "job": job.to_dict()})


def list_jobs(
    status: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    queue: JobQueue = Depends(get_job_queue),
    worker: Optional[PluginJobWorker] = Depends(get_worker),
):
    jobs = queue.get_jobs(status=status, limit=limit)
    return {
        "success": True,
        "jobs": [job.to_dict() for job in jobs],
        "currentJobId": worker.get_current_job_id() if worker else None,
    }


def get_job(job_id: str, queue: JobQueue = Depends(get_job_queue)):
    return {"success": True, "job": queue.get_job(job_id).to_dict()}


def cancel_job(
    job_id: str,
    queue: JobQueue = Depends(get_job_queue),
    worker: Optional[PluginJobWorker] = Depends(get_worker),
):
    """
    Cancel a queued job. A running job cannot be cancelled; the worker is
    asked to abort it at its next checkpoint and the request still fails.
    """
    try:
        job = queue.cancel_job(job_id)
    except InvalidJobStateError:
        if worker is not None:
            worker.request_cancel(job_id)
        raise
    return {"success": True, "job": job.to_dict()}


def list_plugins(manager: PluginManager = Depends(get_manager)):
    return {"success": True, "plugins": manager.list_plugins()}


def health(
    request: Request,
    manager: PluginManager = Depends(get_manager),
    worker: Optional[PluginJobWorker] = Depends(get_worker),
):
    report = manager.check_health()
    checks = report["checks"]
    if worker is None and request.app.state.external_worker:
        checks["jobWorker"] = {
            "status": "ok",
            "message": "Jobs are processed by a separate worker process",
            "external": True,
        }
    elif worker is None:
        checks["jobWorker"] = {"status": "error", "message": "Job worker not configured"}
    elif not worker.is_alive():
        checks["jobWorker"] = {"status": "error", "message": "Job worker is not running"}
    else:
        checks["jobWorker"] = {
            "status": "ok",
            "message": "Processing a job" if worker.is_processing() else "Idle",
            "currentJobId": worker.get_current_job_id(),
        }

    healthy = all(check["status"] == "ok" for check in checks.values())
    body = {"success": healthy, "healthy": healthy, "checks": checks}
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def history(
    limit: Optional[int] = Query(None, ge=1),
    manager: PluginManager = Depends(get_manager),
):
    return {"success": True, "history": manager.get_history(limit)}


def create_app(
    job_queue: Optional[JobQueue] = None,
    manager: Optional[PluginManager] = None,
    worker: Optional[PluginJobWorker] = None,
    app_settings=None,
    embedded_worker: bool = True,
) -> FastAPI:
    """
    Build the API.

    With explicit components the app just serves them (tests). Otherwise the
    components are built from `app_settings` on startup and, with
    `embedded_worker`, the worker thread runs for the lifetime of the app.
    Without it the app only enqueues and reads jobs; exactly one
    `plugin-console worker` process must then be running against the same
    database and plugins directory.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = job_queue is None
        if owned:
            cfg = app_settings or settings
            engine = get_engine(cfg.database)
            initialize_database(engine)
            app.state.job_queue = JobQueue(engine)
            app.state.manager = PluginManager.from_settings(cfg, engine)
            if embedded_worker:
                app.state.worker = PluginJobWorker(
                    app.state.job_queue,
                    app.state.manager,
                    poll_interval=cfg.worker.poll_interval_seconds,
                    job_retention=cfg.worker.job_retention,
                )
                app.state.worker.start()
        try:
            yield
        finally:
            if owned:
                if app.state.worker is not None:
                    app.state.worker.stop()
                app.state.manager.close()

    app = FastAPI(title="Plugin Console API", version="0.1.0", lifespan=lifespan)
    app.state.job_queue = job_queue
    app.state.manager = manager
    app.state.worker = worker
    app.state.external_worker = not embedded_worker

    app.add_exception_handler(RequestValidationError, _on_request_validation)
    app.add_exception_handler(PluginManagerError, _on_plugin_error)

    app.add_api_route("/plugins/job", submit_job, methods=["POST"], status_code=201)
    app.add_api_route("/plugins/jobs", list_jobs, methods=["GET"])
    app.add_api_route("/plugins/jobs/{job_id}", get_job, methods=["GET"])
    app.add_api_route("/plugins/job/{job_id}/cancel", cancel_job, methods=["PUT"])
    app.add_api_route("/plugins/list", list_plugins, methods=["GET"])
    app.add_api_route("/plugins/health", health, methods=["GET"])
    app.add_api_route("/plugins/history", history, methods=["GET"])
    return app
