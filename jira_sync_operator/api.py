"""
FastAPI application: sync intake and read-only job views.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict, List, NoReturn, Optional

import structlog
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import get_settings
from .controller.loop import ControlLoop, build_control_loop
from .converter import BatchSyncIntent, JQLSyncIntent, ResourceConverter, SingleSyncIntent
from .errors import ConflictError, ErrorKind, NotFoundError, SyncError, ValidationError, summarize_error
from .jobs.types import JobFilter, JobKind, JobStatus
from .resources.models import SyncResource

logger = structlog.get_logger()

# Global control loop instance
control_loop: Optional[ControlLoop] = None

settings = get_settings()

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.CONNECTION: 502,
    ErrorKind.CLUSTER_API: 502,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.RESOURCE: 503,
    ErrorKind.TEMPLATE: 500,
    ErrorKind.EXECUTION: 500,
    ErrorKind.INTERNAL: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    global control_loop
    logger.info("Starting JIRA Sync Operator API")

    try:
        if control_loop is None:
            control_loop = build_control_loop(settings)
        if settings.api_run_controller:
            await control_loop.start()
            logger.info("Control loop started", operator=control_loop.reconciler.operator_id)
    except Exception as e:
        logger.error(f"Failed to start application: {e}")
        raise

    yield

    logger.info("Shutting down JIRA Sync Operator API")
    if control_loop:
        await control_loop.stop()
    logger.info("Shutdown complete")


app = FastAPI(
    title="JIRA Sync Operator",
    description="Submit issue-tracker to Git syncs and inspect their jobs",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _loop() -> ControlLoop:
    if not control_loop:
        raise HTTPException(status_code=503, detail="Control loop not initialized")
    return control_loop


def _fail(err: SyncError) -> NoReturn:
    """Re-raise a SyncError as an HTTP error with a summarized body."""
    if isinstance(err, NotFoundError):
        status_code = 404
    elif isinstance(err, ConflictError):
        status_code = 409
    else:
        status_code = STATUS_BY_KIND[err.kind]
    error = summarize_error(err)
    if isinstance(err, ValidationError):
        error["code"] = err.code
        error["field"] = err.field
    raise HTTPException(status_code=status_code, detail={"error": error})


# Health and Info Endpoints
@app.get("/healthz", tags=["system"])
def healthz() -> dict[str, str]:
    """Liveness: the process is up."""
    return {"status": "ok"}


@app.get("/readyz", tags=["system"])
async def readyz() -> Dict[str, Any]:
    """Readiness: the cluster answers and the control loop is running."""
    loop = _loop()
    health = await loop.reconciler.orchestrator.health()
    body = {
        "status": "ok" if health.healthy else "unavailable",
        "health": health.model_dump(mode="json"),
        "controller": loop.status(),
    }
    if not health.healthy:
        raise HTTPException(status_code=503, detail=body)
    return body


@app.get("/version", tags=["system"])
def version() -> dict[str, str]:
    """Return the version of the application."""
    return {"version": __version__}


# Sync Intake Endpoints
async def _create(resource: SyncResource) -> Dict[str, Any]:
    loop = _loop()
    try:
        created = await loop.store.create(resource)
    except SyncError as e:
        logger.warning("Failed to create sync resource", name=resource.metadata.name, error=e.message)
        _fail(e)

    logger.info(
        "Sync resource created",
        name=created.metadata.name,
        namespace=created.metadata.namespace,
        sync_type=created.spec.sync_type.value,
    )
    return {
        "name": created.metadata.name,
        "namespace": created.metadata.namespace,
        "syncType": created.spec.sync_type.value,
        "status": "accepted",
    }


def _converter() -> ResourceConverter:
    return ResourceConverter(namespace=settings.resource_namespace)


@app.post("/api/v1/sync/single", status_code=201, tags=["sync"])
async def submit_single_sync(intent: SingleSyncIntent) -> Dict[str, Any]:
    """Request a sync of one issue."""
    try:
        resource = _converter().convert_single(intent)
    except SyncError as e:
        _fail(e)
    return await _create(resource)


@app.post("/api/v1/sync/batch", status_code=201, tags=["sync"])
async def submit_batch_sync(intent: BatchSyncIntent) -> Dict[str, Any]:
    """Request a sync of up to 100 issues."""
    try:
        resource = _converter().convert_batch(intent)
    except SyncError as e:
        _fail(e)
    return await _create(resource)


@app.post("/api/v1/sync/jql", status_code=201, tags=["sync"])
async def submit_jql_sync(intent: JQLSyncIntent) -> Dict[str, Any]:
    """Request a sync of every issue a JQL query matches."""
    try:
        resource = _converter().convert_jql(intent)
    except SyncError as e:
        _fail(e)
    return await _create(resource)


@app.get("/api/v1/syncs", tags=["sync"])
async def list_syncs() -> List[Dict[str, Any]]:
    loop = _loop()
    resources = await loop.store.list(settings.resource_namespace)
    return [r.to_wire() for r in resources]


@app.get("/api/v1/syncs/{name}", tags=["sync"])
async def get_sync(name: str) -> Dict[str, Any]:
    loop = _loop()
    try:
        resource = await loop.store.get(settings.resource_namespace, name)
    except SyncError as e:
        _fail(e)
    return resource.to_wire()


# Job Endpoints
@app.get("/api/v1/jobs", tags=["jobs"])
async def list_jobs(
    kind: Optional[List[JobKind]] = Query(default=None),
    status: Optional[List[JobStatus]] = Query(default=None),
    limit: int = Query(default=0, ge=0),
    offset: int = Query(default=0, ge=0),
) -> List[Dict[str, Any]]:
    orchestrator = _loop().reconciler.orchestrator
    job_filter = JobFilter(kinds=kind or [], statuses=status or [], limit=limit, offset=offset)
    try:
        results = await orchestrator.list_jobs(job_filter)
    except SyncError as e:
        _fail(e)
    return [r.model_dump(mode="json") for r in results]


@app.get("/api/v1/jobs/{job_id}", tags=["jobs"])
async def get_job(job_id: str) -> Dict[str, Any]:
    orchestrator = _loop().reconciler.orchestrator
    try:
        result = await orchestrator.get_job(job_id)
    except SyncError as e:
        _fail(e)
    return result.model_dump(mode="json")


@app.get("/api/v1/queue", tags=["jobs"])
async def queue_status() -> Dict[str, Any]:
    orchestrator = _loop().reconciler.orchestrator
    try:
        status = await orchestrator.get_queue_status()
    except SyncError as e:
        _fail(e)
    return status.model_dump(mode="json")
