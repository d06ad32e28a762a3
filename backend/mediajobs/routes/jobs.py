"""
Job endpoints: HTTP adapter over JobCommands.

Records are returned in their camelCase wire form. Job errors map to:
    ValidationError          -> 422
    NotFoundError            -> 404
    InvalidTransitionError,
    InvalidStateError        -> 409

/jobs/events is a WebSocket pushing every bus event as JSON, optionally
filtered to one job with ?jobId=...
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..commands import JobCommands
from ..jobs.errors import (
    InvalidStateError,
    InvalidTransitionError,
    JobError,
    NotFoundError,
    ValidationError,
)
from ..jobs.events import JobEvent
from ..jobs.models import JobStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


class CreateJobRequest(BaseModel):
    """Request body for job creation."""

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    url: str
    # Root under which the per-job directory is created; server default if omitted
    output_dir: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


def _commands(request: Request) -> JobCommands:
    return request.app.state.job_commands


def _http_error(e: JobError) -> HTTPException:
    """Translate a job error into the matching HTTP status."""
    if isinstance(e, ValidationError):
        detail: Dict[str, Any] = {"message": e.message, "field": e.field}
        if e.details:
            detail["details"] = e.details
        return HTTPException(status_code=422, detail=detail)
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InvalidTransitionError, InvalidStateError)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


@router.post("", status_code=201)
async def create_job(body: CreateJobRequest, request: Request):
    """Create a job and start its pipeline."""
    payload: Dict[str, Any] = {"url": body.url, "options": body.options}
    if body.output_dir:
        payload["outputDir"] = body.output_dir

    try:
        job = _commands(request).create(payload)
    except JobError as e:
        raise _http_error(e)

    return {"jobId": job.id, "job": job.to_wire()}


@router.get("")
async def list_jobs(request: Request, status: Optional[JobStatus] = None):
    """List jobs in creation order, optionally filtered by status."""
    jobs = _commands(request).list(status)
    return {"jobs": [job.to_wire() for job in jobs], "count": len(jobs)}


@router.get("/stats")
async def job_stats(request: Request):
    return _commands(request).stats()


@router.get("/{job_id}")
async def get_job(job_id: str, request: Request):
    try:
        return _commands(request).get(job_id).to_wire()
    except JobError as e:
        raise _http_error(e)


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str, request: Request):
    try:
        job = _commands(request).cancel(job_id)
    except JobError as e:
        raise _http_error(e)
    logger.info(f"[API] Job {job_id} cancelled")
    return job.to_wire()


@router.post("/{job_id}/retry")
async def retry_job(job_id: str, request: Request):
    try:
        job = _commands(request).retry(job_id)
    except JobError as e:
        raise _http_error(e)
    logger.info(f"[API] Job {job_id} retried")
    return job.to_wire()


@router.delete("/{job_id}")
async def cleanup_job(
    job_id: str,
    request: Request,
    remove_files: bool = Query(True, alias="removeFiles"),
):
    """Remove a finished job and, unless removeFiles=false, its directory."""
    try:
        job = _commands(request).cleanup(job_id, remove_files=remove_files)
    except JobError as e:
        raise _http_error(e)
    return {"jobId": job.id, "removed": True}


@router.post("/{job_id}/open")
async def open_job_directory(job_id: str, request: Request):
    try:
        path = _commands(request).open_directory(job_id)
    except JobError as e:
        raise _http_error(e)
    except OSError as e:
        raise HTTPException(status_code=500, detail=f"Failed to open directory: {e}")
    return {"jobId": job_id, "path": str(path)}


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@router.websocket("/events")
async def job_events(websocket: WebSocket):
    """Stream job events until the client disconnects."""
    loop = asyncio.get_running_loop()
    outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
    job_filter = websocket.query_params.get("jobId")

    def forward(event: JobEvent) -> None:
        if job_filter and event.job_id != job_filter:
            return
        # Publishers may run on any thread
        loop.call_soon_threadsafe(outbox.put_nowait, event.to_wire())

    # Subscribed before accepting, so nothing published after the handshake is missed
    subscription = websocket.app.state.job_queue.subscribe(forward)
    disconnected: Optional[asyncio.Future] = None
    try:
        await websocket.accept()
        disconnected = asyncio.ensure_future(_wait_for_disconnect(websocket))
        while True:
            next_message = asyncio.ensure_future(outbox.get())
            done, _ = await asyncio.wait(
                {next_message, disconnected},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if next_message not in done:
                next_message.cancel()
                break
            await websocket.send_json(next_message.result())
    except WebSocketDisconnect:
        pass
    finally:
        subscription.unsubscribe()
        if disconnected is not None:
            disconnected.cancel()
        logger.debug("[API] Event stream closed")
