"""Batch job API: submit batches, poll status, cancel, stream progress."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from docqueue.jobs.errors import (
    JobAlreadyTerminalError,
    JobNotFoundError,
    JobValidationError,
)
from docqueue.jobs.models import JobRecord, JobType

logger = logging.getLogger(__name__)
router = APIRouter()

# These will be set by main.py during lifespan
_dispatcher = None
_event_hub = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def set_event_hub(hub):
    global _event_hub
    _event_hub = hub


class JobSubmitRequest(BaseModel):
    document_ids: List[str]
    type: JobType = JobType.FULL_ANALYSIS
    options: Dict[str, Any] = {}


class JobSubmitResponse(BaseModel):
    job_id: str
    status: str
    message: str


def _require_dispatcher():
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")
    return _dispatcher


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def job_to_response(job: JobRecord, include_results: bool = True) -> Dict[str, Any]:
    response = {
        "job_id": job.id,
        "type": job.type.value,
        "status": job.status.value,
        "progress": {
            "percent": job.progress,
            "processed_documents": job.processed_documents,
            "failed_documents": job.failed_documents,
            "total_documents": job.total_documents,
            "estimated_time_remaining_ms": job.estimated_time_remaining_ms,
        },
        "options": job.options.model_dump(),
        "created_at": _iso(job.created_at),
        "started_at": _iso(job.started_at),
        "completed_at": _iso(job.completed_at),
    }
    if include_results:
        response["document_ids"] = job.document_ids
        response["results"] = [r.model_dump(mode="json") for r in job.results]
        response["errors"] = [e.model_dump(mode="json") for e in job.errors]
    if job.error:
        response["error"] = job.error
    return response


@router.post("/jobs", response_model=JobSubmitResponse, status_code=202)
async def submit_job(request: JobSubmitRequest):
    """Submit a batch of documents for processing."""
    dispatcher = _require_dispatcher()
    try:
        job_id = await dispatcher.create_job(
            request.document_ids, request.type, request.options or None
        )
    except JobValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return JobSubmitResponse(
        job_id=job_id,
        status="PENDING",
        message="Job submitted successfully. Poll GET /api/v1/jobs/{id} for status.",
    )


@router.get("/jobs")
async def list_jobs():
    """List all jobs still retained by the queue."""
    dispatcher = _require_dispatcher()
    jobs = await dispatcher.list_jobs()
    return {"jobs": [job_to_response(job, include_results=False) for job in jobs]}


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str):
    """Get the current status and results of a job."""
    dispatcher = _require_dispatcher()
    try:
        job = await dispatcher.get_job_status(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_to_response(job)


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str):
    """Stop dispatching further documents of a job."""
    dispatcher = _require_dispatcher()
    try:
        await dispatcher.cancel_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobAlreadyTerminalError as e:
        raise HTTPException(status_code=409, detail=str(e))

    job = await dispatcher.get_job_status(job_id)
    return {"job_id": job_id, "status": job.status.value, "message": "Cancellation requested"}


@router.websocket("/jobs/stream")
async def stream_progress(websocket: WebSocket, job_id: Optional[str] = None):
    """Push batch.progress / batch.completed / batch.failed / batch.cancelled events.

    Optional ``job_id`` query parameter limits the stream to one job.
    """
    if _event_hub is None:
        await websocket.close(code=1011)
        return

    await websocket.accept()
    sub = _event_hub.subscribe(job_id=job_id)
    logger.info("Progress stream connected job_id=%s client=%s", job_id, websocket.client)
    try:
        await websocket.send_json({"type": "connected", "data": {"job_id": job_id}})
        while True:
            event = await sub.get()
            await websocket.send_json(event.to_message())
    except WebSocketDisconnect:
        logger.info("Progress stream disconnected job_id=%s", job_id)
    finally:
        _event_hub.unsubscribe(sub)
