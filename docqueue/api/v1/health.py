"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter

router = APIRouter()

# Set by main.py during lifespan
_dispatcher = None
_registry = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def set_registry(registry):
    global _registry
    _registry = registry


@router.get("/health")
async def health_check():
    """Service health, queue counters and registered processors."""
    jobs = await _dispatcher.list_jobs() if _dispatcher is not None else []
    by_status = {}
    for job in jobs:
        by_status[job.status.value] = by_status.get(job.status.value, 0) + 1

    processors = []
    if _registry is not None:
        for spec in _registry.list_types():
            processors.append({
                "job_type": spec.job_type.value,
                "name": spec.name,
                "description": spec.description,
                **spec.extra,
            })

    return {
        "status": "healthy" if _dispatcher is not None else "starting",
        "jobs_retained": len(jobs),
        "jobs_by_status": by_status,
        "processors": processors,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
