"""Document batch processing service - FastAPI application."""

import logging
from contextlib import asynccontextmanager
from typing import Mapping, Optional, Union

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from docqueue.api.v1 import health as health_api
from docqueue.api.v1 import jobs as jobs_api
from docqueue.api.v1.health import router as health_root_router
from docqueue.api.v1.router import v1_router
from docqueue.config import Settings, settings as default_settings
from docqueue.events.hub import EventHub
from docqueue.jobs.in_process_queue import BatchProcessingQueue
from docqueue.jobs.retry import ProcessFn
from docqueue.logging_config import configure_logging
from docqueue.processors.analysis_service import build_registry
from docqueue.processors.registry import ProcessorRegistry

logger = logging.getLogger(__name__)


def create_app(
    processors: Optional[Union[ProcessorRegistry, Mapping[str, ProcessFn]]] = None,
    config: Optional[Settings] = None,
) -> FastAPI:
    """Build the service.

    processors: a ProcessorRegistry, or JobType -> process function. When
        omitted, every job type is served by the external analysis service at
        ``analysis_service_url``. A registry passed in is owned by the caller.
    """
    config = config or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        configure_logging(config.log_level)
        logger.info("Starting document batch queue on port %d", config.service_port)

        client = None
        registry = processors if isinstance(processors, ProcessorRegistry) else None
        if processors is None:
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(config.analysis_request_timeout_s, connect=5.0)
            )
            registry = build_registry(client, config)
            logger.info("Analysis service: %s", config.analysis_service_url)
        job_processors = registry.as_mapping() if registry is not None else processors

        hub = EventHub(buffer_size=config.event_subscriber_buffer)
        queue = BatchProcessingQueue(job_processors, publish=hub.publish, config=config)
        await queue.start()

        # Wire queue and event hub into API endpoints
        jobs_api.set_dispatcher(queue)
        jobs_api.set_event_hub(hub)
        health_api.set_dispatcher(queue)
        health_api.set_registry(registry)
        app.state.queue = queue
        app.state.event_hub = hub

        yield

        # Shutdown
        logger.info("Shutting down document batch queue")
        await queue.stop()
        if client is not None:
            await client.aclose()
        jobs_api.set_dispatcher(None)
        jobs_api.set_event_hub(None)
        health_api.set_dispatcher(None)
        health_api.set_registry(None)

    app = FastAPI(
        title="Document Batch Processing Queue",
        description="Concurrent batch document analysis with retries, timeouts and live progress",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount routers
    app.include_router(health_root_router, tags=["health"])  # GET /health at root
    app.include_router(v1_router)  # All /api/v1/* endpoints
    return app


app = create_app()
