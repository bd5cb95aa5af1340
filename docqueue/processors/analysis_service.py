"""Processors backed by the external document analysis service."""

import logging
from typing import Any, Dict, Optional

import httpx

from docqueue.config import Settings, settings as default_settings
from docqueue.jobs.errors import ProcessingError
from docqueue.jobs.models import JobType
from docqueue.processors.base import DocumentProcessor, ProcessorSpec
from docqueue.processors.registry import ProcessorRegistry

logger = logging.getLogger(__name__)

# Service endpoint per job type; batch analysis reuses the full analysis endpoint
ENDPOINTS: Dict[JobType, str] = {
    JobType.QUALITY_CHECK: "quality",
    JobType.DATA_EXTRACTION: "extract",
    JobType.FULL_ANALYSIS: "analyze",
    JobType.BATCH_ANALYSIS: "analyze",
}


class AnalysisServiceProcessor(DocumentProcessor):
    """POSTs a document id to the analysis service and returns its JSON body."""

    def __init__(
        self,
        job_type: JobType,
        base_url: str,
        timeout_s: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._job_type = JobType(job_type)
        self._base_url = base_url.rstrip("/")
        self._path = ENDPOINTS[self._job_type]
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s, connect=5.0))
        self._owns_client = client is None

    def spec(self) -> ProcessorSpec:
        return ProcessorSpec(
            job_type=self._job_type,
            name=f"analysis-service:{self._path}",
            description=f"POST {self._base_url}/{self._path}/{{document_id}}",
            extra={"endpoint": f"{self._base_url}/{self._path}", "method": "POST"},
        )

    async def process(self, document_id: str) -> Dict[str, Any]:
        url = f"{self._base_url}/{self._path}/{document_id}"
        try:
            res = await self._client.post(url)
        except httpx.RequestError as e:
            logger.error("analysis.request_error document_id=%s err=%s", document_id, e)
            raise ProcessingError(f"Analysis service request failed: {e}") from e

        if res.status_code >= 400:
            logger.error(
                "analysis.bad_status document_id=%s status=%d", document_id, res.status_code
            )
            raise ProcessingError(
                f"Analysis service returned {res.status_code} for document {document_id}"
            )

        try:
            body = res.json()
        except ValueError as e:
            raise ProcessingError(f"Analysis service returned invalid JSON: {e}") from e
        # Services wrap payloads as {"data": ...}
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_registry(
    client: httpx.AsyncClient, config: Optional[Settings] = None
) -> ProcessorRegistry:
    """Registry with an analysis-service processor for every job type.

    The processors share ``client``; the caller owns and closes it.
    """
    config = config or default_settings
    registry = ProcessorRegistry()
    for job_type in JobType:
        registry.register(
            AnalysisServiceProcessor(job_type, config.analysis_service_url, client=client)
        )
    return registry
