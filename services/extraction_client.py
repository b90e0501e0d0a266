# User value: This file starts extraction for a stored document and reads back its progress so users see recognised fields as soon as they are ready.
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from config import EXTRACTION_SERVICE_URL
from schemas.models import ExtractedField, ExtractionResult
from schemas.pipeline_contract import EXTRACTION_PENDING, EXTRACTION_RESULT_STATES, EXTRACTION_STATES
from services.confidence import overall_confidence
from services.document_types import detect_document_type
from services.service_http import ServiceHttpClient, is_transient_status, response_message, unwrap_data
from utils.errors import ExtractionServiceError

logger = logging.getLogger("api.extraction")


@dataclass(frozen=True)
class JobSnapshot:
    state: str
    result: Optional[ExtractionResult] = None
    error: Optional[str] = None


def parse_result(data: dict) -> ExtractionResult:
    fields = tuple(ExtractedField.from_dict(f) for f in data.get("fields") or [] if isinstance(f, dict))
    raw_text = str(data.get("rawText") or data.get("raw_text") or "")
    document_type = str(data.get("documentType") or data.get("document_type") or "").strip().lower()
    if not document_type or document_type == "unknown":
        document_type = detect_document_type(fields, raw_text)
    return ExtractionResult(
        fields=fields,
        raw_text=raw_text,
        document_type=document_type,
        overall_confidence=overall_confidence(fields),
    )


class ExtractionClient(ServiceHttpClient):
    service_name = "extraction"

    def __init__(self, base_url: str = EXTRACTION_SERVICE_URL, **kwargs) -> None:
        super().__init__(base_url, **kwargs)

    async def _call(self, method: str, path: str, *, json: dict | None = None) -> httpx.Response:
        try:
            return await self._send(method, path, json=json)
        except httpx.HTTPError as exc:
            raise ExtractionServiceError(f"Extraction service unreachable: {exc.__class__.__name__}") from exc

    def _raise_for(self, response: httpx.Response) -> None:
        raise ExtractionServiceError(
            response_message(response, f"Extraction service returned HTTP {response.status_code}"),
            transient=is_transient_status(response.status_code),
            http_status=response.status_code,
        )

    async def submit_job(self, document_id: str) -> str:
        response = await self._call("POST", "/ocr/jobs", json={"documentId": document_id})
        if not response.is_success:
            self._raise_for(response)
        try:
            data = unwrap_data(response.json())
        except ValueError as exc:
            raise ExtractionServiceError("Extraction service returned a malformed submit response") from exc
        job_id = data.get("jobId") or data.get("id")
        if not job_id:
            raise ExtractionServiceError("Extraction service did not return a job id", transient=False)
        return str(job_id)

    # User value: reads one status snapshot; a job the service does not know yet reads as pending rather than failed.
    async def poll_job(self, job_id: str) -> JobSnapshot:
        response = await self._call("GET", f"/ocr/jobs/{job_id}")
        if response.status_code == 404:
            return JobSnapshot(state=EXTRACTION_PENDING)
        if not response.is_success:
            self._raise_for(response)
        try:
            data = unwrap_data(response.json())
        except ValueError as exc:
            raise ExtractionServiceError("Extraction service returned a malformed status") from exc

        state = str(data.get("status") or data.get("state") or EXTRACTION_PENDING).strip().lower()
        if state not in EXTRACTION_STATES:
            logger.warning("extraction_unknown_state job_id=%s state=%s", job_id, state)
            state = EXTRACTION_PENDING
        result = parse_result(data) if state in EXTRACTION_RESULT_STATES else None
        error = data.get("error") or data.get("errorMessage")
        return JobSnapshot(state=state, result=result, error=str(error) if error else None)
