# User value: This endpoint group runs extraction for a stored document and lets a reviewer inspect, correct, approve or reject what came back.
from typing import Optional

from fastapi import APIRouter, Depends

from auth import get_reviewer
from schemas.requests import ApproveRequest, FieldEditsRequest, ProcessDocumentRequest, RejectRequest
from schemas.responses import AutoPopulateResponse, ReviewRecordResponse
from services.pipeline import DocumentPipeline, get_pipeline
from services.review_state_machine import review_fields

router = APIRouter(tags=["reviews"])


def _review_response(record) -> ReviewRecordResponse:
    return ReviewRecordResponse.from_record(record, review_fields(record))


@router.post("/documents/{document_id}/process", response_model=ReviewRecordResponse)
# User value: starts extraction and waits within a bounded budget; a slow job comes back as a retryable timeout, never a failure.
async def process_document(
    document_id: str,
    req: Optional[ProcessDocumentRequest] = None,
    pipeline: DocumentPipeline = Depends(get_pipeline),
):
    req = req or ProcessDocumentRequest()
    record = await pipeline.process_document(document_id, max_attempts=req.max_attempts, interval_ms=req.interval_ms)
    return _review_response(record)


@router.get("/documents/{document_id}/reviews", response_model=list[ReviewRecordResponse])
async def document_reviews(document_id: str, pipeline: DocumentPipeline = Depends(get_pipeline)):
    return [_review_response(r) for r in await pipeline.review_history(document_id)]


@router.get("/reviews/{review_id}", response_model=ReviewRecordResponse)
async def get_review(review_id: str, pipeline: DocumentPipeline = Depends(get_pipeline)):
    return _review_response(await pipeline.get_review(review_id))


@router.put("/reviews/{review_id}/fields", response_model=ReviewRecordResponse)
async def edit_fields(
    review_id: str,
    req: FieldEditsRequest,
    reviewer: str = Depends(get_reviewer),
    pipeline: DocumentPipeline = Depends(get_pipeline),
):
    return _review_response(await pipeline.edit_fields(review_id, req.edits, editor=reviewer))


@router.post("/reviews/{review_id}/approve", response_model=ReviewRecordResponse)
async def approve_review(
    review_id: str,
    req: Optional[ApproveRequest] = None,
    reviewer: str = Depends(get_reviewer),
    pipeline: DocumentPipeline = Depends(get_pipeline),
):
    req = req or ApproveRequest()
    record = await pipeline.approve(review_id, reviewer=reviewer, edits=req.edits, override=req.override)
    return _review_response(record)


@router.post("/reviews/{review_id}/reject", response_model=ReviewRecordResponse)
async def reject_review(
    review_id: str,
    req: RejectRequest,
    reviewer: str = Depends(get_reviewer),
    pipeline: DocumentPipeline = Depends(get_pipeline),
):
    return _review_response(await pipeline.reject(review_id, reviewer=reviewer, reason=req.reason))


@router.post("/reviews/{review_id}/retry", response_model=ReviewRecordResponse)
async def retry_review(
    review_id: str,
    req: Optional[ProcessDocumentRequest] = None,
    pipeline: DocumentPipeline = Depends(get_pipeline),
):
    req = req or ProcessDocumentRequest()
    record = await pipeline.retry_review(review_id, max_attempts=req.max_attempts, interval_ms=req.interval_ms)
    return _review_response(record)


@router.get("/reviews/{review_id}/auto-populate", response_model=AutoPopulateResponse)
# User value: offers profile values from an approved document; unknown document types simply get no suggestion.
async def auto_populate(review_id: str, pipeline: DocumentPipeline = Depends(get_pipeline)):
    suggestion = await pipeline.auto_populate(review_id)
    record = await pipeline.get_review(review_id)
    return AutoPopulateResponse.from_suggestion(review_id, record.document_type, suggestion)
