# User value: This endpoint group lets users upload one or many documents, watch their status, and retry or cancel without starting over.
import logging
import os
from dataclasses import replace
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from schemas.models import UploadPayload
from schemas.responses import BatchResultResponse, UploadItemResponse
from services.pipeline import DocumentPipeline, get_pipeline
from utils.errors import ValidationError
from utils.metrics import incr

router = APIRouter(prefix="/uploads", tags=["uploads"])
logger = logging.getLogger("api.upload")


def get_upload_size_bytes(file_obj) -> int:
    pos = file_obj.tell()
    file_obj.seek(0, os.SEEK_END)
    size = file_obj.tell()
    file_obj.seek(pos, os.SEEK_SET)
    return int(size)


# User value: refuses oversized or disallowed files from their size and name alone, so rejected bytes are never read into memory.
async def read_payload(file: UploadFile, *, category: str, pipeline: DocumentPipeline) -> UploadPayload:
    payload = UploadPayload(
        filename=file.filename or "",
        content_type=file.content_type or "",
        size_bytes=get_upload_size_bytes(file.file),
    )
    try:
        pipeline.uploads.check(payload, category)
    except ValidationError:
        # the orchestrator rejects it again and records the failure on the item
        return payload
    return replace(payload, data=await file.read())


@router.post("", response_model=UploadItemResponse)
# User value: uploads one file end to end and answers with the stored document id or the reason it failed.
async def upload_document(
    file: UploadFile = File(...),
    category: str = Form(...),
    item_id: Optional[str] = Form(default=None),
    pipeline: DocumentPipeline = Depends(get_pipeline),
):
    payload = await read_payload(file, category=category, pipeline=pipeline)
    item = await pipeline.upload(payload, category=category, item_id=item_id)
    return UploadItemResponse.from_item(item)


@router.post("/batch", response_model=BatchResultResponse)
async def upload_batch(
    files: List[UploadFile] = File(...),
    category: str = Form(...),
    pipeline: DocumentPipeline = Depends(get_pipeline),
):
    payloads = [await read_payload(f, category=category, pipeline=pipeline) for f in files]
    incr("api_batch_upload_requests_total")
    result = await pipeline.run_batch_upload(payloads, category=category)
    return BatchResultResponse.from_result(
        result,
        outcome=lambda item: UploadItemResponse.from_item(item).model_dump(),
    )


@router.get("/{item_id}", response_model=UploadItemResponse)
async def get_upload(item_id: str, pipeline: DocumentPipeline = Depends(get_pipeline)):
    return UploadItemResponse.from_item(await pipeline.get_upload(item_id))


@router.post("/{item_id}/retry", response_model=UploadItemResponse)
# User value: resumes a failed upload; the file is only needed again when bytes must be re-sent.
async def retry_upload(
    item_id: str,
    file: Optional[UploadFile] = File(default=None),
    pipeline: DocumentPipeline = Depends(get_pipeline),
):
    payload = None
    if file is not None:
        item = await pipeline.get_upload(item_id)
        payload = await read_payload(file, category=item.category, pipeline=pipeline)
    item = await pipeline.retry_upload(item_id, payload=payload)
    return UploadItemResponse.from_item(item)


@router.post("/{item_id}/cancel", response_model=UploadItemResponse)
async def cancel_upload(item_id: str, pipeline: DocumentPipeline = Depends(get_pipeline)):
    return UploadItemResponse.from_item(await pipeline.cancel_upload(item_id))
