# User value: This endpoint imports an employee spreadsheet and reports each bad row by number so users fix only what failed.
from fastapi import APIRouter, Depends, File, UploadFile

from routes.uploads import get_upload_size_bytes
from schemas.responses import BatchResultResponse
from services.bulk_import import ensure_csv_size
from services.pipeline import DocumentPipeline, get_pipeline
from utils.stage_logging import log_stage

router = APIRouter(prefix="/employees", tags=["employees"])


@router.post("/bulk-import", response_model=BatchResultResponse)
async def bulk_import(file: UploadFile = File(...), pipeline: DocumentPipeline = Depends(get_pipeline)):
    size_bytes = get_upload_size_bytes(file.file)
    ensure_csv_size(size_bytes)
    log_stage(entity_id=file.filename or "bulk-import", stage="BULK_IMPORT", event="STARTED", size_bytes=size_bytes)
    result = await pipeline.bulk_import(await file.read())
    log_stage(
        entity_id=file.filename or "bulk-import",
        stage="BULK_IMPORT",
        event="COMPLETED",
        succeeded=result.succeeded_count,
        failed=result.failed_count,
    )
    return BatchResultResponse.from_result(result)
