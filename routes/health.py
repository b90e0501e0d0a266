from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from services.pipeline import DocumentPipeline, get_pipeline
from utils.metrics import snapshot

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(pipeline: DocumentPipeline = Depends(get_pipeline)):
    store = await pipeline.health()
    body = {"status": "OK" if store.get("ok") else "DEGRADED", "store": store}
    return JSONResponse(status_code=200 if store.get("ok") else 503, content=body)


@router.get("/metrics")
def metrics():
    return snapshot()
