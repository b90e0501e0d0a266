# User value: This file wires upload, batching, extraction and review into one entry point so every route and script drives the same pipeline.
import asyncio
import logging
from datetime import timedelta
from typing import Callable, List, Optional, Sequence, Set

from config import REDIS_OWNER_TTL_SEC
from schemas.models import AutoPopulateSuggestion, BatchResult, ExtractionJob, ReviewRecord, UploadItem, UploadPayload
from schemas.pipeline_contract import (
    DELIVERY_DELIVERED,
    DELIVERY_FAILED,
    DELIVERY_SKIPPED,
    EXTRACTION_FAILED,
    POLL_OUTCOME_CANCELLED,
    POLL_OUTCOME_TIMEOUT,
    REVIEW_APPROVED,
    REVIEW_FAILED,
    REVIEW_PROCESSING,
    REVIEW_UNPROCESSED,
    UPLOAD_CANCELLED,
)
from services import auto_populate
from services.batch_coordinator import BatchCoordinator
from services.bulk_import import run_bulk_import
from services.extraction_poller import ExtractionJobPoller
from services.feature_flags import is_decision_delivery_enabled, is_redis_store_enabled
from services.profile_client import ProfileClient
from services.redis_client import get_redis_client, ping_redis
from services.review_state_machine import ReviewStateMachine
from services.stores import MemoryBackend, RedisBackend, ReviewRecordStore, UploadItemStore
from services.upload_orchestrator import ProgressCallback, UploadOrchestrator
from utils.errors import (
    ExtractionCancelledError,
    ExtractionFailedError,
    ExtractionTimeoutError,
    InvalidTransitionError,
    PipelineError,
    ProfileServiceError,
)
from utils.metrics import incr
from utils.stage_logging import log_stage

logger = logging.getLogger("api.pipeline")


def decision_payload(record: ReviewRecord, suggestion: Optional[AutoPopulateSuggestion]) -> dict:
    decision = record.decision
    payload = {
        "reviewId": record.review_id,
        "documentId": record.document_id,
        "documentType": record.document_type,
        "outcome": decision.outcome,
        "reviewer": decision.reviewer,
        "decidedAt": decision.decided_at.isoformat(),
        "reason": decision.reason,
        "overrideUsed": decision.override_used,
        "overallConfidence": record.overall_confidence,
        "fields": [
            {"key": f.key, "value": f.value, "confidence": f.confidence, "edited": f.edited} for f in decision.fields
        ],
    }
    if suggestion is not None:
        payload["autoPopulate"] = {"target": suggestion.target, "fields": suggestion.fields}
    return payload


class DocumentPipeline:
    def __init__(
        self,
        *,
        uploads: Optional[UploadOrchestrator] = None,
        coordinator: Optional[BatchCoordinator] = None,
        poller: Optional[ExtractionJobPoller] = None,
        reviews: Optional[ReviewStateMachine] = None,
        profile: Optional[ProfileClient] = None,
        redis_client=None,
        stale_processing_after: Optional[timedelta] = None,
    ) -> None:
        self.uploads = uploads or UploadOrchestrator()
        self.coordinator = coordinator or BatchCoordinator()
        self.poller = poller or ExtractionJobPoller()
        self.reviews = reviews or ReviewStateMachine()
        self.profile = profile or ProfileClient()
        self.redis_client = redis_client
        # reviews this process is polling right now
        self._processing: Set[str] = set()
        if stale_processing_after is None:
            # one full default poll window with no word from the poller
            stale_processing_after = timedelta(milliseconds=self.poller.max_attempts * max(self.poller.interval_ms, 1000))
        self.stale_processing_after = stale_processing_after

    # ---------------------------------------------------------
    # UPLOADS
    # ---------------------------------------------------------
    async def upload(
        self,
        payload: UploadPayload,
        *,
        category: str,
        item_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> UploadItem:
        return await self.uploads.submit(
            payload, category=category, item_id=item_id, on_progress=on_progress, cancel_event=cancel_event
        )

    # User value: uploads many files at once; one bad file fails alone while the rest still land.
    async def run_batch_upload(
        self,
        payloads: Sequence[UploadPayload],
        *,
        category: str,
        concurrency: Optional[int] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        async def upload_one(payload: UploadPayload, index: int, member_cancel: asyncio.Event) -> UploadItem:
            item = await self.uploads.submit(payload, category=category, cancel_event=member_cancel)
            if item.status == UPLOAD_CANCELLED:
                raise PipelineError("Upload cancelled", error_code="CANCELLED", item_id=item.item_id)
            return item

        return await self.coordinator.run_batch(
            list(payloads),
            upload_one,
            keys=[p.filename for p in payloads],
            concurrency=concurrency,
            on_progress=on_progress,
            cancel_event=cancel_event,
        )

    async def retry_upload(
        self,
        item_id: str,
        *,
        payload: Optional[UploadPayload] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadItem:
        return await self.uploads.retry(item_id, payload=payload, on_progress=on_progress)

    async def cancel_upload(self, item_id: str) -> UploadItem:
        return await self.uploads.cancel(item_id)

    async def get_upload(self, item_id: str) -> UploadItem:
        return await self.uploads.get(item_id)

    async def bulk_import(self, data: bytes, *, concurrency: Optional[int] = None) -> BatchResult:
        return await run_bulk_import(data, coordinator=self.coordinator, profile=self.profile, concurrency=concurrency)

    # ---------------------------------------------------------
    # EXTRACTION
    # ---------------------------------------------------------
    # User value: runs extraction for a stored document and lands the result on a review record, or says clearly why it did not.
    async def process_document(
        self,
        document_id: str,
        *,
        max_attempts: Optional[int] = None,
        interval_ms: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ReviewRecord:
        max_attempts, interval_ms = self.poller.resolve_budget(max_attempts, interval_ms)
        record = await self.reviews.begin_processing(document_id)
        review_id = record.review_id
        self._processing.add(review_id)
        job_id = ""

        def closing_job(outcome: str, error: Optional[str] = None) -> ExtractionJob:
            return ExtractionJob(
                job_id=job_id,
                document_id=document_id,
                max_attempts=max_attempts,
                interval_ms=interval_ms,
                outcome=outcome,
                error=error,
                review_id=review_id,
            )

        try:
            job_id = await self.poller.submit(document_id)
            await self.reviews.attach_job(review_id, job_id)
            job = await self.poller.await_job(
                job_id,
                document_id,
                max_attempts=max_attempts,
                interval_ms=interval_ms,
                cancel_event=cancel_event,
            )
        except asyncio.CancelledError:
            # the wait died with its task; hand the review back so it can be re-submitted
            await self.reviews.apply_job(review_id, closing_job(POLL_OUTCOME_CANCELLED))
            raise
        except Exception as exc:
            await self.reviews.apply_job(review_id, closing_job(EXTRACTION_FAILED, str(exc) or exc.__class__.__name__))
            raise
        finally:
            self._processing.discard(review_id)

        job.review_id = review_id
        record = await self.reviews.apply_job(review_id, job)
        context = {"job_id": job.job_id, "review_id": review_id, "document_id": document_id}
        if job.outcome == POLL_OUTCOME_TIMEOUT:
            raise ExtractionTimeoutError(
                "Extraction is still running; try again shortly",
                attempts=job.attempt_count,
                **context,
            )
        if job.outcome == POLL_OUTCOME_CANCELLED:
            raise ExtractionCancelledError("Extraction wait was cancelled", **context)
        if job.outcome == EXTRACTION_FAILED:
            raise ExtractionFailedError(job.error or "Extraction failed", **context)
        return record

    async def retry_review(
        self,
        review_id: str,
        *,
        max_attempts: Optional[int] = None,
        interval_ms: Optional[int] = None,
    ) -> ReviewRecord:
        record = await self.reviews.get(review_id)
        if record.state == REVIEW_PROCESSING and review_id not in self._processing:
            record = await self.reviews.recover_stale(review_id, stale_after=self.stale_processing_after)
        if record.state not in (REVIEW_FAILED, REVIEW_UNPROCESSED):
            raise InvalidTransitionError(
                "Only failed or unprocessed reviews can be re-run",
                current=record.state,
                target=REVIEW_PROCESSING,
                review_id=review_id,
            )
        return await self.process_document(record.document_id, max_attempts=max_attempts, interval_ms=interval_ms)

    # ---------------------------------------------------------
    # REVIEW
    # ---------------------------------------------------------
    async def get_review(self, review_id: str) -> ReviewRecord:
        return await self.reviews.get(review_id)

    async def review_history(self, document_id: str) -> List[ReviewRecord]:
        return list(await self.reviews.history(document_id))

    async def edit_fields(self, review_id: str, edits, *, editor: str) -> ReviewRecord:
        return await self.reviews.edit_fields(review_id, edits, editor=editor)

    async def approve(self, review_id: str, *, reviewer: str, edits=None, override: bool = False) -> ReviewRecord:
        record = await self.reviews.approve(review_id, reviewer=reviewer, edits=edits, override=override)
        return await self._deliver(record)

    async def reject(self, review_id: str, *, reviewer: str, reason: str) -> ReviewRecord:
        record = await self.reviews.reject(review_id, reviewer=reviewer, reason=reason)
        return await self._deliver(record)

    async def auto_populate(self, review_id: str) -> Optional[AutoPopulateSuggestion]:
        record = await self.reviews.get(review_id)
        if record.state != REVIEW_APPROVED:
            raise InvalidTransitionError(
                "Profile suggestions are only available for approved reviews",
                current=record.state,
                target=REVIEW_APPROVED,
                review_id=review_id,
            )
        return auto_populate.suggest(record)

    # User value: forwards the final decision downstream; a delivery problem is recorded but never reopens the decision.
    async def _deliver(self, record: ReviewRecord) -> ReviewRecord:
        if not is_decision_delivery_enabled():
            return await self.reviews.record_delivery(record.review_id, DELIVERY_SKIPPED)

        suggestion = auto_populate.suggest(record) if record.state == REVIEW_APPROVED else None
        try:
            await self.profile.publish_decision(decision_payload(record, suggestion))
        except ProfileServiceError as exc:
            incr("decision_deliveries_total", status=DELIVERY_FAILED)
            log_stage(
                entity_id=record.review_id,
                stage="DECISION_DELIVERY",
                event="FAILED",
                error_code=exc.error_code,
                error=exc.message,
            )
            return await self.reviews.record_delivery(record.review_id, DELIVERY_FAILED, exc.message)

        incr("decision_deliveries_total", status=DELIVERY_DELIVERED)
        log_stage(entity_id=record.review_id, stage="DECISION_DELIVERY", event="COMPLETED", outcome=record.state)
        return await self.reviews.record_delivery(record.review_id, DELIVERY_DELIVERED)

    # ---------------------------------------------------------
    # HEALTH
    # ---------------------------------------------------------
    async def health(self) -> dict:
        if self.redis_client is None:
            return {"store": "memory", "ok": True}
        result = await ping_redis(self.redis_client)
        result["store"] = "redis"
        return result


_pipeline: Optional[DocumentPipeline] = None


def build_pipeline() -> DocumentPipeline:
    if is_redis_store_enabled():
        client = get_redis_client()
        upload_backend = RedisBackend(client, prefix="upload_item", owner_ttl_sec=REDIS_OWNER_TTL_SEC)
        review_backend = RedisBackend(client, prefix="review_record", owner_ttl_sec=REDIS_OWNER_TTL_SEC)
    else:
        client = None
        upload_backend = MemoryBackend()
        review_backend = MemoryBackend()
    logger.info("pipeline_init store=%s", "redis" if client is not None else "memory")
    return DocumentPipeline(
        uploads=UploadOrchestrator(store=UploadItemStore(upload_backend)),
        reviews=ReviewStateMachine(store=ReviewRecordStore(review_backend)),
        redis_client=client,
    )


def get_pipeline() -> DocumentPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def set_pipeline(pipeline: Optional[DocumentPipeline]) -> None:
    global _pipeline
    _pipeline = pipeline
