# User value: This file guards the review workflow so extracted data is only trusted after a person approves it, and a decision can never be changed afterwards.
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from config import CONFIDENCE_HIGH_THRESHOLD, CONFIDENCE_MEDIUM_THRESHOLD
from schemas.models import DecidedField, ExtractionJob, FieldEdit, ReviewDecision, ReviewRecord, utcnow
from schemas.pipeline_contract import (
    DELIVERY_PENDING,
    EXTRACTION_FAILED,
    EXTRACTION_RESULT_STATES,
    POLL_OUTCOME_CANCELLED,
    REVIEW_APPROVED,
    REVIEW_EDITABLE_STATES,
    REVIEW_FAILED,
    REVIEW_PROCESSING,
    REVIEW_REJECTED,
    REVIEW_REQUIRES_REVIEW,
    REVIEW_TERMINAL_STATES,
    REVIEW_UNPROCESSED,
)
from services.confidence import classify_confidence, needs_attention
from services.feature_flags import is_strict_review_policy_enabled
from services.stores import ReviewRecordStore
from utils.errors import (
    ExtractionCancelledError,
    ExtractionFailedError,
    ExtractionTimeoutError,
    InvalidTransitionError,
    ReviewPolicyError,
    ValidationError,
)
from utils.field_keys import normalize_field_key
from utils.metrics import incr
from utils.stage_logging import log_stage

logger = logging.getLogger("api.review")


@dataclass(frozen=True)
class PresentedField:
    """One deduplicated field as a reviewer sees it."""

    key: str
    normalized_key: str
    value: str
    confidence: Optional[float]
    tier: Optional[str]
    needs_attention: bool
    edited: bool
    page_number: Optional[int] = None
    detection_count: int = 0


# User value: shows one value per field (the most confident detection) while every raw detection stays on the record for audit.
def review_fields(
    record: ReviewRecord,
    *,
    high: float = CONFIDENCE_HIGH_THRESHOLD,
    medium: float = CONFIDENCE_MEDIUM_THRESHOLD,
) -> List[PresentedField]:
    best = {}
    counts: Dict[str, int] = {}
    for detection in record.detections:
        nk = detection.normalized_key
        counts[nk] = counts.get(nk, 0) + 1
        # strictly greater keeps the first detection on ties
        if nk not in best or detection.confidence > best[nk].confidence:
            best[nk] = detection

    presented = []
    for nk, detection in best.items():
        edit = record.edits.get(nk)
        presented.append(
            PresentedField(
                key=detection.key,
                normalized_key=nk,
                value=edit.value if edit else detection.value,
                confidence=detection.confidence,
                tier=classify_confidence(detection.confidence, high=high, medium=medium),
                needs_attention=needs_attention(detection.confidence, medium=medium),
                edited=edit is not None,
                page_number=detection.page_number,
                detection_count=counts[nk],
            )
        )
    for nk, edit in record.edits.items():
        if nk not in best:
            presented.append(
                PresentedField(
                    key=edit.key,
                    normalized_key=nk,
                    value=edit.value,
                    confidence=None,
                    tier=None,
                    needs_attention=False,
                    edited=True,
                )
            )
    return presented


def _edit_pairs(edits) -> List[Tuple[str, str]]:
    if not edits:
        return []
    if isinstance(edits, dict):
        return [(str(k), "" if v is None else str(v)) for k, v in edits.items()]
    return [(str(k), "" if v is None else str(v)) for k, v in edits]


class ReviewStateMachine:
    def __init__(
        self,
        *,
        store: Optional[ReviewRecordStore] = None,
        strict_policy: Optional[bool] = None,
        clock=utcnow,
    ) -> None:
        self.store = store or ReviewRecordStore()
        self._strict_policy = strict_policy
        self.clock = clock
        # key -> (lock, holders + waiters); an entry lives only while someone uses it
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @property
    def strict_policy(self) -> bool:
        if self._strict_policy is None:
            return is_strict_review_policy_enabled()
        return self._strict_policy

    @asynccontextmanager
    async def _locked(self, key: str):
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    @asynccontextmanager
    async def _owned(self, review_id: str):
        async with self._locked(review_id):
            owner = uuid.uuid4().hex
            await self.store.claim(review_id, owner)
            try:
                yield await self.store.get(review_id)
            finally:
                await self.store.release(review_id, owner)

    async def get(self, review_id: str) -> ReviewRecord:
        return await self.store.get(review_id)

    async def _open_unlocked(self, document_id: str) -> ReviewRecord:
        for record in await self.store.for_document(document_id):
            if record.state in REVIEW_TERMINAL_STATES:
                continue
            if record.state in (REVIEW_UNPROCESSED, REVIEW_FAILED):
                return record
            raise InvalidTransitionError(
                "Document already has a review in progress",
                current=record.state,
                target=REVIEW_PROCESSING,
                review_id=record.review_id,
                document_id=document_id,
            )
        record = ReviewRecord(review_id=f"rev-{uuid.uuid4().hex}", document_id=document_id)
        created = await self.store.create(record)
        incr("review_records_total", state=REVIEW_UNPROCESSED)
        log_stage(entity_id=created.review_id, stage="REVIEW_OPEN", event="COMPLETED", document_id=document_id)
        return created

    # User value: reuses the document's open review when it is waiting to be (re)processed, otherwise starts a fresh one once the last was decided.
    async def open_review(self, document_id: str) -> ReviewRecord:
        async with self._locked(f"document:{document_id}"):
            return await self._open_unlocked(document_id)

    # User value: opens and claims the document's review in one step, so two callers can never run extraction for the same review.
    async def begin_processing(self, document_id: str) -> ReviewRecord:
        async with self._locked(f"document:{document_id}"):
            record = await self._open_unlocked(document_id)
            return await self.start_processing(record.review_id)

    async def start_processing(self, review_id: str, job_id: Optional[str] = None) -> ReviewRecord:
        async with self._owned(review_id) as record:
            previous = record.state
            if previous not in (REVIEW_UNPROCESSED, REVIEW_FAILED):
                raise InvalidTransitionError(
                    "Only failed or unprocessed reviews can be processed",
                    current=previous,
                    target=REVIEW_PROCESSING,
                    review_id=review_id,
                )
            record.state = REVIEW_PROCESSING
            if job_id is not None:
                record.jobs.append(job_id)
            record.error_detail = None
            saved = await self.store.save(record, previous_state=previous)
        log_stage(entity_id=review_id, stage="REVIEW_PROCESS", event="STARTED", document_id=record.document_id, job_id=job_id)
        return saved

    async def attach_job(self, review_id: str, job_id: str) -> ReviewRecord:
        async with self._owned(review_id) as record:
            self._ensure_processing(record)
            record.jobs.append(job_id)
            saved = await self.store.save(record, previous_state=record.state)
        log_stage(entity_id=review_id, stage="REVIEW_PROCESS", event="JOB_SUBMITTED", document_id=record.document_id, job_id=job_id)
        return saved

    @staticmethod
    def _ensure_processing(record: ReviewRecord) -> None:
        if record.state != REVIEW_PROCESSING:
            raise InvalidTransitionError(
                "Review is not being processed",
                current=record.state,
                target=REVIEW_PROCESSING,
                review_id=record.review_id,
            )

    # User value: frees a review left in processing by a wait that died without reporting back, so the document can be processed again.
    async def recover_stale(self, review_id: str, *, stale_after: timedelta) -> ReviewRecord:
        async with self._owned(review_id) as record:
            if record.state != REVIEW_PROCESSING:
                return record
            idle = self.clock() - record.updated_at
            if idle < stale_after:
                raise InvalidTransitionError(
                    "Review is still being processed",
                    current=record.state,
                    target=REVIEW_PROCESSING,
                    review_id=review_id,
                )
            record.state = REVIEW_UNPROCESSED
            record.error_detail = ExtractionCancelledError(
                "Extraction wait ended without a result",
                job_id=record.jobs[-1] if record.jobs else None,
                review_id=review_id,
            ).to_detail()
            saved = await self.store.save(record, previous_state=REVIEW_PROCESSING)
        logger.warning("review_processing_recovered review_id=%s idle_sec=%s", review_id, int(idle.total_seconds()))
        return saved

    # User value: records what extraction produced; a timeout leaves the review re-submittable instead of failed.
    async def apply_job(self, review_id: str, job: ExtractionJob) -> ReviewRecord:
        async with self._owned(review_id) as record:
            self._ensure_processing(record)
            if job.job_id in record.jobs and job.job_id != record.jobs[-1]:
                raise InvalidTransitionError(
                    "Extraction job was superseded by a newer one",
                    current=record.state,
                    review_id=review_id,
                    job_id=job.job_id,
                )
            previous = record.state
            if job.outcome in EXTRACTION_RESULT_STATES and job.result is not None:
                record.state = job.outcome
                record.detections = list(job.result.fields)
                record.raw_text = job.result.raw_text
                record.document_type = job.result.document_type
                record.overall_confidence = job.result.overall_confidence
                record.error_detail = None
            elif job.outcome == EXTRACTION_FAILED:
                record.state = REVIEW_FAILED
                record.error_detail = ExtractionFailedError(
                    job.error or "Extraction failed", job_id=job.job_id, review_id=review_id
                ).to_detail()
            elif job.outcome == POLL_OUTCOME_CANCELLED:
                record.state = REVIEW_UNPROCESSED
                record.error_detail = ExtractionCancelledError(
                    "Extraction wait was cancelled", job_id=job.job_id, review_id=review_id
                ).to_detail()
            else:
                record.state = REVIEW_UNPROCESSED
                record.error_detail = ExtractionTimeoutError(
                    "Extraction is still running; try again shortly",
                    job_id=job.job_id,
                    review_id=review_id,
                ).to_detail()
            saved = await self.store.save(record, previous_state=previous)
        incr("review_records_total", state=saved.state)
        log_stage(
            entity_id=review_id,
            stage="REVIEW_PROCESS",
            event="COMPLETED" if saved.state in REVIEW_EDITABLE_STATES else "FAILED",
            document_id=saved.document_id,
            state=saved.state,
            job_id=job.job_id,
            overall_confidence=saved.overall_confidence,
        )
        return saved

    def _ensure_editable(self, record: ReviewRecord, target: str) -> None:
        if record.state not in REVIEW_EDITABLE_STATES:
            raise InvalidTransitionError(
                f"Review is {record.state}; only completed or requires_review results can be edited or decided",
                current=record.state,
                target=target,
                review_id=record.review_id,
            )

    def _apply_edits(self, record: ReviewRecord, edits, editor: str) -> int:
        applied = 0
        for key, value in _edit_pairs(edits):
            nk = normalize_field_key(key)
            if not nk:
                raise ValidationError("Field key is required", error_code="INVALID_FIELD_KEY", key=key)
            record.edits[nk] = FieldEdit(key=key, value=value, edited_by=editor, edited_at=self.clock())
            applied += 1
        return applied

    # User value: lets a reviewer correct a value without pretending the machine was more confident than it was.
    async def edit_fields(self, review_id: str, edits, *, editor: str) -> ReviewRecord:
        async with self._owned(review_id) as record:
            self._ensure_editable(record, record.state)
            previous = record.state
            applied = self._apply_edits(record, edits, editor)
            saved = await self.store.save(record, previous_state=previous)
        incr("review_field_edits_total", amount=applied)
        return saved

    def _decide(self, record: ReviewRecord, *, outcome: str, reviewer: str, reason=None, override=False) -> ReviewDecision:
        fields = tuple(
            DecidedField(key=f.key, value=f.value, confidence=f.confidence, edited=f.edited) for f in review_fields(record)
        )
        return ReviewDecision(
            review_id=record.review_id,
            document_id=record.document_id,
            outcome=outcome,
            reviewer=reviewer,
            decided_at=self.clock(),
            fields=fields,
            reason=reason,
            override_used=bool(override),
            edit_count=len(record.edits),
        )

    @staticmethod
    def _require_reviewer(reviewer: str) -> str:
        reviewer = str(reviewer or "").strip()
        if not reviewer:
            raise ValidationError("Reviewer identity is required", error_code="REVIEWER_REQUIRED")
        return reviewer

    # User value: approves the reviewed values; a result the service flagged for review needs at least one edit or an explicit override.
    async def approve(self, review_id: str, *, reviewer: str, edits=None, override: bool = False) -> ReviewRecord:
        reviewer = self._require_reviewer(reviewer)
        async with self._owned(review_id) as record:
            self._ensure_editable(record, REVIEW_APPROVED)
            previous = record.state
            self._apply_edits(record, edits, reviewer)

            if previous == REVIEW_REQUIRES_REVIEW and not record.edits and not override:
                if self.strict_policy:
                    incr("review_policy_violations_total", enforced="true")
                    raise ReviewPolicyError(
                        "This result was flagged for review. Edit at least one field or approve with override.",
                        review_id=review_id,
                    )
                incr("review_policy_violations_total", enforced="false")
                logger.warning("review_policy_warning review_id=%s reviewer=%s", review_id, reviewer)

            record.decision = self._decide(record, outcome=REVIEW_APPROVED, reviewer=reviewer, override=override)
            record.state = REVIEW_APPROVED
            record.delivery_status = DELIVERY_PENDING
            saved = await self.store.save(record, previous_state=previous)
        incr("review_decisions_total", outcome=REVIEW_APPROVED)
        log_stage(
            entity_id=review_id,
            stage="REVIEW_DECISION",
            event="COMPLETED",
            document_id=saved.document_id,
            outcome=REVIEW_APPROVED,
            reviewer=reviewer,
            edit_count=saved.decision.edit_count,
            override_used=saved.decision.override_used,
        )
        return saved

    async def reject(self, review_id: str, *, reviewer: str, reason: str) -> ReviewRecord:
        reviewer = self._require_reviewer(reviewer)
        reason = str(reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required", error_code="REJECTION_REASON_REQUIRED", review_id=review_id)
        async with self._owned(review_id) as record:
            self._ensure_editable(record, REVIEW_REJECTED)
            previous = record.state
            record.decision = self._decide(record, outcome=REVIEW_REJECTED, reviewer=reviewer, reason=reason)
            record.state = REVIEW_REJECTED
            record.delivery_status = DELIVERY_PENDING
            saved = await self.store.save(record, previous_state=previous)
        incr("review_decisions_total", outcome=REVIEW_REJECTED)
        log_stage(
            entity_id=review_id,
            stage="REVIEW_DECISION",
            event="COMPLETED",
            document_id=saved.document_id,
            outcome=REVIEW_REJECTED,
            reviewer=reviewer,
        )
        return saved

    # Delivery bookkeeping only; the decision itself is never touched here.
    async def record_delivery(self, review_id: str, status: str, error: Optional[str] = None) -> ReviewRecord:
        async with self._owned(review_id) as record:
            record.delivery_status = status
            record.delivery_error = error
            return await self.store.save(record, previous_state=record.state)

    async def history(self, document_id: str) -> Iterable[ReviewRecord]:
        return await self.store.for_document(document_id)
