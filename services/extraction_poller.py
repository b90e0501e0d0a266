# User value: This file waits for extraction to finish without hanging forever, so users either get their fields or a clear "try again" within a known time.
import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Tuple

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed

from config import (
    EXTRACTION_POLL_INTERVAL_MS,
    EXTRACTION_POLL_MAX_ATTEMPTS,
    EXTRACTION_POLL_TRANSPORT_DELAY_MS,
    EXTRACTION_POLL_TRANSPORT_RETRIES,
)
from schemas.models import ExtractionJob, utcnow
from schemas.pipeline_contract import (
    EXTRACTION_FAILED,
    EXTRACTION_RESULT_STATES,
    EXTRACTION_TERMINAL_STATES,
    POLL_OUTCOME_CANCELLED,
    POLL_OUTCOME_TIMEOUT,
)
from services.extraction_client import ExtractionClient
from utils.errors import ExtractionServiceError, ValidationError
from utils.metrics import incr, observe_ms
from utils.stage_logging import log_stage

logger = logging.getLogger("api.extraction")

AttemptCallback = Callable[[int, str], None]


class RetryBudget:
    """Attempt counter, fixed interval and wall-clock deadline for one polling cycle.

    Transport errors retry the same attempt up to ``transport_retries`` times; once
    that sub-budget is spent the attempt is charged like any other poll.
    """

    def __init__(self, *, max_attempts: int, interval_ms: int, transport_retries: int, started_at: datetime) -> None:
        self.max_attempts = max_attempts
        self.interval_ms = interval_ms
        self.transport_retries = max(0, transport_retries)
        # a zero interval leaves only the attempt bound
        self.deadline = started_at + timedelta(milliseconds=max_attempts * interval_ms) if interval_ms > 0 else None
        self.attempts = 0
        self.transport_errors = 0

    @staticmethod
    def is_terminal(state: str) -> bool:
        return state in EXTRACTION_TERMINAL_STATES

    def record_poll(self) -> None:
        self.attempts += 1

    def exhausted(self, now: datetime) -> bool:
        if self.attempts >= self.max_attempts:
            return True
        return self.deadline is not None and now >= self.deadline


def _is_transport_error(exc: BaseException) -> bool:
    return isinstance(exc, ExtractionServiceError) and exc.retryable


class ExtractionJobPoller:
    def __init__(
        self,
        client: Optional[ExtractionClient] = None,
        *,
        max_attempts: int = EXTRACTION_POLL_MAX_ATTEMPTS,
        interval_ms: int = EXTRACTION_POLL_INTERVAL_MS,
        transport_retries: int = EXTRACTION_POLL_TRANSPORT_RETRIES,
        transport_delay_ms: int = EXTRACTION_POLL_TRANSPORT_DELAY_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client or ExtractionClient()
        self.max_attempts = max_attempts
        self.interval_ms = interval_ms
        self.transport_retries = transport_retries
        self.transport_delay_ms = transport_delay_ms
        self.sleep = sleep
        self.clock = clock

    def _finish(self, job: ExtractionJob, budget: RetryBudget, outcome: str, started: float) -> ExtractionJob:
        job.attempt_count = budget.attempts
        job.transport_errors = budget.transport_errors
        job.outcome = outcome
        job.finished_at = self.clock()
        incr("extraction_jobs_total", outcome=outcome)
        observe_ms("extraction_wait_ms", (time.perf_counter() - started) * 1000, outcome=outcome)
        log_stage(
            entity_id=job.job_id,
            stage="EXTRACTION_POLL",
            event="COMPLETED" if outcome in EXTRACTION_RESULT_STATES else "FAILED",
            document_id=job.document_id,
            outcome=outcome,
            attempts=budget.attempts,
            transport_errors=budget.transport_errors,
            error=job.error,
        )
        return job

    def resolve_budget(self, max_attempts: Optional[int] = None, interval_ms: Optional[int] = None) -> Tuple[int, int]:
        max_attempts = int(max_attempts if max_attempts is not None else self.max_attempts)
        interval_ms = int(interval_ms if interval_ms is not None else self.interval_ms)
        if max_attempts < 1 or interval_ms < 0:
            raise ValidationError(
                "max_attempts must be >= 1 and interval_ms >= 0",
                error_code="INVALID_POLL_BUDGET",
            )
        return max_attempts, interval_ms

    async def submit(self, document_id: str) -> str:
        return await self.client.submit_job(document_id)

    # User value: submits once, then polls until a terminal state, cancellation, or the attempt/wall-clock budget runs out.
    async def submit_and_await(
        self,
        document_id: str,
        *,
        max_attempts: Optional[int] = None,
        interval_ms: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_attempt: Optional[AttemptCallback] = None,
    ) -> ExtractionJob:
        max_attempts, interval_ms = self.resolve_budget(max_attempts, interval_ms)
        job_id = await self.submit(document_id)
        return await self.await_job(
            job_id,
            document_id,
            max_attempts=max_attempts,
            interval_ms=interval_ms,
            cancel_event=cancel_event,
            on_attempt=on_attempt,
        )

    async def _poll_with_retries(self, job_id: str, budget: RetryBudget):
        async def poll_once():
            try:
                return await self.client.poll_job(job_id)
            except ExtractionServiceError as exc:
                if exc.retryable:
                    budget.transport_errors += 1
                    logger.info("extraction_poll_transport_error job_id=%s error=%s", job_id, exc.message)
                raise

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_transport_error),
            stop=stop_after_attempt(budget.transport_retries + 1),
            wait=wait_fixed(self.transport_delay_ms / 1000),
            sleep=self.sleep,
            reraise=True,
        )
        return await retrying(poll_once)

    async def await_job(
        self,
        job_id: str,
        document_id: str,
        *,
        max_attempts: Optional[int] = None,
        interval_ms: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_attempt: Optional[AttemptCallback] = None,
    ) -> ExtractionJob:
        max_attempts, interval_ms = self.resolve_budget(max_attempts, interval_ms)
        job = ExtractionJob(job_id=job_id, document_id=document_id, max_attempts=max_attempts, interval_ms=interval_ms)
        budget = RetryBudget(
            max_attempts=max_attempts,
            interval_ms=interval_ms,
            transport_retries=self.transport_retries,
            started_at=self.clock(),
        )
        started = time.perf_counter()
        log_stage(entity_id=job_id, stage="EXTRACTION_POLL", event="STARTED", document_id=document_id, max_attempts=max_attempts)

        while True:
            if cancel_event is not None and cancel_event.is_set():
                return self._finish(job, budget, POLL_OUTCOME_CANCELLED, started)
            if budget.exhausted(self.clock()):
                return self._finish(job, budget, POLL_OUTCOME_TIMEOUT, started)

            try:
                snapshot = await self._poll_with_retries(job_id, budget)
            except ExtractionServiceError as exc:
                budget.record_poll()
                if not exc.retryable:
                    job.state = EXTRACTION_FAILED
                    job.error = exc.message
                    return self._finish(job, budget, EXTRACTION_FAILED, started)
            else:
                budget.record_poll()
                job.state = snapshot.state
                if on_attempt is not None:
                    on_attempt(budget.attempts, snapshot.state)
                if budget.is_terminal(snapshot.state):
                    if snapshot.state in EXTRACTION_RESULT_STATES:
                        job.result = snapshot.result
                    else:
                        job.error = snapshot.error or "Extraction service reported a failure"
                    return self._finish(job, budget, snapshot.state, started)

            job.attempt_count = budget.attempts
            if budget.exhausted(self.clock()):
                return self._finish(job, budget, POLL_OUTCOME_TIMEOUT, started)
            await self.sleep(interval_ms / 1000)
