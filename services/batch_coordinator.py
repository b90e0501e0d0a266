# User value: This file runs many uploads or rows side by side so one bad item never sinks the rest, and the user always gets an exact succeeded/failed count.
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from config import BATCH_CONCURRENCY
from schemas.models import BatchFailure, BatchResult, BatchSuccess
from utils.errors import PipelineError
from utils.metrics import incr, observe_ms
from utils.request_id import get_batch_id, new_batch_id, set_batch_id
from utils.stage_logging import log_stage

logger = logging.getLogger("api.batch")

# operation(item, index, member_cancel_event) -> outcome; raising marks the slot failed
BatchOperation = Callable[[Any, int, asyncio.Event], Awaitable[Any]]
BatchProgress = Callable[[int, int], None]

CANCELLED_REASON = "cancelled"


class BatchCoordinator:
    def __init__(self, *, concurrency: int = BATCH_CONCURRENCY) -> None:
        self.concurrency = max(1, int(concurrency))

    # User value: always resolves with one aggregate result; per-item errors land in that item's slot instead of escaping.
    async def run_batch(
        self,
        items: Sequence[Any],
        operation: BatchOperation,
        *,
        keys: Optional[Sequence[str]] = None,
        index_base: int = 0,
        concurrency: Optional[int] = None,
        on_progress: Optional[BatchProgress] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        items = list(items)
        total = len(items)
        if keys is not None and len(keys) != total:
            raise ValueError("keys must line up with items")

        limit = max(1, int(concurrency or self.concurrency))
        semaphore = asyncio.Semaphore(limit)
        cancel_event = cancel_event or asyncio.Event()
        member_events = [asyncio.Event() for _ in items]
        slots: List[Optional[Union[BatchSuccess, BatchFailure]]] = [None] * total
        completed = 0

        previous_batch_id = get_batch_id()
        batch_id = new_batch_id()
        set_batch_id(batch_id)
        started = time.perf_counter()
        log_stage(entity_id=batch_id, stage="BATCH", event="STARTED", total=total, concurrency=limit)

        def fill(pos: int, entry: Union[BatchSuccess, BatchFailure]) -> None:
            nonlocal completed
            if slots[pos] is not None:
                raise RuntimeError(f"batch slot {pos} filled twice")
            slots[pos] = entry
            completed += 1
            if on_progress is not None:
                try:
                    on_progress(completed, total)
                except Exception:
                    logger.exception("batch_progress_callback_failed batch_id=%s", batch_id)

        async def member(pos: int) -> None:
            index = pos + index_base
            key = str(keys[pos]) if keys is not None else str(index)
            async with semaphore:
                if cancel_event.is_set():
                    fill(pos, BatchFailure(index=index, key=key, error_code="CANCELLED", reason=CANCELLED_REASON))
                    return
                try:
                    outcome = await operation(items[pos], index, member_events[pos])
                except PipelineError as exc:
                    fill(
                        pos,
                        BatchFailure(
                            index=index,
                            key=key,
                            error_code=exc.error_code,
                            reason=exc.message,
                            detail=exc.to_detail(),
                        ),
                    )
                except Exception as exc:
                    logger.exception("batch_member_crashed batch_id=%s index=%s", batch_id, index)
                    fill(
                        pos,
                        BatchFailure(
                            index=index,
                            key=key,
                            error_code="INTERNAL_ERROR",
                            reason=str(exc) or exc.__class__.__name__,
                        ),
                    )
                else:
                    fill(pos, BatchSuccess(index=index, key=key, outcome=outcome))

        async def propagate_cancel() -> None:
            await cancel_event.wait()
            for event in member_events:
                event.set()

        watcher = asyncio.create_task(propagate_cancel())
        try:
            await asyncio.gather(*(member(pos) for pos in range(total)))
        finally:
            watcher.cancel()
            set_batch_id(previous_batch_id)

        succeeded = sorted((s for s in slots if isinstance(s, BatchSuccess)), key=lambda s: s.index)
        failed = sorted((f for f in slots if isinstance(f, BatchFailure)), key=lambda f: f.index)
        result = BatchResult(total=total, succeeded=succeeded, failed=failed, cancelled=cancel_event.is_set())

        incr("batch_runs_total", cancelled=str(result.cancelled).lower())
        incr("batch_items_total", amount=result.succeeded_count, outcome="succeeded")
        incr("batch_items_total", amount=result.failed_count, outcome="failed")
        observe_ms("batch_duration_ms", (time.perf_counter() - started) * 1000)
        log_stage(
            entity_id=batch_id,
            stage="BATCH",
            event="COMPLETED",
            total=total,
            succeeded=result.succeeded_count,
            failed=result.failed_count,
            cancelled=result.cancelled,
        )
        return result
