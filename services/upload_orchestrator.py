# User value: This file takes one file through register, transfer and confirm so the user ends with either a stored document or a clear reason and a way to retry.
import asyncio
import logging
import time
import uuid
from typing import Callable, Dict, Optional

from config import MAX_UPLOAD_FILE_SIZE_BYTES
from schemas.models import UploadHandle, UploadItem, UploadPayload, utcnow
from schemas.pipeline_contract import (
    PHASE_CONFIRM,
    PHASE_INITIALIZE,
    PHASE_TRANSFER,
    UPLOAD_CANCELLED,
    UPLOAD_COMPLETE,
    UPLOAD_CONFIRMING,
    UPLOAD_ERROR,
    UPLOAD_QUEUED,
    UPLOAD_TRANSFERRING,
)
from services.registration_client import RegistrationClient
from services.stores import UploadItemStore
from services.transfer_channel import HttpTransferChannel, TransferChannel
from services.upload_validation import ALLOWED_EXTENSIONS, validate_upload
from utils.errors import InvalidTransitionError, PipelineError, TransferError, ValidationError
from utils.metrics import incr, observe_ms
from utils.stage_logging import log_stage

logger = logging.getLogger("api.upload")

ProgressCallback = Callable[[int], None]


class ProgressReporter:
    """Emits at most one callback per percent-point increase and nothing once closed."""

    def __init__(self, callback: Optional[ProgressCallback] = None) -> None:
        self._callback = callback
        self.last = -1
        self.closed = False

    def is_advance(self, percent: int) -> bool:
        return not self.closed and percent > self.last

    def report(self, percent: int) -> bool:
        percent = max(0, min(100, int(percent)))
        if not self.is_advance(percent):
            return False
        self.last = percent
        if self._callback is not None:
            try:
                self._callback(percent)
            except Exception:
                logger.exception("progress_callback_failed percent=%s", percent)
        return True

    def close(self) -> None:
        self.closed = True


class _ActiveRun:
    def __init__(self, cancel_event: asyncio.Event) -> None:
        self.cancel_event = cancel_event
        self.done = asyncio.Event()


class UploadOrchestrator:
    def __init__(
        self,
        *,
        store: Optional[UploadItemStore] = None,
        registration: Optional[RegistrationClient] = None,
        channel: Optional[TransferChannel] = None,
        max_size_bytes: int = MAX_UPLOAD_FILE_SIZE_BYTES,
        allowed_extensions: frozenset = ALLOWED_EXTENSIONS,
        clock=utcnow,
    ) -> None:
        self.store = store or UploadItemStore()
        self.registration = registration or RegistrationClient()
        self.channel = channel or HttpTransferChannel()
        self.max_size_bytes = max_size_bytes
        self.allowed_extensions = allowed_extensions
        self.clock = clock
        self._active: Dict[str, _ActiveRun] = {}

    def check(self, payload: UploadPayload, category: str) -> UploadPayload:
        return validate_upload(
            payload,
            category=category,
            max_size_bytes=self.max_size_bytes,
            allowed_extensions=self.allowed_extensions,
        )

    async def get(self, item_id: str) -> UploadItem:
        return await self.store.get(item_id)

    # User value: uploads one file end to end; bad files are refused before any network call is made.
    async def submit(
        self,
        payload: UploadPayload,
        *,
        category: str,
        item_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> UploadItem:
        validated = self.check(payload, category)
        item_id = item_id or uuid.uuid4().hex

        existing = await self.store.find(item_id)
        if existing is not None and existing.status == UPLOAD_ERROR:
            return await self.retry(item_id, payload=validated, on_progress=on_progress, cancel_event=cancel_event)

        owner = uuid.uuid4().hex
        item = UploadItem(
            item_id=item_id,
            filename=validated.filename,
            content_type=validated.content_type,
            size_bytes=validated.size_bytes,
            category=category,
        )
        await self.store.create(item, owner=owner)
        incr("upload_items_total", status=UPLOAD_QUEUED)
        return await self._run(item_id, owner, validated, PHASE_INITIALIZE, on_progress, cancel_event)

    # User value: resumes a failed upload on the same item id, re-sending bytes only when the earlier handle can no longer be trusted.
    async def retry(
        self,
        item_id: str,
        *,
        payload: Optional[UploadPayload] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> UploadItem:
        owner = uuid.uuid4().hex
        await self.store.claim(item_id, owner)
        try:
            item = await self.store.get(item_id)
            if item.status != UPLOAD_ERROR:
                raise InvalidTransitionError(
                    "Only failed uploads can be retried",
                    current=item.status,
                    target=UPLOAD_QUEUED,
                    item_id=item_id,
                )

            start_phase = PHASE_CONFIRM if item.resume_phase == PHASE_CONFIRM and item.handle else PHASE_INITIALIZE
            changes = {"status": UPLOAD_QUEUED, "progress": 0, "error_detail": None}
            validated = None
            if start_phase == PHASE_INITIALIZE:
                if payload is None:
                    raise ValidationError(
                        "Retrying this upload needs the file again",
                        error_code="PAYLOAD_REQUIRED",
                        item_id=item_id,
                    )
                validated = self.check(payload, item.category)
                changes.update(
                    filename=validated.filename,
                    content_type=validated.content_type,
                    size_bytes=validated.size_bytes,
                    handle=None,
                )
            await self.store.update(item_id, owner=owner, **changes)
        except BaseException:
            await self.store.release(item_id, owner)
            raise

        incr("upload_retries_total", phase=start_phase)
        log_stage(entity_id=item_id, stage="UPLOAD_RETRY", event="STARTED", resume_phase=start_phase)
        return await self._run(item_id, owner, validated, start_phase, on_progress, cancel_event)

    # User value: stops an upload the user no longer wants without ever finalizing a half-sent file.
    async def cancel(self, item_id: str) -> UploadItem:
        item = await self.store.get(item_id)
        if item.status in (UPLOAD_COMPLETE, UPLOAD_CANCELLED):
            return item
        if item.status == UPLOAD_CONFIRMING:
            logger.info("upload_cancel_too_late item_id=%s", item_id)
            return item

        active = self._active.get(item_id)
        if active is not None:
            active.cancel_event.set()
            await active.done.wait()
            return await self.store.get(item_id)

        # not running here: a failed item being abandoned
        owner = uuid.uuid4().hex
        await self.store.claim(item_id, owner)
        try:
            item = await self.store.update(item_id, owner=owner, status=UPLOAD_CANCELLED)
        finally:
            await self.store.release(item_id, owner)
        incr("upload_items_total", status=UPLOAD_CANCELLED)
        log_stage(entity_id=item_id, stage="UPLOAD_CANCEL", event="COMPLETED", previous_status=UPLOAD_ERROR)
        return item

    async def _run(
        self,
        item_id: str,
        owner: str,
        payload: Optional[UploadPayload],
        start_phase: str,
        on_progress: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
    ) -> UploadItem:
        active = _ActiveRun(cancel_event or asyncio.Event())
        self._active[item_id] = active
        reporter = ProgressReporter(on_progress)
        started = time.perf_counter()
        phase = start_phase
        try:
            item = await self.store.get(item_id)
            item = await self.store.update(item_id, owner=owner, attempts=item.attempts + 1)
            handle = item.handle

            if start_phase == PHASE_INITIALIZE:
                if active.cancel_event.is_set():
                    return await self._finish_cancelled(item_id, owner, reporter)
                log_stage(entity_id=item_id, stage="UPLOAD_INITIALIZE", event="STARTED", category=item.category)
                handle = await self.registration.init_upload(
                    filename=item.filename,
                    size_bytes=item.size_bytes,
                    category=item.category,
                    content_type=item.content_type,
                )
                await self.store.update(item_id, owner=owner, handle=handle)
                if active.cancel_event.is_set():
                    return await self._finish_cancelled(item_id, owner, reporter)

                phase = PHASE_TRANSFER
                if handle.is_expired(self.clock()):
                    raise TransferError("Upload handle expired before transfer started", registration_id=handle.registration_id)
                await self.store.update(item_id, owner=owner, status=UPLOAD_TRANSFERRING, progress=0)
                reporter.report(0)
                log_stage(entity_id=item_id, stage="UPLOAD_TRANSFER", event="STARTED", document_id=handle.registration_id)
                finished = await self._transfer(item_id, owner, handle, payload, reporter, active.cancel_event)
                if not finished:
                    return await self._finish_cancelled(item_id, owner, reporter)

            phase = PHASE_CONFIRM
            await self.store.update(item_id, owner=owner, status=UPLOAD_CONFIRMING, progress=100)
            reporter.report(100)
            log_stage(entity_id=item_id, stage="UPLOAD_CONFIRM", event="STARTED", document_id=handle.registration_id)
            document_id = await self.registration.confirm_upload(handle.registration_id)
            item = await self.store.update(
                item_id,
                owner=owner,
                status=UPLOAD_COMPLETE,
                server_document_id=document_id,
                resume_phase=None,
            )
            reporter.close()
            incr("upload_items_total", status=UPLOAD_COMPLETE)
            observe_ms("upload_duration_ms", (time.perf_counter() - started) * 1000, status=UPLOAD_COMPLETE)
            log_stage(entity_id=item_id, stage="UPLOAD_CONFIRM", event="COMPLETED", document_id=document_id)
            return item
        except Exception as exc:
            reporter.close()
            error = exc if isinstance(exc, PipelineError) else PipelineError(str(exc), error_code="UPLOAD_FAILED")
            detail = error.to_detail()
            detail["phase"] = phase
            await self.store.update(
                item_id,
                owner=owner,
                status=UPLOAD_ERROR,
                error_detail=detail,
                resume_phase=PHASE_CONFIRM if phase == PHASE_CONFIRM else PHASE_INITIALIZE,
            )
            incr("upload_items_total", status=UPLOAD_ERROR)
            incr("upload_phase_failures_total", phase=phase, error_code=error.error_code)
            log_stage(entity_id=item_id, stage=f"UPLOAD_{phase.upper()}", event="FAILED", error=error.message)
            raise
        except asyncio.CancelledError:
            reporter.close()
            await self._settle_interrupted(item_id, owner)
            raise
        finally:
            self._active.pop(item_id, None)
            active.done.set()
            await self.store.release(item_id, owner)

    async def _transfer(
        self,
        item_id: str,
        owner: str,
        handle: UploadHandle,
        payload: UploadPayload,
        reporter: ProgressReporter,
        cancel_event: asyncio.Event,
    ) -> bool:
        async def on_bytes(sent: int, total: int) -> None:
            percent = min(100, sent * 100 // total) if total else 100
            if not reporter.is_advance(percent) or cancel_event.is_set():
                return
            await self.store.update(item_id, owner=owner, progress=percent)
            reporter.report(percent)

        transfer_task = asyncio.create_task(self.channel.transfer(handle, payload, on_progress=on_bytes))
        cancel_task = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({transfer_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (transfer_task, cancel_task):
                if not task.done():
                    task.cancel()

        if transfer_task in done and not cancel_event.is_set():
            transfer_task.result()
            return True

        try:
            await transfer_task
        except asyncio.CancelledError:
            pass
        except PipelineError as exc:
            logger.info("transfer_error_after_cancel item_id=%s error=%s", item_id, exc.message)
        return False

    async def _finish_cancelled(self, item_id: str, owner: str, reporter: ProgressReporter) -> UploadItem:
        reporter.close()
        item = await self.store.update(item_id, owner=owner, status=UPLOAD_CANCELLED)
        incr("upload_items_total", status=UPLOAD_CANCELLED)
        log_stage(entity_id=item_id, stage="UPLOAD_CANCEL", event="COMPLETED")
        return item

    async def _settle_interrupted(self, item_id: str, owner: str) -> None:
        item = await self.store.get(item_id)
        if item.status in (UPLOAD_QUEUED, UPLOAD_TRANSFERRING):
            await self.store.update(item_id, owner=owner, status=UPLOAD_CANCELLED)
        elif item.status == UPLOAD_CONFIRMING:
            await self.store.update(
                item_id,
                owner=owner,
                status=UPLOAD_ERROR,
                resume_phase=PHASE_CONFIRM,
                error_detail={
                    "error_code": "CONFIRM_INTERRUPTED",
                    "error_message": "Confirmation was interrupted; retry to finish",
                    "retryable": True,
                    "phase": PHASE_CONFIRM,
                },
            )
