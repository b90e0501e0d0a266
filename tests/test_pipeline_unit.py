import asyncio
import unittest
from datetime import timedelta
from unittest import mock

from schemas.models import ExtractedField, ExtractionResult, UploadHandle, UploadPayload
from services import pipeline as pipeline_module
from services.batch_coordinator import BatchCoordinator
from services.extraction_client import JobSnapshot
from services.extraction_poller import ExtractionJobPoller
from services.pipeline import DocumentPipeline
from services.review_state_machine import ReviewStateMachine
from services.stores import UploadItemStore
from services.transfer_channel import TransferChannel
from services.upload_orchestrator import UploadOrchestrator
from utils.errors import (
    ExtractionFailedError,
    ExtractionTimeoutError,
    InvalidTransitionError,
    ProfileServiceError,
    ValidationError,
)


class FakeRegistration:
    def __init__(self):
        self.confirmed = []

    async def init_upload(self, *, filename, size_bytes, category, content_type):
        return UploadHandle(registration_id=f"reg-{filename}", upload_url="https://storage.test/put")

    async def confirm_upload(self, registration_id):
        self.confirmed.append(registration_id)
        return f"doc-{registration_id}"


class FakeChannel(TransferChannel):
    async def transfer(self, handle, payload, *, on_progress=None):
        await on_progress(len(payload.data), len(payload.data))


class FakeExtraction:
    def __init__(self, script):
        self.script = list(script)
        self.submitted = []

    async def submit_job(self, document_id):
        self.submitted.append(document_id)
        return f"job-{len(self.submitted)}"

    async def poll_job(self, job_id):
        step = self.script.pop(0) if self.script else "processing"
        if isinstance(step, str):
            return JobSnapshot(state=step)
        return step


class BlockingExtraction(FakeExtraction):
    """Holds every poll until released so a test can act while the wait is in flight."""

    def __init__(self, script):
        super().__init__(script)
        self.polling = asyncio.Event()
        self.release = asyncio.Event()

    async def poll_job(self, job_id):
        self.polling.set()
        await self.release.wait()
        return await super().poll_job(job_id)


class FakeProfile:
    def __init__(self, fail=None):
        self.published = []
        self.fail = fail

    async def publish_decision(self, payload):
        if self.fail:
            raise self.fail
        self.published.append(payload)

    async def create_employee(self, row):
        return f"emp-{row['last_name']}"


async def _no_sleep(seconds):
    return None


W9_RESULT = ExtractionResult(
    fields=(
        ExtractedField(key="Name", value="Acme LLC", confidence=97.0),
        ExtractedField(key="EIN", value="12-3456789", confidence=91.0),
    ),
    raw_text="Form W-9",
    document_type="w9",
    overall_confidence=94,
)


def _pipeline(script=(), profile=None, extraction=None, **kwargs):
    extraction = extraction or FakeExtraction(script)
    pipeline = DocumentPipeline(
        uploads=UploadOrchestrator(store=UploadItemStore(), registration=FakeRegistration(), channel=FakeChannel()),
        coordinator=BatchCoordinator(concurrency=2),
        poller=ExtractionJobPoller(extraction, max_attempts=3, interval_ms=0, sleep=_no_sleep),
        reviews=ReviewStateMachine(strict_policy=True),
        profile=profile or FakeProfile(),
        **kwargs,
    )
    return pipeline, extraction


def _payload(name):
    return UploadPayload(filename=name, content_type="application/pdf", size_bytes=10, data=b"x" * 10)


class DocumentPipelineUnitTests(unittest.TestCase):
    def setUp(self):
        for name in ("is_decision_delivery_enabled",):
            patcher = mock.patch.object(pipeline_module, name, return_value=True)
            patcher.start()
            self.addCleanup(patcher.stop)
        patcher = mock.patch("services.auto_populate.is_auto_populate_enabled", return_value=True)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_batch_upload_keeps_going_past_a_bad_file(self):
        async def run_case():
            pipeline, _ = _pipeline()
            bad = UploadPayload(filename="notes.exe", content_type="application/octet-stream", size_bytes=10, data=b"x" * 10)
            result = await pipeline.run_batch_upload([_payload("a.pdf"), bad, _payload("c.pdf")], category="contract")
            self.assertEqual(result.succeeded_indices(), [0, 2])
            self.assertEqual(result.failed_indices(), [1])
            self.assertEqual(result.failed[0].key, "notes.exe")
            self.assertEqual(result.succeeded[0].outcome.server_document_id, "doc-reg-a.pdf")

        asyncio.run(run_case())

    def test_process_document_then_approve_delivers_with_suggestion(self):
        async def run_case():
            profile = FakeProfile()
            pipeline, extraction = _pipeline(["processing", JobSnapshot(state="completed", result=W9_RESULT)], profile)
            record = await pipeline.process_document("doc-1")
            self.assertEqual(record.state, "completed")
            self.assertEqual(record.jobs, ["job-1"])
            self.assertEqual(record.overall_confidence, 94)

            approved = await pipeline.approve(record.review_id, reviewer="alice")
            self.assertEqual(approved.state, "approved")
            self.assertEqual(approved.delivery_status, "delivered")
            self.assertEqual(profile.published[0]["outcome"], "approved")
            self.assertEqual(profile.published[0]["autoPopulate"]["target"], "business")

            suggestion = await pipeline.auto_populate(record.review_id)
            self.assertEqual(suggestion.fields["ein"], "12-3456789")

        asyncio.run(run_case())

    def test_timeout_raises_and_leaves_review_resubmittable(self):
        async def run_case():
            pipeline, extraction = _pipeline([])
            with self.assertRaises(ExtractionTimeoutError) as ctx:
                await pipeline.process_document("doc-1")
            review_id = ctx.exception.context["review_id"]
            record = await pipeline.get_review(review_id)
            self.assertEqual(record.state, "unprocessed")

            extraction.script = [JobSnapshot(state="requires_review", result=W9_RESULT)]
            retried = await pipeline.retry_review(review_id)
            self.assertEqual(retried.review_id, review_id)
            self.assertEqual(retried.state, "requires_review")
            self.assertEqual(retried.jobs, ["job-1", "job-2"])

        asyncio.run(run_case())

    def test_failed_extraction_is_reported_and_retryable(self):
        async def run_case():
            pipeline, extraction = _pipeline([JobSnapshot(state="failed", error="blank page")])
            with self.assertRaises(ExtractionFailedError) as ctx:
                await pipeline.process_document("doc-1")
            review_id = ctx.exception.context["review_id"]
            self.assertEqual((await pipeline.get_review(review_id)).state, "failed")
            with self.assertRaises(InvalidTransitionError):
                await pipeline.auto_populate(review_id)

        asyncio.run(run_case())

    def test_concurrent_processing_of_one_document_submits_one_job(self):
        async def run_case():
            pipeline, extraction = _pipeline([])
            results = await asyncio.gather(
                pipeline.process_document("doc-2"),
                pipeline.process_document("doc-2"),
                return_exceptions=True,
            )
            kinds = sorted(type(r).__name__ for r in results)
            self.assertEqual(kinds, ["ExtractionTimeoutError", "InvalidTransitionError"])
            self.assertEqual(extraction.submitted, ["doc-2"])
            history = await pipeline.review_history("doc-2")
            self.assertEqual(len(history), 1)
            self.assertEqual(history[0].jobs, ["job-1"])

        asyncio.run(run_case())

    def test_cancelled_wait_hands_review_back_for_reprocessing(self):
        async def run_case():
            extraction = BlockingExtraction([JobSnapshot(state="completed", result=W9_RESULT)])
            pipeline, _ = _pipeline(extraction=extraction)
            task = asyncio.create_task(pipeline.process_document("doc-3"))
            await extraction.polling.wait()
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task

            (record,) = await pipeline.review_history("doc-3")
            self.assertEqual(record.state, "unprocessed")
            self.assertEqual(record.error_detail["error_code"], "EXTRACTION_CANCELLED")

            extraction.release.set()
            retried = await pipeline.retry_review(record.review_id)
            self.assertEqual(retried.state, "completed")
            self.assertEqual(retried.jobs, ["job-1", "job-2"])

        asyncio.run(run_case())

    def test_retry_recovers_review_stuck_in_processing(self):
        async def run_case():
            pipeline, _ = _pipeline([JobSnapshot(state="completed", result=W9_RESULT)])
            stuck = await pipeline.reviews.begin_processing("doc-4")
            with self.assertRaises(InvalidTransitionError):
                await pipeline.retry_review(stuck.review_id)

            pipeline.stale_processing_after = timedelta(0)
            retried = await pipeline.retry_review(stuck.review_id)
            self.assertEqual(retried.review_id, stuck.review_id)
            self.assertEqual(retried.state, "completed")

        asyncio.run(run_case())

    def test_delivery_failure_is_recorded_without_touching_decision(self):
        async def run_case():
            profile = FakeProfile(fail=ProfileServiceError("compliance down"))
            pipeline, _ = _pipeline([JobSnapshot(state="completed", result=W9_RESULT)], profile)
            record = await pipeline.process_document("doc-1")
            rejected = await pipeline.reject(record.review_id, reviewer="bob", reason="expired form")
            self.assertEqual(rejected.state, "rejected")
            self.assertEqual(rejected.delivery_status, "failed")
            self.assertEqual(rejected.delivery_error, "compliance down")
            self.assertEqual(rejected.decision.reason, "expired form")

        asyncio.run(run_case())

    def test_delivery_skipped_when_disabled(self):
        async def run_case():
            pipeline, _ = _pipeline([JobSnapshot(state="completed", result=W9_RESULT)])
            record = await pipeline.process_document("doc-1")
            with mock.patch.object(pipeline_module, "is_decision_delivery_enabled", return_value=False):
                approved = await pipeline.approve(record.review_id, reviewer="alice")
            self.assertEqual(approved.delivery_status, "skipped")
            self.assertEqual(pipeline.profile.published, [])

        asyncio.run(run_case())

    def test_invalid_poll_budget_is_refused_before_submit(self):
        async def run_case():
            pipeline, extraction = _pipeline([])
            with self.assertRaises(ValidationError):
                await pipeline.process_document("doc-1", max_attempts=0)
            self.assertEqual(extraction.submitted, [])

        asyncio.run(run_case())

    def test_bulk_import_runs_through_profile(self):
        async def run_case():
            pipeline, _ = _pipeline()
            csv_data = (
                "first_name,last_name,employment_date,street1,city,state,zip_code\n"
                "Ann,Lee,2024-01-02,1 Main St,Austin,TX,73301\n"
            ).encode("utf-8")
            result = await pipeline.bulk_import(csv_data)
            self.assertEqual(result.succeeded[0].outcome, {"row": 1, "employee_id": "emp-Lee"})

        asyncio.run(run_case())

    def test_health_reports_memory_store(self):
        pipeline, _ = _pipeline()
        self.assertEqual(asyncio.run(pipeline.health()), {"store": "memory", "ok": True})


if __name__ == "__main__":
    unittest.main()
