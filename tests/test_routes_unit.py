# User value: This test checks the HTTP layer stays a thin adapter so clients see pipeline results and errors unchanged.
import asyncio
import io
import json
import unittest
from unittest.mock import patch

from fastapi import HTTPException
from starlette.datastructures import Headers, UploadFile
from starlette.requests import Request

from auth import get_reviewer
from config import MAX_BULK_CSV_SIZE_BYTES
from routes.bulk_import import bulk_import
from routes.contract import pipeline_contract
from routes.health import health
from routes.reviews import approve_review, auto_populate, get_review, process_document, reject_review
from routes.uploads import cancel_upload, get_upload, upload_batch, upload_document
from schemas.models import ExtractedField, ExtractionResult, UploadHandle
from schemas.requests import ApproveRequest, ProcessDocumentRequest, RejectRequest
from services.batch_coordinator import BatchCoordinator
from services.extraction_client import JobSnapshot
from services.extraction_poller import ExtractionJobPoller
from services.pipeline import DocumentPipeline
from services.review_state_machine import ReviewStateMachine
from services.stores import UploadItemStore
from services.transfer_channel import TransferChannel
from services.upload_orchestrator import UploadOrchestrator
from utils.errors import ReviewPolicyError, ValidationError


class FakeRegistration:
    async def init_upload(self, *, filename, size_bytes, category, content_type):
        return UploadHandle(registration_id="reg-1", upload_url="https://storage.test/put")

    async def confirm_upload(self, registration_id):
        return "doc-77"


class FakeChannel(TransferChannel):
    async def transfer(self, handle, payload, *, on_progress=None):
        await on_progress(payload.size_bytes, payload.size_bytes)


class FakeExtraction:
    def __init__(self, snapshot):
        self.snapshot = snapshot

    async def submit_job(self, document_id):
        return "job-1"

    async def poll_job(self, job_id):
        return self.snapshot


class FakeProfile:
    async def publish_decision(self, payload):
        return None

    async def create_employee(self, row):
        return "emp-1"


async def _no_sleep(seconds):
    return None


LICENSE_RESULT = ExtractionResult(
    fields=(
        ExtractedField(key="Full Name", value="Jane Public", confidence=90.0),
        ExtractedField(key="DOB", value="1990-02-03", confidence=60.0),
    ),
    document_type="license",
    overall_confidence=75,
)


def _pipeline(state="requires_review", **upload_options):
    return DocumentPipeline(
        uploads=UploadOrchestrator(
            store=UploadItemStore(), registration=FakeRegistration(), channel=FakeChannel(), **upload_options
        ),
        coordinator=BatchCoordinator(concurrency=2),
        poller=ExtractionJobPoller(
            FakeExtraction(JobSnapshot(state=state, result=LICENSE_RESULT)), max_attempts=2, interval_ms=0, sleep=_no_sleep
        ),
        reviews=ReviewStateMachine(strict_policy=True),
        profile=FakeProfile(),
    )


class CountingBytes(io.BytesIO):
    def __init__(self, data):
        super().__init__(data)
        self.reads = 0

    def read(self, *args):
        self.reads += 1
        return super().read(*args)


def _upload_file(name, data, content_type):
    return UploadFile(file=CountingBytes(data), filename=name, headers=Headers({"content-type": content_type}))


class RoutesUnitTests(unittest.TestCase):
    def setUp(self):
        for target in (
            "services.pipeline.is_decision_delivery_enabled",
            "services.auto_populate.is_auto_populate_enabled",
        ):
            patcher = patch(target, return_value=True)
            patcher.start()
            self.addCleanup(patcher.stop)

    def test_upload_then_inspect_and_cancel_is_noop_when_complete(self):
        async def run_case():
            pipeline = _pipeline()
            out = await upload_document(
                file=_upload_file("cert.pdf", b"%PDF-1.4 data", "application/pdf"),
                category="certification",
                item_id="item-1",
                pipeline=pipeline,
            )
            self.assertEqual(out.status, "complete")
            self.assertEqual(out.server_document_id, "doc-77")
            self.assertEqual(out.progress, 100)
            self.assertEqual((await get_upload("item-1", pipeline=pipeline)).status, "complete")
            self.assertEqual((await cancel_upload("item-1", pipeline=pipeline)).status, "complete")

        asyncio.run(run_case())

    def test_upload_with_bad_category_raises_validation_error(self):
        async def run_case():
            with self.assertRaises(ValidationError):
                await upload_document(
                    file=_upload_file("cert.pdf", b"data", "application/pdf"),
                    category="recipes",
                    item_id=None,
                    pipeline=_pipeline(),
                )

        asyncio.run(run_case())

    def test_oversized_upload_is_refused_without_reading_bytes(self):
        async def run_case():
            pipeline = _pipeline(max_size_bytes=8)
            big = _upload_file("cert.pdf", b"%PDF-1.4 " + b"x" * 64, "application/pdf")
            with self.assertRaises(ValidationError) as ctx:
                await upload_document(file=big, category="certification", item_id=None, pipeline=pipeline)
            self.assertEqual(ctx.exception.error_code, "FILE_TOO_LARGE")
            self.assertEqual(big.file.reads, 0)

            small = _upload_file("ok.pdf", b"%PDF", "application/pdf")
            out = await upload_batch(files=[big, small], category="certification", pipeline=pipeline)
            self.assertEqual(out.succeeded_count, 1)
            self.assertEqual(out.failed[0].index, 0)
            self.assertEqual(big.file.reads, 0)
            self.assertEqual(small.file.reads, 1)

        asyncio.run(run_case())

    def test_oversized_csv_is_refused_before_reading(self):
        async def run_case():
            big = _upload_file("people.csv", b"x" * (MAX_BULK_CSV_SIZE_BYTES + 1), "text/csv")
            with self.assertRaises(ValidationError) as ctx:
                await bulk_import(file=big, pipeline=_pipeline())
            self.assertEqual(ctx.exception.error_code, "FILE_TOO_LARGE")
            self.assertEqual(big.file.reads, 0)

        asyncio.run(run_case())

    def test_review_flow_through_routes(self):
        async def run_case():
            pipeline = _pipeline()
            review = await process_document("doc-77", req=ProcessDocumentRequest(), pipeline=pipeline)
            self.assertEqual(review.state, "requires_review")
            dob = next(f for f in review.fields if f.normalized_key == "dob")
            self.assertEqual(dob.tier, "low")
            self.assertTrue(dob.needs_attention)

            with self.assertRaises(ReviewPolicyError):
                await approve_review(review.review_id, req=None, reviewer="alice", pipeline=pipeline)

            approved = await approve_review(
                review.review_id, req=ApproveRequest(edits={"DOB": "1990-02-04"}), reviewer="alice", pipeline=pipeline
            )
            self.assertEqual(approved.state, "approved")
            self.assertEqual(approved.delivery_status, "delivered")

            suggestion = await auto_populate(review.review_id, pipeline=pipeline)
            self.assertEqual(suggestion.target, "employee")
            self.assertEqual(suggestion.fields["first_name"], "Jane")
            self.assertEqual(suggestion.fields["date_of_birth"], "1990-02-04")

            fetched = await get_review(review.review_id, pipeline=pipeline)
            self.assertEqual(len(fetched.detections), 2)

        asyncio.run(run_case())

    def test_reject_route_records_reason(self):
        async def run_case():
            pipeline = _pipeline(state="completed")
            review = await process_document("doc-77", req=None, pipeline=pipeline)
            rejected = await reject_review(
                review.review_id, req=RejectRequest(reason="photo too dark"), reviewer="bob", pipeline=pipeline
            )
            self.assertEqual(rejected.decision["reason"], "photo too dark")

        asyncio.run(run_case())

    def test_bulk_import_route_reports_row_numbers(self):
        async def run_case():
            csv_data = (
                "first_name,last_name,employment_date,street1,city,state,zip_code\n"
                "Ann,Lee,2024-01-02,1 Main St,Austin,TX,73301\n"
                "Bo,Kim,2024-01-02,2 Main St,Austin,TX,7330\n"
            ).encode("utf-8")
            out = await bulk_import(file=_upload_file("people.csv", csv_data, "text/csv"), pipeline=_pipeline())
            self.assertEqual(out.succeeded_count, 1)
            self.assertEqual(out.failed[0].index, 2)
            self.assertEqual(out.failed[0].detail["field"], "zip_code")

        asyncio.run(run_case())

    def test_reviewer_header_required(self):
        async def run_case():
            with self.assertRaises(HTTPException) as ctx:
                await get_reviewer(x_reviewer_id="  ")
            self.assertEqual(ctx.exception.status_code, 401)
            self.assertEqual(await get_reviewer(x_reviewer_id=" alice "), "alice")

        asyncio.run(run_case())

    def test_contract_and_health(self):
        contract = pipeline_contract()
        self.assertIn("requires_review", contract["review_states"])
        self.assertEqual(contract["auto_populate_targets"], {"w9": "business", "license": "employee"})
        response = asyncio.run(health(pipeline=_pipeline()))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(json.loads(response.body)["status"], "OK")


class ErrorBodyUnitTests(unittest.TestCase):
    def test_pipeline_error_renders_standard_body(self):
        from app import pipeline_exception_handler

        request = Request(
            {
                "type": "http",
                "method": "POST",
                "scheme": "http",
                "server": ("testserver", 80),
                "path": "/reviews/rev-1/approve",
                "query_string": b"",
                "headers": [(b"x-request-id", b"req-abcdef123456")],
            }
        )
        exc = ReviewPolicyError("Edit at least one field or approve with override.", review_id="rev-1")
        response = asyncio.run(pipeline_exception_handler(request, exc))
        body = json.loads(response.body)
        self.assertEqual(response.status_code, 422)
        self.assertEqual(body["error_code"], "REVIEW_POLICY_VIOLATION")
        self.assertEqual(body["path"], "/reviews/rev-1/approve")
        self.assertEqual(body["request_id"], "req-abcdef123456")
        self.assertEqual(body["detail"]["review_id"], "rev-1")


if __name__ == "__main__":
    unittest.main()
