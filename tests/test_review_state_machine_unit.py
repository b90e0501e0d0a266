import asyncio
import unittest
from datetime import timedelta

from schemas.models import ExtractedField, ExtractionJob, ExtractionResult
from services.review_state_machine import ReviewStateMachine, review_fields
from utils.errors import InvalidTransitionError, ReviewPolicyError, ValidationError


def _job(outcome, fields=(), *, error=None, job_id="job-1"):
    result = None
    if outcome in ("completed", "requires_review"):
        result = ExtractionResult(fields=tuple(fields), raw_text="text", document_type="w9", overall_confidence=85)
    return ExtractionJob(
        job_id=job_id, document_id="doc-1", max_attempts=3, interval_ms=0, outcome=outcome, result=result, error=error
    )


DUPLICATE_FIELDS = (
    ExtractedField(key="EIN", value="11-1111111", confidence=70.0),
    ExtractedField(key="Name", value="Acme", confidence=96.0),
    ExtractedField(key="e.i.n.", value="12-3456789", confidence=92.0),
    ExtractedField(key="E I N", value="99-9999999", confidence=92.0),
)


async def _review_with(machine, outcome, fields=DUPLICATE_FIELDS):
    record = await machine.open_review("doc-1")
    await machine.start_processing(record.review_id, "job-1")
    return await machine.apply_job(record.review_id, _job(outcome, fields))


class ReviewFieldsUnitTests(unittest.TestCase):
    def test_dedupe_keeps_highest_confidence_and_first_on_tie(self):
        async def run_case():
            machine = ReviewStateMachine(strict_policy=True)
            record = await _review_with(machine, "completed")
            presented = {f.normalized_key: f for f in review_fields(record)}
            self.assertEqual(len(presented), 2)
            self.assertEqual(presented["ein"].value, "12-3456789")
            self.assertEqual(presented["ein"].confidence, 92.0)
            self.assertEqual(presented["ein"].tier, "medium")
            self.assertEqual(presented["ein"].detection_count, 3)
            self.assertEqual(presented["name"].tier, "high")
            self.assertEqual(len(record.detections), 4)

        asyncio.run(run_case())

    def test_edit_keeps_machine_confidence_and_unknown_key_has_none(self):
        async def run_case():
            machine = ReviewStateMachine(strict_policy=True)
            record = await _review_with(machine, "completed")
            record = await machine.edit_fields(record.review_id, {"EIN": "98-7654321", "Notes": "checked"}, editor="bob")
            presented = {f.normalized_key: f for f in review_fields(record)}
            self.assertEqual(presented["ein"].value, "98-7654321")
            self.assertEqual(presented["ein"].confidence, 92.0)
            self.assertTrue(presented["ein"].edited)
            self.assertIsNone(presented["notes"].confidence)
            self.assertIsNone(presented["notes"].tier)

        asyncio.run(run_case())


class ReviewStateMachineUnitTests(unittest.TestCase):
    def test_requires_review_blocks_blind_approval_under_strict_policy(self):
        async def run_case():
            machine = ReviewStateMachine(strict_policy=True)
            record = await _review_with(machine, "requires_review")
            with self.assertRaises(ReviewPolicyError):
                await machine.approve(record.review_id, reviewer="alice")
            still = await machine.get(record.review_id)
            self.assertEqual(still.state, "requires_review")
            self.assertIsNone(still.decision)

            approved = await machine.approve(record.review_id, reviewer="alice", edits={"Name": "Acme LLC"})
            self.assertEqual(approved.state, "approved")
            self.assertEqual(approved.decision.edit_count, 1)
            self.assertEqual(approved.decision.field_values()["name"], "Acme LLC")
            self.assertEqual(approved.delivery_status, "pending")

        asyncio.run(run_case())

    def test_override_and_relaxed_policy_allow_approval(self):
        async def run_case():
            strict = ReviewStateMachine(strict_policy=True)
            record = await _review_with(strict, "requires_review")
            approved = await strict.approve(record.review_id, reviewer="alice", override=True)
            self.assertTrue(approved.decision.override_used)

            relaxed = ReviewStateMachine(strict_policy=False)
            record = await _review_with(relaxed, "requires_review")
            with self.assertLogs("api.review", level="WARNING"):
                approved = await relaxed.approve(record.review_id, reviewer="alice")
            self.assertEqual(approved.state, "approved")

        asyncio.run(run_case())

    def test_decision_is_terminal(self):
        async def run_case():
            machine = ReviewStateMachine(strict_policy=True)
            record = await _review_with(machine, "completed")
            await machine.approve(record.review_id, reviewer="alice")
            with self.assertRaises(InvalidTransitionError):
                await machine.reject(record.review_id, reviewer="bob", reason="changed mind")
            with self.assertRaises(InvalidTransitionError):
                await machine.edit_fields(record.review_id, {"Name": "x"}, editor="bob")
            with self.assertRaises(InvalidTransitionError):
                await machine.approve(record.review_id, reviewer="alice")

        asyncio.run(run_case())

    def test_reject_requires_reason(self):
        async def run_case():
            machine = ReviewStateMachine(strict_policy=True)
            record = await _review_with(machine, "requires_review")
            with self.assertRaises(ValidationError):
                await machine.reject(record.review_id, reviewer="bob", reason="  ")
            rejected = await machine.reject(record.review_id, reviewer="bob", reason="blurry scan")
            self.assertEqual(rejected.state, "rejected")
            self.assertEqual(rejected.decision.reason, "blurry scan")

        asyncio.run(run_case())

    def test_timeout_leaves_review_resubmittable_and_failure_records_error(self):
        async def run_case():
            machine = ReviewStateMachine(strict_policy=True)
            record = await machine.open_review("doc-1")
            await machine.start_processing(record.review_id, "job-1")
            timed_out = await machine.apply_job(record.review_id, _job("timeout"))
            self.assertEqual(timed_out.state, "unprocessed")
            self.assertEqual(timed_out.error_detail["error_code"], "EXTRACTION_TIMEOUT")

            reopened = await machine.open_review("doc-1")
            self.assertEqual(reopened.review_id, record.review_id)
            await machine.start_processing(record.review_id, "job-2")
            failed = await machine.apply_job(record.review_id, _job("failed", error="unreadable", job_id="job-2"))
            self.assertEqual(failed.state, "failed")
            self.assertEqual(failed.jobs, ["job-1", "job-2"])
            self.assertEqual(failed.error_detail["error_message"], "unreadable")

        asyncio.run(run_case())

    def test_open_review_conflicts_while_processing_and_restarts_after_decision(self):
        async def run_case():
            machine = ReviewStateMachine(strict_policy=True)
            record = await machine.open_review("doc-1")
            await machine.start_processing(record.review_id, "job-1")
            with self.assertRaises(InvalidTransitionError):
                await machine.open_review("doc-1")
            await machine.apply_job(record.review_id, _job("completed", DUPLICATE_FIELDS))
            await machine.reject(record.review_id, reviewer="bob", reason="wrong document")
            fresh = await machine.open_review("doc-1")
            self.assertNotEqual(fresh.review_id, record.review_id)
            history = list(await machine.history("doc-1"))
            self.assertEqual([r.review_id for r in history], [fresh.review_id, record.review_id])

        asyncio.run(run_case())

    def test_concurrent_approve_and_reject_yield_one_decision(self):
        async def run_case():
            machine = ReviewStateMachine(strict_policy=True)
            record = await _review_with(machine, "completed")
            results = await asyncio.gather(
                machine.approve(record.review_id, reviewer="alice"),
                machine.reject(record.review_id, reviewer="bob", reason="no"),
                return_exceptions=True,
            )
            errors = [r for r in results if isinstance(r, Exception)]
            self.assertEqual(len(errors), 1)
            self.assertIsInstance(errors[0], InvalidTransitionError)
            final = await machine.get(record.review_id)
            self.assertIn(final.state, ("approved", "rejected"))

        asyncio.run(run_case())

    def test_processing_review_cannot_be_started_twice(self):
        async def run_case():
            machine = ReviewStateMachine(strict_policy=True)
            record = await machine.begin_processing("doc-1")
            self.assertEqual(record.state, "processing")
            with self.assertRaises(InvalidTransitionError):
                await machine.start_processing(record.review_id, "job-2")
            with self.assertRaises(InvalidTransitionError):
                await machine.begin_processing("doc-1")
            attached = await machine.attach_job(record.review_id, "job-1")
            self.assertEqual(attached.jobs, ["job-1"])

        asyncio.run(run_case())

    def test_superseded_job_result_is_refused(self):
        async def run_case():
            machine = ReviewStateMachine(strict_policy=True)
            record = await machine.open_review("doc-1")
            await machine.start_processing(record.review_id, "job-1")
            await machine.apply_job(record.review_id, _job("timeout"))
            await machine.start_processing(record.review_id, "job-2")
            with self.assertRaises(InvalidTransitionError):
                await machine.apply_job(record.review_id, _job("completed", DUPLICATE_FIELDS))
            done = await machine.apply_job(record.review_id, _job("completed", DUPLICATE_FIELDS, job_id="job-2"))
            self.assertEqual(done.state, "completed")

        asyncio.run(run_case())

    def test_stale_processing_review_is_recovered_only_after_window(self):
        async def run_case():
            machine = ReviewStateMachine(strict_policy=True)
            record = await machine.begin_processing("doc-1")
            with self.assertRaises(InvalidTransitionError):
                await machine.recover_stale(record.review_id, stale_after=timedelta(hours=1))
            recovered = await machine.recover_stale(record.review_id, stale_after=timedelta(0))
            self.assertEqual(recovered.state, "unprocessed")
            self.assertEqual(recovered.error_detail["error_code"], "EXTRACTION_CANCELLED")

        asyncio.run(run_case())

    def test_locks_are_dropped_once_idle(self):
        async def run_case():
            machine = ReviewStateMachine(strict_policy=True)
            record = await _review_with(machine, "completed")
            await asyncio.gather(
                machine.edit_fields(record.review_id, {"Name": "Acme Inc"}, editor="bob"),
                machine.edit_fields(record.review_id, {"EIN": "98-7654321"}, editor="bob"),
            )
            self.assertEqual(machine._locks, {})

        asyncio.run(run_case())

    def test_edit_before_processing_is_refused(self):
        async def run_case():
            machine = ReviewStateMachine(strict_policy=True)
            record = await machine.open_review("doc-1")
            with self.assertRaises(InvalidTransitionError):
                await machine.edit_fields(record.review_id, {"Name": "x"}, editor="bob")

        asyncio.run(run_case())


if __name__ == "__main__":
    unittest.main()
