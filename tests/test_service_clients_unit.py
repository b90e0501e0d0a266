import asyncio
import json
import unittest

import httpx

from schemas.models import UploadHandle, UploadPayload
from services.profile_client import ProfileClient
from services.registration_client import RegistrationClient
from services.transfer_channel import HttpTransferChannel
from utils.errors import ProfileServiceError, RegistrationError, TransferError


def _client(handler):
    return RegistrationClient("https://registry.test/api", token="t0k", transport=httpx.MockTransport(handler))


class RegistrationClientUnitTests(unittest.TestCase):
    def test_init_upload_sends_declared_metadata_and_parses_envelope(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {
                        "documentId": "reg-9",
                        "uploadUrl": "https://storage.test/put/reg-9",
                        "expiresAt": "2030-01-01T00:00:00Z",
                    },
                },
            )

        async def run_case():
            client = _client(handler)
            handle = await client.init_upload(
                filename="cert.pdf", size_bytes=42, category="certification", content_type="application/pdf"
            )
            await client.aclose()
            self.assertEqual(handle.registration_id, "reg-9")
            self.assertEqual(handle.expires_at.year, 2030)
            self.assertEqual(seen["path"], "/api/documents/init-upload")
            self.assertEqual(seen["auth"], "Bearer t0k")
            self.assertEqual(
                seen["body"],
                {"originalFilename": "cert.pdf", "fileSize": 42, "category": "certification", "mimeType": "application/pdf"},
            )

        asyncio.run(run_case())

    def test_rejected_vs_transient_classification(self):
        async def run_case():
            rejected = _client(lambda request: httpx.Response(400, json={"message": "File type not allowed"}))
            with self.assertRaises(RegistrationError) as ctx:
                await rejected.init_upload(filename="a.pdf", size_bytes=1, category="contract", content_type="application/pdf")
            self.assertEqual(ctx.exception.kind, "rejected")
            self.assertEqual(ctx.exception.error_code, "REGISTRATION_REJECTED")
            self.assertEqual(ctx.exception.message, "File type not allowed")
            self.assertFalse(ctx.exception.retryable)

            busy = _client(lambda request: httpx.Response(503, text="maintenance"))
            with self.assertRaises(RegistrationError) as ctx:
                await busy.confirm_upload("reg-1")
            self.assertEqual(ctx.exception.kind, "transient")
            self.assertEqual(ctx.exception.phase, "confirm")
            self.assertTrue(ctx.exception.retryable)

            def boom(request):
                raise httpx.ConnectError("refused", request=request)

            down = _client(boom)
            with self.assertRaises(RegistrationError) as ctx:
                await down.init_upload(filename="a.pdf", size_bytes=1, category="contract", content_type="application/pdf")
            self.assertEqual(ctx.exception.kind, "transient")
            self.assertEqual(ctx.exception.phase, "initialize")

        asyncio.run(run_case())

    def test_confirm_returns_server_document_id(self):
        async def run_case():
            client = _client(lambda request: httpx.Response(200, json={"data": {"id": "doc-77"}}))
            self.assertEqual(await client.confirm_upload("reg-1"), "doc-77")

            empty = _client(lambda request: httpx.Response(200, json={"data": {}}))
            with self.assertRaises(RegistrationError):
                await empty.confirm_upload("reg-1")

        asyncio.run(run_case())


class HttpTransferChannelUnitTests(unittest.TestCase):
    def test_streams_chunks_and_reports_bytes(self):
        received = {}

        def handler(request: httpx.Request) -> httpx.Response:
            received["method"] = request.method
            received["body"] = request.content
            return httpx.Response(200)

        async def run_case():
            progress = []

            async def on_progress(sent, total):
                progress.append((sent, total))

            channel = HttpTransferChannel(chunk_bytes=4, transport=httpx.MockTransport(handler))
            handle = UploadHandle(registration_id="reg-1", upload_url="https://storage.test/put")
            payload = UploadPayload(filename="a.pdf", content_type="application/pdf", size_bytes=10, data=b"0123456789")
            await channel.transfer(handle, payload, on_progress=on_progress)
            self.assertEqual(received["method"], "PUT")
            self.assertEqual(received["body"], b"0123456789")
            self.assertEqual(progress, [(4, 10), (8, 10), (10, 10)])

        asyncio.run(run_case())

    def test_refused_transfer_raises_transfer_error(self):
        async def run_case():
            channel = HttpTransferChannel(transport=httpx.MockTransport(lambda request: httpx.Response(403)))
            handle = UploadHandle(registration_id="reg-1", upload_url="https://storage.test/put")
            payload = UploadPayload(filename="a.pdf", content_type="application/pdf", size_bytes=3, data=b"abc")
            with self.assertRaises(TransferError) as ctx:
                await channel.transfer(handle, payload)
            self.assertEqual(ctx.exception.context["http_status"], 403)

        asyncio.run(run_case())


class ProfileClientUnitTests(unittest.TestCase):
    def test_create_employee_posts_nested_address(self):
        received = {}

        def handler(request):
            received["path"] = request.url.path
            received["body"] = json.loads(request.content)
            return httpx.Response(201, json={"data": {"id": "emp-9"}})

        async def run_case():
            client = ProfileClient("https://profile.test/api", transport=httpx.MockTransport(handler))
            employee_id = await client.create_employee(
                {
                    "first_name": "Ann",
                    "last_name": "Lee",
                    "employment_date": "2024-01-02",
                    "street1": "1 Main St",
                    "city": "Austin",
                    "state": "TX",
                    "zip_code": "73301",
                }
            )
            self.assertEqual(employee_id, "emp-9")
            self.assertTrue(received["path"].endswith("/employees"))
            self.assertEqual(received["body"]["address"]["zipCode"], "73301")
            self.assertEqual(received["body"]["firstName"], "Ann")

        asyncio.run(run_case())

    def test_publish_decision_errors_are_classified(self):
        async def run_case():
            client = ProfileClient("https://profile.test/api", transport=httpx.MockTransport(lambda r: httpx.Response(503)))
            with self.assertRaises(ProfileServiceError) as ctx:
                await client.publish_decision({"reviewId": "rev-1", "outcome": "approved"})
            self.assertTrue(ctx.exception.retryable)

            client = ProfileClient(
                "https://profile.test/api",
                transport=httpx.MockTransport(lambda r: httpx.Response(422, json={"message": "unknown document"})),
            )
            with self.assertRaises(ProfileServiceError) as ctx:
                await client.publish_decision({"reviewId": "rev-1", "outcome": "approved"})
            self.assertFalse(ctx.exception.retryable)
            self.assertEqual(ctx.exception.message, "unknown document")

        asyncio.run(run_case())


if __name__ == "__main__":
    unittest.main()
