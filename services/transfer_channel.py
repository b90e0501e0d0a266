# User value: This file moves a file's bytes to storage while reporting how far along it is, and stops immediately when the user cancels.
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx

from config import TRANSFER_CHUNK_BYTES, TRANSFER_TIMEOUT_SEC
from schemas.models import UploadHandle, UploadPayload
from utils.errors import TransferError

logger = logging.getLogger("api.transfer")

ByteProgress = Callable[[int, int], Awaitable[None]]


class TransferChannel:
    """One file, one handle. Cancellation is task cancellation: the caller cancels the awaiting task."""

    async def transfer(self, handle: UploadHandle, payload: UploadPayload, *, on_progress: Optional[ByteProgress] = None) -> None:
        raise NotImplementedError


class HttpTransferChannel(TransferChannel):
    def __init__(
        self,
        *,
        chunk_bytes: int = TRANSFER_CHUNK_BYTES,
        timeout: float = TRANSFER_TIMEOUT_SEC,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.chunk_bytes = max(1, int(chunk_bytes))
        self.timeout = timeout
        self._transport = transport

    async def _chunks(self, payload: UploadPayload, on_progress: Optional[ByteProgress]) -> AsyncIterator[bytes]:
        data = payload.data
        total = len(data)
        sent = 0
        while sent < total:
            chunk = data[sent : sent + self.chunk_bytes]
            yield chunk
            sent += len(chunk)
            if on_progress is not None:
                await on_progress(sent, total)

    async def transfer(self, handle: UploadHandle, payload: UploadPayload, *, on_progress: Optional[ByteProgress] = None) -> None:
        headers = {
            "Content-Type": payload.content_type,
            "Content-Length": str(len(payload.data)),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.put(
                    handle.upload_url,
                    content=self._chunks(payload, on_progress),
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            raise TransferError(
                f"Transfer interrupted: {exc.__class__.__name__}",
                registration_id=handle.registration_id,
            ) from exc

        if not response.is_success:
            raise TransferError(
                f"Storage endpoint refused the transfer (HTTP {response.status_code})",
                registration_id=handle.registration_id,
                http_status=response.status_code,
            )
        logger.debug("transfer_done registration_id=%s bytes=%s", handle.registration_id, len(payload.data))
