# User value: This file reserves an upload slot and finalizes the stored document so every uploaded file ends up with a server-side id.
import logging
from datetime import datetime
from typing import Optional

import httpx

from config import REGISTRATION_SERVICE_URL
from schemas.models import UploadHandle
from schemas.pipeline_contract import PHASE_CONFIRM, PHASE_INITIALIZE
from services.service_http import ServiceHttpClient, is_transient_status, response_message, unwrap_data
from utils.errors import RegistrationError
from utils.metrics import incr

logger = logging.getLogger("api.registration")


def _parse_expiry(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("registration_bad_expiry value=%s", value)
        return None


class RegistrationClient(ServiceHttpClient):
    service_name = "registration"

    def __init__(self, base_url: str = REGISTRATION_SERVICE_URL, **kwargs) -> None:
        super().__init__(base_url, **kwargs)

    # User value: maps every failure to rejected (fix the file) or transient (try again) so the user gets the right advice.
    async def _call(self, method: str, path: str, *, phase: str, json: dict | None = None) -> dict:
        try:
            response = await self._send(method, path, json=json)
        except httpx.HTTPError as exc:
            incr("registration_errors_total", phase=phase, kind=RegistrationError.KIND_TRANSIENT)
            raise RegistrationError(
                f"Registration service unreachable: {exc.__class__.__name__}",
                phase=phase,
            ) from exc

        if response.is_success:
            try:
                return unwrap_data(response.json())
            except ValueError as exc:
                raise RegistrationError("Registration service returned a malformed response", phase=phase) from exc

        kind = RegistrationError.KIND_TRANSIENT if is_transient_status(response.status_code) else RegistrationError.KIND_REJECTED
        incr("registration_errors_total", phase=phase, kind=kind)
        raise RegistrationError(
            response_message(response, f"Registration service returned HTTP {response.status_code}"),
            phase=phase,
            kind=kind,
            http_status=response.status_code,
        )

    async def init_upload(self, *, filename: str, size_bytes: int, category: str, content_type: str) -> UploadHandle:
        data = await self._call(
            "POST",
            "/documents/init-upload",
            phase=PHASE_INITIALIZE,
            json={
                "originalFilename": filename,
                "fileSize": size_bytes,
                "category": category,
                "mimeType": content_type,
            },
        )
        registration_id = data.get("documentId") or data.get("id")
        upload_url = data.get("uploadUrl")
        if not registration_id or not upload_url:
            raise RegistrationError("Registration service did not issue an upload handle", phase=PHASE_INITIALIZE)
        return UploadHandle(
            registration_id=str(registration_id),
            upload_url=str(upload_url),
            expires_at=_parse_expiry(data.get("expiresAt")),
        )

    async def confirm_upload(self, registration_id: str) -> str:
        data = await self._call("POST", f"/documents/{registration_id}/confirm", phase=PHASE_CONFIRM)
        document_id = data.get("id") or data.get("documentId")
        if not document_id:
            raise RegistrationError("Registration service did not return a document id", phase=PHASE_CONFIRM)
        return str(document_id)
