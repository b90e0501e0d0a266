# User value: This file hands imported employees and approved review decisions to the profile and compliance side so reviewed data actually lands where it is used.
import logging

import httpx

from config import PROFILE_SERVICE_URL
from services.service_http import ServiceHttpClient, is_transient_status, response_message, unwrap_data
from utils.errors import ProfileServiceError

logger = logging.getLogger("api.profile")


class ProfileClient(ServiceHttpClient):
    service_name = "profile"

    def __init__(self, base_url: str = PROFILE_SERVICE_URL, **kwargs) -> None:
        super().__init__(base_url, **kwargs)

    async def _post(self, path: str, body: dict) -> dict:
        try:
            response = await self._send("POST", path, json=body)
        except httpx.HTTPError as exc:
            raise ProfileServiceError(f"Profile service unreachable: {exc.__class__.__name__}") from exc
        if response.is_success:
            try:
                return unwrap_data(response.json())
            except ValueError:
                return {}
        raise ProfileServiceError(
            response_message(response, f"Profile service returned HTTP {response.status_code}"),
            transient=is_transient_status(response.status_code),
            http_status=response.status_code,
        )

    # User value: creates one employee from a validated import row and returns the new profile id.
    async def create_employee(self, row: dict) -> str:
        body = {
            "firstName": row["first_name"],
            "lastName": row["last_name"],
            "email": row.get("email"),
            "phone": row.get("phone"),
            "jobTitle": row.get("job_title"),
            "department": row.get("department"),
            "employmentDate": row["employment_date"],
            "address": {
                "street1": row["street1"],
                "street2": row.get("street2"),
                "city": row["city"],
                "state": row["state"],
                "zipCode": row["zip_code"],
            },
        }
        data = await self._post("/employees", body)
        employee_id = data.get("id") or data.get("employeeId")
        if not employee_id:
            raise ProfileServiceError("Profile service did not return an employee id", transient=False)
        return str(employee_id)

    async def publish_decision(self, payload: dict) -> None:
        await self._post("/review-decisions", payload)
        logger.info("decision_published review_id=%s outcome=%s", payload.get("reviewId"), payload.get("outcome"))
