from fastapi import Header, HTTPException

REVIEWER_HEADER = "X-Reviewer-Id"


# Identity only: the gateway in front of this service authenticates, we just need to know who acted.
async def get_reviewer(x_reviewer_id: str | None = Header(default=None, alias=REVIEWER_HEADER)) -> str:
    reviewer = str(x_reviewer_id or "").strip()
    if not reviewer:
        raise HTTPException(
            status_code=401,
            detail={"error_code": "REVIEWER_REQUIRED", "error_message": f"Missing {REVIEWER_HEADER} header"},
        )
    return reviewer[:128]
