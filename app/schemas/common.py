from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel


class StatusResponse(BaseModel):
    success: bool
    message: str = ""


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    request_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """Envelope every non-2xx response uses (see app.middleware.error_handler)."""
    error: ErrorBody


def error_responses(*status_codes: int) -> Dict[int, Dict[str, Any]]:
    """OpenAPI ``responses=`` entry documenting the error envelope."""
    return {code: {"model": ErrorResponse} for code in status_codes}
